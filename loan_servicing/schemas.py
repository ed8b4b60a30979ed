"""
Pydantic schemas for collaborator input
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional, Type, TypeVar, Union
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as SchemaValidationError

from .amortization import DurationUnit, InterestMethod, RatePeriod, RepaymentFrequency
from .currency import Currency, to_decimal
from .exceptions import ValidationError
from .loans import LoanTerms


# Money arrives as Decimal, int or a decimal string; floats are refused
Amount = Union[Decimal, int, str]

ModelT = TypeVar("ModelT", bound=BaseModel)


def _refuse_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("monetary values must not be floats")
    return value


class PaymentRequest(BaseModel):
    """A real-world payment submitted for allocation"""
    loan_id: str
    amount: Amount = Field(..., description="Decimal, int or decimal string")
    payment_date: Optional[date] = None
    method: str = Field("cash", description="cash, mobile_money, bank_transfer, cheque")
    reference_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def amount_not_float(cls, value):
        return _refuse_float(value)


class PaymentDetailsUpdate(BaseModel):
    """Metadata that may change while a payment is still recorded"""
    method: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class LoanTermsRequest(BaseModel):
    principal: Amount = Field(..., description="Decimal, int or decimal string")
    interest_rate: Amount = Field(..., description="Rate as a fraction, e.g. 0.24")
    rate_period: str = Field("year", description="year or month")
    interest_method: str = Field("flat", description="flat or reducing_balance")
    duration_value: int
    duration_unit: str = Field("months", description="days, weeks, months, years")
    repayment_frequency: str = Field("monthly", description="daily, weekly, biweekly, monthly, quarterly, yearly")
    disbursement_date: date
    currency: str = "UGX"
    number_of_installments: Optional[int] = None
    grace_period_days: int = 0
    processing_fee: Amount = "0"
    late_fee: Amount = "0"
    first_repayment_date: Optional[date] = None
    payment_start_date: Optional[date] = None
    total_payable: Optional[Amount] = None

    @field_validator("principal", "interest_rate", "processing_fee", "late_fee", "total_payable",
                     mode="before")
    @classmethod
    def amounts_not_float(cls, value):
        return _refuse_float(value)

    def to_terms(self) -> LoanTerms:
        """
        Convert to domain terms.

        Raises:
            ValidationError: unknown enum value, currency or non-numeric amount
        """
        try:
            rate_period = RatePeriod(self.rate_period)
            interest_method = InterestMethod(self.interest_method)
            duration_unit = DurationUnit(self.duration_unit)
            repayment_frequency = RepaymentFrequency(self.repayment_frequency)
        except ValueError as e:
            raise ValidationError(str(e))

        return LoanTerms(
            principal=to_decimal(self.principal),
            interest_rate=to_decimal(self.interest_rate),
            rate_period=rate_period,
            interest_method=interest_method,
            duration_value=self.duration_value,
            duration_unit=duration_unit,
            repayment_frequency=repayment_frequency,
            disbursement_date=self.disbursement_date,
            currency=Currency.from_code(self.currency),
            number_of_installments=self.number_of_installments,
            grace_period_days=self.grace_period_days,
            processing_fee=to_decimal(self.processing_fee),
            late_fee=to_decimal(self.late_fee),
            first_repayment_date=self.first_repayment_date,
            payment_start_date=self.payment_start_date,
            total_payable=to_decimal(self.total_payable) if self.total_payable is not None else None
        )


def parse_request(model: Type[ModelT], data: Dict[str, Any],
                  error: Type[ValidationError] = ValidationError) -> ModelT:
    """Build ``model`` from a dict, reporting schema errors as ``error``"""
    try:
        return model(**data)
    except SchemaValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise error(f"Invalid {model.__name__}: {details}")
