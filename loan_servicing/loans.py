"""
Loan Module

Loan terms as read by the servicing core. Terms are fixed at disbursement;
the surrounding loan-management system owns origination, this module only
records the fields schedule generation, allocation and classification need.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional
import logging
import uuid

from .amortization import (
    DurationUnit, InterestMethod, RatePeriod, RepaymentFrequency,
    compute_total_payable, derive_installment_count, duration_in_days, periodic_rate
)
from .currency import Currency, ZERO, quantize, to_decimal
from .exceptions import NotFoundError, ValidationError
from .logging_config import log_action
from .sequences import SequenceIssuer
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


@dataclass
class LoanTerms:
    """Loan terms and conditions"""
    principal: Decimal
    interest_rate: Decimal              # e.g., 0.24 for 24%
    rate_period: RatePeriod
    interest_method: InterestMethod
    duration_value: int
    duration_unit: DurationUnit
    repayment_frequency: RepaymentFrequency
    disbursement_date: date
    currency: Currency = Currency.UGX
    number_of_installments: Optional[int] = None  # Derived from duration when absent
    grace_period_days: int = 0
    processing_fee: Decimal = ZERO
    late_fee: Decimal = ZERO            # Penalty assessed once per late installment
    first_repayment_date: Optional[date] = None
    payment_start_date: Optional[date] = None  # Defaults to disbursement date
    total_payable: Optional[Decimal] = None    # Computed from the schedule when absent

    def __post_init__(self):
        for name in ('principal', 'interest_rate', 'processing_fee', 'late_fee'):
            setattr(self, name, to_decimal(getattr(self, name)))
        if self.total_payable is not None:
            self.total_payable = to_decimal(self.total_payable)

        if self.principal <= ZERO:
            raise ValidationError("Principal must be positive")
        if self.interest_rate < ZERO:
            raise ValidationError("Interest rate cannot be negative")
        if self.duration_value <= 0:
            raise ValidationError("Loan duration must be positive")
        if self.number_of_installments is not None and self.number_of_installments < 1:
            raise ValidationError("Number of installments must be at least 1")
        if self.grace_period_days < 0:
            raise ValidationError("Grace period cannot be negative")
        if self.processing_fee < ZERO or self.late_fee < ZERO:
            raise ValidationError("Fees cannot be negative")
        if self.disbursement_date is None:
            raise ValidationError("Disbursement date is required")
        if self.first_repayment_date and self.first_repayment_date < self.disbursement_date:
            raise ValidationError("First repayment date cannot precede disbursement")
        if self.payment_start_date is None:
            self.payment_start_date = self.disbursement_date

    @property
    def duration_days(self) -> int:
        return duration_in_days(self.payment_start_date, self.duration_value, self.duration_unit)

    @property
    def periodic_rate(self) -> Decimal:
        return periodic_rate(self.interest_rate, self.rate_period, self.repayment_frequency)

    def resolved(self) -> 'LoanTerms':
        """Copy with installment count and total payable filled in"""
        count = self.number_of_installments or derive_installment_count(
            self.payment_start_date, self.duration_value, self.duration_unit,
            self.repayment_frequency
        )
        total = self.total_payable
        if total is None:
            total = compute_total_payable(
                self.interest_method, self.principal, self.periodic_rate, count,
                self.processing_fee, self.currency
            )
        else:
            total = quantize(total, self.currency)
            if total < self.principal + self.processing_fee:
                raise ValidationError("Total payable cannot be below principal plus processing fee")
        return replace(self, number_of_installments=count, total_payable=total)

    def to_dict(self) -> Dict:
        return {
            'principal': str(self.principal),
            'interest_rate': str(self.interest_rate),
            'rate_period': self.rate_period.value,
            'interest_method': self.interest_method.value,
            'duration_value': self.duration_value,
            'duration_unit': self.duration_unit.value,
            'repayment_frequency': self.repayment_frequency.value,
            'disbursement_date': self.disbursement_date.isoformat(),
            'currency': self.currency.code,
            'number_of_installments': self.number_of_installments,
            'grace_period_days': self.grace_period_days,
            'processing_fee': str(self.processing_fee),
            'late_fee': str(self.late_fee),
            'first_repayment_date': _iso(self.first_repayment_date),
            'payment_start_date': _iso(self.payment_start_date),
            'total_payable': None if self.total_payable is None else str(self.total_payable),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTerms':
        return cls(
            principal=Decimal(data['principal']),
            interest_rate=Decimal(data['interest_rate']),
            rate_period=RatePeriod(data['rate_period']),
            interest_method=InterestMethod(data['interest_method']),
            duration_value=data['duration_value'],
            duration_unit=DurationUnit(data['duration_unit']),
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            currency=Currency[data['currency']],
            number_of_installments=data.get('number_of_installments'),
            grace_period_days=data.get('grace_period_days', 0),
            processing_fee=Decimal(data.get('processing_fee', '0')),
            late_fee=Decimal(data.get('late_fee', '0')),
            first_repayment_date=_parse_date(data.get('first_repayment_date')),
            payment_start_date=_parse_date(data.get('payment_start_date')),
            total_payable=None if data.get('total_payable') is None else Decimal(data['total_payable']),
        )


@dataclass
class Loan(StorageRecord):
    """A disbursed loan, referenced by ID from schedule, payments and tracking"""
    loan_number: str
    client_id: str
    terms: LoanTerms
    description: str = ""

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def principal(self) -> Decimal:
        return self.terms.principal

    @property
    def total_payable(self) -> Decimal:
        return self.terms.total_payable

    @property
    def duration_days(self) -> int:
        return self.terms.duration_days

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'client_id': self.client_id,
            'description': self.description,
            'terms': self.terms.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            client_id=data['client_id'],
            description=data.get('description', ""),
            terms=LoanTerms.from_dict(data['terms']),
        )


class LoanBook:
    """
    Loan registry for the servicing core.

    Stands in for the loan-management system: it persists disbursed loans
    with a business loan number and serves them by ID.
    """

    def __init__(self, storage: StorageInterface, sequences: SequenceIssuer, loan_prefix: str = "LN"):
        self.storage = storage
        self.sequences = sequences
        self.loan_prefix = loan_prefix
        self.table = "loans"

    def register_loan(self, terms: LoanTerms, client_id: str, description: str = "",
                      on_created: Optional[Callable[[Loan], None]] = None) -> Loan:
        """
        Persist a disbursed loan.

        Args:
            terms: Loan terms; installment count and total payable are resolved here
            client_id: Borrower reference
            description: Free text
            on_created: Called inside the same transaction, e.g. to create tracking
        """
        resolved = terms.resolved()
        with self.sequences.hold(self.loan_prefix), self.storage.atomic():
            loan_number = self.sequences.issue(self.loan_prefix)
            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=loan_number,
                client_id=client_id,
                terms=resolved,
                description=description
            )
            self.storage.save(self.table, loan.id, loan.to_dict())
            if on_created:
                on_created(loan)

        log_action(logger, "info", f"Registered loan {loan_number}",
                   action="register_loan", resource=loan.id,
                   extra={"principal": str(resolved.principal),
                          "total_payable": str(resolved.total_payable),
                          "installments": resolved.number_of_installments})
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.table, loan_id)
        if not data:
            raise NotFoundError("Loan", loan_id)
        return Loan.from_dict(data)

    def find_by_number(self, loan_number: str) -> Optional[Loan]:
        found = self.storage.find(self.table, {'loan_number': loan_number})
        return Loan.from_dict(found[0]) if found else None

    def list_loan_ids(self) -> List[str]:
        return [data['id'] for data in self.storage.load_all(self.table)]

    def list_loans(self) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.load_all(self.table)]


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None
