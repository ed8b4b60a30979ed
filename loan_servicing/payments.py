"""
Payment Records

A payment is created once per real-world payment event and keeps the
breakdown of how it was allocated. Payments move from RECORDED to REVERSED
or CANCELLED and are only hard-deleted through an explicit purge.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .allocation import AllocationOutcome, InstallmentAllocation, PaymentTiming
from .currency import ZERO
from .exceptions import NotFoundError
from .storage import StorageInterface, StorageRecord


class PaymentStatus(Enum):
    RECORDED = "recorded"
    REVERSED = "reversed"
    CANCELLED = "cancelled"


@dataclass
class Payment(StorageRecord):
    """A payment against a loan and its allocation breakdown"""
    payment_number: str
    loan_id: str
    amount: Decimal
    payment_date: date
    method: str = "cash"
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: PaymentStatus = PaymentStatus.RECORDED

    # Allocation breakdown
    penalty_paid: Decimal = ZERO
    fees_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    penalty_assessed: Decimal = ZERO
    unapplied_amount: Decimal = ZERO
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    target_installment: Optional[int] = None

    # Classification against the target installment
    timing: PaymentTiming = PaymentTiming.ON_TIME
    is_late: bool = False
    days_late: int = 0
    is_partial: bool = False
    is_overpayment: bool = False

    # Tracking values replaced by this payment, restored on reversal
    previous_last_payment_date: Optional[date] = None
    previous_last_payment_amount: Optional[Decimal] = None

    reason: Optional[str] = None
    status_changed_at: Optional[datetime] = None

    @property
    def is_recorded(self) -> bool:
        return self.status == PaymentStatus.RECORDED

    @property
    def applied_amount(self) -> Decimal:
        return self.amount - self.unapplied_amount

    def apply_outcome(self, outcome: AllocationOutcome) -> None:
        """Copy an allocation outcome onto this payment"""
        self.penalty_paid = outcome.penalty_paid
        self.fees_paid = outcome.fees_paid
        self.interest_paid = outcome.interest_paid
        self.principal_paid = outcome.principal_paid
        self.penalty_assessed = outcome.penalty_assessed
        self.unapplied_amount = outcome.unapplied_amount
        self.allocations = list(outcome.allocations)
        self.target_installment = outcome.target_installment
        self.timing = outcome.timing
        self.is_late = outcome.is_late
        self.days_late = outcome.days_late
        self.is_partial = outcome.is_partial
        self.is_overpayment = outcome.is_overpayment

    def replay_key(self):
        """Chronological order used by recalculation"""
        return (self.payment_date, self.created_at, self.payment_number)

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['allocations'] = [a.to_dict() for a in self.allocations]
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Payment':
        data = dict(data)
        for name in ('amount', 'penalty_paid', 'fees_paid', 'interest_paid', 'principal_paid',
                     'penalty_assessed', 'unapplied_amount'):
            data[name] = Decimal(data[name])
        if data.get('previous_last_payment_amount') is not None:
            data['previous_last_payment_amount'] = Decimal(data['previous_last_payment_amount'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        if data.get('previous_last_payment_date'):
            data['previous_last_payment_date'] = date.fromisoformat(data['previous_last_payment_date'])
        if data.get('status_changed_at'):
            data['status_changed_at'] = datetime.fromisoformat(data['status_changed_at'])
        data['status'] = PaymentStatus(data['status'])
        data['timing'] = PaymentTiming(data['timing'])
        data['allocations'] = [InstallmentAllocation.from_dict(a) for a in data['allocations']]
        return super().from_dict(data)


class PaymentRepository:
    """Loads and saves payments in the payments table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "payments"

    def get(self, payment_id: str) -> Payment:
        data = self.storage.load(self.table, payment_id)
        if not data:
            raise NotFoundError("Payment", payment_id)
        return Payment.from_dict(data)

    def save(self, payment: Payment) -> None:
        self.storage.save(self.table, payment.id, payment.to_dict())

    def delete(self, payment_id: str) -> bool:
        return self.storage.delete(self.table, payment_id)

    def for_loan(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        """Payments of a loan in replay order"""
        filters = {'loan_id': loan_id}
        if status is not None:
            filters['status'] = status.value
        payments = [Payment.from_dict(row) for row in self.storage.find(self.table, filters)]
        return sorted(payments, key=Payment.replay_key)

    def recorded_for_loan(self, loan_id: str) -> List[Payment]:
        return self.for_loan(loan_id, PaymentStatus.RECORDED)
