"""
Payment Allocation Waterfall

Splits a payment across a loan's installments in due-date order. Within an
installment the precedence is fixed: penalty, then fees, then interest, then
principal. Whatever exceeds an installment's outstanding amount cascades to
the next one; anything left after the final installment is unapplied credit.

These functions mutate in-memory schedule entries only. Persistence and
tracking updates belong to the callers, so the live payment path and the
recalculation replay share one implementation.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .currency import ZERO
from .schedule import InstallmentScheduleEntry, InstallmentStatus, derive_status, sort_entries


class PaymentTiming(Enum):
    """Payment date relative to the installment it targets"""
    EARLY = "early"        # Before the due date
    ON_TIME = "on_time"    # On the due date or within grace
    LATE = "late"          # After grace expiry


@dataclass
class InstallmentAllocation:
    """
    The share of one payment applied to one installment.

    Carries the installment's state from just before the payment so that
    reversing the most recent payment restores the installment exactly.
    """
    installment_number: int
    penalty_paid: Decimal = ZERO
    fees_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    penalty_assessed: Decimal = ZERO
    fully_paid: bool = False
    is_late: bool = False
    previous_status: InstallmentStatus = InstallmentStatus.PENDING
    previous_is_late: bool = False
    previous_paid_date: Optional[date] = None
    previous_last_payment_date: Optional[date] = None

    @property
    def amount(self) -> Decimal:
        return self.penalty_paid + self.fees_paid + self.interest_paid + self.principal_paid

    def to_dict(self) -> Dict:
        return {
            'installment_number': self.installment_number,
            'penalty_paid': str(self.penalty_paid),
            'fees_paid': str(self.fees_paid),
            'interest_paid': str(self.interest_paid),
            'principal_paid': str(self.principal_paid),
            'penalty_assessed': str(self.penalty_assessed),
            'fully_paid': self.fully_paid,
            'is_late': self.is_late,
            'previous_status': self.previous_status.value,
            'previous_is_late': self.previous_is_late,
            'previous_paid_date': _iso(self.previous_paid_date),
            'previous_last_payment_date': _iso(self.previous_last_payment_date),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'InstallmentAllocation':
        return cls(
            installment_number=data['installment_number'],
            penalty_paid=Decimal(data['penalty_paid']),
            fees_paid=Decimal(data['fees_paid']),
            interest_paid=Decimal(data['interest_paid']),
            principal_paid=Decimal(data['principal_paid']),
            penalty_assessed=Decimal(data['penalty_assessed']),
            fully_paid=data['fully_paid'],
            is_late=data['is_late'],
            previous_status=InstallmentStatus(data['previous_status']),
            previous_is_late=data['previous_is_late'],
            previous_paid_date=_parse(data.get('previous_paid_date')),
            previous_last_payment_date=_parse(data.get('previous_last_payment_date')),
        )


@dataclass
class AllocationOutcome:
    """Result of running one payment through the waterfall"""
    amount: Decimal
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    unapplied_amount: Decimal = ZERO
    target_installment: Optional[int] = None
    target_fully_paid: bool = False
    timing: PaymentTiming = PaymentTiming.ON_TIME
    days_late: int = 0

    @property
    def penalty_paid(self) -> Decimal:
        return sum((a.penalty_paid for a in self.allocations), ZERO)

    @property
    def fees_paid(self) -> Decimal:
        return sum((a.fees_paid for a in self.allocations), ZERO)

    @property
    def interest_paid(self) -> Decimal:
        return sum((a.interest_paid for a in self.allocations), ZERO)

    @property
    def principal_paid(self) -> Decimal:
        return sum((a.principal_paid for a in self.allocations), ZERO)

    @property
    def penalty_assessed(self) -> Decimal:
        return sum((a.penalty_assessed for a in self.allocations), ZERO)

    @property
    def applied_amount(self) -> Decimal:
        return self.amount - self.unapplied_amount

    @property
    def is_late(self) -> bool:
        return self.timing == PaymentTiming.LATE

    @property
    def is_partial(self) -> bool:
        """Target installment still not fully paid"""
        return self.target_installment is not None and not self.target_fully_paid

    @property
    def is_overpayment(self) -> bool:
        """Payment spilled past its target installment"""
        return len(self.allocations) > 1 or self.unapplied_amount > ZERO


def classify_timing(entry: InstallmentScheduleEntry, payment_date: date) -> PaymentTiming:
    if payment_date < entry.due_date:
        return PaymentTiming.EARLY
    if payment_date <= entry.grace_expiry_date:
        return PaymentTiming.ON_TIME
    return PaymentTiming.LATE


def allocate_payment(
    entries: List[InstallmentScheduleEntry],
    amount: Decimal,
    payment_date: date,
    late_fee: Decimal,
    today: date
) -> AllocationOutcome:
    """
    Apply ``amount`` to ``entries`` in place.

    A late fee is assessed once on each installment the payment reaches
    after that installment's grace expiry.
    """
    outcome = AllocationOutcome(amount=amount)
    open_entries = [e for e in sort_entries(entries) if not e.is_paid]
    if not open_entries:
        outcome.unapplied_amount = amount
        return outcome

    target = open_entries[0]
    outcome.target_installment = target.installment_number
    outcome.timing = classify_timing(target, payment_date)
    outcome.days_late = max(0, (payment_date - target.grace_expiry_date).days)

    remaining = amount
    for entry in open_entries:
        if remaining <= ZERO:
            break
        line = InstallmentAllocation(
            installment_number=entry.installment_number,
            previous_status=entry.status,
            previous_is_late=entry.is_late,
            previous_paid_date=entry.paid_date,
            previous_last_payment_date=entry.last_payment_date
        )
        late = payment_date > entry.grace_expiry_date
        if late and late_fee > ZERO and entry.penalty_amount == ZERO:
            entry.penalty_amount = late_fee
            line.penalty_assessed = late_fee

        # Fixed precedence: penalty, fees, interest, principal
        line.penalty_paid = min(remaining, entry.outstanding_penalty)
        entry.penalty_paid += line.penalty_paid
        remaining -= line.penalty_paid

        line.fees_paid = min(remaining, entry.outstanding_fees)
        entry.fees_paid += line.fees_paid
        remaining -= line.fees_paid

        line.interest_paid = min(remaining, entry.outstanding_interest)
        entry.interest_paid += line.interest_paid
        remaining -= line.interest_paid

        line.principal_paid = min(remaining, entry.outstanding_principal)
        entry.principal_paid += line.principal_paid
        remaining -= line.principal_paid

        if late:
            entry.is_late = True
        entry.last_payment_date = payment_date
        if entry.is_paid and entry.paid_date is None:
            entry.paid_date = payment_date
        entry.status = derive_status(entry, today)

        line.fully_paid = entry.is_paid
        line.is_late = entry.is_late
        outcome.allocations.append(line)

    outcome.target_fully_paid = target.is_paid
    outcome.unapplied_amount = remaining
    return outcome


def reverse_allocations(
    entries: List[InstallmentScheduleEntry],
    allocations: List[InstallmentAllocation]
) -> List[InstallmentScheduleEntry]:
    """
    Undo ``allocations`` on ``entries`` in place; returns the entries touched.

    Exact only for the most recent payment on the loan. Earlier payments are
    undone by replaying the remaining history instead.
    """
    by_number = {e.installment_number: e for e in entries}
    touched = []
    for line in reversed(allocations):
        entry = by_number[line.installment_number]
        entry.penalty_paid -= line.penalty_paid
        entry.fees_paid -= line.fees_paid
        entry.interest_paid -= line.interest_paid
        entry.principal_paid -= line.principal_paid
        entry.penalty_amount -= line.penalty_assessed
        entry.is_late = line.previous_is_late
        entry.paid_date = line.previous_paid_date
        entry.last_payment_date = line.previous_last_payment_date
        entry.status = line.previous_status
        touched.append(entry)
    return touched


def reset_entries(entries: List[InstallmentScheduleEntry], today: date) -> None:
    """Clear all payment effects and re-derive statuses as of ``today``"""
    for entry in entries:
        entry.reset_payments()
        entry.status = derive_status(entry, today)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None
