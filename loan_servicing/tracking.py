"""
Loan Tracking Module

The derived per-loan summary: cumulative amounts paid, outstanding balances,
installment progress, payment counts, flags and scores. Tracking is a cache
over the schedule and the recorded payments; recalculation must be able to
rebuild it exactly from the payment history.

Fields fall in two groups. History fields change only when a payment is
recorded, reversed or replayed, and are what reconciliation compares.
As-of fields depend on the evaluation date and are refreshed on every write.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, fields
from typing import Callable, Dict, List, Optional
import logging

from .allocation import AllocationOutcome, PaymentTiming
from .currency import ZERO
from .exceptions import NotFoundError, StateConflictError
from .loans import Loan
from .risk import (
    DEFAULT_AFTER_DAYS, LoanLifecycleState, PaymentPattern, classify, completion_percentage,
    default_risk_score, payment_behavior_score, payment_pattern
)
from .schedule import InstallmentScheduleEntry, sort_entries
from .storage import StorageInterface


logger = logging.getLogger(__name__)


@dataclass
class LoanTracking:
    """Derived summary of one loan. At most one per loan."""
    loan_id: str
    loan_number: str
    currency: str
    total_payable: Decimal
    original_principal: Decimal
    original_interest: Decimal
    original_fees: Decimal
    total_installments: int = 0

    # Cumulative amounts
    cumulative_payment: Decimal = ZERO
    cumulative_principal: Decimal = ZERO
    cumulative_interest: Decimal = ZERO
    cumulative_fees: Decimal = ZERO
    cumulative_penalty: Decimal = ZERO          # Assessed
    cumulative_penalty_paid: Decimal = ZERO
    overpayment_credit: Decimal = ZERO          # Received beyond the final installment

    # Outstanding amounts
    outstanding_balance: Decimal = ZERO
    outstanding_principal: Decimal = ZERO
    outstanding_interest: Decimal = ZERO
    outstanding_fees: Decimal = ZERO
    outstanding_penalty: Decimal = ZERO

    # Installment progress
    installments_paid: int = 0
    installments_remaining: int = 0
    next_payment_due_date: Optional[date] = None
    next_payment_amount: Decimal = ZERO

    # Payment history
    payment_count: int = 0
    early_payment_count: int = 0
    on_time_payment_count: int = 0
    late_payment_count: int = 0
    partial_payment_count: int = 0
    overpayment_count: int = 0
    last_payment_date: Optional[date] = None
    last_payment_amount: Optional[Decimal] = None

    # As of evaluated_on
    missed_installment_count: int = 0
    days_late: int = 0
    is_late: bool = False
    is_defaulted: bool = False
    is_current: bool = True
    has_partial_payments: bool = False
    has_overpayments: bool = False
    completion_percentage: Decimal = ZERO
    payment_behavior_score: Decimal = Decimal('100.00')
    default_risk_score: Decimal = ZERO
    payment_pattern: PaymentPattern = PaymentPattern.INSUFFICIENT_DATA
    loan_status: LoanLifecycleState = LoanLifecycleState.ACTIVE
    evaluated_on: Optional[date] = None

    @property
    def paid_toward_schedule(self) -> Decimal:
        """Paid against scheduled principal, interest and fees; penalties excluded"""
        return self.cumulative_principal + self.cumulative_interest + self.cumulative_fees

    def to_dict(self) -> Dict:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, date):
                value = value.isoformat()
            elif isinstance(value, (PaymentPattern, LoanLifecycleState)):
                value = value.value
            result[f.name] = value
        result['id'] = self.loan_id
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTracking':
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is not None:
                if f.name in _DECIMAL_FIELDS:
                    value = Decimal(value)
                elif f.name in _DATE_FIELDS:
                    value = date.fromisoformat(value)
                elif f.name == 'payment_pattern':
                    value = PaymentPattern(value)
                elif f.name == 'loan_status':
                    value = LoanLifecycleState(value)
            kwargs[f.name] = value
        return cls(**kwargs)


_DECIMAL_FIELDS = {
    f.name for f in fields(LoanTracking)
    if f.type is Decimal or f.name == 'last_payment_amount'
}
_DATE_FIELDS = {'next_payment_due_date', 'last_payment_date', 'evaluated_on'}

HISTORY_FIELDS = (
    'total_payable', 'original_principal', 'original_interest', 'original_fees',
    'total_installments',
    'cumulative_payment', 'cumulative_principal', 'cumulative_interest', 'cumulative_fees',
    'cumulative_penalty', 'cumulative_penalty_paid', 'overpayment_credit',
    'outstanding_balance', 'outstanding_principal', 'outstanding_interest',
    'outstanding_fees', 'outstanding_penalty',
    'installments_paid', 'installments_remaining', 'next_payment_due_date', 'next_payment_amount',
    'payment_count', 'early_payment_count', 'on_time_payment_count', 'late_payment_count',
    'partial_payment_count', 'overpayment_count', 'last_payment_date', 'last_payment_amount',
)


def history_differences(stored: LoanTracking, replayed: LoanTracking) -> List[str]:
    """Names of history fields on which two tracking records disagree"""
    return [name for name in HISTORY_FIELDS if getattr(stored, name) != getattr(replayed, name)]


@dataclass(frozen=True)
class LoanBalance:
    outstanding_principal: Decimal
    outstanding_interest: Decimal
    outstanding_fees: Decimal
    outstanding_penalty: Decimal
    outstanding_total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


def new_tracking(loan: Loan) -> LoanTracking:
    """Tracking for a loan with no payments"""
    terms = loan.terms
    interest = terms.total_payable - terms.principal - terms.processing_fee
    tracking = LoanTracking(
        loan_id=loan.id,
        loan_number=loan.loan_number,
        currency=loan.currency.code,
        total_payable=terms.total_payable,
        original_principal=terms.principal,
        original_interest=interest,
        original_fees=terms.processing_fee,
        outstanding_principal=terms.principal,
        outstanding_interest=interest,
        outstanding_fees=terms.processing_fee,
    )
    _sum_outstanding(tracking)
    return tracking


def _sum_outstanding(tracking: LoanTracking) -> None:
    tracking.outstanding_balance = (
        tracking.outstanding_principal + tracking.outstanding_interest
        + tracking.outstanding_fees + tracking.outstanding_penalty
    )


def record_payment(tracking: LoanTracking, outcome: AllocationOutcome, payment_date: date) -> None:
    """Add one payment's effects: cumulative fields add, outstanding fields subtract"""
    tracking.cumulative_payment += outcome.amount
    tracking.cumulative_principal += outcome.principal_paid
    tracking.cumulative_interest += outcome.interest_paid
    tracking.cumulative_fees += outcome.fees_paid
    tracking.cumulative_penalty += outcome.penalty_assessed
    tracking.cumulative_penalty_paid += outcome.penalty_paid
    tracking.overpayment_credit += outcome.unapplied_amount

    tracking.outstanding_principal -= outcome.principal_paid
    tracking.outstanding_interest -= outcome.interest_paid
    tracking.outstanding_fees -= outcome.fees_paid
    tracking.outstanding_penalty += outcome.penalty_assessed - outcome.penalty_paid
    _sum_outstanding(tracking)

    tracking.payment_count += 1
    _count_timing(tracking, outcome.timing, 1)
    if outcome.is_partial:
        tracking.partial_payment_count += 1
    if outcome.is_overpayment:
        tracking.overpayment_count += 1

    if tracking.last_payment_date is None or payment_date >= tracking.last_payment_date:
        tracking.last_payment_date = payment_date
        tracking.last_payment_amount = outcome.amount


def record_reversal(tracking: LoanTracking, payment) -> None:
    """Subtract a payment's effects; the exact inverse of ``record_payment``"""
    tracking.cumulative_payment -= payment.amount
    tracking.cumulative_principal -= payment.principal_paid
    tracking.cumulative_interest -= payment.interest_paid
    tracking.cumulative_fees -= payment.fees_paid
    tracking.cumulative_penalty -= payment.penalty_assessed
    tracking.cumulative_penalty_paid -= payment.penalty_paid
    tracking.overpayment_credit -= payment.unapplied_amount

    tracking.outstanding_principal += payment.principal_paid
    tracking.outstanding_interest += payment.interest_paid
    tracking.outstanding_fees += payment.fees_paid
    tracking.outstanding_penalty -= payment.penalty_assessed - payment.penalty_paid
    _sum_outstanding(tracking)

    tracking.payment_count -= 1
    _count_timing(tracking, payment.timing, -1)
    if payment.is_partial:
        tracking.partial_payment_count -= 1
    if payment.is_overpayment:
        tracking.overpayment_count -= 1

    tracking.last_payment_date = payment.previous_last_payment_date
    tracking.last_payment_amount = payment.previous_last_payment_amount


def _count_timing(tracking: LoanTracking, timing: PaymentTiming, delta: int) -> None:
    if timing == PaymentTiming.EARLY:
        tracking.early_payment_count += delta
    elif timing == PaymentTiming.ON_TIME:
        tracking.on_time_payment_count += delta
    else:
        tracking.late_payment_count += delta


def refresh_derived(tracking: LoanTracking, loan: Loan, entries: List[InstallmentScheduleEntry],
                    today: date, default_after_days: int = DEFAULT_AFTER_DAYS) -> None:
    """Recompute schedule progress and every as-of field for ``today``"""
    ordered = sort_entries(entries)
    unpaid = [e for e in ordered if not e.is_paid]

    tracking.total_installments = len(ordered)
    tracking.installments_paid = len(ordered) - len(unpaid)
    tracking.installments_remaining = len(unpaid)
    if unpaid:
        tracking.next_payment_due_date = unpaid[0].due_date
        tracking.next_payment_amount = unpaid[0].outstanding_amount
    else:
        tracking.next_payment_due_date = None
        tracking.next_payment_amount = ZERO

    tracking.missed_installment_count = sum(1 for e in unpaid if e.grace_expiry_date < today)
    oldest = unpaid[0] if unpaid else None
    if oldest is not None and oldest.grace_expiry_date < today:
        tracking.days_late = (today - oldest.due_date).days
    else:
        tracking.days_late = 0
    tracking.is_late = tracking.days_late > 0

    tracking.completion_percentage = completion_percentage(
        tracking.paid_toward_schedule, tracking.total_payable
    )
    tracking.payment_behavior_score = payment_behavior_score(
        tracking.payment_count, tracking.early_payment_count,
        tracking.on_time_payment_count, tracking.late_payment_count,
        tracking.missed_installment_count
    )
    tracking.default_risk_score = default_risk_score(
        tracking.days_late, tracking.missed_installment_count, tracking.payment_count,
        tracking.late_payment_count, tracking.payment_behavior_score,
        tracking.completion_percentage
    )
    tracking.payment_pattern = payment_pattern(
        tracking.payment_count, tracking.early_payment_count,
        tracking.on_time_payment_count, tracking.late_payment_count
    )
    tracking.loan_status = classify(loan, tracking.paid_toward_schedule, today, default_after_days)
    tracking.is_defaulted = tracking.loan_status == LoanLifecycleState.DEFAULTED
    tracking.is_current = not tracking.is_late and not tracking.is_defaulted
    tracking.has_partial_payments = tracking.partial_payment_count > 0
    tracking.has_overpayments = tracking.overpayment_count > 0
    tracking.evaluated_on = today


class TrackingRepository:
    """Loads and saves tracking rows in the loan_tracking table (id = loan id)"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "loan_tracking"

    def get(self, loan_id: str) -> LoanTracking:
        data = self.storage.load(self.table, loan_id)
        if not data:
            raise NotFoundError("LoanTracking", loan_id)
        return LoanTracking.from_dict(data)

    def find(self, loan_id: str) -> Optional[LoanTracking]:
        data = self.storage.load(self.table, loan_id)
        return LoanTracking.from_dict(data) if data else None

    def exists(self, loan_id: str) -> bool:
        return self.storage.exists(self.table, loan_id)

    def save(self, tracking: LoanTracking) -> None:
        self.storage.save(self.table, tracking.loan_id, tracking.to_dict())

    def all(self) -> List[LoanTracking]:
        return [LoanTracking.from_dict(row) for row in self.storage.load_all(self.table)]


class TrackingAggregator:
    """Owns the tracking row of every loan"""

    def __init__(self, storage: StorageInterface, clock: Callable[[], date] = date.today,
                 default_after_days: int = DEFAULT_AFTER_DAYS):
        self.storage = storage
        self.repository = TrackingRepository(storage)
        self.clock = clock
        self.default_after_days = default_after_days

    def initialize(self, loan: Loan, entries: Optional[List[InstallmentScheduleEntry]] = None) -> LoanTracking:
        """
        Create the tracking row at loan creation.

        Raises:
            StateConflictError: the loan already has tracking
        """
        if self.repository.exists(loan.id):
            raise StateConflictError(f"Loan {loan.loan_number} already has tracking",
                                     current_state="tracked")
        tracking = new_tracking(loan)
        refresh_derived(tracking, loan, entries or [], self.clock(), self.default_after_days)
        self.repository.save(tracking)
        logger.debug("Initialized tracking for loan %s", loan.loan_number)
        return tracking

    def on_schedule_generated(self, loan: Loan, entries: List[InstallmentScheduleEntry]) -> LoanTracking:
        """Pick up installment counts and next due date from a new schedule"""
        tracking = self.repository.find(loan.id)
        if tracking is None:
            return self.initialize(loan, entries)
        refresh_derived(tracking, loan, entries, self.clock(), self.default_after_days)
        self.repository.save(tracking)
        return tracking

    def apply_payment(self, loan: Loan, outcome: AllocationOutcome, payment_date: date,
                      entries: List[InstallmentScheduleEntry]) -> LoanTracking:
        tracking = self.repository.get(loan.id)
        record_payment(tracking, outcome, payment_date)
        refresh_derived(tracking, loan, entries, self.clock(), self.default_after_days)
        self.repository.save(tracking)
        return tracking

    def apply_reversal(self, loan: Loan, payment, entries: List[InstallmentScheduleEntry]) -> LoanTracking:
        tracking = self.repository.get(loan.id)
        record_reversal(tracking, payment)
        refresh_derived(tracking, loan, entries, self.clock(), self.default_after_days)
        self.repository.save(tracking)
        return tracking

    def refresh(self, loan: Loan, entries: List[InstallmentScheduleEntry],
                today: Optional[date] = None) -> LoanTracking:
        """Re-evaluate as-of fields without touching history fields"""
        tracking = self.repository.get(loan.id)
        refresh_derived(tracking, loan, entries, today or self.clock(), self.default_after_days)
        self.repository.save(tracking)
        return tracking

    def get_tracking(self, loan_id: str) -> LoanTracking:
        return self.repository.get(loan_id)

    def get_loan_balance(self, loan_id: str) -> LoanBalance:
        tracking = self.repository.get(loan_id)
        return LoanBalance(
            outstanding_principal=tracking.outstanding_principal,
            outstanding_interest=tracking.outstanding_interest,
            outstanding_fees=tracking.outstanding_fees,
            outstanding_penalty=tracking.outstanding_penalty,
            outstanding_total=tracking.outstanding_balance
        )
