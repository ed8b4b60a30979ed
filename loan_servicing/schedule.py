"""
Installment Schedule Module

Installment schedule entries, the date-driven status rule shared by every
writer, and the generator that builds a loan's schedule once at disbursement.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional
import logging

from .amortization import InstallmentAmounts, installment_amounts, step_date
from .currency import ZERO
from .events import EventDispatcher, ScheduleGenerated
from .exceptions import AlreadyScheduled, StateConflictError
from .loans import Loan, LoanBook
from .locking import loan_lock_key
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger(__name__)


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"      # Nothing paid, not yet due
    PARTIAL = "partial"      # Something paid, not yet due
    PAID = "paid"            # Fully paid
    IN_GRACE = "in_grace"    # Past due date, within grace window
    OVERDUE = "overdue"      # Past grace window, not fully paid


@dataclass
class InstallmentScheduleEntry:
    """Single installment of a loan's repayment plan"""
    loan_id: str
    installment_number: int
    due_date: date
    grace_expiry_date: date
    principal_due: Decimal
    interest_due: Decimal
    fee_due: Decimal
    penalty_amount: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    fees_paid: Decimal = ZERO
    penalty_paid: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    is_late: bool = False
    paid_date: Optional[date] = None          # Date the installment became fully paid
    last_payment_date: Optional[date] = None

    @property
    def id(self) -> str:
        return entry_id(self.loan_id, self.installment_number)

    @property
    def scheduled_amount(self) -> Decimal:
        """Amount due excluding penalties"""
        return self.principal_due + self.interest_due + self.fee_due

    @property
    def total_due(self) -> Decimal:
        return self.scheduled_amount + self.penalty_amount

    @property
    def paid_amount(self) -> Decimal:
        return self.principal_paid + self.interest_paid + self.fees_paid + self.penalty_paid

    @property
    def outstanding_amount(self) -> Decimal:
        return max(ZERO, self.total_due - self.paid_amount)

    @property
    def outstanding_principal(self) -> Decimal:
        return max(ZERO, self.principal_due - self.principal_paid)

    @property
    def outstanding_interest(self) -> Decimal:
        return max(ZERO, self.interest_due - self.interest_paid)

    @property
    def outstanding_fees(self) -> Decimal:
        return max(ZERO, self.fee_due - self.fees_paid)

    @property
    def outstanding_penalty(self) -> Decimal:
        return max(ZERO, self.penalty_amount - self.penalty_paid)

    @property
    def is_paid(self) -> bool:
        return self.outstanding_amount == ZERO

    @property
    def is_partial(self) -> bool:
        return self.paid_amount > ZERO and not self.is_paid

    def reset_payments(self) -> None:
        """Back to the as-generated state"""
        self.penalty_amount = ZERO
        self.principal_paid = ZERO
        self.interest_paid = ZERO
        self.fees_paid = ZERO
        self.penalty_paid = ZERO
        self.status = InstallmentStatus.PENDING
        self.is_late = False
        self.paid_date = None
        self.last_payment_date = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'grace_expiry_date': self.grace_expiry_date.isoformat(),
            'principal_due': str(self.principal_due),
            'interest_due': str(self.interest_due),
            'fee_due': str(self.fee_due),
            'penalty_amount': str(self.penalty_amount),
            'principal_paid': str(self.principal_paid),
            'interest_paid': str(self.interest_paid),
            'fees_paid': str(self.fees_paid),
            'penalty_paid': str(self.penalty_paid),
            'paid_amount': str(self.paid_amount),
            'outstanding_amount': str(self.outstanding_amount),
            'status': self.status.value,
            'is_late': self.is_late,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'InstallmentScheduleEntry':
        return cls(
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            grace_expiry_date=date.fromisoformat(data['grace_expiry_date']),
            principal_due=Decimal(data['principal_due']),
            interest_due=Decimal(data['interest_due']),
            fee_due=Decimal(data['fee_due']),
            penalty_amount=Decimal(data['penalty_amount']),
            principal_paid=Decimal(data['principal_paid']),
            interest_paid=Decimal(data['interest_paid']),
            fees_paid=Decimal(data['fees_paid']),
            penalty_paid=Decimal(data['penalty_paid']),
            status=InstallmentStatus(data['status']),
            is_late=data['is_late'],
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            last_payment_date=(date.fromisoformat(data['last_payment_date'])
                               if data.get('last_payment_date') else None),
        )


def entry_id(loan_id: str, installment_number: int) -> str:
    return f"{loan_id}_{installment_number}"


def derive_status(entry: InstallmentScheduleEntry, today: date) -> InstallmentStatus:
    """
    Status of an installment as of ``today``.

    Date-driven states win over PARTIAL; ``entry.is_partial`` still reports
    a partly paid installment that is in grace or overdue.
    """
    if entry.is_paid:
        return InstallmentStatus.PAID
    if entry.due_date < today:
        if entry.grace_expiry_date < today:
            return InstallmentStatus.OVERDUE
        return InstallmentStatus.IN_GRACE
    if entry.paid_amount > ZERO:
        return InstallmentStatus.PARTIAL
    return InstallmentStatus.PENDING


def sort_entries(entries: List[InstallmentScheduleEntry]) -> List[InstallmentScheduleEntry]:
    return sorted(entries, key=lambda e: (e.due_date, e.installment_number))


class ScheduleRepository:
    """Loads and saves installment entries in the installment_schedule table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "installment_schedule"

    def load(self, loan_id: str) -> List[InstallmentScheduleEntry]:
        """Entries for a loan in due-date order"""
        rows = self.storage.find(self.table, {'loan_id': loan_id})
        return sort_entries([InstallmentScheduleEntry.from_dict(row) for row in rows])

    def exists(self, loan_id: str) -> bool:
        return self.storage.exists(self.table, entry_id(loan_id, 1))

    def save(self, entry: InstallmentScheduleEntry) -> None:
        self.storage.save(self.table, entry.id, entry.to_dict())

    def save_all(self, entries: List[InstallmentScheduleEntry]) -> None:
        for entry in entries:
            self.save(entry)

    def delete(self, loan_id: str) -> int:
        deleted = 0
        for row in self.storage.find(self.table, {'loan_id': loan_id}):
            if self.storage.delete(self.table, row['id']):
                deleted += 1
        return deleted

    def loan_ids(self) -> List[str]:
        """Loans that have a schedule, in first-seen order"""
        seen: Dict[str, None] = {}
        for row in self.storage.load_all(self.table):
            seen.setdefault(row['loan_id'], None)
        return list(seen)


class ScheduleGenerator:
    """
    Builds a loan's installment schedule.

    A schedule is generated once. Regeneration requires an explicit
    ``delete_schedule`` first, which is refused while recorded payments exist.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanBook,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.loans = loans
        self.repository = ScheduleRepository(storage)
        self.dispatcher = dispatcher
        self.clock = clock

    def build_entries(self, loan: Loan) -> List[InstallmentScheduleEntry]:
        """Compute entries for a loan without persisting them"""
        terms = loan.terms
        count = terms.number_of_installments
        amounts: List[InstallmentAmounts] = installment_amounts(
            terms.interest_method, terms.principal, terms.periodic_rate, count,
            terms.processing_fee, terms.currency, terms.total_payable
        )
        first_due = terms.first_repayment_date or step_date(
            terms.disbursement_date, terms.repayment_frequency, 1
        )
        grace = timedelta(days=terms.grace_period_days)

        entries = []
        for number, amount in enumerate(amounts, start=1):
            due = step_date(first_due, terms.repayment_frequency, number - 1)
            entries.append(InstallmentScheduleEntry(
                loan_id=loan.id,
                installment_number=number,
                due_date=due,
                grace_expiry_date=due + grace,
                principal_due=amount.principal,
                interest_due=amount.interest,
                fee_due=amount.fee
            ))
        return entries

    def generate(
        self,
        loan_id: str,
        on_generated: Optional[Callable[[Loan, List[InstallmentScheduleEntry]], None]] = None
    ) -> List[InstallmentScheduleEntry]:
        """
        Generate and persist the schedule for a loan.

        ``on_generated`` runs inside the same transaction, so whatever it
        writes commits or rolls back with the schedule.

        Raises:
            NotFoundError: unknown loan
            AlreadyScheduled: the loan already has a schedule
            LockTimeout: the loan is busy
        """
        loan = self.loans.get_loan(loan_id)
        with self.storage.lock(loan_lock_key(loan_id)):
            with self.storage.atomic():
                if self.repository.exists(loan_id):
                    raise AlreadyScheduled(
                        f"Loan {loan.loan_number} already has a schedule",
                        current_state="scheduled"
                    )
                entries = self.build_entries(loan)
                self.repository.save_all(entries)
                if on_generated is not None:
                    on_generated(loan, entries)

        log_action(logger, "info", f"Generated {len(entries)} installments for loan {loan.loan_number}",
                   action="generate_schedule", resource=loan_id,
                   extra={"installments": len(entries),
                          "total_payable": str(loan.total_payable)})
        if self.dispatcher:
            self.dispatcher.publish(ScheduleGenerated(loan_id=loan_id, installment_count=len(entries)))
        return entries

    def delete_schedule(self, loan_id: str,
                        on_deleted: Optional[Callable[[Loan], None]] = None) -> int:
        """
        Remove a loan's schedule so it can be regenerated.

        Raises:
            StateConflictError: the loan has recorded payments
        """
        loan = self.loans.get_loan(loan_id)
        with self.storage.lock(loan_lock_key(loan_id)):
            with self.storage.atomic():
                recorded = self.storage.find("payments", {'loan_id': loan_id, 'status': 'recorded'})
                if recorded:
                    raise StateConflictError(
                        f"Loan {loan.loan_number} has {len(recorded)} recorded payments; "
                        f"reverse them before regenerating the schedule",
                        current_state="has_payments"
                    )
                deleted = self.repository.delete(loan_id)
                if on_deleted is not None:
                    on_deleted(loan)

        log_action(logger, "warning", f"Deleted schedule of loan {loan.loan_number}",
                   action="delete_schedule", resource=loan_id, extra={"installments": deleted})
        return deleted

    def get_schedule(self, loan_id: str) -> List[InstallmentScheduleEntry]:
        return self.repository.load(loan_id)
