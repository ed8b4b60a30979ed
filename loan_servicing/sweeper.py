"""
Status Sweeper

Daily pass over every open installment that re-derives its grace and
overdue status from dates alone. Running it twice, or skipping a day and
catching up later, gives the same result.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging

from .events import EventDispatcher, InstallmentStatusChanged
from .exceptions import LoanServicingError, LockTimeout
from .loans import LoanBook
from .locking import loan_lock_key
from .logging_config import log_action
from .schedule import InstallmentStatus, ScheduleRepository, derive_status
from .storage import StorageInterface
from .tracking import TrackingAggregator


logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts from one sweep"""
    today: date
    loans_processed: int = 0
    installments_checked: int = 0
    transitions: int = 0
    overdue_count: int = 0
    in_grace_count: int = 0
    due_today_count: int = 0
    skipped_loans: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)   # loan_id -> message

    @property
    def failed(self) -> int:
        return len(self.errors)

    def add(self, other: "SweepResult") -> None:
        self.installments_checked += other.installments_checked
        self.transitions += other.transitions
        self.overdue_count += other.overdue_count
        self.in_grace_count += other.in_grace_count
        self.due_today_count += other.due_today_count

    def to_dict(self) -> Dict:
        return {
            'today': self.today.isoformat(),
            'loans_processed': self.loans_processed,
            'installments_checked': self.installments_checked,
            'transitions': self.transitions,
            'overdue_count': self.overdue_count,
            'in_grace_count': self.in_grace_count,
            'due_today_count': self.due_today_count,
            'skipped_loans': list(self.skipped_loans),
            'failed': self.failed,
            'errors': dict(self.errors),
        }


class StatusSweeper:
    """Re-evaluates installment statuses for all scheduled loans"""

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanBook,
        aggregator: TrackingAggregator,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], date] = date.today,
        refresh_tracking: bool = True
    ):
        self.storage = storage
        self.loans = loans
        self.aggregator = aggregator
        self.schedule = ScheduleRepository(storage)
        self.dispatcher = dispatcher
        self.clock = clock
        self.refresh_tracking = refresh_tracking

    def run(self, today: Optional[date] = None) -> SweepResult:
        """
        Sweep every loan with a schedule, one transaction per loan.

        A loan whose lock cannot be taken is skipped and reported in
        ``skipped_loans``; the next run picks it up. Any other failure rolls
        back that loan only and is collected in ``errors``. Counters cover
        committed loans only.
        """
        today = today or self.clock()
        result = SweepResult(today=today)

        for loan_id in self.schedule.loan_ids():
            tally = SweepResult(today=today)
            try:
                changes = self._sweep_loan(loan_id, today, tally)
            except LockTimeout as e:
                logger.warning("Sweep skipped loan %s: %s", loan_id, e)
                result.skipped_loans.append(loan_id)
                continue
            except Exception as e:
                result.errors[loan_id] = str(e)
                logger.error("Sweep failed for loan %s: %s", loan_id, e,
                             exc_info=not isinstance(e, LoanServicingError))
                continue
            result.add(tally)
            result.loans_processed += 1
            if self.dispatcher:
                self.dispatcher.publish_all(changes)

        log_action(logger, "info", "Status sweep finished", action="status_sweep",
                   extra=result.to_dict())
        return result

    def _sweep_loan(self, loan_id: str, today: date, result: SweepResult) -> List[InstallmentStatusChanged]:
        changes = []
        with self.storage.lock(loan_lock_key(loan_id)):
            with self.storage.atomic():
                entries = self.schedule.load(loan_id)
                for entry in entries:
                    if entry.status == InstallmentStatus.PAID:
                        continue
                    result.installments_checked += 1
                    if entry.due_date == today:
                        result.due_today_count += 1

                    new_status = derive_status(entry, today)
                    if new_status == InstallmentStatus.OVERDUE:
                        result.overdue_count += 1
                    elif new_status == InstallmentStatus.IN_GRACE:
                        result.in_grace_count += 1
                    if new_status == entry.status:
                        continue

                    changes.append(InstallmentStatusChanged(
                        loan_id=loan_id,
                        installment_number=entry.installment_number,
                        previous_status=entry.status.value,
                        new_status=new_status.value
                    ))
                    entry.status = new_status
                    self.schedule.save(entry)
                    result.transitions += 1

                if self.refresh_tracking and self.aggregator.repository.exists(loan_id):
                    loan = self.loans.get_loan(loan_id)
                    self.aggregator.refresh(loan, entries, today)

        if changes:
            logger.debug("Loan %s: %d installment status changes", loan_id, len(changes))
        return changes
