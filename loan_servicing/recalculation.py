"""
Tracking Recalculation

Rebuilds a loan's tracking row from scratch by resetting its schedule and
replaying every recorded payment in chronological order through the same
allocation waterfall the live path uses. The replayed result is
authoritative: a stored row that disagrees with it is logged as drift and
overwritten.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from .allocation import allocate_payment, reset_entries
from .events import EventDispatcher, TrackingRecalculated
from .exceptions import ConsistencyDrift, LoanServicingError
from .loans import Loan, LoanBook
from .locking import loan_lock_key
from .logging_config import log_action
from .payments import Payment, PaymentRepository
from .schedule import InstallmentScheduleEntry, ScheduleRepository
from .storage import StorageInterface
from .tracking import (
    LoanTracking, TrackingAggregator, history_differences, new_tracking,
    record_payment, refresh_derived
)


logger = logging.getLogger(__name__)


@dataclass
class ReplayState:
    """Schedule, payments and tracking as rebuilt by a replay"""
    tracking: LoanTracking
    entries: List[InstallmentScheduleEntry]
    payments: List[Payment]


@dataclass
class RecalculationResult:
    """Outcome of a bulk recalculation run"""
    checked: int = 0
    succeeded: int = 0
    failed: int = 0
    repaired: List[str] = field(default_factory=list)
    drifts: List[ConsistencyDrift] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    interrupted: bool = False

    def to_dict(self) -> Dict:
        return {
            'checked': self.checked,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'repaired': list(self.repaired),
            'drifts': {d.loan_id: d.differences for d in self.drifts},
            'errors': dict(self.errors),
            'interrupted': self.interrupted,
        }


class Recalculation:
    """Replay-based rebuild of tracking, for one loan or in bulk"""

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanBook,
        aggregator: TrackingAggregator,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.loans = loans
        self.aggregator = aggregator
        self.schedule = ScheduleRepository(storage)
        self.payments = PaymentRepository(storage)
        self.dispatcher = dispatcher
        self.clock = clock

    def replay(self, loan: Loan) -> ReplayState:
        """Rebuild schedule and tracking in memory; nothing is persisted"""
        today = self.clock()
        entries = self.schedule.load(loan.id)
        reset_entries(entries, today)
        tracking = new_tracking(loan)

        payments = self.payments.recorded_for_loan(loan.id)
        for payment in payments:
            payment.previous_last_payment_date = tracking.last_payment_date
            payment.previous_last_payment_amount = tracking.last_payment_amount
            outcome = allocate_payment(entries, payment.amount, payment.payment_date,
                                       loan.terms.late_fee, today)
            payment.apply_outcome(outcome)
            record_payment(tracking, outcome, payment.payment_date)

        refresh_derived(tracking, loan, entries, today, self.aggregator.default_after_days)
        return ReplayState(tracking=tracking, entries=entries, payments=payments)

    def replay_and_store(self, loan: Loan,
                         detect_drift: bool = True) -> Tuple[ReplayState, Optional[ConsistencyDrift]]:
        """
        Replay and persist the result. Callers hold the loan lock and an
        open transaction.

        Callers that changed the payment history themselves pass
        ``detect_drift=False``; the stored row is expected to differ.
        """
        stored = self.aggregator.repository.find(loan.id) if detect_drift else None
        state = self.replay(loan)

        drift = None
        if stored is not None:
            differences = history_differences(stored, state.tracking)
            if differences:
                drift = ConsistencyDrift(loan.id, differences)
                log_action(logger, "warning", str(drift), action="tracking_drift",
                           resource=loan.id, extra={"fields": differences})

        self.schedule.save_all(state.entries)
        for payment in state.payments:
            self.payments.save(payment)
        self.aggregator.repository.save(state.tracking)
        return state, drift

    def recalculate_from_payments(self, loan_id: str) -> LoanTracking:
        """
        Rebuild one loan's tracking from its payment history.

        Idempotent: two consecutive runs on the same day store identical rows.

        Raises:
            NotFoundError: unknown loan
            LockTimeout: the loan is busy
        """
        tracking, _ = self._recalculate(loan_id)
        return tracking

    def _recalculate(self, loan_id: str) -> Tuple[LoanTracking, Optional[ConsistencyDrift]]:
        loan = self.loans.get_loan(loan_id)
        with self.storage.lock(loan_lock_key(loan_id)):
            with self.storage.atomic():
                state, drift = self.replay_and_store(loan)

        log_action(logger, "info", f"Recalculated tracking for loan {loan.loan_number}",
                   action="recalculate", resource=loan_id,
                   extra={"payments": len(state.payments), "drift": drift is not None})
        if self.dispatcher:
            self.dispatcher.publish(TrackingRecalculated(loan_id=loan_id, drift_detected=drift is not None))
        return state.tracking, drift

    def is_consistent(self, loan_id: str) -> bool:
        """Dry run: does the stored tracking match a replay?"""
        loan = self.loans.get_loan(loan_id)
        with self.storage.lock(loan_lock_key(loan_id)):
            stored = self.aggregator.repository.find(loan_id)
            if stored is None:
                return False
            return not history_differences(stored, self.replay(loan).tracking)

    def recalculate_all(self, stop_event: Optional[threading.Event] = None,
                        loan_ids: Optional[List[str]] = None) -> RecalculationResult:
        """
        Recalculate every loan, one transaction per loan.

        Setting ``stop_event`` stops the run between loans; loans already
        processed stay committed.
        """
        return self._run(loan_ids, stop_event, only_inconsistent=False)

    def recalculate_inconsistent(self, stop_event: Optional[threading.Event] = None,
                                 loan_ids: Optional[List[str]] = None) -> RecalculationResult:
        """Detect loans whose tracking disagrees with replay and repair only those"""
        return self._run(loan_ids, stop_event, only_inconsistent=True)

    def _run(self, loan_ids: Optional[List[str]], stop_event: Optional[threading.Event],
             only_inconsistent: bool) -> RecalculationResult:
        result = RecalculationResult()
        ids = loan_ids if loan_ids is not None else self.loans.list_loan_ids()
        for loan_id in ids:
            if stop_event is not None and stop_event.is_set():
                result.interrupted = True
                logger.info("Recalculation interrupted after %d loans", result.checked)
                break
            result.checked += 1
            try:
                if only_inconsistent and self.is_consistent(loan_id):
                    result.succeeded += 1
                    continue
                _, drift = self._recalculate(loan_id)
            except Exception as e:
                result.failed += 1
                result.errors[loan_id] = str(e)
                logger.error("Recalculation failed for loan %s: %s", loan_id, e,
                             exc_info=not isinstance(e, LoanServicingError))
                continue
            result.succeeded += 1
            if drift is not None or only_inconsistent:
                result.repaired.append(loan_id)
            if drift is not None:
                result.drifts.append(drift)

        log_action(logger, "info", "Bulk recalculation finished",
                   action="recalculate_inconsistent" if only_inconsistent else "recalculate_all",
                   extra=result.to_dict())
        return result

