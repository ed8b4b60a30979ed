"""
Loan Servicing Facade

Wires the sequence issuer, loan book, schedule generator, payment allocator,
tracking aggregator, recalculation and status sweeper over one storage
backend and exposes the operations the surrounding system calls.
"""

from decimal import Decimal
from datetime import date
from typing import Callable, Dict, List, Optional, Union
import logging
import threading

from .allocator import AllocationResult, PaymentAllocator
from .config import LoanServicingConfig, get_config
from .events import EventDispatcher
from .loans import Loan, LoanBook, LoanTerms
from .locking import loan_lock_key
from .payments import Payment, PaymentStatus
from .recalculation import Recalculation, RecalculationResult
from .risk import LoanLifecycleState, classify, portfolio_at_risk
from .schedule import InstallmentScheduleEntry, ScheduleGenerator
from .schemas import LoanTermsRequest, PaymentDetailsUpdate, PaymentRequest, parse_request
from .sequences import SequenceIssuer
from .storage import StorageInterface, create_storage
from .sweeper import StatusSweeper, SweepResult
from .tracking import LoanBalance, LoanTracking, TrackingAggregator


logger = logging.getLogger(__name__)


class LoanServicing:
    """Entry point of the loan servicing core"""

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LoanServicingConfig] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.config = config or get_config()
        self.dispatcher = dispatcher or EventDispatcher()
        self.clock = clock

        self.sequences = SequenceIssuer(
            storage,
            branch_code=self.config.branch_code,
            clock=clock,
            lock_timeout=self.config.lock_wait_timeout_seconds
        )
        self.loans = LoanBook(storage, self.sequences, loan_prefix=self.config.loan_prefix)
        self.aggregator = TrackingAggregator(
            storage, clock=clock, default_after_days=self.config.default_after_days
        )
        self.schedules = ScheduleGenerator(storage, self.loans, self.dispatcher, clock)
        self.recalculation = Recalculation(storage, self.loans, self.aggregator, self.dispatcher, clock)
        self.allocator = PaymentAllocator(
            storage, self.loans, self.aggregator, self.recalculation, self.sequences,
            dispatcher=self.dispatcher,
            clock=clock,
            payment_prefix=self.config.payment_prefix
        )
        self.sweeper = StatusSweeper(
            storage, self.loans, self.aggregator, self.dispatcher, clock,
            refresh_tracking=self.config.sweeper_refresh_tracking
        )

    @classmethod
    def from_config(cls, config: Optional[LoanServicingConfig] = None,
                    dispatcher: Optional[EventDispatcher] = None) -> 'LoanServicing':
        """Build storage from ``database_url`` and wire the core"""
        config = config or get_config()
        storage = create_storage(config.database_url, lock_timeout=config.lock_wait_timeout_seconds)
        return cls(storage, config=config, dispatcher=dispatcher)

    # Loans and schedules

    def register_loan(self, terms: Union[LoanTerms, LoanTermsRequest, Dict], client_id: str,
                      description: str = "") -> Loan:
        """Persist a disbursed loan and create its tracking row"""
        if isinstance(terms, dict):
            terms = parse_request(LoanTermsRequest, {'currency': self.config.default_currency, **terms})
        if isinstance(terms, LoanTermsRequest):
            terms = terms.to_terms()
        return self.loans.register_loan(terms, client_id, description,
                                        on_created=self.aggregator.initialize)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get_loan(loan_id)

    def generate_schedule(self, loan_id: str) -> List[InstallmentScheduleEntry]:
        return self.schedules.generate(loan_id, on_generated=self.aggregator.on_schedule_generated)

    def delete_schedule(self, loan_id: str) -> int:
        return self.schedules.delete_schedule(
            loan_id, on_deleted=lambda loan: self.aggregator.on_schedule_generated(loan, [])
        )

    def get_schedule(self, loan_id: str) -> List[InstallmentScheduleEntry]:
        return self.schedules.get_schedule(loan_id)

    # Payments

    def apply_payment(self, request: Union[PaymentRequest, Dict]) -> AllocationResult:
        return self.allocator.apply(request)

    def reverse_payment(self, payment_id: str, reason: str) -> Payment:
        return self.allocator.reverse(payment_id, reason)

    def cancel_payment(self, payment_id: str, reason: str) -> Payment:
        return self.allocator.cancel(payment_id, reason)

    def update_payment_details(self, payment_id: str,
                               update: Union[PaymentDetailsUpdate, Dict]) -> Payment:
        return self.allocator.update_payment_details(payment_id, update)

    def purge_payment(self, payment_id: str) -> None:
        self.allocator.purge_payment(payment_id)

    def get_payment(self, payment_id: str) -> Payment:
        return self.allocator.get_payment(payment_id)

    def get_payments(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        return self.allocator.get_payments(loan_id, status)

    # Tracking

    def get_tracking(self, loan_id: str) -> LoanTracking:
        return self.aggregator.get_tracking(loan_id)

    def get_loan_balance(self, loan_id: str) -> LoanBalance:
        return self.aggregator.get_loan_balance(loan_id)

    def refresh_tracking(self, loan_id: str) -> LoanTracking:
        """Re-evaluate a loan's as-of fields for today"""
        loan = self.loans.get_loan(loan_id)
        with self.storage.lock(loan_lock_key(loan_id)):
            with self.storage.atomic():
                return self.aggregator.refresh(loan, self.schedules.get_schedule(loan_id))

    def recalculate_from_payments(self, loan_id: str) -> LoanTracking:
        return self.recalculation.recalculate_from_payments(loan_id)

    def recalculate_all(self, stop_event: Optional[threading.Event] = None) -> RecalculationResult:
        return self.recalculation.recalculate_all(stop_event)

    def recalculate_inconsistent(self, stop_event: Optional[threading.Event] = None) -> RecalculationResult:
        return self.recalculation.recalculate_inconsistent(stop_event)

    # Classification

    def classify_loan(self, loan_id: str, today: Optional[date] = None) -> LoanLifecycleState:
        """Lifecycle state recomputed from the loan's terms and tracking"""
        loan = self.loans.get_loan(loan_id)
        tracking = self.aggregator.get_tracking(loan_id)
        return classify(loan, tracking.paid_toward_schedule, today or self.clock(),
                        self.config.default_after_days)

    def run_status_sweep(self, today: Optional[date] = None) -> SweepResult:
        return self.sweeper.run(today)

    def portfolio_at_risk(self, days: int = 30) -> Decimal:
        """PAR-n over every tracked loan"""
        positions = [(t.days_late, t.outstanding_balance) for t in self.aggregator.repository.all()]
        return portfolio_at_risk(positions, days)

    # Identifiers

    def issue_id(self, prefix: str) -> str:
        return self.sequences.issue(prefix)

    def preview_next_id(self, prefix: str) -> str:
        return self.sequences.preview(prefix)
