"""
Payment Allocator

Accepts payments against a loan's schedule and keeps schedule, payment
records and tracking in step. Every accepted payment, reversal and
cancellation is one transaction under the loan's lock: a failure anywhere
leaves no partial allocation behind.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
import logging
import uuid

from .allocation import InstallmentAllocation, allocate_payment, reverse_allocations
from .currency import ZERO, to_decimal
from .events import EventDispatcher, InstallmentPaid, PaymentCancelled, PaymentReversed
from .exceptions import (
    InvalidPayment, InvalidState, NotFoundError, PaymentLoanNotFound, StateConflictError,
    ValidationError
)
from .loans import Loan, LoanBook
from .locking import loan_lock_key
from .logging_config import log_action
from .payments import Payment, PaymentRepository, PaymentStatus
from .recalculation import Recalculation
from .schedule import InstallmentScheduleEntry, ScheduleRepository, derive_status
from .schemas import PaymentDetailsUpdate, PaymentRequest, parse_request
from .sequences import SequenceIssuer
from .storage import StorageInterface
from .tracking import LoanTracking, TrackingAggregator


logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    """What an accepted payment did; also the notification payload"""
    payment: Payment
    installment: Optional[InstallmentScheduleEntry]   # Target installment after allocation
    fully_paid: bool
    is_partial: bool
    is_late: bool
    allocations: List[InstallmentAllocation]
    unapplied_amount: Decimal
    tracking: LoanTracking

    def to_dict(self) -> Dict:
        return {
            'payment_id': self.payment.id,
            'payment_number': self.payment.payment_number,
            'loan_id': self.payment.loan_id,
            'installment': self.installment.to_dict() if self.installment else None,
            'fully_paid': self.fully_paid,
            'is_partial': self.is_partial,
            'is_late': self.is_late,
            'unapplied_amount': str(self.unapplied_amount),
        }


class PaymentAllocator:
    """Applies, reverses and cancels loan payments"""

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanBook,
        aggregator: TrackingAggregator,
        recalculation: Recalculation,
        sequences: SequenceIssuer,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], date] = date.today,
        payment_prefix: str = "PM"
    ):
        self.storage = storage
        self.loans = loans
        self.aggregator = aggregator
        self.recalculation = recalculation
        self.sequences = sequences
        self.dispatcher = dispatcher
        self.clock = clock
        self.payment_prefix = payment_prefix
        self.schedule = ScheduleRepository(storage)
        self.payments = PaymentRepository(storage)

    def apply(self, request: Union[PaymentRequest, Dict]) -> AllocationResult:
        """
        Allocate a payment to the loan's schedule.

        The target is the earliest installment not fully paid. Within each
        installment the payment covers penalty, fees, interest and principal
        in that order; the remainder cascades to later installments.

        Raises:
            InvalidPayment: non-positive amount, missing or impossible date,
                unknown loan
            StateConflictError: loan has no schedule or is already fully paid
            LockTimeout: the loan is busy
        """
        if isinstance(request, dict):
            request = parse_request(PaymentRequest, request, InvalidPayment)
        amount, payment_date = self._validate(request)

        try:
            loan = self.loans.get_loan(request.loan_id)
        except NotFoundError:
            raise PaymentLoanNotFound("Loan", request.loan_id)
        if payment_date < loan.terms.disbursement_date:
            raise InvalidPayment(
                f"Payment date {payment_date} precedes disbursement on {loan.terms.disbursement_date}"
            )

        with self.storage.lock(loan_lock_key(loan.id)), self.sequences.hold(self.payment_prefix):
            self._check_accepts_payments(loan)

            with self.storage.atomic():
                payment_number = self.sequences.issue(self.payment_prefix)
                payment = self._new_payment(request, payment_number, amount, payment_date)
                if self._is_backdated(loan.id, payment_date):
                    self.payments.save(payment)
                    state, _ = self.recalculation.replay_and_store(loan, detect_drift=False)
                    payment = next(p for p in state.payments if p.id == payment.id)
                    entries = state.entries
                    tracking = state.tracking
                    logger.info("Payment %s is backdated; replayed loan %s",
                                payment_number, loan.loan_number)
                else:
                    entries = self.schedule.load(loan.id)
                    tracking_before = self.aggregator.get_tracking(loan.id)
                    payment.previous_last_payment_date = tracking_before.last_payment_date
                    payment.previous_last_payment_amount = tracking_before.last_payment_amount

                    outcome = allocate_payment(entries, amount, payment_date,
                                               loan.terms.late_fee, self.clock())
                    payment.apply_outcome(outcome)
                    touched = {line.installment_number for line in outcome.allocations}
                    self.schedule.save_all([e for e in entries if e.installment_number in touched])
                    self.payments.save(payment)
                    tracking = self.aggregator.apply_payment(loan, outcome, payment_date, entries)

        target = next((e for e in entries if e.installment_number == payment.target_installment), None)
        result = AllocationResult(
            payment=payment,
            installment=target,
            fully_paid=bool(target and target.is_paid),
            is_partial=payment.is_partial,
            is_late=payment.is_late,
            allocations=list(payment.allocations),
            unapplied_amount=payment.unapplied_amount,
            tracking=tracking
        )

        log_action(logger, "info", f"Recorded payment {payment_number} of {amount} on loan {loan.loan_number}",
                   action="apply_payment", resource=payment.id,
                   extra={"loan_id": loan.id,
                          "principal": str(payment.principal_paid),
                          "interest": str(payment.interest_paid),
                          "fees": str(payment.fees_paid),
                          "penalty": str(payment.penalty_paid),
                          "unapplied": str(payment.unapplied_amount),
                          "timing": payment.timing.value})
        self._publish_paid(payment)
        return result

    def reverse(self, payment_id: str, reason: str) -> Payment:
        """
        Undo a recorded payment's allocation and mark it REVERSED.

        Raises:
            NotFoundError: unknown payment
            InvalidState: the payment is not RECORDED
            ValidationError: no reason given
        """
        return self._void(payment_id, reason, PaymentStatus.REVERSED)

    def cancel(self, payment_id: str, reason: str) -> Payment:
        """Void a recorded payment entered in error; same effect as reversal"""
        return self._void(payment_id, reason, PaymentStatus.CANCELLED)

    def _void(self, payment_id: str, reason: str, new_status: PaymentStatus) -> Payment:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

        payment = self.payments.get(payment_id)
        loan = self.loans.get_loan(payment.loan_id)

        with self.storage.lock(loan_lock_key(loan.id)):
            with self.storage.atomic():
                payment = self.payments.get(payment_id)
                if payment.status != PaymentStatus.RECORDED:
                    raise InvalidState(
                        f"Payment {payment.payment_number} is {payment.status.value}",
                        current_state=payment.status.value
                    )
                recorded = self.payments.recorded_for_loan(loan.id)
                is_latest = recorded[-1].id == payment.id

                payment.status = new_status
                payment.reason = reason
                payment.status_changed_at = datetime.now(timezone.utc)
                payment.touch()
                self.payments.save(payment)

                if is_latest:
                    entries = self.schedule.load(loan.id)
                    touched = reverse_allocations(entries, payment.allocations)
                    today = self.clock()
                    for entry in touched:
                        entry.status = derive_status(entry, today)
                    self.schedule.save_all(touched)
                    self.aggregator.apply_reversal(loan, payment, entries)
                else:
                    self.recalculation.replay_and_store(loan, detect_drift=False)

        action = "reverse_payment" if new_status == PaymentStatus.REVERSED else "cancel_payment"
        log_action(logger, "info", f"Payment {payment.payment_number} {new_status.value}: {reason}",
                   action=action, resource=payment.id,
                   extra={"loan_id": loan.id, "amount": str(payment.amount), "replayed": not is_latest})
        if self.dispatcher:
            event_type = PaymentReversed if new_status == PaymentStatus.REVERSED else PaymentCancelled
            self.dispatcher.publish(event_type(
                loan_id=loan.id,
                payment_id=payment.id,
                payment_number=payment.payment_number,
                amount=payment.amount,
                reason=reason
            ))
        return payment

    def update_payment_details(self, payment_id: str,
                               update: Union[PaymentDetailsUpdate, Dict]) -> Payment:
        """
        Edit method, reference or notes of a recorded payment.

        Raises:
            InvalidState: the payment is not RECORDED
        """
        if isinstance(update, dict):
            update = parse_request(PaymentDetailsUpdate, update)
        payment = self.payments.get(payment_id)
        with self.storage.lock(loan_lock_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.payments.get(payment_id)
                if payment.status != PaymentStatus.RECORDED:
                    raise InvalidState(
                        f"Payment {payment.payment_number} is {payment.status.value} and cannot be edited",
                        current_state=payment.status.value
                    )
                if update.method is not None:
                    payment.method = update.method
                if update.reference_number is not None:
                    payment.reference_number = update.reference_number
                if update.notes is not None:
                    payment.notes = update.notes
                payment.touch()
                self.payments.save(payment)
        return payment

    def purge_payment(self, payment_id: str) -> None:
        """
        Hard-delete a reversed or cancelled payment.

        Raises:
            InvalidState: the payment is still RECORDED
        """
        payment = self.payments.get(payment_id)
        with self.storage.lock(loan_lock_key(payment.loan_id)):
            with self.storage.atomic():
                payment = self.payments.get(payment_id)
                if payment.status == PaymentStatus.RECORDED:
                    raise InvalidState(
                        f"Payment {payment.payment_number} is recorded; reverse or cancel it first",
                        current_state=payment.status.value
                    )
                self.payments.delete(payment_id)
        log_action(logger, "warning", f"Purged payment {payment.payment_number}",
                   action="purge_payment", resource=payment_id, extra={"loan_id": payment.loan_id})

    def get_payment(self, payment_id: str) -> Payment:
        return self.payments.get(payment_id)

    def get_payments(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        return self.payments.for_loan(loan_id, status)

    def _validate(self, request: PaymentRequest):
        try:
            amount = to_decimal(request.amount)
        except ValidationError as e:
            raise InvalidPayment(str(e))
        if not amount.is_finite() or amount <= ZERO:
            raise InvalidPayment("Payment amount must be positive")
        if request.payment_date is None:
            raise InvalidPayment("Payment date is required")
        if request.payment_date > self.clock():
            raise InvalidPayment(f"Payment date {request.payment_date} is in the future")
        return amount, request.payment_date

    def _check_accepts_payments(self, loan: Loan) -> None:
        if not self.schedule.exists(loan.id):
            raise StateConflictError(f"Loan {loan.loan_number} has no schedule",
                                     current_state="unscheduled")
        tracking = self.aggregator.get_tracking(loan.id)
        if tracking.installments_remaining == 0 and tracking.outstanding_balance <= ZERO:
            raise StateConflictError(f"Loan {loan.loan_number} is fully paid",
                                     current_state="completed")

    def _is_backdated(self, loan_id: str, payment_date: date) -> bool:
        """A recorded payment is dated after this one"""
        return any(p.payment_date > payment_date for p in self.payments.recorded_for_loan(loan_id))

    def _new_payment(self, request: PaymentRequest, payment_number: str,
                     amount: Decimal, payment_date: date) -> Payment:
        now = datetime.now(timezone.utc)
        return Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_number=payment_number,
            loan_id=request.loan_id,
            amount=amount,
            payment_date=payment_date,
            method=request.method,
            reference_number=request.reference_number,
            notes=request.notes
        )

    def _publish_paid(self, payment: Payment) -> None:
        if not self.dispatcher:
            return
        for line in payment.allocations:
            self.dispatcher.publish(InstallmentPaid(
                loan_id=payment.loan_id,
                installment_number=line.installment_number,
                amount_paid=line.amount,
                fully_paid=line.fully_paid,
                is_partial=not line.fully_paid,
                is_late=line.is_late,
                payment_id=payment.id
            ))
