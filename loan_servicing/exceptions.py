"""Exception hierarchy for the loan servicing core."""

from typing import Any, Optional, Sequence


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class ValidationError(LoanServicingError):
    """Raised when caller input is rejected before any mutation."""


class InvalidPayment(ValidationError):
    """Raised when a payment submission cannot be accepted."""


class NotFoundError(LoanServicingError):
    """Raised when a referenced loan, payment or installment does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(LoanServicingError):
    """Raised when an entity is in the wrong state for the operation."""

    def __init__(self, message: str, current_state: Optional[Any] = None):
        super().__init__(message)
        self.current_state = current_state


class AlreadyScheduled(StateConflictError):
    """Raised when generating a schedule for a loan that already has one."""


class InvalidState(StateConflictError):
    """Raised when a payment transition is not allowed from its current status."""


class LockTimeout(LoanServicingError):
    """Raised when a lock could not be acquired in time. Safe to retry."""

    retryable = True

    def __init__(self, key: str, timeout: Optional[float] = None):
        if timeout is None:
            message = f"Timed out waiting for lock on {key}"
        else:
            message = f"Timed out after {timeout}s waiting for lock on {key}"
        super().__init__(message)
        self.key = key
        self.timeout = timeout


class ExhaustedSequence(LoanServicingError):
    """Raised when a sequence bucket has no counter values left."""

    def __init__(self, bucket: str, limit: int):
        super().__init__(f"Sequence {bucket} exhausted at {limit}")
        self.bucket = bucket
        self.limit = limit


class ConsistencyDrift(LoanServicingError):
    """
    Replayed tracking disagrees with the stored tracking row.

    Recorded and logged by recalculation, never raised to callers.
    """

    def __init__(self, loan_id: str, differences: Sequence[str]):
        super().__init__(
            f"Tracking for loan {loan_id} drifted on: {', '.join(differences)}"
        )
        self.loan_id = loan_id
        self.differences = list(differences)


class ConfigurationError(LoanServicingError):
    """Raised when configuration is invalid or missing."""


class PaymentLoanNotFound(NotFoundError, InvalidPayment):
    """A payment names a loan that does not exist."""
