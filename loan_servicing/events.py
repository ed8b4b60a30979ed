"""
Event System Module

Typed domain events emitted by the servicing core, and a publish/subscribe
dispatcher that fans them out to notification or audit subscribers.
Events are published only after the emitting transaction commits; a failing
subscriber is logged and never affects the operation that emitted the event.
"""

from enum import Enum
from typing import Callable, ClassVar, Dict, List, Any, Optional
from dataclasses import dataclass, fields
from decimal import Decimal
from datetime import date
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in loan servicing"""

    SCHEDULE_GENERATED = "schedule.generated"
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_STATUS_CHANGED = "installment.status_changed"
    PAYMENT_REVERSED = "payment.reversed"
    PAYMENT_CANCELLED = "payment.cancelled"
    TRACKING_RECALCULATED = "tracking.recalculated"


class EventBase:
    """Common serialization for event values"""

    event_type: ClassVar[DomainEvent]

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, date):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[f.name] = value
        return {'event_type': self.event_type.value, 'data': data}


@dataclass(frozen=True)
class ScheduleGenerated(EventBase):
    event_type: ClassVar[DomainEvent] = DomainEvent.SCHEDULE_GENERATED
    loan_id: str
    installment_count: int


@dataclass(frozen=True)
class InstallmentPaid(EventBase):
    """One per installment touched by a payment"""
    event_type: ClassVar[DomainEvent] = DomainEvent.INSTALLMENT_PAID
    loan_id: str
    installment_number: int
    amount_paid: Decimal
    fully_paid: bool
    is_partial: bool
    is_late: bool
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentReversed(EventBase):
    event_type: ClassVar[DomainEvent] = DomainEvent.PAYMENT_REVERSED
    loan_id: str
    payment_id: str
    payment_number: str
    amount: Decimal
    reason: str


@dataclass(frozen=True)
class PaymentCancelled(PaymentReversed):
    event_type: ClassVar[DomainEvent] = DomainEvent.PAYMENT_CANCELLED


@dataclass(frozen=True)
class TrackingRecalculated(EventBase):
    event_type: ClassVar[DomainEvent] = DomainEvent.TRACKING_RECALCULATED
    loan_id: str
    drift_detected: bool = False


@dataclass(frozen=True)
class InstallmentStatusChanged(EventBase):
    event_type: ClassVar[DomainEvent] = DomainEvent.INSTALLMENT_STATUS_CHANGED
    loan_id: str
    installment_number: int
    previous_status: str
    new_status: str


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()  # Thread-safe access
        self.logger = logging.getLogger("loan_servicing.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.value)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug("Subscribed global handler %s", _handler_name(handler))

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning("Handler %s was not subscribed to %s",
                                    _handler_name(handler), event_type.value)

    def publish(self, event: EventBase) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            handlers.extend(self._global_handlers)

        self.logger.debug("Publishing event %s", event.event_type.value)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error("Error in event handler %s for %s: %s",
                                  _handler_name(handler), event.event_type.value, e)

    def publish_all(self, events: List[EventBase]) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class EventCollector:
    """Subscriber that keeps every event it receives, in order"""

    def __init__(self):
        self.events: List[EventBase] = []

    def __call__(self, event: EventBase) -> None:
        self.events.append(event)

    def of_type(self, event_type: DomainEvent) -> List[EventBase]:
        return [e for e in self.events if e.event_type == event_type]


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))
