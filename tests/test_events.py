"""
Tests for the Event System (Observer Pattern)

Tests the dispatcher, event serialization, and that a failing subscriber
never breaks the operation that published.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

from loan_servicing.events import (
    DomainEvent, EventCollector, EventDispatcher, InstallmentPaid, PaymentCancelled,
    PaymentReversed, ScheduleGenerated, TrackingRecalculated
)

from conftest import make_terms


class TestEvents:
    """Test typed events"""

    def test_to_dict(self):
        event = InstallmentPaid(
            loan_id="loan-1",
            installment_number=2,
            amount_paid=Decimal('150000'),
            fully_paid=False,
            is_partial=True,
            is_late=False,
            payment_id="pay-1"
        )
        data = event.to_dict()

        assert data['event_type'] == "installment.paid"
        assert data['data']['amount_paid'] == "150000"
        assert data['data']['installment_number'] == 2
        assert data['data']['payment_id'] == "pay-1"

    def test_cancelled_has_its_own_type(self):
        event = PaymentCancelled(loan_id="l", payment_id="p", payment_number="PM260001",
                                 amount=Decimal('1'), reason="dup")
        assert event.event_type == DomainEvent.PAYMENT_CANCELLED
        assert isinstance(event, PaymentReversed)


class TestEventDispatcher:
    """Test publish/subscribe"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_subscribe_and_publish(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATED, handler)
        event = ScheduleGenerated(loan_id="l1", installment_count=6)

        self.dispatcher.publish(event)
        self.dispatcher.publish(TrackingRecalculated(loan_id="l1"))

        handler.assert_called_once_with(event)

    def test_subscribe_all(self):
        collector = EventCollector()
        self.dispatcher.subscribe_all(collector)
        self.dispatcher.publish_all([
            ScheduleGenerated(loan_id="l1", installment_count=6),
            TrackingRecalculated(loan_id="l1", drift_detected=True),
        ])

        assert len(collector.events) == 2
        assert collector.of_type(DomainEvent.TRACKING_RECALCULATED)[0].drift_detected

    def test_unsubscribe(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATED, handler)
        assert self.dispatcher.get_handler_count(DomainEvent.SCHEDULE_GENERATED) == 1

        self.dispatcher.unsubscribe(DomainEvent.SCHEDULE_GENERATED, handler)
        self.dispatcher.publish(ScheduleGenerated(loan_id="l1", installment_count=1))

        handler.assert_not_called()
        assert self.dispatcher.get_handler_count() == 0

    def test_failing_handler_is_logged_not_raised(self):
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        after = Mock()
        self.dispatcher.logger = Mock()
        self.dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATED, failing)
        self.dispatcher.subscribe(DomainEvent.SCHEDULE_GENERATED, after)

        self.dispatcher.publish(ScheduleGenerated(loan_id="l1", installment_count=1))

        after.assert_called_once()
        self.dispatcher.logger.error.assert_called_once()
        assert "subscriber down" in str(self.dispatcher.logger.error.call_args)

    def test_clear(self):
        self.dispatcher.subscribe_all(Mock())
        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0


class TestEventIntegration:
    """Events published by the servicing core"""

    def test_failing_subscriber_does_not_undo_payment(self, servicing, dispatcher, scheduled_loan):
        dispatcher.subscribe(DomainEvent.INSTALLMENT_PAID, Mock(side_effect=RuntimeError("down")))

        result = servicing.apply_payment({
            'loan_id': scheduled_loan.id, 'amount': "200000", 'payment_date': date(2026, 1, 10)
        })

        assert result.fully_paid
        assert servicing.get_tracking(scheduled_loan.id).cumulative_payment == Decimal('200000')

    def test_full_flow_event_order(self, servicing, collector):
        loan = servicing.register_loan(make_terms(), client_id="c1")
        servicing.generate_schedule(loan.id)
        result = servicing.apply_payment({
            'loan_id': loan.id, 'amount': "200000", 'payment_date': date(2026, 1, 10)
        })
        servicing.reverse_payment(result.payment.id, "bounced")

        assert [e.event_type for e in collector.events] == [
            DomainEvent.SCHEDULE_GENERATED,
            DomainEvent.INSTALLMENT_PAID,
            DomainEvent.PAYMENT_REVERSED,
        ]
