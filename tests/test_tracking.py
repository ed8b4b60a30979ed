"""
Test suite for loan tracking and recalculation

The stored tracking row must always equal a from-scratch replay of the
loan's recorded payments.
"""

import threading
import pytest
from datetime import date
from decimal import Decimal

from loan_servicing.events import DomainEvent
from loan_servicing.exceptions import StateConflictError
from loan_servicing.tracking import HISTORY_FIELDS, history_differences

from conftest import make_terms


def pay(servicing, loan, amount, on):
    return servicing.apply_payment({'loan_id': loan.id, 'amount': amount, 'payment_date': on})


def snapshot(storage, loan_id):
    """Raw stored rows of one loan, for byte-level comparison"""
    return (
        storage.load("loan_tracking", loan_id),
        storage.find("installment_schedule", {'loan_id': loan_id}),
        storage.find("payments", {'loan_id': loan_id}),
    )


@pytest.fixture
def late_loan(servicing, clock):
    """Loan with grace and late fee, paid on and off schedule"""
    clock.today = date(2026, 3, 10)
    loan = servicing.register_loan(
        make_terms(grace_period_days=3, late_fee=Decimal('5000'), processing_fee=Decimal('12000')),
        client_id="c1"
    )
    servicing.generate_schedule(loan.id)
    pay(servicing, loan, "150000", date(2026, 1, 20))
    pay(servicing, loan, "100000", date(2026, 2, 10))
    pay(servicing, loan, "200000", date(2026, 3, 5))
    return loan


class TestTrackingAggregator:
    """Test tracking maintenance on the live path"""

    def test_initial_tracking(self, servicing):
        loan = servicing.register_loan(make_terms(processing_fee=Decimal('6000')), client_id="c1")
        tracking = servicing.get_tracking(loan.id)

        assert tracking.loan_number == loan.loan_number
        assert tracking.total_payable == Decimal('1206000')
        assert tracking.outstanding_principal == Decimal('1200000')
        assert tracking.outstanding_fees == Decimal('6000')
        assert tracking.outstanding_balance == Decimal('1206000')
        assert tracking.payment_count == 0
        assert tracking.is_current

    def test_tracking_created_once(self, servicing, scheduled_loan):
        with pytest.raises(StateConflictError):
            servicing.aggregator.initialize(scheduled_loan)

    def test_loan_balance(self, servicing, late_loan):
        balance = servicing.get_loan_balance(late_loan.id)
        tracking = servicing.get_tracking(late_loan.id)

        assert balance.outstanding_total == tracking.outstanding_balance
        assert balance.outstanding_total == (
            balance.outstanding_principal + balance.outstanding_interest
            + balance.outstanding_fees + balance.outstanding_penalty
        )
        assert balance.to_dict()['outstanding_total'] == str(tracking.outstanding_balance)

    def test_late_history(self, servicing, late_loan):
        tracking = servicing.get_tracking(late_loan.id)

        assert tracking.payment_count == 3
        assert tracking.early_payment_count == 1
        assert tracking.late_payment_count == 2
        assert tracking.cumulative_payment == Decimal('450000')
        assert tracking.cumulative_penalty == Decimal('10000')
        assert tracking.cumulative_payment == (
            tracking.cumulative_principal + tracking.cumulative_interest + tracking.cumulative_fees
            + tracking.cumulative_penalty_paid + tracking.overpayment_credit
        )

    def test_refresh_moves_as_of_fields_only(self, servicing, scheduled_loan, clock):
        before = servicing.get_tracking(scheduled_loan.id)
        clock.today = date(2026, 3, 15)
        after = servicing.refresh_tracking(scheduled_loan.id)

        assert after.days_late == 42
        assert after.missed_installment_count == 2
        assert after.is_late
        assert after.evaluated_on == date(2026, 3, 15)
        assert history_differences(before, after) == []


class TestRecalculation:
    """Test replay-based rebuild"""

    def test_incremental_equals_replay(self, servicing, late_loan):
        assert servicing.recalculation.is_consistent(late_loan.id)

        stored = servicing.get_tracking(late_loan.id)
        rebuilt = servicing.recalculate_from_payments(late_loan.id)
        for name in HISTORY_FIELDS:
            assert getattr(stored, name) == getattr(rebuilt, name), name

    def test_recalculation_is_idempotent(self, servicing, storage, late_loan):
        servicing.recalculate_from_payments(late_loan.id)
        first = snapshot(storage, late_loan.id)
        servicing.recalculate_from_payments(late_loan.id)
        second = snapshot(storage, late_loan.id)

        assert first == second

    def test_drift_is_detected_and_repaired(self, servicing, late_loan, scheduled_loan, collector):
        repository = servicing.aggregator.repository
        tampered = repository.get(late_loan.id)
        tampered.cumulative_payment += Decimal('1')
        tampered.payment_count += 1
        repository.save(tampered)

        assert not servicing.recalculation.is_consistent(late_loan.id)
        assert servicing.recalculation.is_consistent(scheduled_loan.id)

        result = servicing.recalculate_inconsistent()

        assert result.checked == 2
        assert result.repaired == [late_loan.id]
        assert len(result.drifts) == 1
        assert set(result.drifts[0].differences) == {'cumulative_payment', 'payment_count'}
        assert servicing.recalculation.is_consistent(late_loan.id)
        assert servicing.get_tracking(late_loan.id).cumulative_payment == Decimal('450000')

        events = collector.of_type(DomainEvent.TRACKING_RECALCULATED)
        assert [e.drift_detected for e in events] == [True]

    def test_recalculate_all(self, servicing, late_loan, scheduled_loan):
        result = servicing.recalculate_all()

        assert result.checked == 2
        assert result.succeeded == 2
        assert result.failed == 0
        assert result.repaired == []
        assert not result.interrupted

    def test_failures_are_collected(self, servicing, late_loan):
        result = servicing.recalculation.recalculate_all(loan_ids=[late_loan.id, "missing"])

        assert result.succeeded == 1
        assert result.failed == 1
        assert "missing" in result.errors
        assert result.to_dict()['failed'] == 1

    def test_interrupt_between_loans(self, servicing, dispatcher):
        loans = [servicing.register_loan(make_terms(), client_id=f"c{i}") for i in range(3)]
        for loan in loans:
            servicing.generate_schedule(loan.id)

        stop = threading.Event()
        dispatcher.subscribe(DomainEvent.TRACKING_RECALCULATED, lambda event: stop.set())
        result = servicing.recalculate_all(stop)

        assert result.interrupted
        assert result.checked == 1
        assert result.succeeded == 1

    def test_stop_before_start(self, servicing, scheduled_loan):
        stop = threading.Event()
        stop.set()
        result = servicing.recalculate_all(stop)

        assert result.interrupted
        assert result.checked == 0
