"""
Test suite for the status sweeper
"""

import threading
from datetime import date
from decimal import Decimal

from loan_servicing.events import DomainEvent
from loan_servicing.locking import loan_lock_key
from loan_servicing.schedule import InstallmentStatus
from loan_servicing.storage import InMemoryStorage
from loan_servicing.sweeper import StatusSweeper

from conftest import make_terms


class TestStatusSweeper:
    """Test date-driven status transitions"""

    def test_grace_then_overdue(self, servicing, collector):
        loan = servicing.register_loan(make_terms(grace_period_days=5), client_id="c1")
        servicing.generate_schedule(loan.id)

        result = servicing.run_status_sweep(date(2026, 2, 1))
        assert result.transitions == 0
        assert result.due_today_count == 1

        result = servicing.run_status_sweep(date(2026, 2, 3))
        assert result.transitions == 1
        assert result.in_grace_count == 1
        assert servicing.get_schedule(loan.id)[0].status == InstallmentStatus.IN_GRACE

        result = servicing.run_status_sweep(date(2026, 2, 7))
        assert result.transitions == 1
        assert result.overdue_count == 1
        assert servicing.get_schedule(loan.id)[0].status == InstallmentStatus.OVERDUE

        changes = collector.of_type(DomainEvent.INSTALLMENT_STATUS_CHANGED)
        assert [(e.previous_status, e.new_status) for e in changes] == [
            ("pending", "in_grace"), ("in_grace", "overdue")
        ]

    def test_idempotent(self, servicing, scheduled_loan):
        first = servicing.run_status_sweep(date(2026, 4, 10))
        second = servicing.run_status_sweep(date(2026, 4, 10))

        assert first.transitions == 3
        assert second.transitions == 0
        assert second.overdue_count == 3

    def test_catch_up_after_skipped_days(self, servicing, scheduled_loan):
        """One late run reaches the same state as daily runs"""
        servicing.run_status_sweep(date(2026, 6, 15))
        statuses = [e.status for e in servicing.get_schedule(scheduled_loan.id)]

        assert statuses[:5] == [InstallmentStatus.OVERDUE] * 5
        assert statuses[5] == InstallmentStatus.PENDING

    def test_paid_installments_are_skipped(self, servicing, scheduled_loan):
        servicing.apply_payment({
            'loan_id': scheduled_loan.id, 'amount': "200000", 'payment_date': date(2026, 1, 10)
        })
        result = servicing.run_status_sweep(date(2026, 2, 15))

        assert result.installments_checked == 5
        assert result.overdue_count == 0
        assert servicing.get_schedule(scheduled_loan.id)[0].status == InstallmentStatus.PAID

    def test_partial_installment_becomes_overdue(self, servicing, scheduled_loan):
        servicing.apply_payment({
            'loan_id': scheduled_loan.id, 'amount': "50000", 'payment_date': date(2026, 1, 10)
        })
        servicing.run_status_sweep(date(2026, 2, 15))
        entry = servicing.get_schedule(scheduled_loan.id)[0]

        assert entry.status == InstallmentStatus.OVERDUE
        assert entry.is_partial

    def test_refreshes_tracking(self, servicing, scheduled_loan):
        servicing.run_status_sweep(date(2026, 3, 15))
        tracking = servicing.get_tracking(scheduled_loan.id)

        assert tracking.days_late == 42
        assert tracking.missed_installment_count == 2
        assert tracking.evaluated_on == date(2026, 3, 15)
        assert tracking.outstanding_balance == Decimal('1200000')

    def test_busy_loan_is_skipped(self, servicing, scheduled_loan):
        storage = servicing.storage
        sweeper = StatusSweeper(storage, servicing.loans, servicing.aggregator)
        storage.locks.default_timeout = 0.05
        held = threading.Event()
        release = threading.Event()

        def holder():
            with storage.locks.hold(loan_lock_key(scheduled_loan.id), timeout=2):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            result = sweeper.run(date(2026, 3, 15))
        finally:
            release.set()
            thread.join()

        assert result.skipped_loans == [scheduled_loan.id]
        assert result.loans_processed == 0
        assert sweeper.run(date(2026, 3, 15)).transitions == 2

    def test_no_loans(self):
        storage = InMemoryStorage()
        sweeper = StatusSweeper(storage, None, None, clock=lambda: date(2026, 1, 1))
        result = sweeper.run()

        assert result.loans_processed == 0
        assert result.to_dict()['today'] == "2026-01-01"

    def test_failing_loan_is_collected_and_sweep_continues(self, servicing, scheduled_loan):
        broken = servicing.register_loan(make_terms(), client_id="c2")
        servicing.generate_schedule(broken.id)
        servicing.storage.delete("loans", broken.id)

        result = servicing.run_status_sweep(date(2026, 3, 15))

        assert list(result.errors) == [broken.id]
        assert result.failed == 1
        assert result.loans_processed == 1
        assert result.transitions == 2
        assert result.overdue_count == 2
        assert result.to_dict()['failed'] == 1

        # The failed loan's changes were rolled back
        entries = servicing.allocator.schedule.load(broken.id)
        assert [e.status for e in entries[:2]] == [InstallmentStatus.PENDING] * 2
        assert servicing.get_schedule(scheduled_loan.id)[0].status == InstallmentStatus.OVERDUE
