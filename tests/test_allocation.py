"""
Test suite for the allocation waterfall

Pure in-memory tests of allocate_payment and reverse_allocations.
"""

from copy import deepcopy
from datetime import date
from decimal import Decimal

from loan_servicing.allocation import (
    PaymentTiming, allocate_payment, classify_timing, reset_entries, reverse_allocations
)
from loan_servicing.currency import ZERO
from loan_servicing.schedule import InstallmentScheduleEntry, InstallmentStatus


def entry(number, due, principal, interest=ZERO, fee=ZERO, grace_days=5, penalty=ZERO):
    return InstallmentScheduleEntry(
        loan_id="loan-1",
        installment_number=number,
        due_date=due,
        grace_expiry_date=date.fromordinal(due.toordinal() + grace_days),
        principal_due=Decimal(principal),
        interest_due=Decimal(interest),
        fee_due=Decimal(fee),
        penalty_amount=Decimal(penalty)
    )


class TestWaterfall:
    """Test allocation precedence within one installment"""

    def test_penalty_fees_interest_then_principal(self):
        """300 against penalty 50, fees 20, interest 100, principal 500"""
        entries = [entry(1, date(2026, 2, 1), "500", interest="100", fee="20", penalty="50")]
        outcome = allocate_payment(entries, Decimal('300'), date(2026, 2, 1), ZERO, date(2026, 2, 1))

        line = outcome.allocations[0]
        assert line.penalty_paid == Decimal('50')
        assert line.fees_paid == Decimal('20')
        assert line.interest_paid == Decimal('100')
        assert line.principal_paid == Decimal('130')
        assert entries[0].outstanding_principal == Decimal('370')
        assert entries[0].status == InstallmentStatus.PARTIAL
        assert outcome.is_partial
        assert not outcome.is_overpayment

    def test_small_payment_stops_at_penalty(self):
        entries = [entry(1, date(2026, 2, 1), "500", interest="100", fee="20", penalty="50")]
        outcome = allocate_payment(entries, Decimal('30'), date(2026, 1, 20), ZERO, date(2026, 1, 20))

        assert outcome.penalty_paid == Decimal('30')
        assert outcome.fees_paid == ZERO
        assert entries[0].outstanding_penalty == Decimal('20')

    def test_cascade_to_next_installments(self):
        """Remainder flows to later installments in due-date order"""
        entries = [
            entry(2, date(2026, 3, 1), "200000"),
            entry(1, date(2026, 2, 1), "200000"),
            entry(3, date(2026, 4, 1), "200000"),
        ]
        outcome = allocate_payment(entries, Decimal('450000'), date(2026, 1, 10), ZERO, date(2026, 1, 10))

        assert [a.installment_number for a in outcome.allocations] == [1, 2, 3]
        assert [a.amount for a in outcome.allocations] == [
            Decimal('200000'), Decimal('200000'), Decimal('50000')
        ]
        assert outcome.target_installment == 1
        assert outcome.target_fully_paid
        assert not outcome.is_partial
        assert outcome.is_overpayment
        by_number = {e.installment_number: e for e in entries}
        assert by_number[1].paid_date == date(2026, 1, 10)
        assert by_number[3].status == InstallmentStatus.PARTIAL

    def test_excess_beyond_final_installment_is_unapplied(self):
        entries = [entry(1, date(2026, 2, 1), "1000")]
        outcome = allocate_payment(entries, Decimal('1500'), date(2026, 1, 10), ZERO, date(2026, 1, 10))

        assert outcome.applied_amount == Decimal('1000')
        assert outcome.unapplied_amount == Decimal('500')
        assert entries[0].status == InstallmentStatus.PAID

    def test_nothing_open(self):
        entries = [entry(1, date(2026, 2, 1), "1000")]
        allocate_payment(entries, Decimal('1000'), date(2026, 1, 10), ZERO, date(2026, 1, 10))
        outcome = allocate_payment(entries, Decimal('10'), date(2026, 1, 11), ZERO, date(2026, 1, 11))

        assert outcome.allocations == []
        assert outcome.target_installment is None
        assert outcome.unapplied_amount == Decimal('10')


class TestLateness:
    """Test timing classification and late fees"""

    def test_timing_relative_to_grace(self):
        e = entry(1, date(2026, 2, 1), "100", grace_days=5)
        assert classify_timing(e, date(2026, 1, 31)) == PaymentTiming.EARLY
        assert classify_timing(e, date(2026, 2, 1)) == PaymentTiming.ON_TIME
        assert classify_timing(e, date(2026, 2, 6)) == PaymentTiming.ON_TIME
        assert classify_timing(e, date(2026, 2, 7)) == PaymentTiming.LATE

    def test_within_grace_is_not_late(self):
        entries = [entry(1, date(2026, 2, 1), "100", grace_days=5)]
        outcome = allocate_payment(entries, Decimal('100'), date(2026, 2, 5), Decimal('10'), date(2026, 2, 5))

        assert not outcome.is_late
        assert not entries[0].is_late
        assert outcome.penalty_assessed == ZERO

    def test_late_fee_assessed_once(self):
        """Late fee is charged the first time a late payment touches the installment"""
        entries = [entry(1, date(2026, 2, 1), "100", grace_days=5)]
        today = date(2026, 2, 20)
        first = allocate_payment(entries, Decimal('30'), date(2026, 2, 10), Decimal('10'), today)
        second = allocate_payment(entries, Decimal('30'), date(2026, 2, 15), Decimal('10'), today)

        assert first.penalty_assessed == Decimal('10')
        assert first.penalty_paid == Decimal('10')
        assert first.principal_paid == Decimal('20')
        assert first.days_late == 4
        assert second.penalty_assessed == ZERO
        assert entries[0].penalty_amount == Decimal('10')
        assert entries[0].is_late
        assert entries[0].status == InstallmentStatus.OVERDUE


class TestReverseAllocations:
    """Test exact undo of the most recent payment"""

    def test_reverse_restores_previous_state(self):
        entries = [
            entry(1, date(2026, 2, 1), "200", interest="20"),
            entry(2, date(2026, 3, 1), "200", interest="20"),
        ]
        today = date(2026, 2, 20)
        allocate_payment(entries, Decimal('100'), date(2026, 2, 2), Decimal('5'), today)
        before = deepcopy(entries)

        outcome = allocate_payment(entries, Decimal('300'), date(2026, 2, 15), Decimal('5'), today)
        assert len(outcome.allocations) == 2

        reverse_allocations(entries, outcome.allocations)
        assert entries == before

    def test_reset_entries(self):
        entries = [entry(1, date(2026, 2, 1), "200")]
        allocate_payment(entries, Decimal('200'), date(2026, 2, 20), Decimal('5'), date(2026, 2, 20))

        reset_entries(entries, date(2026, 2, 20))
        assert entries[0].paid_amount == ZERO
        assert entries[0].penalty_amount == ZERO
        assert entries[0].paid_date is None
        assert entries[0].status == InstallmentStatus.OVERDUE
