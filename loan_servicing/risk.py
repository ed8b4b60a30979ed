"""
Risk & Status Classifier

Derives a loan's lifecycle state, payment-behavior score, default-risk score
and payment pattern from its terms and tracking figures. Everything here is
recomputed on read for a given ``today``; nothing is cached.

Scores (0-100, two decimals):

    behavior = clamp(100 - 30*late_ratio + 10*on_time_ratio + 5*early_ratio
                     - 10*missed, 0, 100)

    risk = min(100, min(0.5*days_late, 30) + min(10*missed, 30)
                    + 20*late_ratio + 0.2*(100 - behavior)
                    + (0.1*(100 - completion) if days_late > 0 else 0))

Ratios are over the number of recorded payments. Risk never decreases as
days late or missed installments grow; behavior never increases as the late
ratio grows.
"""

from decimal import Decimal
from datetime import date
from enum import Enum
from typing import Iterable, Tuple

from .currency import ZERO, quantize_score
from .loans import Loan


HUNDRED = Decimal('100')
DEFAULT_AFTER_DAYS = 180


class LoanLifecycleState(Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"
    COMPLETED = "completed"


class PaymentPattern(Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    CONSISTENT = "consistent"
    IRREGULAR = "irregular"
    DETERIORATING = "deteriorating"


def classify(loan: Loan, paid_toward_schedule: Decimal, today: date,
             default_after_days: int = DEFAULT_AFTER_DAYS) -> LoanLifecycleState:
    """
    Lifecycle state as of ``today``. Exactly one state holds.

    COMPLETED once the scheduled total is paid; otherwise by days since the
    payment start against the loan duration: ACTIVE within the duration,
    OVERDUE up to ``default_after_days`` beyond it, DEFAULTED after that.
    """
    if paid_toward_schedule >= loan.total_payable:
        return LoanLifecycleState.COMPLETED
    elapsed = (today - loan.terms.payment_start_date).days
    duration = loan.duration_days
    if elapsed <= duration:
        return LoanLifecycleState.ACTIVE
    if elapsed <= duration + default_after_days:
        return LoanLifecycleState.OVERDUE
    return LoanLifecycleState.DEFAULTED


def _ratios(payment_count: int, early: int, on_time: int, late: int) -> Tuple[Decimal, Decimal, Decimal]:
    if payment_count <= 0:
        return ZERO, ZERO, ZERO
    total = Decimal(payment_count)
    return Decimal(early) / total, Decimal(on_time) / total, Decimal(late) / total


def payment_behavior_score(payment_count: int, early: int, on_time: int, late: int,
                           missed: int) -> Decimal:
    early_ratio, on_time_ratio, late_ratio = _ratios(payment_count, early, on_time, late)
    score = (HUNDRED
             - Decimal('30') * late_ratio
             + Decimal('10') * on_time_ratio
             + Decimal('5') * early_ratio
             - Decimal('10') * Decimal(missed))
    return quantize_score(min(HUNDRED, max(ZERO, score)))


def default_risk_score(days_late: int, missed: int, payment_count: int, late: int,
                       behavior_score: Decimal, completion_percentage: Decimal) -> Decimal:
    late_ratio = Decimal(late) / Decimal(payment_count) if payment_count > 0 else ZERO
    score = (min(Decimal('0.5') * Decimal(days_late), Decimal('30'))
             + min(Decimal('10') * Decimal(missed), Decimal('30'))
             + Decimal('20') * late_ratio
             + Decimal('0.2') * (HUNDRED - behavior_score))
    if days_late > 0:
        score += Decimal('0.1') * (HUNDRED - completion_percentage)
    return quantize_score(min(HUNDRED, max(ZERO, score)))


def payment_pattern(payment_count: int, early: int, on_time: int, late: int) -> PaymentPattern:
    if payment_count < 3:
        return PaymentPattern.INSUFFICIENT_DATA
    early_ratio, on_time_ratio, late_ratio = _ratios(payment_count, early, on_time, late)
    if early_ratio + on_time_ratio >= Decimal('0.8'):
        return PaymentPattern.CONSISTENT
    if late_ratio > Decimal('0.3'):
        return PaymentPattern.DETERIORATING
    return PaymentPattern.IRREGULAR


def completion_percentage(paid_toward_schedule: Decimal, total_payable: Decimal) -> Decimal:
    if total_payable <= ZERO:
        return HUNDRED
    return quantize_score(min(HUNDRED, paid_toward_schedule / total_payable * HUNDRED))


def portfolio_at_risk(positions: Iterable[Tuple[int, Decimal]], days: int) -> Decimal:
    """
    PAR-n: outstanding balance of loans more than ``days`` late as a fraction
    of total outstanding balance.

    Args:
        positions: (days_late, outstanding_balance) per loan
        days: threshold, e.g. 30 for PAR30
    """
    at_risk = ZERO
    total = ZERO
    for days_late, outstanding in positions:
        total += outstanding
        if days_late > days:
            at_risk += outstanding
    if total == ZERO:
        return ZERO
    return (at_risk / total).quantize(Decimal('0.0001'))
