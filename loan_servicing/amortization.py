"""
Amortization Arithmetic

Pure functions for repayment calendars and per-installment amounts:
periodic rate conversion, due-date stepping, installment counts, and the
flat and reducing-balance splits of a loan into principal, interest and fee.
"""

from decimal import Decimal, ROUND_DOWN
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import List, Optional
import calendar

from .currency import Currency, ZERO, quantize
from .exceptions import ValidationError


class RepaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class InterestMethod(Enum):
    FLAT = "flat"                          # Interest on original principal, split evenly
    REDUCING_BALANCE = "reducing_balance"  # Equal installments, interest on remaining principal


class RatePeriod(Enum):
    """Period the quoted interest rate applies to"""
    YEAR = "year"
    MONTH = "month"


class DurationUnit(Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


PERIODS_PER_YEAR = {
    RepaymentFrequency.DAILY: 365,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BIWEEKLY: 26,
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.QUARTERLY: 4,
    RepaymentFrequency.YEARLY: 1,
}

# Months covered by one repayment period, for monthly quoted rates
MONTHS_PER_PERIOD = {
    RepaymentFrequency.DAILY: Decimal('1') / Decimal('30'),
    RepaymentFrequency.WEEKLY: Decimal('1') / Decimal('4'),
    RepaymentFrequency.BIWEEKLY: Decimal('1') / Decimal('2'),
    RepaymentFrequency.MONTHLY: Decimal('1'),
    RepaymentFrequency.QUARTERLY: Decimal('3'),
    RepaymentFrequency.YEARLY: Decimal('12'),
}

STEP_DAYS = {
    RepaymentFrequency.DAILY: 1,
    RepaymentFrequency.WEEKLY: 7,
    RepaymentFrequency.BIWEEKLY: 14,
}

STEP_MONTHS = {
    RepaymentFrequency.MONTHLY: 1,
    RepaymentFrequency.QUARTERLY: 3,
    RepaymentFrequency.YEARLY: 12,
}

# Approximate period lengths used when a duration in days must be split
APPROX_PERIOD_DAYS = {
    RepaymentFrequency.DAILY: 1,
    RepaymentFrequency.WEEKLY: 7,
    RepaymentFrequency.BIWEEKLY: 14,
    RepaymentFrequency.MONTHLY: 30,
    RepaymentFrequency.QUARTERLY: 90,
    RepaymentFrequency.YEARLY: 365,
}


@dataclass(frozen=True)
class InstallmentAmounts:
    """Scheduled amounts for one installment"""
    principal: Decimal
    interest: Decimal
    fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.principal + self.interest + self.fee


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def step_date(first: date, frequency: RepaymentFrequency, periods: int) -> date:
    """
    Date ``periods`` repayment periods after ``first``.

    Always computed from ``first`` so month-end clamping never accumulates.
    """
    if frequency in STEP_DAYS:
        return first + timedelta(days=STEP_DAYS[frequency] * periods)
    return add_months(first, STEP_MONTHS[frequency] * periods)


def add_duration(start: date, value: int, unit: DurationUnit) -> date:
    if unit == DurationUnit.DAYS:
        return start + timedelta(days=value)
    if unit == DurationUnit.WEEKS:
        return start + timedelta(weeks=value)
    if unit == DurationUnit.MONTHS:
        return add_months(start, value)
    return add_months(start, 12 * value)


def duration_in_days(start: date, value: int, unit: DurationUnit) -> int:
    return (add_duration(start, value, unit) - start).days


def derive_installment_count(start: date, value: int, unit: DurationUnit,
                             frequency: RepaymentFrequency) -> int:
    """Number of repayment periods that fit in the loan duration (at least one)"""
    if frequency in STEP_MONTHS and unit in (DurationUnit.MONTHS, DurationUnit.YEARS):
        months = value if unit == DurationUnit.MONTHS else value * 12
        return max(1, months // STEP_MONTHS[frequency])
    days = duration_in_days(start, value, unit)
    return max(1, days // APPROX_PERIOD_DAYS[frequency])


def periodic_rate(rate: Decimal, rate_period: RatePeriod, frequency: RepaymentFrequency) -> Decimal:
    """Convert a quoted rate (fraction, e.g. 0.24) to the rate per repayment period"""
    if rate_period == RatePeriod.YEAR:
        return rate / Decimal(PERIODS_PER_YEAR[frequency])
    return rate * MONTHS_PER_PERIOD[frequency]


def _split_evenly(total: Decimal, count: int, currency: Currency) -> List[Decimal]:
    """Even split rounded down; the final share absorbs the remainder"""
    share = (total / Decimal(count)).quantize(currency.unit, rounding=ROUND_DOWN)
    shares = [share] * (count - 1)
    shares.append(total - share * (count - 1))
    return shares


def flat_amounts(principal: Decimal, rate: Decimal, count: int, fee: Decimal,
                 currency: Currency, total_payable: Optional[Decimal] = None) -> List[InstallmentAmounts]:
    """
    Flat method: total interest is charged on the original principal and split
    evenly, as are principal and fee.

    When ``total_payable`` is known, total interest is whatever the loan
    carries beyond principal and fee.
    """
    if total_payable is not None:
        total_interest = total_payable - principal - fee
        if total_interest < ZERO:
            raise ValidationError(
                f"Total payable {total_payable} is below principal plus fees {principal + fee}"
            )
    else:
        total_interest = quantize(principal * rate * Decimal(count), currency)

    principals = _split_evenly(principal, count, currency)
    interests = _split_evenly(total_interest, count, currency)
    fees = _split_evenly(fee, count, currency)
    return [InstallmentAmounts(p, i, f) for p, i, f in zip(principals, interests, fees)]


def reducing_balance_amounts(principal: Decimal, rate: Decimal, count: int, fee: Decimal,
                             currency: Currency,
                             total_payable: Optional[Decimal] = None) -> List[InstallmentAmounts]:
    """
    Reducing-balance method: equal installments (EMI), interest on the
    remaining principal each period, processing fee due with installment 1.

    A known ``total_payable`` that differs from the computed total is
    reconciled on the final installment's interest.
    """
    if rate == ZERO:
        emi = principal / Decimal(count)
    else:
        growth = (Decimal('1') + rate) ** count
        emi = principal * rate * growth / (growth - Decimal('1'))
    emi = quantize(emi, currency)

    amounts = []
    balance = principal
    for number in range(1, count + 1):
        interest = quantize(balance * rate, currency)
        if number == count:
            principal_part = balance
        else:
            principal_part = min(max(emi - interest, ZERO), balance)
        balance -= principal_part
        amounts.append(InstallmentAmounts(
            principal=principal_part,
            interest=interest,
            fee=fee if number == 1 else ZERO
        ))

    if total_payable is not None:
        computed = sum((a.total for a in amounts), ZERO)
        difference = total_payable - computed
        if difference != ZERO:
            last = amounts[-1]
            adjusted = last.interest + difference
            if adjusted < ZERO:
                raise ValidationError(
                    f"Total payable {total_payable} is inconsistent with the reducing-balance schedule"
                )
            amounts[-1] = InstallmentAmounts(last.principal, adjusted, last.fee)
    return amounts


def installment_amounts(method: InterestMethod, principal: Decimal, rate: Decimal, count: int,
                        fee: Decimal, currency: Currency,
                        total_payable: Optional[Decimal] = None) -> List[InstallmentAmounts]:
    if count < 1:
        raise ValidationError("A schedule needs at least one installment")
    if method == InterestMethod.FLAT:
        return flat_amounts(principal, rate, count, fee, currency, total_payable)
    return reducing_balance_amounts(principal, rate, count, fee, currency, total_payable)


def compute_total_payable(method: InterestMethod, principal: Decimal, rate: Decimal, count: int,
                          fee: Decimal, currency: Currency) -> Decimal:
    amounts = installment_amounts(method, principal, rate, count, fee, currency)
    return sum((a.total for a in amounts), ZERO)
