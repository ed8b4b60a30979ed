"""Pytest configuration and fixtures."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from loan_servicing.amortization import DurationUnit, InterestMethod, RatePeriod, RepaymentFrequency
from loan_servicing.config import LoanServicingConfig
from loan_servicing.currency import Currency
from loan_servicing.events import EventCollector, EventDispatcher
from loan_servicing.loans import LoanTerms
from loan_servicing.servicing import LoanServicing
from loan_servicing.storage import InMemoryStorage


class FixedClock:
    """Callable clock returning a settable date"""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int) -> date:
        self.today += timedelta(days=days)
        return self.today


def make_terms(**overrides) -> LoanTerms:
    """1,200,000 UGX over six monthly installments, no interest or fees"""
    values = dict(
        principal=Decimal('1200000'),
        interest_rate=Decimal('0'),
        rate_period=RatePeriod.YEAR,
        interest_method=InterestMethod.FLAT,
        duration_value=6,
        duration_unit=DurationUnit.MONTHS,
        repayment_frequency=RepaymentFrequency.MONTHLY,
        disbursement_date=date(2026, 1, 1),
        currency=Currency.UGX,
    )
    values.update(overrides)
    return LoanTerms(**values)


@pytest.fixture
def clock() -> FixedClock:
    """Fixed evaluation date, before the first installment falls due."""
    return FixedClock(date(2026, 1, 15))


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage(lock_timeout=2.0)


@pytest.fixture
def config() -> LoanServicingConfig:
    return LoanServicingConfig(database_url="memory://", lock_wait_timeout_seconds=2.0)


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def dispatcher(collector) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.subscribe_all(collector)
    return dispatcher


@pytest.fixture
def servicing(storage, config, dispatcher, clock) -> LoanServicing:
    return LoanServicing(storage, config=config, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def scheduled_loan(servicing):
    """Registered loan with its schedule generated."""
    loan = servicing.register_loan(make_terms(), client_id="client-001")
    servicing.generate_schedule(loan.id)
    return loan
