"""
Test suite for currency module

Tests currency precision, rounding, and Decimal conversion.
All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from loan_servicing.currency import Currency, quantize, quantize_score, to_decimal
from loan_servicing.exceptions import ValidationError


class TestCurrency:
    """Test currency precision"""

    def test_precision(self):
        assert Currency.UGX.precision == 0
        assert Currency.USD.precision == 2
        assert Currency.UGX.unit == Decimal('1')
        assert Currency.USD.unit == Decimal('0.01')

    def test_from_code(self):
        assert Currency.from_code("kes") == Currency.KES
        with pytest.raises(ValidationError):
            Currency.from_code("XYZ")

    def test_quantize_half_up(self):
        assert quantize(Decimal('100.555'), Currency.USD) == Decimal('100.56')
        assert quantize(Decimal('100.5'), Currency.UGX) == Decimal('101')
        assert quantize(Decimal('100.4'), Currency.UGX) == Decimal('100')

    def test_quantize_score(self):
        assert quantize_score(Decimal('20.8333')) == Decimal('20.83')


class TestToDecimal:
    """Test conversion of submitted amounts"""

    def test_accepts_strings_ints_decimals(self):
        assert to_decimal("150000") == Decimal('150000')
        assert to_decimal(5) == Decimal('5')
        assert to_decimal(Decimal('1.25')) == Decimal('1.25')
        assert to_decimal(None) == Decimal('0')

    def test_rejects_floats(self):
        with pytest.raises(ValidationError):
            to_decimal(0.1)

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError):
            to_decimal("ten thousand")
