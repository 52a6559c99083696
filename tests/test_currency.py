"""
Test suite for currency module

Money must round half-up to the currency's minor unit on every construction
and refuse to mix currencies.
"""

import pytest
from decimal import Decimal

from loan_engine.currency import Money, Currency, decimal_from_string


class TestCurrency:
    """Test Currency enum"""

    def test_precision_and_quantum(self):
        """Test minor-unit precision per currency"""
        assert Currency.USD.precision == 2
        assert Currency.USD.quantum == Decimal('0.01')
        assert Currency.JPY.precision == 0
        assert Currency.JPY.quantum == Decimal('1')

    def test_lookup_by_code(self):
        """Test currencies can be looked up by ISO code"""
        assert Currency['EUR'] is Currency.EUR
        assert Currency.EUR.code == "EUR"


class TestMoney:
    """Test Money value type"""

    def test_rounds_half_up(self):
        """Test construction quantizes with ROUND_HALF_UP"""
        assert Money(Decimal('10.005')).amount == Decimal('10.01')
        assert Money(Decimal('10.004')).amount == Decimal('10.00')
        assert Money(Decimal('-10.005')).amount == Decimal('-10.01')
        assert Money(Decimal('2.5'), Currency.JPY).amount == Decimal('3')

    def test_non_decimal_input_converted(self):
        """Test ints and strings are converted without float error"""
        assert Money(100).amount == Decimal('100.00')
        assert Money('0.1').amount == Decimal('0.10')

    def test_arithmetic_is_rounded(self):
        """Test arithmetic results are already quantized"""
        assert (Money(Decimal('1000.00')) / 3).amount == Decimal('333.33')
        assert (Money(Decimal('91893.36')) * Decimal('0.005')).amount == Decimal('459.47')
        assert (Money(Decimal('1.10')) + Money(Decimal('2.20'))).amount == Decimal('3.30')
        assert (Money(Decimal('5.00')) - Money(Decimal('7.50'))).amount == Decimal('-2.50')

    def test_currency_mismatch_rejected(self):
        """Test mixing currencies raises ValueError"""
        usd = Money(Decimal('10.00'), Currency.USD)
        eur = Money(Decimal('10.00'), Currency.EUR)

        with pytest.raises(ValueError, match="Cannot add USD and EUR"):
            usd + eur
        with pytest.raises(ValueError, match="Cannot subtract USD and EUR"):
            usd - eur
        with pytest.raises(ValueError, match="Cannot compare USD and EUR"):
            usd < eur

    def test_non_money_operand_rejected(self):
        """Test adding a bare number raises TypeError"""
        with pytest.raises(TypeError):
            Money(Decimal('1.00')) + Decimal('1.00')

    def test_equality_and_hash(self):
        """Test value equality including currency"""
        assert Money(Decimal('5.00')) == Money(Decimal('5.000'))
        assert Money(Decimal('5.00'), Currency.USD) != Money(Decimal('5.00'), Currency.EUR)
        assert len({Money(Decimal('5.00')), Money(Decimal('5'))}) == 1
        assert Money(Decimal('5.00')) != Decimal('5.00')

    def test_comparisons(self):
        """Test ordering and sign predicates"""
        small = Money(Decimal('1.00'))
        large = Money(Decimal('2.00'))

        assert small < large
        assert large >= small
        assert min(small, large) == small
        assert Money.zero().is_zero()
        assert large.is_positive()
        assert (-large).is_negative()
        assert abs(-large) == large

    def test_total(self):
        """Test summing a sequence of amounts"""
        values = [Money(Decimal('333.33')), Money(Decimal('333.33')), Money(Decimal('333.34'))]
        assert Money.total(values, Currency.USD) == Money(Decimal('1000.00'))
        assert Money.total([], Currency.EUR) == Money.zero(Currency.EUR)

    def test_to_string(self):
        """Test display formatting"""
        assert Money(Decimal('8606.64')).to_string() == "USD 8,606.64"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"


class TestDecimalFromString:
    """Test parsing user-supplied amounts"""

    def test_plain_and_formatted_values(self):
        """Test separators and symbols are stripped"""
        assert decimal_from_string("100000") == Decimal('100000')
        assert decimal_from_string("$1,234.56") == Decimal('1234.56')
        assert decimal_from_string("12,50") == Decimal('12.50')

    def test_invalid_values(self):
        """Test unparseable input raises ValueError"""
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError):
            decimal_from_string("abc")
