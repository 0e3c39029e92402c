"""
Test suite for currency module

Tests Money arithmetic, currency precision and safe Decimal conversion.
CRITICAL: Validates that no float ever becomes a monetary amount.
"""

import pytest
from decimal import Decimal

from retail_ledger.currency import Money, Currency, fits_precision, to_decimal


class TestCurrency:
    """Test Currency enum"""

    def test_precision(self):
        assert Currency.USD.precision == 2
        assert Currency.JPY.precision == 0
        assert Currency.EUR.code == "EUR"

    def test_from_code(self):
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code("INR") == Currency.INR

    def test_from_unknown_code(self):
        with pytest.raises(ValueError, match="Unsupported currency"):
            Currency.from_code("XYZ")


class TestMoney:
    """Test Money value object"""

    def test_rounds_to_currency_precision(self):
        assert Money(Decimal("10.005"), Currency.USD).amount == Decimal("10.01")
        assert Money(Decimal("10.004"), Currency.USD).amount == Decimal("10.00")
        assert Money(Decimal("99.5"), Currency.JPY).amount == Decimal("100")

    def test_string_amount_is_converted(self):
        money = Money("12.34", Currency.USD)
        assert money.amount == Decimal("12.34")

    def test_addition_and_subtraction(self):
        a = Money(Decimal("100.00"), Currency.USD)
        b = Money(Decimal("25.50"), Currency.USD)

        assert a + b == Money(Decimal("125.50"), Currency.USD)
        assert a - b == Money(Decimal("74.50"), Currency.USD)
        assert -b == Money(Decimal("-25.50"), Currency.USD)
        assert abs(-b) == b

    def test_mixed_currency_arithmetic_rejected(self):
        usd = Money(Decimal("1.00"), Currency.USD)
        eur = Money(Decimal("1.00"), Currency.EUR)

        with pytest.raises(ValueError, match="Cannot add"):
            usd + eur
        with pytest.raises(ValueError, match="Cannot compare"):
            usd < eur

    def test_comparisons(self):
        small = Money(Decimal("1.00"), Currency.USD)
        large = Money(Decimal("2.00"), Currency.USD)

        assert small < large
        assert large >= small
        assert small != Money(Decimal("1.00"), Currency.EUR)

    def test_sign_checks(self):
        assert Money.zero(Currency.USD).is_zero()
        assert Money(Decimal("0.01"), Currency.USD).is_positive()
        assert Money(Decimal("-0.01"), Currency.USD).is_negative()

    def test_to_string(self):
        assert Money(Decimal("1234.5"), Currency.USD).to_string() == "USD 1,234.50"
        assert Money(Decimal("1500"), Currency.JPY).to_string() == "JPY 1,500"

    def test_immutable(self):
        money = Money(Decimal("1.00"), Currency.USD)
        with pytest.raises(Exception):
            money.amount = Decimal("2.00")


class TestToDecimal:
    """Test user input conversion"""

    def test_accepts_strings_ints_and_decimals(self):
        assert to_decimal("100.25") == Decimal("100.25")
        assert to_decimal("$1,000.00") == Decimal("1000.00")
        assert to_decimal(5) == Decimal("5")
        assert to_decimal(Decimal("0.10")) == Decimal("0.10")

    def test_rejects_floats(self):
        with pytest.raises(ValueError, match="floats"):
            to_decimal(0.1)

    def test_accepts_signs_and_symbols(self):
        assert to_decimal(" -12.50 ") == Decimal("-12.50")
        assert to_decimal("+7") == Decimal("7")
        assert to_decimal("£1,234,567.89") == Decimal("1234567.89")
        assert to_decimal(".5") == Decimal("0.5")

    @pytest.mark.parametrize("value", [
        "", "abc", "NaN", "Infinity", None,
        "1e3", "1E-2", "1,5", "12abc", "abc12", "1.2.3", "1,00", "12,3456", "--5", "5-", "$", Decimal("NaN"),
    ])
    def test_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)


class TestFitsPrecision:

    def test_minor_units(self):
        assert fits_precision(Decimal("10.01"), Currency.USD)
        assert fits_precision(Decimal("10.010"), Currency.USD)
        assert fits_precision(Decimal("10"), Currency.USD)
        assert not fits_precision(Decimal("0.005"), Currency.USD)
        assert not fits_precision(Decimal("10.5"), Currency.JPY)
        assert fits_precision(Decimal("1500"), Currency.JPY)
