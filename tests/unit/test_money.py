"""
Unit tests for Money.

Verifies:
- Construction from minor units, major units and rounded decimals
- Float prohibition
- Currency-checked arithmetic and comparison
- HALF_UP rounding on multiply
- Proportional allocation sums exactly and never tips zero-weight shares
"""

from decimal import Decimal

import pytest

from inventory_kernel.domain.money import Money
from inventory_kernel.exceptions import CurrencyMismatchError


class TestConstruction:
    def test_of_major_units(self):
        assert Money.of("15.00", "USD").minor_units == 1500

    def test_of_rejects_excess_precision(self):
        with pytest.raises(ValueError):
            Money.of("1.005", "USD")

    def test_from_decimal_rounds_half_up(self):
        assert Money.from_decimal(Decimal("1.005"), "USD").minor_units == 101
        assert Money.from_decimal(Decimal("1.004"), "USD").minor_units == 100

    def test_zero_decimal_currency(self):
        """JPY has no minor unit."""
        assert Money.of("1000", "JPY").minor_units == 1000
        assert Money.of("1000", "JPY").amount == Decimal("1000")

    def test_three_decimal_currency(self):
        assert Money.from_minor(1000, "KWD").amount == Decimal("1.000")

    def test_float_amount_rejected(self):
        with pytest.raises(TypeError):
            Money.of(1.5, "USD")

    def test_float_minor_units_rejected(self):
        with pytest.raises(TypeError):
            Money(150.0, "USD")

    def test_unknown_currency_rejected(self):
        with pytest.raises(ValueError):
            Money.zero("XXQ")

    def test_sum_of_nothing_is_zero(self):
        assert Money.sum([], "USD") == Money.zero("USD")


class TestArithmetic:
    def test_add_and_subtract(self):
        a = Money.of("10.50", "USD")
        b = Money.of("0.75", "USD")
        assert (a + b).minor_units == 1125
        assert (a - b).minor_units == 975

    def test_mixed_currency_add_raises(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") + Money.of("1", "EUR")

    def test_mixed_currency_compare_raises(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") < Money.of("1", "EUR")

    def test_multiply_rounds_half_up(self):
        # 0.15 * 0.5 = 0.075 -> 0.08
        assert Money.of("0.15", "USD").multiply(Decimal("0.5")).minor_units == 8

    def test_multiply_by_quantity(self):
        assert Money.of("8.00", "USD").multiply(Decimal("100")) == Money.of("800.00", "USD")

    def test_negate(self):
        assert (-Money.of("3.00", "USD")).minor_units == -300

    def test_comparison(self):
        small = Money.of("1.00", "USD")
        big = Money.of("2.00", "USD")
        assert small < big
        assert big >= small
        assert small.compare(small) == 0


class TestAllocateProportionally:
    def test_parts_sum_exactly(self):
        parts = Money.from_minor(100, "USD").allocate_proportionally([1, 1, 1])
        assert sum(p.minor_units for p in parts) == 100

    def test_last_nonzero_weight_absorbs_remainder(self):
        parts = Money.from_minor(100, "USD").allocate_proportionally([1, 1, 1])
        assert [p.minor_units for p in parts] == [33, 33, 34]

    def test_zero_weight_receives_nothing(self):
        parts = Money.from_minor(101, "USD").allocate_proportionally([1, 1, 0])
        assert [p.minor_units for p in parts] == [50, 51, 0]

    def test_money_weights(self):
        weights = [Money.of("30.00", "USD"), Money.of("70.00", "USD")]
        parts = Money.of("10.00", "USD").allocate_proportionally(weights)
        assert parts == [Money.of("3.00", "USD"), Money.of("7.00", "USD")]

    def test_empty_weights_rejected(self):
        with pytest.raises(ValueError):
            Money.from_minor(1, "USD").allocate_proportionally([])

    def test_all_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            Money.from_minor(1, "USD").allocate_proportionally([0, 0])

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError):
            Money.from_minor(1, "USD").allocate_proportionally([1, -1])
