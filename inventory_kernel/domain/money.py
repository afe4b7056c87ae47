"""
Money -- integer minor units paired with an ISO 4217 currency.

Contract:
    A Money value is immutable.  Arithmetic returns new values and never
    rounds implicitly.  Rounding happens only at named boundaries, each of
    which is an explicit method: ``multiply`` (line totals, costed values),
    ``from_decimal`` (tax, discount and valuation results) and
    ``allocate_proportionally`` (splitting a total across lines).

Guarantees:
    - minor_units is always an int; floats are rejected with TypeError.
    - Operations on two different currencies raise CurrencyMismatchError.
    - allocate_proportionally returns parts that sum exactly to the whole.

Non-goals:
    - No currency conversion.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

from inventory_kernel.domain.currency import CurrencyRegistry
from inventory_kernel.exceptions import CurrencyMismatchError


def _to_decimal(value: Decimal | int | str) -> Decimal:
    if isinstance(value, float):
        raise TypeError("float values are not accepted for money arithmetic")
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric amount")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str)):
        try:
            return Decimal(value)
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal value: {value!r}") from e
    raise TypeError(f"Unsupported numeric type: {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class Money:
    minor_units: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise TypeError(
                f"minor_units must be int, got {type(self.minor_units).__name__}"
            )
        object.__setattr__(self, "currency", CurrencyRegistry.get(self.currency).code)

    # -- construction -----------------------------------------------------

    @classmethod
    def from_minor(cls, minor_units: int, currency: str) -> Money:
        return cls(minor_units, currency)

    @classmethod
    def of(cls, amount: Decimal | int | str, currency: str) -> Money:
        """
        Money from an amount in major units, e.g. ``Money.of("15.00", "USD")``.

        Raises ValueError if the amount has more decimal places than the
        currency allows.  Use from_decimal to round explicitly.
        """
        value = _to_decimal(amount)
        places = CurrencyRegistry.get_decimal_places(currency)
        scaled = value.scaleb(places)
        if scaled != scaled.to_integral_value():
            raise ValueError(
                f"{amount} has more precision than {currency} allows "
                f"({places} decimal places)"
            )
        return cls(int(scaled), currency)

    @classmethod
    def from_decimal(
        cls,
        amount: Decimal | int | str,
        currency: str,
        rounding: str = ROUND_HALF_UP,
    ) -> Money:
        """Money from major units, rounded to the currency's minor unit."""
        places = CurrencyRegistry.get_decimal_places(currency)
        scaled = _to_decimal(amount).scaleb(places)
        return cls(int(scaled.quantize(Decimal("1"), rounding=rounding)), currency)

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    @classmethod
    def sum(cls, values: Iterable[Money], currency: str) -> Money:
        """Exact sum of values; an empty iterable gives zero."""
        total = cls.zero(currency)
        for value in values:
            total = total + value
        return total

    # -- inspection -------------------------------------------------------

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.currency)

    @property
    def amount(self) -> Decimal:
        """Value in major units, at the currency's precision."""
        return Decimal(self.minor_units).scaleb(-self.decimal_places)

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    @property
    def is_positive(self) -> bool:
        return self.minor_units > 0

    @property
    def is_negative(self) -> bool:
        return self.minor_units < 0

    # -- arithmetic -------------------------------------------------------

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def add(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.minor_units + other.minor_units, self.currency)

    def subtract(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.minor_units - other.minor_units, self.currency)

    def multiply(
        self, factor: Decimal | int | str, rounding: str = ROUND_HALF_UP
    ) -> Money:
        """Scale by a quantity or rate, rounding the result to minor units."""
        product = Decimal(self.minor_units) * _to_decimal(factor)
        return Money(
            int(product.quantize(Decimal("1"), rounding=rounding)), self.currency
        )

    def negate(self) -> Money:
        return Money(-self.minor_units, self.currency)

    def allocate_proportionally(
        self, weights: Sequence[Decimal | int | Money]
    ) -> list[Money]:
        """
        Split this amount in proportion to ``weights``.

        Every share but one is truncated toward zero; the last share with a
        non-zero weight takes the remainder, so the parts always sum exactly
        to this amount and no zero-weight line receives a stray minor unit.

        Raises ValueError for an empty list, a negative weight, or weights
        that are all zero.
        """
        if not weights:
            raise ValueError("allocate_proportionally requires at least one weight")
        values: list[Decimal] = []
        for weight in weights:
            if isinstance(weight, Money):
                self._check_currency(weight)
                value = Decimal(weight.minor_units)
            else:
                value = _to_decimal(weight)
            if value < 0:
                raise ValueError(f"Negative allocation weight: {weight}")
            values.append(value)

        total_weight = sum(values, Decimal("0"))
        if total_weight == 0:
            raise ValueError("Allocation weights must not all be zero")

        absorber = max(i for i, value in enumerate(values) if value > 0)
        whole = Decimal(self.minor_units)
        shares = [0] * len(values)
        allocated = 0
        for i, value in enumerate(values):
            if i == absorber:
                continue
            share = int((whole * value / total_weight).to_integral_value(ROUND_DOWN))
            shares[i] = share
            allocated += share
        shares[absorber] = self.minor_units - allocated
        return [Money(share, self.currency) for share in shares]

    def compare(self, other: Money) -> int:
        """-1, 0 or 1 as this amount is less than, equal to or greater than other."""
        self._check_currency(other)
        return (self.minor_units > other.minor_units) - (
            self.minor_units < other.minor_units
        )

    __add__ = add
    __sub__ = subtract
    __neg__ = negate

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.compare(other) < 0

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.compare(other) <= 0

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.compare(other) > 0

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.compare(other) >= 0

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
