"""
Transaction pricing -- line totals, subtotal, tax, discount and total.

Pure functions over Money.  Rounding happens only at the named boundaries:
each line total, the discount (when given as a percentage) and the tax.
The subtotal is an exact integer sum of line totals, so

    total_amount == subtotal + tax_amount - discount_amount

holds exactly.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from inventory_kernel.domain.dtos import LineItemDTO, PricedLine, TransactionTotals
from inventory_kernel.domain.money import Money
from inventory_kernel.exceptions import ValidationError

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TaxPolicy:
    """
    Tax and discount policy for one transaction type.

    ``tax_after_discount`` selects the tax base: subtotal minus discount when
    True, the full subtotal when False.
    """

    rate_percent: Decimal = Decimal("0")
    tax_after_discount: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "rate_percent", Decimal(str(self.rate_percent)))
        if self.rate_percent < 0:
            raise ValueError(f"Tax rate cannot be negative: {self.rate_percent}")


def price_lines(items: Sequence[LineItemDTO], currency: str) -> tuple[PricedLine, ...]:
    lines = []
    for line_no, item in enumerate(items, start=1):
        if item.unit_price.currency != currency:
            raise ValidationError(
                f"Line {line_no} priced in {item.unit_price.currency}, "
                f"transaction is in {currency}",
                field="items",
            )
        lines.append(
            PricedLine(
                line_no=line_no,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.unit_price.multiply(item.quantity),
                batch=item.batch,
                expiry_date=item.expiry_date,
            )
        )
    return tuple(lines)


def compute_totals(
    lines: Sequence[PricedLine],
    currency: str,
    policy: TaxPolicy,
    *,
    discount: Money | None = None,
    discount_percent: Decimal | None = None,
) -> TransactionTotals:
    """
    Totals for priced lines under ``policy``.

    Raises:
        ValidationError: both discount forms given, a negative discount, or
            a discount larger than the subtotal.
    """
    subtotal = Money.sum((line.line_total for line in lines), currency)

    if discount is not None and discount_percent is not None:
        raise ValidationError(
            "Give either discount or discount_percent, not both", field="discount"
        )
    if discount_percent is not None:
        percent = Decimal(str(discount_percent))
        if percent < 0 or percent > HUNDRED:
            raise ValidationError(
                f"discount_percent must be within 0..100, got {percent}",
                field="discount_percent",
            )
        discount_amount = subtotal.multiply(percent / HUNDRED)
    elif discount is not None:
        discount_amount = Money.zero(currency) + discount
    else:
        discount_amount = Money.zero(currency)

    if discount_amount.is_negative:
        raise ValidationError("Discount cannot be negative", field="discount")
    if discount_amount > subtotal:
        raise ValidationError(
            f"Discount {discount_amount} exceeds subtotal {subtotal}",
            field="discount",
        )

    base = subtotal - discount_amount if policy.tax_after_discount else subtotal
    tax_amount = base.multiply(policy.rate_percent / HUNDRED)
    total = subtotal + tax_amount - discount_amount

    return TransactionTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=total,
        lines=tuple(lines),
    )


def net_line_values(totals: TransactionTotals) -> list[Money]:
    """
    Each line total less its proportional share of the discount.

    The shares come from Money.allocate_proportionally, so the values sum
    exactly to ``totals.net_of_discount``.
    """
    line_totals = [line.line_total for line in totals.lines]
    if totals.discount_amount.is_zero:
        return line_totals
    shares = totals.discount_amount.allocate_proportionally(line_totals)
    return [total - share for total, share in zip(line_totals, shares)]


def proportional_discount(
    original: TransactionTotals, partial_subtotal: Money
) -> Money:
    """Share of an original discount that belongs to part of its subtotal."""
    if original.subtotal.is_zero or original.discount_amount.is_zero:
        return Money.zero(original.subtotal.currency)
    ratio = Decimal(partial_subtotal.minor_units) / Decimal(original.subtotal.minor_units)
    return original.discount_amount.multiply(ratio)


def return_discount(
    original: TransactionTotals,
    partial_subtotal: Money,
    *,
    returned_subtotal: Money,
    carried: Money,
    final: bool = False,
) -> Money:
    """
    Discount a return carries, given what earlier returns already carried.

    The share is taken on the cumulative returned subtotal and the discount
    already carried is subtracted, so rounding does not accumulate across
    partial returns.  The result never exceeds what is left of the original
    discount; the return that empties the original (``final``) takes exactly
    that remainder.
    """
    remaining = original.discount_amount - carried
    if not remaining.is_positive:
        return Money.zero(original.subtotal.currency)
    if final:
        return min(remaining, partial_subtotal)
    share = proportional_discount(original, returned_subtotal + partial_subtotal) - carried
    if share.is_negative:
        return Money.zero(original.subtotal.currency)
    return min(share, remaining, partial_subtotal)
