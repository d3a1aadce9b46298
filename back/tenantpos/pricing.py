"""
Pricing Engine

Pure computation of order figures from line items and an order-level discount:
- Subtotal from pre-tax unit prices
- Per-item tax from the product's after-tax price
- Proportional discount distribution with exact-sum correction on the last item
- Order total

Nothing here touches the database; callers persist the results.
"""

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Sequence

from sqlmodel import SQLModel


# Tax and discount allocations are settled in whole currency units
CURRENCY_UNIT = Decimal("1")
ZERO = Decimal("0")


def as_money(value) -> Decimal:
    """Coerce API and database numerics to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    return Decimal(str(value))


class LineItem(SQLModel):
    product_id: int
    quantity: int
    unit_price: Decimal  # Pre-tax unit price
    after_tax_price: Decimal | None = None  # None means the product is untaxed


class PricingResult(SQLModel):
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    item_taxes: list[Decimal]
    item_discounts: list[Decimal]


def line_subtotal(item: LineItem) -> Decimal:
    return as_money(item.unit_price) * item.quantity


def line_tax(item: LineItem) -> Decimal:
    """
    Tax for one line: (after_tax_price - unit_price) * quantity, floored to a
    whole currency unit. Malformed data where the after-tax price is not above
    the pre-tax price yields zero tax.
    """
    if item.after_tax_price is None:
        return ZERO
    tax_per_unit = max(ZERO, as_money(item.after_tax_price) - as_money(item.unit_price))
    return (tax_per_unit * item.quantity).quantize(CURRENCY_UNIT, rounding=ROUND_FLOOR)


def distribute_discount(items: Sequence[LineItem], discount) -> list[Decimal]:
    """
    Split an order-level discount across items in the given order.

    Every item except the last receives round(discount * item_subtotal / subtotal),
    rounded half up to a whole currency unit; the last item receives whatever is
    left so the allocations always add up to the discount exactly.

    Capping policy: a proportional share never exceeds the discount still
    unallocated. When rounding several shares up would overshoot, the later
    items get less than their exact rounded share (possibly zero) instead of
    the last item going negative.
    """
    discount = as_money(discount)
    if not items or discount <= 0:
        return [ZERO for _ in items]

    total_subtotal = sum((line_subtotal(item) for item in items), ZERO)
    if total_subtotal <= 0:
        return [ZERO for _ in items]

    allocations: list[Decimal] = []
    allocated = ZERO
    for item in items[:-1]:
        share = (discount * line_subtotal(item) / total_subtotal).quantize(
            CURRENCY_UNIT, rounding=ROUND_HALF_UP
        )
        share = min(share, discount - allocated)
        allocations.append(share)
        allocated += share

    allocations.append(discount - allocated)
    return allocations


def compute_totals(items: Sequence[LineItem], discount=ZERO) -> PricingResult:
    """Canonical order figures for `items` with an order-level `discount`."""
    discount = as_money(discount)

    subtotal = sum((line_subtotal(item) for item in items), ZERO)
    item_taxes = [line_tax(item) for item in items]
    tax = sum(item_taxes, ZERO)
    item_discounts = distribute_discount(items, discount)
    total = max(ZERO, subtotal + tax - discount)

    return PricingResult(
        subtotal=subtotal,
        tax=tax,
        discount=discount,
        total=total,
        item_taxes=item_taxes,
        item_discounts=item_discounts,
    )
