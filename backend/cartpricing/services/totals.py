from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from cartpricing.models.cart import AdjustmentKind
from cartpricing.services.adjustments import AdjustmentLine


@dataclass(frozen=True)
class PricedLine:
    """A line item as the totals see it: tier-correct price plus its adjustments."""

    correct_price: int
    quantity: int
    adjustments: Sequence[AdjustmentLine] = field(default_factory=tuple)
    is_reward: bool = False
    discount_suspended: bool = False


@dataclass(frozen=True)
class CartTotals:
    subtotal: int
    pwp_discount: int
    adjustment_discount: int
    points_discount: int
    total_discount: int
    shipping: int
    tax: int
    total: int


def compute_totals(lines: Sequence[PricedLine], *, shipping: int = 0, tax: int = 0) -> CartTotals:
    """Single source of the payable total for cart views, checkout and receipts."""
    subtotal = 0
    pwp_discount = 0
    adjustment_discount = 0
    points_discount = 0

    for line in lines:
        if line.is_reward and line.discount_suspended:
            continue
        subtotal += int(line.correct_price) * int(line.quantity)
        for adjustment in line.adjustments:
            amount = -int(adjustment.amount)
            if adjustment.kind == AdjustmentKind.pwp:
                pwp_discount += amount
            elif adjustment.kind == AdjustmentKind.points:
                points_discount += amount
            else:
                adjustment_discount += amount

    shipping = max(0, int(shipping or 0))
    tax = max(0, int(tax or 0))
    total_discount = pwp_discount + adjustment_discount + points_discount
    total = max(0, subtotal + shipping + tax - total_discount)
    return CartTotals(
        subtotal=subtotal,
        pwp_discount=pwp_discount,
        adjustment_discount=adjustment_discount,
        points_discount=points_discount,
        total_discount=total_discount,
        shipping=shipping,
        tax=tax,
        total=total,
    )
