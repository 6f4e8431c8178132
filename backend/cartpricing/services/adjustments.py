"""Named, idempotent discount adjustments per cart line item.

Every discount source owns the adjustment codes derived from it. Mutating one
source only ever touches its own codes, so a coupon removal cannot take a
membership promo or a points redemption down with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import ClassVar, Iterable, Sequence, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.models.cart import AdjustmentKind, Cart, CartItem
from cartpricing.services import cart_store

logger = logging.getLogger(__name__)

TIER_PREFIX = "TIER_"
PWP_PREFIX = "PWP_"
MEMBERSHIP_PROMO_PREFIX = "MEMBERSHIP_PROMO_"
COUPON_PREFIX = "COUPON_"
POINTS_CODE = "POINTS_REDEMPTION"


def _as_discount(amount: int) -> int:
    return -abs(int(amount))


@dataclass(frozen=True)
class AdjustmentLine:
    """Stored form of an adjustment, as read from and written to the cart store."""

    code: str
    amount: int
    description: str
    kind: AdjustmentKind
    promotion_id: UUID | None = None


class _Discount:
    kind: ClassVar[AdjustmentKind]
    amount: int
    description: str

    @property
    def code(self) -> str:  # pragma: no cover - overridden
        raise NotImplementedError

    @property
    def promotion_id(self) -> UUID | None:
        return None

    def to_line(self) -> AdjustmentLine:
        return AdjustmentLine(
            code=self.code,
            amount=_as_discount(self.amount),
            description=self.description,
            kind=self.kind,
            promotion_id=self.promotion_id,
        )


@dataclass(frozen=True)
class TierDiscount(_Discount):
    slug: str
    amount: int
    description: str = ""
    kind: ClassVar[AdjustmentKind] = AdjustmentKind.tier

    @property
    def code(self) -> str:
        return f"{TIER_PREFIX}{self.slug}"


@dataclass(frozen=True)
class PWPDiscount(_Discount):
    rule_id: UUID
    amount: int
    description: str = ""
    kind: ClassVar[AdjustmentKind] = AdjustmentKind.pwp

    @property
    def code(self) -> str:
        return f"{PWP_PREFIX}{self.rule_id}"

    @property
    def promotion_id(self) -> UUID | None:
        return self.rule_id


@dataclass(frozen=True)
class MembershipPromoDiscount(_Discount):
    promo_id: UUID
    amount: int
    description: str = ""
    kind: ClassVar[AdjustmentKind] = AdjustmentKind.membership_promo

    @property
    def code(self) -> str:
        return f"{MEMBERSHIP_PROMO_PREFIX}{self.promo_id}"

    @property
    def promotion_id(self) -> UUID | None:
        return self.promo_id


@dataclass(frozen=True)
class CouponDiscount(_Discount):
    coupon_code: str
    amount: int
    description: str = ""
    coupon_id: UUID | None = None
    kind: ClassVar[AdjustmentKind] = AdjustmentKind.coupon

    @property
    def code(self) -> str:
        return f"{COUPON_PREFIX}{self.coupon_code.strip().upper()}"

    @property
    def promotion_id(self) -> UUID | None:
        return self.coupon_id


@dataclass(frozen=True)
class PointsRedemptionDiscount(_Discount):
    points: int
    amount: int
    description: str = ""
    kind: ClassVar[AdjustmentKind] = AdjustmentKind.points

    @property
    def code(self) -> str:
        return POINTS_CODE

    def to_line(self) -> AdjustmentLine:
        line = super().to_line()
        if not line.description:
            line = replace(line, description=f"Redeemed {self.points} points")
        return line


Adjustment = Union[TierDiscount, PWPDiscount, MembershipPromoDiscount, CouponDiscount, PointsRedemptionDiscount]


def lines_of(item: CartItem) -> list[AdjustmentLine]:
    return [
        AdjustmentLine(
            code=row.code,
            amount=int(row.amount),
            description=row.description or "",
            kind=row.kind,
            promotion_id=row.promotion_id,
        )
        for row in item.adjustments or []
    ]


def upsert(existing: Sequence[AdjustmentLine], adjustment: Adjustment | AdjustmentLine) -> list[AdjustmentLine]:
    line = adjustment if isinstance(adjustment, AdjustmentLine) else adjustment.to_line()
    updated: list[AdjustmentLine] = []
    replaced = False
    for current in existing:
        if current.code == line.code:
            if not replaced:
                updated.append(line)
                replaced = True
            continue
        updated.append(current)
    if not replaced:
        updated.append(line)
    return updated


def strip(existing: Sequence[AdjustmentLine], code_prefix: str, *, exact: bool = False) -> list[AdjustmentLine]:
    if exact:
        return [line for line in existing if line.code != code_prefix]
    return [line for line in existing if not line.code.startswith(code_prefix)]


def total_discount(existing: Iterable[AdjustmentLine]) -> int:
    return sum(int(line.amount) for line in existing)


def find(existing: Iterable[AdjustmentLine], code: str) -> AdjustmentLine | None:
    return next((line for line in existing if line.code == code), None)


async def apply(session: AsyncSession, cart: Cart, item: CartItem, adjustment: Adjustment) -> list[AdjustmentLine]:
    current = lines_of(item)
    updated = upsert(current, adjustment)
    if updated != current:
        await cart_store.set_line_item_adjustments(session, cart.id, item.id, updated)
        await session.refresh(item, attribute_names=["adjustments"])
        logger.info(
            "adjustment_applied",
            extra={"cart_id": str(cart.id), "item_id": str(item.id), "code": adjustment.code},
        )
    return updated


async def remove(
    session: AsyncSession,
    cart: Cart,
    code_prefix: str,
    *,
    items: Iterable[CartItem] | None = None,
    exact: bool = False,
) -> int:
    """Drop every adjustment whose code starts with ``code_prefix`` (or equals it when ``exact``).

    A missing code is a no-op.
    """
    removed = 0
    for item in list(items if items is not None else cart.items):
        current = lines_of(item)
        remaining = strip(current, code_prefix, exact=exact)
        if len(remaining) == len(current):
            continue
        await cart_store.set_line_item_adjustments(session, cart.id, item.id, remaining)
        await session.refresh(item, attribute_names=["adjustments"])
        removed += len(current) - len(remaining)
    if removed:
        logger.info("adjustments_removed", extra={"cart_id": str(cart.id), "prefix": code_prefix, "count": removed})
    return removed
