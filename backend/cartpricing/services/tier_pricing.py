from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Protocol, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.core import metrics
from cartpricing.core.errors import InvalidQuantity, NotFound, UpstreamUnavailable
from cartpricing.services import catalog as catalog_service

logger = logging.getLogger(__name__)


class TierLike(Protocol):
    amount: int
    min_quantity: int | None
    max_quantity: int | None


@dataclass(frozen=True)
class TierPrice:
    amount: int
    min_quantity: int | None = None
    max_quantity: int | None = None
    currency: str | None = None

    @classmethod
    def from_row(cls, row: TierLike) -> "TierPrice":
        return cls(
            amount=int(row.amount),
            min_quantity=int(row.min_quantity) if row.min_quantity is not None else None,
            max_quantity=int(row.max_quantity) if row.max_quantity is not None else None,
            currency=getattr(row, "currency", None),
        )

    @property
    def is_base(self) -> bool:
        return self.min_quantity is None or self.min_quantity <= 1

    def covers(self, quantity: int) -> bool:
        if (self.min_quantity or 0) > quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


@dataclass(frozen=True)
class TierResolution:
    unit_price: int
    tier: TierPrice | None
    base_price: int | None
    degraded: bool = False

    @property
    def is_bulk_price(self) -> bool:
        return self.tier is not None


@dataclass(frozen=True)
class BulkTier:
    min_quantity: int
    max_quantity: int | None
    amount: int
    savings_percent: int


def _ascending(tiers: Iterable[TierPrice]) -> list[TierPrice]:
    return sorted(tiers, key=lambda tier: tier.min_quantity or 0)


def _for_currency(tiers: Iterable[TierLike | TierPrice], currency: str | None) -> list[TierPrice]:
    rows = [tier if isinstance(tier, TierPrice) else TierPrice.from_row(tier) for tier in tiers]
    if not currency:
        return rows
    wanted = currency.lower()
    return [tier for tier in rows if tier.currency is None or tier.currency.lower() == wanted]


def base_price(tiers: Sequence[TierPrice]) -> int | None:
    ordered = _ascending(tiers)
    for tier in ordered:
        if tier.is_base:
            return tier.amount
    return ordered[0].amount if ordered else None


def savings_percent(tier: TierPrice, base: int | None) -> int:
    if not base:
        return 0
    ratio = Decimal(1) - Decimal(tier.amount) / Decimal(base)
    return int((ratio * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def bulk_tiers(tiers: Iterable[TierLike | TierPrice], *, currency: str | None = None) -> list[BulkTier]:
    rows = _for_currency(tiers, currency)
    base = base_price(rows)
    return [
        BulkTier(
            min_quantity=int(tier.min_quantity or 0),
            max_quantity=tier.max_quantity,
            amount=tier.amount,
            savings_percent=savings_percent(tier, base),
        )
        for tier in _ascending(rows)
        if not tier.is_base
    ]


def resolve_price(
    tiers: Iterable[TierLike | TierPrice],
    quantity: int,
    *,
    currency: str | None = None,
    last_known_price: int | None = None,
) -> TierResolution:
    """Pick the unit price for ``quantity`` from quantity-break tiers.

    The highest tier whose range covers the quantity wins. Without a match the
    base price applies, and without any tiers the last known price is kept so a
    catalog hiccup never zeroes a line.
    """
    if quantity is None or int(quantity) <= 0:
        raise InvalidQuantity("Quantity must be a positive integer", quantity=quantity)
    quantity = int(quantity)
    rows = _for_currency(tiers, currency)
    base = base_price(rows)

    for tier in reversed(_ascending(rows)):
        if tier.covers(quantity):
            return TierResolution(unit_price=tier.amount, tier=None if tier.is_base else tier, base_price=base)

    if base is not None:
        return TierResolution(unit_price=base, tier=None, base_price=base)
    if last_known_price is not None:
        return TierResolution(unit_price=int(last_known_price), tier=None, base_price=None, degraded=True)
    raise NotFound("No price configured for this variant")


async def resolve_variant_price(
    session: AsyncSession,
    variant_id: UUID,
    quantity: int,
    *,
    currency: str | None = None,
    last_known_price: int | None = None,
) -> TierResolution:
    try:
        tiers = await catalog_service.list_price_tiers(session, variant_id)
    except UpstreamUnavailable as exc:
        if last_known_price is None:
            raise
        metrics.record_upstream_failure("catalog")
        logger.warning("tier_lookup_failed", extra={"variant_id": str(variant_id), "error": str(exc)})
        return TierResolution(unit_price=int(last_known_price), tier=None, base_price=None, degraded=True)
    return resolve_price(tiers, quantity, currency=currency, last_known_price=last_known_price)
