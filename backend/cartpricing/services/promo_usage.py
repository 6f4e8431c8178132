from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.models.cart import Cart
from cartpricing.services import promotions as promotions_service

logger = logging.getLogger(__name__)


def used_rule_ids(cart: Cart) -> list[UUID]:
    """Promotion rules a checkout of ``cart`` would redeem, each listed once."""
    rule_ids: list[UUID] = []
    for rule_id in (cart.applied_membership_promo_id, cart.applied_coupon_id):
        if rule_id and rule_id not in rule_ids:
            rule_ids.append(rule_id)
    for item in cart.items or []:
        if item.is_reward and item.pwp_rule_id and item.pwp_rule_id not in rule_ids:
            rule_ids.append(item.pwp_rule_id)
    return rule_ids


async def _claim(session: AsyncSession, cart_id: UUID) -> bool:
    result = await session.execute(
        update(Cart)
        .where(Cart.id == cart_id, Cart.usage_recorded_at.is_(None))
        .values(usage_recorded_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return int(getattr(result, "rowcount", 0) or 0) == 1


async def record_promotion_usage(session: AsyncSession, cart: Cart) -> list[UUID]:
    """Count each redeemed rule once per cart; a repeated call returns the same ids without counting."""
    rule_ids = used_rule_ids(cart)
    if not rule_ids:
        return []
    if not await _claim(session, cart.id):
        logger.info("promotion_usage_already_recorded", extra={"cart_id": str(cart.id)})
        return rule_ids
    for rule_id in rule_ids:
        await promotions_service.increment_redemption_count(session, rule_id)
    await session.commit()
    logger.info("promotion_usage_recorded", extra={"cart_id": str(cart.id), "rules": [str(r) for r in rule_ids]})
    return rule_ids
