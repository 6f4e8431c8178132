from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.core.config import settings
from cartpricing.core.errors import RuleNotFound
from cartpricing.models.promo import PromotionKind, PromotionRule, PromotionStatus
from cartpricing.services.upstream import guarded


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


async def list_active_promotion_rules(
    session: AsyncSession, kind: PromotionKind, *, limit: int | None = None
) -> list[PromotionRule]:
    async def _rules() -> list[PromotionRule]:
        result = await session.execute(
            select(PromotionRule)
            .where(PromotionRule.kind == kind, PromotionRule.status == PromotionStatus.active)
            .order_by(PromotionRule.created_at, PromotionRule.name)
            .limit(limit or settings.promo_list_limit)
        )
        return list(result.scalars().all())

    return await guarded("promotions", _rules())


async def get_rule(session: AsyncSession, rule_id: UUID) -> PromotionRule | None:
    return await guarded("promotions", session.get(PromotionRule, rule_id))


async def require_rule(session: AsyncSession, rule_id: UUID, kind: PromotionKind) -> PromotionRule:
    rule = await get_rule(session, rule_id)
    if rule is None or rule.kind != kind:
        raise RuleNotFound(f"Promotion {rule_id} no longer exists", rule_id=str(rule_id))
    return rule


async def find_coupon(session: AsyncSession, code: str) -> PromotionRule | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None

    async def _coupon() -> PromotionRule | None:
        result = await session.execute(
            select(PromotionRule).where(PromotionRule.kind == PromotionKind.coupon, PromotionRule.code == cleaned)
        )
        return result.scalar_one_or_none()

    return await guarded("promotions", _coupon())


async def increment_redemption_count(session: AsyncSession, rule_id: UUID) -> None:
    await session.execute(
        update(PromotionRule)
        .where(PromotionRule.id == rule_id)
        .values(redemption_count=PromotionRule.redemption_count + 1)
    )
