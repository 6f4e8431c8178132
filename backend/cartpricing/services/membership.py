from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.models.membership import Membership, MembershipStatus, PointsBalance
from cartpricing.services.upstream import guarded


async def _membership(session: AsyncSession, customer_id: UUID) -> Membership | None:
    result = await session.execute(select(Membership).where(Membership.customer_id == customer_id))
    return result.scalar_one_or_none()


async def get_active_membership(session: AsyncSession, customer_id: UUID | None) -> Membership | None:
    if customer_id is None:
        return None
    membership = await guarded("membership", _membership(session, customer_id))
    if membership is None or membership.status != MembershipStatus.active:
        return None
    return membership


async def is_member(session: AsyncSession, customer_id: UUID | None) -> bool:
    return await get_active_membership(session, customer_id) is not None


async def get_customer_tier_discount_percentage(session: AsyncSession, customer_id: UUID | None) -> Decimal:
    membership = await get_active_membership(session, customer_id)
    if membership is None or not membership.tier_slug:
        return Decimal("0")
    return Decimal(str(membership.discount_percentage or 0))


async def get_points_balance(session: AsyncSession, customer_id: UUID | None) -> int:
    if customer_id is None:
        return 0

    async def _balance() -> int:
        result = await session.execute(select(PointsBalance.balance).where(PointsBalance.customer_id == customer_id))
        return int(result.scalar_one_or_none() or 0)

    return await guarded("membership", _balance())
