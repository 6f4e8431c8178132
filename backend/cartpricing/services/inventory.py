from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.models.catalog import InventoryLevel
from cartpricing.services.upstream import guarded


async def _levels(session: AsyncSession, variant_id: UUID) -> list[InventoryLevel]:
    result = await session.execute(select(InventoryLevel).where(InventoryLevel.variant_id == variant_id))
    return list(result.scalars().all())


async def get_available_quantity(session: AsyncSession, variant_id: UUID) -> int | None:
    """Stocked minus reserved summed over locations; None when the variant is not tracked."""
    levels = await guarded("inventory", _levels(session, variant_id))
    if not levels:
        return None
    available = 0
    for level in levels:
        available += max(0, int(level.stocked_quantity or 0) - int(level.reserved_quantity or 0))
    return available
