from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.models.catalog import PriceTier, Product, ProductVariant
from cartpricing.services.upstream import guarded


async def _price_tiers(session: AsyncSession, variant_id: UUID) -> list[PriceTier]:
    result = await session.execute(
        select(PriceTier).where(PriceTier.variant_id == variant_id).order_by(PriceTier.min_quantity)
    )
    return list(result.scalars().all())


async def list_price_tiers(session: AsyncSession, variant_id: UUID) -> list[PriceTier]:
    return await guarded("catalog", _price_tiers(session, variant_id))


async def get_variant(session: AsyncSession, variant_id: UUID) -> ProductVariant | None:
    return await guarded("catalog", session.get(ProductVariant, variant_id))


async def get_variant_product(session: AsyncSession, variant_id: UUID) -> UUID | None:
    variant = await get_variant(session, variant_id)
    return variant.product_id if variant else None


async def get_product(session: AsyncSession, product_id: UUID) -> Product | None:
    return await guarded("catalog", session.get(Product, product_id))
