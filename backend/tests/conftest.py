import asyncio
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cartpricing.core import metrics
from cartpricing.db.base import Base
from cartpricing.models import (
    Cart,
    InventoryLevel,
    Membership,
    MembershipStatus,
    PointsBalance,
    PriceTier,
    Product,
    ProductVariant,
    PromotionKind,
    PromotionRule,
    PromotionStatus,
    RewardType,
    TriggerType,
)
from cartpricing.services import cart_store


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def session_factory() -> Generator[async_sessionmaker, None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield SessionLocal
    asyncio.run(engine.dispose())


class Seed:
    """Row builders for the collaborator tables, bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def variant(
        self,
        *,
        title: str = "Widget",
        tiers: tuple[tuple[int, int | None, int | None], ...] = ((1000, None, None),),
        stock: int | None = None,
        product: Product | None = None,
    ) -> ProductVariant:
        if product is None:
            product = Product(title=title)
            self.session.add(product)
            await self.session.flush()
        variant = ProductVariant(product_id=product.id, title="Default")
        self.session.add(variant)
        await self.session.flush()
        for amount, min_quantity, max_quantity in tiers:
            self.session.add(
                PriceTier(
                    variant_id=variant.id,
                    currency="MYR",
                    amount=amount,
                    min_quantity=min_quantity,
                    max_quantity=max_quantity,
                )
            )
        if stock is not None:
            self.session.add(InventoryLevel(variant_id=variant.id, stocked_quantity=stock, reserved_quantity=0))
        await self.session.commit()
        return variant

    async def rule(
        self,
        kind: PromotionKind,
        *,
        name: str = "Promo",
        reward_type: RewardType = RewardType.percentage,
        reward_value: Decimal | int = Decimal("10"),
        trigger_type: TriggerType = TriggerType.none,
        **fields,
    ) -> PromotionRule:
        rule = PromotionRule(
            kind=kind,
            name=name,
            status=fields.pop("status", PromotionStatus.active),
            reward_type=reward_type,
            reward_value=Decimal(str(reward_value)),
            trigger_type=trigger_type,
            redemption_count=fields.pop("redemption_count", 0),
            **fields,
        )
        self.session.add(rule)
        await self.session.commit()
        return rule

    async def member(
        self,
        customer_id: uuid.UUID,
        *,
        tier_slug: str | None = None,
        tier_name: str | None = None,
        discount_percentage: Decimal | int = 0,
        points: int = 0,
        status: MembershipStatus = MembershipStatus.active,
    ) -> Membership:
        membership = Membership(
            customer_id=customer_id,
            status=status,
            tier_slug=tier_slug,
            tier_name=tier_name,
            discount_percentage=Decimal(str(discount_percentage)),
        )
        self.session.add(membership)
        if points:
            self.session.add(PointsBalance(customer_id=customer_id, balance=points))
        await self.session.commit()
        return membership

    async def cart(self, *, customer_id: uuid.UUID | None = None) -> Cart:
        return await cart_store.create_cart(self.session, customer_id=customer_id)

    async def line(self, cart: Cart, variant: ProductVariant, *, quantity: int = 1, unit_price: int = 1000):
        return await cart_store.add_line_item(
            self.session,
            cart.id,
            variant_id=variant.id,
            product_id=variant.product_id,
            title="Widget",
            quantity=quantity,
            unit_price=unit_price,
        )


@pytest.fixture
def seed() -> type[Seed]:
    return Seed
