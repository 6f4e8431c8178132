from __future__ import annotations

from typing import TYPE_CHECKING, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cartpricing.core.config import settings
from cartpricing.core.errors import CartNotFound, NotFound
from cartpricing.models.cart import Cart, CartItem, CartItemAdjustment
from cartpricing.schemas.cart import DiscountStatePatch

if TYPE_CHECKING:
    from cartpricing.services.adjustments import AdjustmentLine


async def get_cart(session: AsyncSession, cart_id: UUID) -> Cart:
    result = await session.execute(
        select(Cart)
        .options(selectinload(Cart.items).selectinload(CartItem.adjustments))
        .where(Cart.id == cart_id)
        .execution_options(populate_existing=True)
    )
    cart = result.scalar_one_or_none()
    if cart is None:
        raise CartNotFound(f"Cart with id {cart_id} not found", cart_id=str(cart_id))
    return cart


async def create_cart(
    session: AsyncSession, *, customer_id: UUID | None = None, currency: str | None = None
) -> Cart:
    cart = Cart(customer_id=customer_id, currency=(currency or settings.default_currency).upper())
    session.add(cart)
    await session.commit()
    return await get_cart(session, cart.id)


async def set_line_item_adjustments(
    session: AsyncSession, cart_id: UUID, item_id: UUID, adjustments: Sequence["AdjustmentLine"]
) -> None:
    """Replace the whole adjustment collection of one line item in a single write."""
    await session.execute(delete(CartItemAdjustment).where(CartItemAdjustment.item_id == item_id))
    session.add_all(
        [
            CartItemAdjustment(
                item_id=item_id,
                kind=line.kind,
                code=line.code,
                amount=int(line.amount),
                description=line.description,
                promotion_id=line.promotion_id,
                position=index,
            )
            for index, line in enumerate(adjustments)
        ]
    )
    await session.commit()


async def update_cart_metadata(session: AsyncSession, cart_id: UUID, patch: DiscountStatePatch) -> None:
    values = patch.model_dump(exclude_unset=True)
    if not values:
        return
    await session.execute(update(Cart).where(Cart.id == cart_id).values(**values))
    await session.commit()


async def _next_position(session: AsyncSession, cart_id: UUID) -> int:
    result = await session.execute(select(func.max(CartItem.position)).where(CartItem.cart_id == cart_id))
    current = result.scalar_one_or_none()
    return 0 if current is None else int(current) + 1


async def add_line_item(
    session: AsyncSession,
    cart_id: UUID,
    *,
    variant_id: UUID | None,
    product_id: UUID | None,
    title: str,
    quantity: int,
    unit_price: int,
    is_reward: bool = False,
    pwp_rule_id: UUID | None = None,
) -> CartItem:
    item = CartItem(
        cart_id=cart_id,
        variant_id=variant_id,
        product_id=product_id,
        title=title,
        quantity=quantity,
        unit_price=unit_price,
        position=await _next_position(session, cart_id),
        is_reward=is_reward,
        pwp_rule_id=pwp_rule_id,
    )
    session.add(item)
    await session.commit()
    return item


async def _require_item(session: AsyncSession, cart_id: UUID, item_id: UUID) -> CartItem:
    result = await session.execute(select(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart_id))
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFound("Cart item not found", item_id=str(item_id))
    return item


async def set_line_item_quantity(session: AsyncSession, cart_id: UUID, item_id: UUID, quantity: int) -> None:
    await _require_item(session, cart_id, item_id)
    await session.execute(update(CartItem).where(CartItem.id == item_id).values(quantity=quantity))
    await session.commit()


async def set_line_item_price(session: AsyncSession, cart_id: UUID, item_id: UUID, unit_price: int) -> None:
    await session.execute(
        update(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart_id).values(unit_price=unit_price)
    )
    await session.commit()


async def delete_line_item(session: AsyncSession, cart_id: UUID, item_id: UUID) -> None:
    await _require_item(session, cart_id, item_id)
    await session.execute(delete(CartItemAdjustment).where(CartItemAdjustment.item_id == item_id))
    await session.execute(delete(CartItem).where(CartItem.id == item_id))
    await session.commit()
