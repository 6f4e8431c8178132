from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.db.session import get_session
from cartpricing.schemas.cart import CartCreate, CartItemCreate, CartItemUpdate, CartPricingRead
from cartpricing.schemas.discounts import SyncPricesResponse, UsageRecordedRead
from cartpricing.services import cart_store
from cartpricing.services import promo_usage
from cartpricing.services import reconciler
from cartpricing.services.receipts import render_cart_receipt_pdf

router = APIRouter(prefix="/carts", tags=["cart"])


@router.post("", response_model=CartPricingRead, status_code=status.HTTP_201_CREATED)
async def create_cart(payload: CartCreate, session: AsyncSession = Depends(get_session)):
    cart = await cart_store.create_cart(session, customer_id=payload.customer_id, currency=payload.currency)
    return reconciler.serialize(await reconciler.reconcile(session, cart))


@router.get("/{cart_id}/pricing", response_model=CartPricingRead)
async def get_pricing(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    return reconciler.serialize(await reconciler.snapshot(session, cart_id))


@router.post("/{cart_id}/items", response_model=CartPricingRead, status_code=status.HTTP_201_CREATED)
async def add_item(cart_id: UUID, payload: CartItemCreate, session: AsyncSession = Depends(get_session)):
    reconciled = await reconciler.add_item(session, cart_id, payload.variant_id, payload.quantity)
    return reconciler.serialize(reconciled)


@router.patch("/{cart_id}/items/{item_id}", response_model=CartPricingRead)
async def update_item(
    cart_id: UUID,
    item_id: UUID,
    payload: CartItemUpdate,
    session: AsyncSession = Depends(get_session),
):
    reconciled = await reconciler.update_item_quantity(session, cart_id, item_id, payload.quantity)
    return reconciler.serialize(reconciled)


@router.delete("/{cart_id}/items/{item_id}", response_model=CartPricingRead)
async def delete_item(cart_id: UUID, item_id: UUID, session: AsyncSession = Depends(get_session)):
    return reconciler.serialize(await reconciler.delete_item(session, cart_id, item_id))


@router.post("/{cart_id}/sync-prices", response_model=SyncPricesResponse)
async def sync_prices(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    return reconciler.describe_sync(await reconciler.sync_prices(session, cart_id))


@router.get("/{cart_id}/receipt.pdf")
async def receipt_pdf(cart_id: UUID, session: AsyncSession = Depends(get_session)) -> Response:
    reconciled = await reconciler.snapshot(session, cart_id)
    content = render_cart_receipt_pdf(reconciled)
    headers = {"Content-Disposition": f'inline; filename="cart-{cart_id}.pdf"'}
    return Response(content=content, media_type="application/pdf", headers=headers)


@router.post("/{cart_id}/complete", response_model=UsageRecordedRead)
async def complete_cart(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    """Count the promotions this cart redeemed once its order has been placed."""
    cart = await cart_store.get_cart(session, cart_id)
    rule_ids = await promo_usage.record_promotion_usage(session, cart)
    return UsageRecordedRead(cart_id=cart.id, rule_ids=rule_ids)
