from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.db.session import get_session
from cartpricing.schemas.discounts import DiscountResponse, PWPApply, PWPCheckResponse, PWPRemove
from cartpricing.services import cart_store
from cartpricing.services import eligibility
from cartpricing.services import reconciler

router = APIRouter(prefix="/pwp", tags=["pwp"])


@router.get("/check", response_model=PWPCheckResponse)
async def check_offers(cart_id: UUID = Query(...), session: AsyncSession = Depends(get_session)):
    cart = await cart_store.get_cart(session, cart_id)
    offers = await reconciler.pwp_offers(session, cart)
    return PWPCheckResponse(
        cart_id=cart.id,
        current_cart_value=eligibility.cart_value(cart),
        offers=[reconciler.eligibility_read(result) for result in offers],
    )


@router.post("/apply", response_model=DiscountResponse)
async def apply_pwp(payload: PWPApply, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.apply_pwp(session, payload.cart_id, payload.pwp_rule_id, payload.variant_id)
    return await reconciler.describe_outcome(session, outcome)


@router.post("/remove", response_model=DiscountResponse)
async def remove_pwp(payload: PWPRemove, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.remove_pwp(session, payload.cart_id, payload.pwp_rule_id)
    return await reconciler.describe_outcome(session, outcome)
