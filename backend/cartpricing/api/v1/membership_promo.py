from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.db.session import get_session
from cartpricing.schemas.discounts import CartRef, DiscountResponse, MembershipPromoApply
from cartpricing.services import reconciler

router = APIRouter(prefix="/membership-promo", tags=["membership-promo"])


@router.post("/apply", response_model=DiscountResponse)
async def apply_membership_promo(payload: MembershipPromoApply, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.apply_membership_promo(session, payload.cart_id, payload.promo_id)
    return await reconciler.describe_outcome(session, outcome)


@router.post("/remove", response_model=DiscountResponse)
async def remove_membership_promo(payload: CartRef, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.remove_membership_promo(session, payload.cart_id)
    return await reconciler.describe_outcome(session, outcome)
