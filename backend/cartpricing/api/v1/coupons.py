from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.db.session import get_session
from cartpricing.schemas.discounts import CartRef, CouponApply, CouponValidateResponse, DiscountResponse
from cartpricing.services import reconciler

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(payload: CouponApply, session: AsyncSession = Depends(get_session)):
    """Preview a coupon's discount on the cart without applying it."""
    preview = await reconciler.preview_coupon(session, payload.cart_id, payload.code)
    return reconciler.describe_coupon_preview(preview)


@router.post("/apply", response_model=DiscountResponse)
async def apply_coupon(payload: CouponApply, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.apply_coupon(session, payload.cart_id, payload.code)
    return await reconciler.describe_outcome(session, outcome)


@router.post("/remove", response_model=DiscountResponse)
async def remove_coupon(payload: CartRef, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.remove_coupon(session, payload.cart_id)
    return await reconciler.describe_outcome(session, outcome)
