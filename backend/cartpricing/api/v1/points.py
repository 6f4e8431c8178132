from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.db.session import get_session
from cartpricing.schemas.discounts import DiscountResponse, PointsApply, PointsCalculateResponse
from cartpricing.services import reconciler

router = APIRouter(prefix="/carts", tags=["points"])


@router.post("/{cart_id}/points/calculate", response_model=PointsCalculateResponse)
async def calculate_points(cart_id: UUID, payload: PointsApply, session: AsyncSession = Depends(get_session)):
    preview = await reconciler.preview_points(session, cart_id, payload.points_to_redeem)
    return reconciler.describe_points_preview(preview)


@router.post("/{cart_id}/points/apply", response_model=DiscountResponse)
async def apply_points(cart_id: UUID, payload: PointsApply, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.apply_points(session, cart_id, payload.points_to_redeem)
    return await reconciler.describe_outcome(session, outcome)


@router.post("/{cart_id}/points/remove", response_model=DiscountResponse)
async def remove_points(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    outcome = await reconciler.remove_points(session, cart_id)
    return await reconciler.describe_outcome(session, outcome)
