from fastapi import APIRouter

from cartpricing.api.v1 import carts
from cartpricing.api.v1 import coupons
from cartpricing.api.v1 import membership_promo
from cartpricing.api.v1 import points
from cartpricing.api.v1 import pwp
from cartpricing.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(carts.router)
api_router.include_router(points.router)
api_router.include_router(membership_promo.router)
api_router.include_router(coupons.router)
api_router.include_router(pwp.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
