import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cartpricing.api.v1 import api_router
from cartpricing.core.config import settings
from cartpricing.core.errors import PricingError, Unexpected
from cartpricing.core.logging_config import configure_logging
from cartpricing.middleware import RequestLoggingMiddleware
from cartpricing.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


def get_application() -> FastAPI:
    configure_logging(settings.log_json, level=settings.log_level)
    tags_metadata = [
        {"name": "cart", "description": "Carts, line items and priced snapshots"},
        {"name": "membership-promo", "description": "Member-only promotions"},
        {"name": "coupons", "description": "Coupon codes"},
        {"name": "points", "description": "Loyalty points redemption"},
        {"name": "pwp", "description": "Purchase-with-purchase offers"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(PricingError)
    async def pricing_error_handler(request: Request, exc: PricingError):
        if exc.status_code >= 500:
            logger.warning("pricing_error", extra={"path": request.url.path, "code": exc.code, **exc.context})
        payload = ErrorResponse(**exc.payload())
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", extra={"path": request.url.path, "method": request.method})
        error = Unexpected("Unexpected error while pricing the cart")
        return JSONResponse(status_code=error.status_code, content=ErrorResponse(**error.payload()).model_dump())

    return app


app = get_application()
