import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cartpricing.core.logging_config import request_id_ctx_var

logger = logging.getLogger("cartpricing.request")

REQUEST_ID_HEADER = "X-Request-ID"


def _incoming_request_id(request: Request) -> str:
    # Callers retrying an idempotent discount write may resend their own id.
    raw = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if raw and len(raw) <= 64:
        return raw
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request)
        token = request_id_ctx_var.set(request_id)
        started = time.perf_counter()
        request.state.request_id = request_id
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            logger.info(
                "request",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                },
            )
            request_id_ctx_var.reset(token)
