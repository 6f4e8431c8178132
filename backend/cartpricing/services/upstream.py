from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from cartpricing.core.config import settings
from cartpricing.core.errors import UpstreamUnavailable

T = TypeVar("T")


async def guarded(collaborator: str, awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
    """Await a read against a collaborator with a deadline; failures become UpstreamUnavailable."""
    deadline = settings.upstream_timeout_seconds if timeout is None else timeout
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise UpstreamUnavailable(collaborator, f"{collaborator} lookup timed out") from exc
    except SQLAlchemyError as exc:
        raise UpstreamUnavailable(collaborator) from exc
