from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    detail: Any
    code: str | None = None
    reason: str | None = None
    amount_needed: int | None = None
