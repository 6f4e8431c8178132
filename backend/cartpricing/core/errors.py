from __future__ import annotations

from typing import Any

from fastapi import status


class PricingError(Exception):
    """Base class for errors surfaced to API callers with a stable code."""

    code = "pricing_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def payload(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class InvalidInput(PricingError):
    code = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidQuantity(InvalidInput):
    code = "invalid_quantity"


class NotFound(PricingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class CartNotFound(NotFound):
    code = "cart_not_found"


class RuleNotFound(NotFound):
    code = "rule_not_found"


class NotEligible(PricingError):
    """A discount source exists but its conditions are not met right now."""

    code = "not_eligible"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, detail: str, *, reason: str, amount_needed: int | None = None, **context: Any) -> None:
        super().__init__(detail, **context)
        self.reason = reason
        self.amount_needed = amount_needed

    def payload(self) -> dict[str, Any]:
        data = super().payload()
        data["reason"] = self.reason
        data["amount_needed"] = self.amount_needed
        return data


class UpstreamUnavailable(PricingError):
    code = "upstream_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, collaborator: str, detail: str | None = None) -> None:
        super().__init__(detail or f"{collaborator} lookup failed", collaborator=collaborator)
        self.collaborator = collaborator


class Unexpected(PricingError):
    code = "unexpected"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
