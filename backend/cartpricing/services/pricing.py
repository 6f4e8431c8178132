from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal

from cartpricing.core.config import settings


# Amounts are integer minor units (cents); only percentages pass through Decimal.
MINOR_UNIT = Decimal("1")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_minor(value: Decimal | int | float | str, *, rounding: MoneyRounding | None = None) -> int:
    mode = _ROUNDING_MAP.get(str(rounding or settings.money_rounding), ROUND_HALF_UP)
    return int(Decimal(str(value)).quantize(MINOR_UNIT, rounding=mode))


def percent_of(base: int, percent: Decimal | int | float | str, *, rounding: MoneyRounding | None = None) -> int:
    if base <= 0:
        return 0
    pct = Decimal(str(percent))
    if pct <= 0:
        return 0
    return quantize_minor(Decimal(base) * pct / Decimal("100"), rounding=rounding)


def reward_amount(
    base: int,
    *,
    reward_type: str,
    value: Decimal | int | float | str,
    rounding: MoneyRounding | None = None,
) -> int:
    """Discount worth of a percentage or fixed reward, never more than ``base``."""
    if base <= 0:
        return 0
    if reward_type == "percentage":
        amount = percent_of(base, value, rounding=rounding)
    else:
        amount = quantize_minor(value, rounding=rounding)
    if amount < 0:
        return 0
    return min(amount, base)


def points_to_discount(points: int, *, rate: float | None = None, rounding: MoneyRounding | None = None) -> int:
    redemption_rate = Decimal(str(rate if rate else settings.points_redemption_rate))
    if points <= 0:
        return 0
    # rate is currency per point; amounts are cents.
    return quantize_minor(Decimal(points) * redemption_rate * Decimal("100"), rounding=rounding)


def format_minor(amount: int, currency: str) -> str:
    sign = "-" if amount < 0 else ""
    whole, cents = divmod(abs(int(amount)), 100)
    return f"{sign}{currency.upper()} {whole}.{cents:02d}"
