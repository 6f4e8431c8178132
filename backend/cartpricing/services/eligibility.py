from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping
from uuid import UUID

from cartpricing.models.cart import Cart, CartItem
from cartpricing.models.promo import PromotionKind, PromotionRule, PromotionStatus, RewardType, TriggerType
from cartpricing.services import pricing

NOT_STARTED = "not_started"
EXPIRED = "expired"
INACTIVE = "inactive"
USAGE_LIMIT_REACHED = "usage_limit_reached"
ALREADY_APPLIED = "already_applied"
BELOW_CART_VALUE = "below_cart_value"
TRIGGER_PRODUCT_MISSING = "trigger_product_missing"
MINIMUM_PURCHASE_NOT_MET = "minimum_purchase_not_met"
RULE_MISSING = "rule_missing"


@dataclass(frozen=True)
class Eligibility:
    rule: PromotionRule
    eligible: bool
    current_cart_value: int
    reason: str | None = None
    amount_needed: int | None = None
    discount_amount: int | None = None

    @property
    def rule_id(self) -> UUID:
        return self.rule.id

    @property
    def kind(self) -> PromotionKind:
        return self.rule.kind


@dataclass(frozen=True)
class TriggerStatus:
    met: bool
    reason: str | None = None
    amount_needed: int | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _paying_items(cart: Cart) -> list[CartItem]:
    return [item for item in cart.items or [] if not item.is_reward and int(item.quantity or 0) > 0]


def cart_value(cart: Cart) -> int:
    """Stored value of the cart excluding PWP reward items."""
    return sum(int(item.unit_price or 0) * int(item.quantity or 0) for item in _paying_items(cart))


def applied_rule_ids(cart: Cart) -> set[UUID]:
    applied: set[UUID] = set()
    for item in cart.items or []:
        if item.is_reward and item.pwp_rule_id:
            applied.add(item.pwp_rule_id)
        for adjustment in item.adjustments or []:
            if adjustment.promotion_id:
                applied.add(adjustment.promotion_id)
    for rule_id in (cart.applied_membership_promo_id, cart.applied_coupon_id):
        if rule_id:
            applied.add(rule_id)
    return applied


def availability_reason(rule: PromotionRule, now: datetime) -> str | None:
    """Why the rule cannot be used at ``now`` regardless of cart contents, if at all."""
    if rule.status != PromotionStatus.active:
        return INACTIVE
    now = _as_utc(now)
    starts_at = _as_utc(rule.starts_at)
    ends_at = _as_utc(rule.ends_at)
    if starts_at is not None and now < starts_at:
        return NOT_STARTED
    if ends_at is not None and now > ends_at:
        return EXPIRED
    return None


def _usage_capped(rule: PromotionRule) -> bool:
    return rule.usage_limit is not None and int(rule.redemption_count or 0) >= int(rule.usage_limit)


def trigger_status(cart: Cart, rule: PromotionRule, *, value: int | None = None) -> TriggerStatus:
    value = cart_value(cart) if value is None else value
    if rule.trigger_type == TriggerType.cart_value:
        threshold = int(rule.trigger_cart_value or 0)
        if value >= threshold:
            return TriggerStatus(met=True)
        return TriggerStatus(met=False, reason=BELOW_CART_VALUE, amount_needed=max(0, threshold - value))
    if rule.trigger_type == TriggerType.product:
        if any(item.product_id == rule.trigger_product_id for item in _paying_items(cart)):
            return TriggerStatus(met=True)
        return TriggerStatus(met=False, reason=TRIGGER_PRODUCT_MISSING)
    return TriggerStatus(met=True)


def _reward(rule: PromotionRule, base: int | None) -> int | None:
    if base is None:
        return None
    reward_type = rule.reward_type.value if isinstance(rule.reward_type, RewardType) else str(rule.reward_type)
    return pricing.reward_amount(base, reward_type=reward_type, value=rule.reward_value)


def evaluate_one(
    cart: Cart,
    rule: PromotionRule,
    now: datetime,
    *,
    reward_base: int | None = None,
) -> Eligibility:
    """Decide whether ``rule`` is currently satisfied by ``cart`` and what it is worth.

    ``reward_base`` is the price of the reward item for PWP rules; membership
    promos and coupons are worth a share of the cart value.
    """
    value = cart_value(cart)
    blocked = availability_reason(rule, now)
    if blocked is None and _usage_capped(rule):
        blocked = USAGE_LIMIT_REACHED
    if blocked is None and rule.id in applied_rule_ids(cart):
        blocked = ALREADY_APPLIED
    if blocked is not None:
        return Eligibility(rule=rule, eligible=False, current_cart_value=value, reason=blocked)

    trigger = trigger_status(cart, rule, value=value)
    if not trigger.met:
        return Eligibility(
            rule=rule,
            eligible=False,
            current_cart_value=value,
            reason=trigger.reason,
            amount_needed=trigger.amount_needed,
        )

    if rule.kind in (PromotionKind.membership, PromotionKind.coupon):
        minimum = int(rule.minimum_purchase or 0)
        if value < minimum:
            return Eligibility(
                rule=rule,
                eligible=False,
                current_cart_value=value,
                reason=MINIMUM_PURCHASE_NOT_MET,
                amount_needed=minimum - value,
            )
        return Eligibility(rule=rule, eligible=True, current_cart_value=value, discount_amount=_reward(rule, value))

    return Eligibility(rule=rule, eligible=True, current_cart_value=value, discount_amount=_reward(rule, reward_base))


def evaluate(
    cart: Cart,
    rules: Iterable[PromotionRule],
    now: datetime,
    *,
    reward_prices: Mapping[UUID, int] | None = None,
) -> list[Eligibility]:
    prices = reward_prices or {}
    return [evaluate_one(cart, rule, now, reward_base=prices.get(rule.id)) for rule in rules]


def best_membership_promo(cart: Cart, rules: Iterable[PromotionRule], now: datetime) -> Eligibility | None:
    best: Eligibility | None = None
    for result in evaluate(cart, rules, now):
        if not result.eligible or not result.discount_amount:
            continue
        if best is None or result.discount_amount > (best.discount_amount or 0):
            best = result
    return best


def reward_hold_status(cart: Cart, rule: PromotionRule | None, now: datetime) -> TriggerStatus:
    """Whether an already-added PWP reward still earns its discount."""
    if rule is None:
        return TriggerStatus(met=False, reason=RULE_MISSING)
    blocked = availability_reason(rule, now)
    if blocked is not None:
        return TriggerStatus(met=False, reason=blocked)
    return trigger_status(cart, rule)
