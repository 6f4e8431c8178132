from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cartpricing.core import metrics
from cartpricing.core.config import settings
from cartpricing.core.errors import InvalidInput, InvalidQuantity, NotEligible, NotFound, RuleNotFound, UpstreamUnavailable
from cartpricing.models.cart import AdjustmentKind, Cart, CartItem
from cartpricing.models.promo import PromotionKind, PromotionRule
from cartpricing.schemas.cart import (
    AdjustmentRead,
    BulkTierRead,
    CartItemRead,
    CartPricingRead,
    DiscountStatePatch,
    DiscountStateRead,
    EligibilityRead,
    ItemPricingRead,
    TotalsRead,
)
from cartpricing.schemas.discounts import (
    CouponSummaryRead,
    CouponValidateResponse,
    DiscountResponse,
    PointsCalculateResponse,
    PriceChangeRead,
    SyncPricesResponse,
)
from cartpricing.services import adjustments as ledger
from cartpricing.services import cart_store
from cartpricing.services import catalog as catalog_service
from cartpricing.services import eligibility
from cartpricing.services import inventory as inventory_service
from cartpricing.services import membership as membership_service
from cartpricing.services import pricing
from cartpricing.services import promotions as promotions_service
from cartpricing.services.tier_pricing import (
    BulkTier,
    TierResolution,
    bulk_tiers,
    resolve_price,
    resolve_variant_price,
)
from cartpricing.services.totals import CartTotals, PricedLine, compute_totals

logger = logging.getLogger(__name__)

CART_LEVEL_KINDS = (
    AdjustmentKind.tier,
    AdjustmentKind.membership_promo,
    AdjustmentKind.coupon,
    AdjustmentKind.points,
)

ANOTHER_PROMO_APPLIED = "another_promo_applied"
MEMBERSHIP_REQUIRED = "membership_required"
NO_APPLICABLE_PROMO = "no_applicable_promo"
INSUFFICIENT_POINTS = "insufficient_points"
POINTS_EXCEED_SUBTOTAL = "points_exceed_subtotal"
OUT_OF_STOCK = "out_of_stock"
INVALID_COUPON = "invalid_code"

_REASON_MESSAGES = {
    eligibility.NOT_STARTED: "This offer has not started yet",
    eligibility.EXPIRED: "This offer has expired",
    eligibility.INACTIVE: "This offer is no longer active",
    eligibility.USAGE_LIMIT_REACHED: "This offer has reached its usage limit",
    eligibility.ALREADY_APPLIED: "This offer is already applied to your cart",
    eligibility.TRIGGER_PRODUCT_MISSING: "You must have the trigger product in your cart to qualify for this offer",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _not_eligible(result: eligibility.Eligibility, currency: str) -> NotEligible:
    reason = result.reason or "not_eligible"
    if reason == eligibility.BELOW_CART_VALUE:
        threshold = pricing.format_minor(int(result.rule.trigger_cart_value or 0), currency)
        detail = f"Cart value must be at least {threshold} to qualify for this offer"
    elif reason == eligibility.MINIMUM_PURCHASE_NOT_MET:
        minimum = pricing.format_minor(int(result.rule.minimum_purchase or 0), currency)
        detail = f"A minimum purchase of {minimum} is required for this offer"
    else:
        detail = _REASON_MESSAGES.get(reason, "This offer is not available for your cart")
    return NotEligible(detail, reason=reason, amount_needed=result.amount_needed, rule_id=str(result.rule_id))


@dataclass(frozen=True)
class LinePricing:
    item: CartItem
    correct_price: int
    adjustments: list[ledger.AdjustmentLine]
    resolution: TierResolution | None = None
    tiers: list[BulkTier] = field(default_factory=list)
    inventory_quantity: int | None = None
    discount_suspended: bool = False
    suspension_reason: str | None = None
    amount_needed: int | None = None

    @property
    def price_needs_update(self) -> bool:
        return not self.item.is_reward and self.correct_price != int(self.item.unit_price)

    def priced(self) -> PricedLine:
        return PricedLine(
            correct_price=self.correct_price,
            quantity=int(self.item.quantity),
            adjustments=tuple(self.adjustments),
            is_reward=bool(self.item.is_reward),
            discount_suspended=self.discount_suspended,
        )


@dataclass(frozen=True)
class ReconciledCart:
    cart: Cart
    lines: list[LinePricing]
    totals: CartTotals
    pwp_offers: list[eligibility.Eligibility] = field(default_factory=list)

    @property
    def needs_price_sync(self) -> bool:
        return any(line.price_needs_update for line in self.lines)


@dataclass(frozen=True)
class DiscountOutcome:
    cart: Cart
    message: str
    changed: bool
    discount_amount: int | None = None


@dataclass(frozen=True)
class CouponPreview:
    valid: bool
    message: str
    cart_subtotal: int
    reason: str | None = None
    coupon: PromotionRule | None = None
    discount_amount: int = 0

    @property
    def new_total(self) -> int:
        return max(0, self.cart_subtotal - self.discount_amount)


@dataclass(frozen=True)
class PointsPreview:
    points: int
    discount_amount: int
    balance: int
    cart_subtotal: int

    @property
    def new_total(self) -> int:
        return max(0, self.cart_subtotal - self.discount_amount)


@dataclass(frozen=True)
class PriceChange:
    item_id: UUID | None
    type: str
    message: str


@dataclass(frozen=True)
class SyncResult:
    changes: list[PriceChange]
    reconciled: ReconciledCart


def anchor_item(cart: Cart) -> CartItem | None:
    """Line that carries cart-level discounts: the first non-reward item."""
    return next((item for item in cart.items or [] if not item.is_reward), None)


async def _price_line(session: AsyncSession, cart: Cart, item: CartItem, now: datetime) -> LinePricing:
    lines = ledger.lines_of(item)
    inventory_quantity = None
    if item.variant_id:
        try:
            inventory_quantity = await inventory_service.get_available_quantity(session, item.variant_id)
        except UpstreamUnavailable as exc:
            metrics.record_upstream_failure("inventory")
            logger.warning("inventory_lookup_failed", extra={"item_id": str(item.id), "error": str(exc)})

    if item.is_reward:
        rule = None
        try:
            rule = await promotions_service.get_rule(session, item.pwp_rule_id) if item.pwp_rule_id else None
        except UpstreamUnavailable as exc:
            metrics.record_upstream_failure("promotions")
            logger.warning("pwp_rule_lookup_failed", extra={"item_id": str(item.id), "error": str(exc)})
            return LinePricing(item=item, correct_price=int(item.unit_price), adjustments=lines,
                               inventory_quantity=inventory_quantity)
        hold = eligibility.reward_hold_status(cart, rule, now)
        return LinePricing(
            item=item,
            correct_price=int(item.unit_price),
            adjustments=lines,
            inventory_quantity=inventory_quantity,
            discount_suspended=not hold.met,
            suspension_reason=hold.reason,
            amount_needed=hold.amount_needed,
        )

    if not item.variant_id:
        return LinePricing(item=item, correct_price=int(item.unit_price), adjustments=lines)

    try:
        tiers = await catalog_service.list_price_tiers(session, item.variant_id)
    except UpstreamUnavailable as exc:
        metrics.record_upstream_failure("catalog")
        logger.warning("tier_lookup_failed", extra={"item_id": str(item.id), "error": str(exc)})
        tiers = []
    resolution = resolve_price(tiers, int(item.quantity), currency=cart.currency, last_known_price=int(item.unit_price))
    return LinePricing(
        item=item,
        correct_price=resolution.unit_price,
        adjustments=lines,
        resolution=resolution,
        tiers=bulk_tiers(tiers, currency=cart.currency),
        inventory_quantity=inventory_quantity,
    )


async def pwp_offers(
    session: AsyncSession, cart: Cart, now: datetime | None = None
) -> list[eligibility.Eligibility]:
    now = now or _now()
    try:
        rules = await promotions_service.list_active_promotion_rules(
            session, PromotionKind.pwp, limit=settings.pwp_offer_limit
        )
    except UpstreamUnavailable as exc:
        metrics.record_upstream_failure("promotions")
        logger.warning("pwp_offer_listing_failed", extra={"cart_id": str(cart.id), "error": str(exc)})
        return []
    visible = {eligibility.BELOW_CART_VALUE, eligibility.TRIGGER_PRODUCT_MISSING}
    return [
        result
        for result in eligibility.evaluate(cart, rules, now)
        if result.eligible or result.reason in visible
    ]


async def reconcile(
    session: AsyncSession, cart: Cart, *, now: datetime | None = None, include_offers: bool = True
) -> ReconciledCart:
    """Recompute tier-correct prices, reward suspension and totals without writing anything."""
    now = now or _now()
    lines = [await _price_line(session, cart, item, now) for item in cart.items or []]
    offers = await pwp_offers(session, cart, now) if include_offers else []
    totals = compute_totals(
        [line.priced() for line in lines],
        shipping=int(cart.shipping_amount or 0),
        tax=int(cart.tax_amount or 0),
    )
    return ReconciledCart(cart=cart, lines=lines, totals=totals, pwp_offers=offers)


async def snapshot(session: AsyncSession, cart_id: UUID, *, now: datetime | None = None) -> ReconciledCart:
    cart = await cart_store.get_cart(session, cart_id)
    return await reconcile(session, cart, now=now)


def _tier_description(name: str | None, slug: str, percentage: Decimal | float | None) -> str:
    return f"{name or slug} tier discount ({Decimal(str(percentage or 0)).normalize():f}%)"


def _expected_cart_level(cart: Cart) -> dict[str, ledger.Adjustment]:
    expected: dict[str, ledger.Adjustment] = {}
    if cart.tier_slug and cart.tier_discount_amount:
        tier = ledger.TierDiscount(
            slug=cart.tier_slug,
            amount=int(cart.tier_discount_amount),
            description=_tier_description(cart.tier_name, cart.tier_slug, cart.tier_discount_percentage),
        )
        expected[tier.code] = tier
    if cart.applied_membership_promo_id and cart.applied_membership_promo_discount:
        promo = ledger.MembershipPromoDiscount(
            promo_id=cart.applied_membership_promo_id,
            amount=int(cart.applied_membership_promo_discount),
            description=f"Membership Promo: {cart.applied_membership_promo_name or ''}".strip(),
        )
        expected[promo.code] = promo
    if cart.applied_coupon_code and cart.applied_coupon_discount:
        coupon = ledger.CouponDiscount(
            coupon_code=cart.applied_coupon_code,
            amount=int(cart.applied_coupon_discount),
            description=f"Coupon: {cart.applied_coupon_code} ({cart.applied_coupon_name or ''})",
            coupon_id=cart.applied_coupon_id,
        )
        expected[coupon.code] = coupon
    if cart.points_redeemed and cart.points_discount_amount:
        points = ledger.PointsRedemptionDiscount(
            points=int(cart.points_redeemed), amount=int(cart.points_discount_amount)
        )
        expected[points.code] = points
    return expected


async def _place_cart_level(session: AsyncSession, cart: Cart, anchor: CartItem, discount: ledger.Adjustment) -> None:
    others = [item for item in cart.items if item.id != anchor.id]
    await ledger.remove(session, cart, discount.code, items=others, exact=True)
    await ledger.apply(session, cart, anchor, discount)


async def converge_adjustments(session: AsyncSession, cart: Cart, *, now: datetime | None = None) -> list[PriceChange]:
    """Bring stored cart-level and PWP adjustments in line with the cart's discount state.

    Adjustments whose source is no longer applied are pruned, adjustments the
    state says are applied but which went missing are restored on the anchor
    line, and reward items that lost their PWP adjustment get it back at its
    original value.
    """
    now = now or _now()
    changes: list[PriceChange] = []
    expected = _expected_cart_level(cart)
    seen: set[str] = set()

    for item in list(cart.items):
        current = ledger.lines_of(item)
        kept: list[ledger.AdjustmentLine] = []
        for line in current:
            if line.kind in CART_LEVEL_KINDS:
                if line.code not in expected or line.code in seen or item.is_reward:
                    changes.append(PriceChange(item.id, "adjustment_pruned", f"Removed stale adjustment {line.code}"))
                    continue
                seen.add(line.code)
            kept.append(line)
        if len(kept) != len(current):
            await cart_store.set_line_item_adjustments(session, cart.id, item.id, kept)

    cart = await cart_store.get_cart(session, cart.id)
    anchor = anchor_item(cart)
    missing = [discount for code, discount in expected.items() if code not in seen]
    if missing and anchor is not None:
        for discount in missing:
            await ledger.apply(session, cart, anchor, discount)
            changes.append(PriceChange(anchor.id, "adjustment_restored", f"Restored adjustment {discount.code}"))

    for item in cart.items:
        if not item.is_reward or not item.pwp_rule_id:
            continue
        code = f"{ledger.PWP_PREFIX}{item.pwp_rule_id}"
        if ledger.find(ledger.lines_of(item), code) is not None:
            continue
        rule = await promotions_service.get_rule(session, item.pwp_rule_id)
        if rule is None or not eligibility.reward_hold_status(cart, rule, now).met:
            continue
        amount = pricing.reward_amount(int(item.unit_price), reward_type=rule.reward_type.value, value=rule.reward_value)
        await ledger.apply(session, cart, item, ledger.PWPDiscount(rule_id=rule.id, amount=amount, description=f"PWP: {rule.name}"))
        changes.append(PriceChange(item.id, "adjustment_restored", f"Restored adjustment {code}"))
    return changes


async def _refresh_percentage_discounts(session: AsyncSession, cart: Cart) -> list[PriceChange]:
    """Re-price percentage membership promos and coupons against the current cart value."""
    changes: list[PriceChange] = []
    anchor = anchor_item(cart)
    if anchor is None:
        return changes
    value = eligibility.cart_value(cart)
    if cart.applied_membership_promo_id and cart.applied_membership_promo_type == "percentage":
        amount = pricing.reward_amount(value, reward_type="percentage", value=cart.applied_membership_promo_value or 0)
        if amount != int(cart.applied_membership_promo_discount or 0):
            await cart_store.update_cart_metadata(
                session, cart.id, DiscountStatePatch(applied_membership_promo_discount=amount)
            )
            changes.append(PriceChange(anchor.id, "discount_repriced", "Membership promo discount updated"))
    if cart.applied_coupon_code and cart.applied_coupon_type == "percentage":
        amount = pricing.reward_amount(value, reward_type="percentage", value=cart.applied_coupon_value or 0)
        if amount != int(cart.applied_coupon_discount or 0):
            await cart_store.update_cart_metadata(session, cart.id, DiscountStatePatch(applied_coupon_discount=amount))
            changes.append(PriceChange(anchor.id, "discount_repriced", "Coupon discount updated"))
    if not changes:
        return changes
    cart = await cart_store.get_cart(session, cart.id)
    for discount in _expected_cart_level(cart).values():
        if isinstance(discount, (ledger.MembershipPromoDiscount, ledger.CouponDiscount)):
            await _place_cart_level(session, cart, anchor, discount)
            cart = await cart_store.get_cart(session, cart.id)
    return changes


def _net_subtotal(reconciled: ReconciledCart) -> int:
    net = 0
    for line in reconciled.lines:
        if line.item.is_reward and line.discount_suspended:
            continue
        net += int(line.item.unit_price) * int(line.item.quantity)
        if line.item.is_reward:
            net += sum(adj.amount for adj in line.adjustments if adj.kind == AdjustmentKind.pwp)
    return max(0, net)


async def _sync_tier_discount(
    session: AsyncSession, cart: Cart, customer_id: UUID | None, now: datetime
) -> list[PriceChange]:
    try:
        membership = await membership_service.get_active_membership(session, customer_id)
        percentage = await membership_service.get_customer_tier_discount_percentage(session, customer_id)
    except UpstreamUnavailable as exc:
        metrics.record_upstream_failure("membership")
        logger.warning("tier_discount_lookup_failed", extra={"cart_id": str(cart.id), "error": str(exc)})
        return []

    previous_amount = int(cart.tier_discount_amount or 0)
    reconciled = await reconcile(session, cart, now=now, include_offers=False)
    anchor = anchor_item(cart)
    amount = pricing.percent_of(_net_subtotal(reconciled), percentage) if percentage > 0 else 0

    if amount > 0 and membership is not None and membership.tier_slug and anchor is not None:
        discount = ledger.TierDiscount(
            slug=membership.tier_slug,
            amount=amount,
            description=_tier_description(membership.tier_name, membership.tier_slug, percentage),
        )
        stale = [line.code for item in cart.items for line in ledger.lines_of(item)
                 if line.kind == AdjustmentKind.tier and line.code != discount.code]
        for code in stale:
            await ledger.remove(session, cart, code, exact=True)
        await cart_store.update_cart_metadata(
            session,
            cart.id,
            DiscountStatePatch(
                tier_slug=membership.tier_slug,
                tier_name=membership.tier_name,
                tier_discount_percentage=Decimal(percentage),
                tier_discount_amount=amount,
            ),
        )
        cart = await cart_store.get_cart(session, cart.id)
        await _place_cart_level(session, cart, anchor, discount)
        if previous_amount == amount and not stale:
            return []
        return [PriceChange(anchor.id, "tier_discount_applied", f"Tier discount {percentage.normalize():f}% applied")]

    had_tier = cart.tier_slug is not None or any(
        line.kind == AdjustmentKind.tier for item in cart.items for line in ledger.lines_of(item)
    )
    if not had_tier:
        return []
    await cart_store.update_cart_metadata(session, cart.id, DiscountStatePatch.clear_tier())
    await ledger.remove(session, cart, ledger.TIER_PREFIX)
    return [PriceChange(None, "tier_discount_removed", "Tier discount no longer applies")]


async def sync_prices(
    session: AsyncSession, cart_id: UUID, *, customer_id: UUID | None = None, now: datetime | None = None
) -> SyncResult:
    """Confirm tier-correct prices and converge every stored adjustment to the current rules."""
    now = now or _now()
    cart = await cart_store.get_cart(session, cart_id)
    reconciled = await reconcile(session, cart, now=now, include_offers=False)
    changes: list[PriceChange] = []

    for line in reconciled.lines:
        if not line.price_needs_update or (line.resolution is not None and line.resolution.degraded):
            continue
        await cart_store.set_line_item_price(session, cart.id, line.item.id, line.correct_price)
        changes.append(
            PriceChange(
                line.item.id,
                "price_updated",
                f"Unit price changed from {line.item.unit_price} to {line.correct_price}",
            )
        )

    cart = await cart_store.get_cart(session, cart_id)
    changes.extend(await converge_adjustments(session, cart, now=now))
    cart = await cart_store.get_cart(session, cart_id)
    changes.extend(await _refresh_percentage_discounts(session, cart))
    cart = await cart_store.get_cart(session, cart_id)
    changes.extend(await _sync_tier_discount(session, cart, customer_id or cart.customer_id, now))

    metrics.record_price_sync()
    logger.info("cart_prices_synced", extra={"cart_id": str(cart_id), "changes": len(changes)})
    return SyncResult(changes=changes, reconciled=await snapshot(session, cart_id, now=now))


def _unchanged(cart: Cart, message: str, discount_amount: int | None = None) -> DiscountOutcome:
    return DiscountOutcome(cart=cart, message=message, changed=False, discount_amount=discount_amount)


def _require_anchor(cart: Cart, what: str) -> CartItem:
    anchor = anchor_item(cart)
    if anchor is None:
        raise InvalidInput(f"Cannot apply {what} to empty cart")
    return anchor


async def apply_membership_promo(
    session: AsyncSession, cart_id: UUID, promo_id: UUID | None = None, *, now: datetime | None = None
) -> DiscountOutcome:
    now = now or _now()
    cart = await cart_store.get_cart(session, cart_id)
    applied = cart.applied_membership_promo_id
    if applied is not None and (promo_id is None or promo_id == applied):
        return _unchanged(
            cart,
            f'Membership promo "{cart.applied_membership_promo_name}" is already applied',
            cart.applied_membership_promo_discount,
        )
    if applied is not None:
        raise NotEligible(
            "Cart already has a membership promo applied. Remove it first to apply a new one.",
            reason=ANOTHER_PROMO_APPLIED,
        )
    anchor = _require_anchor(cart, "membership promo")
    if not await membership_service.is_member(session, cart.customer_id):
        raise NotEligible("Only members can apply membership promos", reason=MEMBERSHIP_REQUIRED)

    if promo_id is not None:
        rule = await promotions_service.require_rule(session, promo_id, PromotionKind.membership)
        result = eligibility.evaluate_one(cart, rule, now)
        if not result.eligible:
            raise _not_eligible(result, cart.currency)
    else:
        rules = await promotions_service.list_active_promotion_rules(session, PromotionKind.membership)
        result = eligibility.best_membership_promo(cart, rules, now)
        if result is None:
            raise NotEligible("No applicable membership promos for your cart", reason=NO_APPLICABLE_PROMO)
        rule = result.rule

    amount = int(result.discount_amount or 0)
    await cart_store.update_cart_metadata(
        session,
        cart.id,
        DiscountStatePatch(
            applied_membership_promo_id=rule.id,
            applied_membership_promo_name=rule.name,
            applied_membership_promo_type=rule.reward_type.value,
            applied_membership_promo_value=Decimal(str(rule.reward_value)),
            applied_membership_promo_discount=amount,
        ),
    )
    cart = await cart_store.get_cart(session, cart.id)
    await _place_cart_level(
        session,
        cart,
        anchor,
        ledger.MembershipPromoDiscount(promo_id=rule.id, amount=amount, description=f"Membership Promo: {rule.name}"),
    )
    metrics.record_discount_applied("membership_promo")
    logger.info("membership_promo_applied", extra={"cart_id": str(cart.id), "promo_id": str(rule.id), "amount": amount})
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f'Membership promo "{rule.name}" applied',
        changed=True,
        discount_amount=amount,
    )


async def remove_membership_promo(session: AsyncSession, cart_id: UUID) -> DiscountOutcome:
    cart = await cart_store.get_cart(session, cart_id)
    if cart.applied_membership_promo_id is None:
        return _unchanged(cart, "No membership promo applied to this cart")
    name = cart.applied_membership_promo_name
    await cart_store.update_cart_metadata(session, cart.id, DiscountStatePatch.clear_membership_promo())
    cart = await cart_store.get_cart(session, cart.id)
    await ledger.remove(session, cart, ledger.MEMBERSHIP_PROMO_PREFIX)
    metrics.record_discount_removed("membership_promo")
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f'Membership promo "{name}" has been removed',
        changed=True,
    )


async def _eligible_coupon(
    session: AsyncSession, cart: Cart, code: str, now: datetime
) -> tuple[PromotionRule, int]:
    coupon = await promotions_service.find_coupon(session, code)
    if coupon is None:
        raise RuleNotFound("Invalid coupon code", coupon_code=code)
    result = eligibility.evaluate_one(cart, coupon, now)
    if not result.eligible:
        raise _not_eligible(result, cart.currency)
    return coupon, int(result.discount_amount or 0)


async def preview_coupon(
    session: AsyncSession, cart_id: UUID, code: str, *, now: datetime | None = None
) -> CouponPreview:
    """Check a coupon against the cart and report its discount without applying it.

    Business rejections come back as ``valid=False`` with the reason instead of
    raising, so a storefront can show them inline.
    """
    now = now or _now()
    cleaned = promotions_service.normalize_code(code)
    if not cleaned:
        raise InvalidInput("Coupon code is required")
    cart = await cart_store.get_cart(session, cart_id)
    value = eligibility.cart_value(cart)
    if cart.applied_coupon_code:
        reason = eligibility.ALREADY_APPLIED if cart.applied_coupon_code == cleaned else ANOTHER_PROMO_APPLIED
        return CouponPreview(
            valid=False,
            message=f'Cart already has coupon "{cart.applied_coupon_code}" applied. Remove it first to apply a new one.',
            cart_subtotal=value,
            reason=reason,
        )
    try:
        coupon, amount = await _eligible_coupon(session, cart, cleaned, now)
    except RuleNotFound as exc:
        return CouponPreview(valid=False, message=exc.detail, cart_subtotal=value, reason=INVALID_COUPON)
    except NotEligible as exc:
        return CouponPreview(valid=False, message=exc.detail, cart_subtotal=value, reason=exc.reason)
    logger.info("coupon_previewed", extra={"cart_id": str(cart.id), "code": cleaned, "amount": amount})
    return CouponPreview(
        valid=True,
        message=f'Coupon "{cleaned}" can be applied',
        cart_subtotal=value,
        coupon=coupon,
        discount_amount=amount,
    )


async def apply_coupon(
    session: AsyncSession, cart_id: UUID, code: str, *, now: datetime | None = None
) -> DiscountOutcome:
    now = now or _now()
    cleaned = promotions_service.normalize_code(code)
    if not cleaned:
        raise InvalidInput("Coupon code is required")
    cart = await cart_store.get_cart(session, cart_id)
    if cart.applied_coupon_code == cleaned:
        return _unchanged(cart, f'Coupon "{cleaned}" is already applied', cart.applied_coupon_discount)
    if cart.applied_coupon_code:
        raise NotEligible(
            f'Cart already has coupon "{cart.applied_coupon_code}" applied. Remove it first to apply a new one.',
            reason=ANOTHER_PROMO_APPLIED,
        )
    anchor = _require_anchor(cart, "coupon")
    coupon, amount = await _eligible_coupon(session, cart, cleaned, now)

    await cart_store.update_cart_metadata(
        session,
        cart.id,
        DiscountStatePatch(
            applied_coupon_id=coupon.id,
            applied_coupon_code=cleaned,
            applied_coupon_name=coupon.name,
            applied_coupon_type=coupon.reward_type.value,
            applied_coupon_value=Decimal(str(coupon.reward_value)),
            applied_coupon_discount=amount,
        ),
    )
    cart = await cart_store.get_cart(session, cart.id)
    await _place_cart_level(
        session,
        cart,
        anchor,
        ledger.CouponDiscount(
            coupon_code=cleaned, amount=amount, description=f"Coupon: {cleaned} ({coupon.name})", coupon_id=coupon.id
        ),
    )
    metrics.record_discount_applied("coupon")
    logger.info("coupon_applied", extra={"cart_id": str(cart.id), "code": cleaned, "amount": amount})
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f'Coupon "{cleaned}" applied',
        changed=True,
        discount_amount=amount,
    )


async def remove_coupon(session: AsyncSession, cart_id: UUID) -> DiscountOutcome:
    cart = await cart_store.get_cart(session, cart_id)
    if not cart.applied_coupon_code:
        return _unchanged(cart, "No coupon applied to this cart")
    code = cart.applied_coupon_code
    await cart_store.update_cart_metadata(session, cart.id, DiscountStatePatch.clear_coupon())
    cart = await cart_store.get_cart(session, cart.id)
    await ledger.remove(session, cart, ledger.COUPON_PREFIX)
    metrics.record_discount_removed("coupon")
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f'Coupon "{code}" has been removed',
        changed=True,
    )


def _require_points(points: int) -> None:
    if not isinstance(points, int) or isinstance(points, bool) or points <= 0:
        raise InvalidInput("Invalid points_to_redeem: must be a positive number")


async def _points_discount(session: AsyncSession, cart: Cart, points: int) -> tuple[int, int]:
    """Discount and balance for redeeming ``points``; raises when the redemption is not allowed."""
    if not await membership_service.is_member(session, cart.customer_id):
        raise NotEligible("Membership required to use points", reason=MEMBERSHIP_REQUIRED)
    balance = await membership_service.get_points_balance(session, cart.customer_id)
    if balance < points:
        raise NotEligible("Insufficient points balance", reason=INSUFFICIENT_POINTS)

    amount = pricing.points_to_discount(points)
    value = eligibility.cart_value(cart)
    if amount > value:
        raise NotEligible(
            f"Points discount ({pricing.format_minor(amount, cart.currency)}) cannot exceed cart subtotal "
            f"({pricing.format_minor(value, cart.currency)})",
            reason=POINTS_EXCEED_SUBTOTAL,
        )
    return amount, balance


async def preview_points(session: AsyncSession, cart_id: UUID, points: int) -> PointsPreview:
    _require_points(points)
    cart = await cart_store.get_cart(session, cart_id)
    amount, balance = await _points_discount(session, cart, points)
    return PointsPreview(
        points=points, discount_amount=amount, balance=balance, cart_subtotal=eligibility.cart_value(cart)
    )


async def apply_points(session: AsyncSession, cart_id: UUID, points: int) -> DiscountOutcome:
    _require_points(points)
    cart = await cart_store.get_cart(session, cart_id)
    if cart.points_redeemed == points and cart.points_discount_amount:
        return _unchanged(cart, f"{points} points are already redeemed on this cart", cart.points_discount_amount)
    anchor = _require_anchor(cart, "points")
    amount, _ = await _points_discount(session, cart, points)

    await cart_store.update_cart_metadata(
        session, cart.id, DiscountStatePatch(points_redeemed=points, points_discount_amount=amount)
    )
    cart = await cart_store.get_cart(session, cart.id)
    await _place_cart_level(session, cart, anchor, ledger.PointsRedemptionDiscount(points=points, amount=amount))
    metrics.record_discount_applied("points")
    logger.info("points_applied", extra={"cart_id": str(cart.id), "points": points, "amount": amount})
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f"Redeemed {points} points for {pricing.format_minor(amount, cart.currency)}",
        changed=True,
        discount_amount=amount,
    )


async def remove_points(session: AsyncSession, cart_id: UUID) -> DiscountOutcome:
    cart = await cart_store.get_cart(session, cart_id)
    if not cart.points_redeemed:
        return _unchanged(cart, "No points redeemed on this cart")
    await cart_store.update_cart_metadata(session, cart.id, DiscountStatePatch.clear_points())
    cart = await cart_store.get_cart(session, cart.id)
    await ledger.remove(session, cart, ledger.POINTS_CODE)
    metrics.record_discount_removed("points")
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message="Points redemption has been removed",
        changed=True,
    )


async def apply_pwp(
    session: AsyncSession, cart_id: UUID, rule_id: UUID, variant_id: UUID, *, now: datetime | None = None
) -> DiscountOutcome:
    now = now or _now()
    cart = await cart_store.get_cart(session, cart_id)
    rule = await promotions_service.require_rule(session, rule_id, PromotionKind.pwp)
    if any(item.is_reward and item.pwp_rule_id == rule.id for item in cart.items):
        return _unchanged(cart, f'PWP offer "{rule.name}" is already in your cart')
    result = eligibility.evaluate_one(cart, rule, now)
    if not result.eligible:
        raise _not_eligible(result, cart.currency)

    variant = await catalog_service.get_variant(session, variant_id)
    if variant is None:
        raise NotFound(f"Variant with id {variant_id} not found")
    if variant.product_id != rule.reward_product_id:
        raise InvalidInput("Selected variant does not belong to the reward product")
    try:
        available = await inventory_service.get_available_quantity(session, variant_id)
    except UpstreamUnavailable as exc:
        logger.warning("inventory_lookup_failed", extra={"variant_id": str(variant_id), "error": str(exc)})
        available = None
    if available is not None and available <= 0:
        raise NotEligible("Sorry, this PWP item is currently out of stock", reason=OUT_OF_STOCK)

    try:
        original_price = (await resolve_variant_price(session, variant_id, 1, currency=cart.currency)).unit_price
    except NotFound as exc:
        raise InvalidInput("No price found for the selected variant") from exc
    amount = pricing.reward_amount(original_price, reward_type=rule.reward_type.value, value=rule.reward_value)
    product = await catalog_service.get_product(session, variant.product_id)

    item = await cart_store.add_line_item(
        session,
        cart.id,
        variant_id=variant_id,
        product_id=variant.product_id,
        title=product.title if product else "PWP Item",
        quantity=1,
        unit_price=original_price,
        is_reward=True,
        pwp_rule_id=rule.id,
    )
    cart = await cart_store.get_cart(session, cart.id)
    reward_item = next(line for line in cart.items if line.id == item.id)
    await ledger.apply(
        session, cart, reward_item, ledger.PWPDiscount(rule_id=rule.id, amount=amount, description=f"PWP: {rule.name}")
    )
    metrics.record_discount_applied("pwp")
    logger.info("pwp_applied", extra={"cart_id": str(cart.id), "rule_id": str(rule.id), "amount": amount})
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message=f'PWP offer "{rule.name}" applied successfully',
        changed=True,
        discount_amount=amount,
    )


async def remove_pwp(session: AsyncSession, cart_id: UUID, rule_id: UUID) -> DiscountOutcome:
    cart = await cart_store.get_cart(session, cart_id)
    rewards = [item for item in cart.items if item.is_reward and item.pwp_rule_id == rule_id]
    if not rewards:
        return _unchanged(cart, "This PWP offer is not in your cart")
    for item in rewards:
        await cart_store.delete_line_item(session, cart.id, item.id)
    metrics.record_discount_removed("pwp")
    return DiscountOutcome(
        cart=await cart_store.get_cart(session, cart.id),
        message="PWP offer has been removed",
        changed=True,
    )


async def add_item(session: AsyncSession, cart_id: UUID, variant_id: UUID, quantity: int) -> ReconciledCart:
    if quantity is None or int(quantity) <= 0:
        raise InvalidQuantity("Quantity must be a positive integer")
    cart = await cart_store.get_cart(session, cart_id)
    existing = next((item for item in cart.items if item.variant_id == variant_id and not item.is_reward), None)
    if existing is not None:
        await cart_store.set_line_item_quantity(session, cart.id, existing.id, int(existing.quantity) + int(quantity))
        return await snapshot(session, cart.id)

    variant = await catalog_service.get_variant(session, variant_id)
    if variant is None:
        raise NotFound(f"Variant with id {variant_id} not found")
    try:
        unit_price = (
            await resolve_variant_price(session, variant_id, int(quantity), currency=cart.currency)
        ).unit_price
    except NotFound as exc:
        raise InvalidInput("No price found for the selected variant") from exc
    product = await catalog_service.get_product(session, variant.product_id)
    await cart_store.add_line_item(
        session,
        cart.id,
        variant_id=variant_id,
        product_id=variant.product_id,
        title=product.title if product else variant.title,
        quantity=int(quantity),
        unit_price=unit_price,
    )
    return await snapshot(session, cart.id)


async def update_item_quantity(session: AsyncSession, cart_id: UUID, item_id: UUID, quantity: int) -> ReconciledCart:
    """Change a quantity and report the tier-correct price; the stored price waits for ``sync_prices``."""
    if quantity is None or int(quantity) <= 0:
        raise InvalidQuantity("Quantity must be a positive integer")
    cart = await cart_store.get_cart(session, cart_id)
    item = next((line for line in cart.items if line.id == item_id), None)
    if item is None:
        raise NotFound("Cart item not found")
    if item.is_reward and int(quantity) > 1:
        raise InvalidInput("PWP reward items are limited to quantity 1")
    await cart_store.set_line_item_quantity(session, cart.id, item.id, int(quantity))
    return await snapshot(session, cart.id)


async def delete_item(session: AsyncSession, cart_id: UUID, item_id: UUID) -> ReconciledCart:
    cart = await cart_store.get_cart(session, cart_id)
    item = next((line for line in cart.items if line.id == item_id), None)
    if item is None:
        raise NotFound("Cart item not found")
    carried_cart_level = any(line.kind in CART_LEVEL_KINDS for line in ledger.lines_of(item))
    await cart_store.delete_line_item(session, cart.id, item.id)
    if carried_cart_level:
        await converge_adjustments(session, await cart_store.get_cart(session, cart.id))
    return await snapshot(session, cart.id)


def _bulk_tier_read(tier: BulkTier) -> BulkTierRead:
    return BulkTierRead.model_validate(tier)


def _current_tier(line: LinePricing) -> BulkTierRead | None:
    if line.resolution is None or line.resolution.tier is None:
        return None
    chosen = line.resolution.tier
    match = next((tier for tier in line.tiers if tier.min_quantity == chosen.min_quantity), None)
    return _bulk_tier_read(match) if match else None


def eligibility_read(result: eligibility.Eligibility) -> EligibilityRead:
    rule: PromotionRule = result.rule
    return EligibilityRead(
        rule_id=rule.id,
        name=rule.name,
        description=rule.description,
        trigger_type=rule.trigger_type.value,
        trigger_cart_value=rule.trigger_cart_value,
        trigger_product_id=rule.trigger_product_id,
        reward_product_id=rule.reward_product_id,
        reward_type=rule.reward_type.value,
        reward_value=Decimal(str(rule.reward_value)),
        is_eligible=result.eligible,
        reason=result.reason,
        current_cart_value=result.current_cart_value,
        amount_needed=result.amount_needed,
    )


def serialize(reconciled: ReconciledCart) -> CartPricingRead:
    cart = reconciled.cart
    items = [
        CartItemRead(
            id=line.item.id,
            variant_id=line.item.variant_id,
            product_id=line.item.product_id,
            title=line.item.title,
            quantity=int(line.item.quantity),
            unit_price=int(line.item.unit_price),
            is_reward=bool(line.item.is_reward),
            pwp_rule_id=line.item.pwp_rule_id,
            discount_suspended=line.discount_suspended,
            amount_needed=line.amount_needed,
            inventory_quantity=line.inventory_quantity,
            adjustments=[
                AdjustmentRead(
                    code=adj.code,
                    amount=adj.amount,
                    description=adj.description,
                    kind=adj.kind.value,
                    promotion_id=adj.promotion_id,
                )
                for adj in line.adjustments
            ],
            pricing=ItemPricingRead(
                base_price=line.resolution.base_price if line.resolution else int(line.item.unit_price),
                bulk_tiers=[_bulk_tier_read(tier) for tier in line.tiers],
                current_tier=_current_tier(line),
                correct_price=line.correct_price,
                price_needs_update=line.price_needs_update,
                is_bulk_price=bool(line.resolution and line.resolution.is_bulk_price),
            ),
        )
        for line in reconciled.lines
    ]
    return CartPricingRead(
        id=cart.id,
        customer_id=cart.customer_id,
        currency=cart.currency,
        items=items,
        discounts=DiscountStateRead.model_validate(cart),
        pwp_offers=[eligibility_read(result) for result in reconciled.pwp_offers],
        totals=TotalsRead.model_validate(reconciled.totals),
        needs_price_sync=reconciled.needs_price_sync,
    )


async def describe_outcome(session: AsyncSession, outcome: DiscountOutcome) -> DiscountResponse:
    reconciled = await reconcile(session, outcome.cart)
    return DiscountResponse(
        message=outcome.message,
        changed=outcome.changed,
        discount_amount=outcome.discount_amount,
        cart=serialize(reconciled),
    )


def describe_sync(result: SyncResult) -> SyncPricesResponse:
    return SyncPricesResponse(
        changes=[PriceChangeRead(item_id=c.item_id, type=c.type, message=c.message) for c in result.changes],
        cart=serialize(result.reconciled),
    )


def describe_coupon_preview(preview: CouponPreview) -> CouponValidateResponse:
    coupon = None
    if preview.coupon is not None:
        coupon = CouponSummaryRead(
            id=preview.coupon.id,
            code=preview.coupon.code,
            name=preview.coupon.name,
            type=preview.coupon.reward_type.value,
            value=Decimal(str(preview.coupon.reward_value)),
        )
    return CouponValidateResponse(
        valid=preview.valid,
        message=preview.message,
        reason=preview.reason,
        coupon=coupon,
        discount_amount=preview.discount_amount,
        cart_subtotal=preview.cart_subtotal,
        new_total=preview.new_total,
    )


def describe_points_preview(preview: PointsPreview) -> PointsCalculateResponse:
    return PointsCalculateResponse(
        points=preview.points,
        discount_amount=preview.discount_amount,
        balance=preview.balance,
        cart_subtotal=preview.cart_subtotal,
        new_total=preview.new_total,
    )
