import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from cartpricing.models.cart import Cart, CartItem
from cartpricing.models.promo import PromotionKind, PromotionRule, PromotionStatus, RewardType, TriggerType
from cartpricing.services import eligibility

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_cart(*lines: tuple[int, int], product_ids: list[uuid.UUID] | None = None) -> Cart:
    cart = Cart(id=uuid.uuid4(), currency="MYR", shipping_amount=0, tax_amount=0)
    items = []
    for index, (unit_price, quantity) in enumerate(lines):
        product_id = product_ids[index] if product_ids else uuid.uuid4()
        items.append(
            CartItem(
                id=uuid.uuid4(),
                product_id=product_id,
                variant_id=uuid.uuid4(),
                title=f"Line {index}",
                unit_price=unit_price,
                quantity=quantity,
                position=index,
                is_reward=False,
            )
        )
    cart.items = items
    return cart


def make_rule(kind: PromotionKind = PromotionKind.pwp, **fields) -> PromotionRule:
    values = {
        "id": uuid.uuid4(),
        "kind": kind,
        "name": "Offer",
        "status": PromotionStatus.active,
        "trigger_type": TriggerType.none,
        "reward_type": RewardType.percentage,
        "reward_value": Decimal("50"),
        "redemption_count": 0,
    }
    values.update(fields)
    return PromotionRule(**values)


def test_cart_value_threshold_reports_amount_needed_then_qualifies():
    rule = make_rule(trigger_type=TriggerType.cart_value, trigger_cart_value=10000)
    cart = make_cart((8000, 1))

    result = eligibility.evaluate_one(cart, rule, NOW)
    assert result.eligible is False
    assert result.reason == eligibility.BELOW_CART_VALUE
    assert result.amount_needed == 2000
    assert result.current_cart_value == 8000

    cart.items.append(
        CartItem(id=uuid.uuid4(), title="Extra", unit_price=2500, quantity=1, position=1, is_reward=False)
    )
    result = eligibility.evaluate_one(cart, rule, NOW)
    assert result.eligible is True
    assert result.amount_needed is None


def test_reward_items_do_not_count_toward_cart_value():
    cart = make_cart((5000, 1))
    cart.items.append(
        CartItem(id=uuid.uuid4(), title="Reward", unit_price=9000, quantity=1, position=1, is_reward=True)
    )
    assert eligibility.cart_value(cart) == 5000


def test_window_status_and_usage_cap_block_eligibility():
    cart = make_cart((50000, 1))
    cases = [
        (make_rule(starts_at=NOW + timedelta(days=1)), eligibility.NOT_STARTED),
        (make_rule(ends_at=NOW - timedelta(seconds=1)), eligibility.EXPIRED),
        (make_rule(status=PromotionStatus.non_active), eligibility.INACTIVE),
        (make_rule(usage_limit=5, redemption_count=5), eligibility.USAGE_LIMIT_REACHED),
    ]
    for rule, reason in cases:
        result = eligibility.evaluate_one(cart, rule, NOW)
        assert result.eligible is False, reason
        assert result.reason == reason


def test_naive_window_bounds_are_treated_as_utc():
    rule = make_rule(ends_at=datetime(2026, 3, 1, 11, 0))
    result = eligibility.evaluate_one(make_cart((1000, 1)), rule, NOW)
    assert result.reason == eligibility.EXPIRED


def test_rule_already_on_cart_is_not_offered_again():
    rule = make_rule()
    cart = make_cart((5000, 1))
    cart.items.append(
        CartItem(
            id=uuid.uuid4(),
            title="Reward",
            unit_price=2000,
            quantity=1,
            position=1,
            is_reward=True,
            pwp_rule_id=rule.id,
        )
    )
    result = eligibility.evaluate_one(cart, rule, NOW)
    assert result.reason == eligibility.ALREADY_APPLIED


def test_product_trigger_requires_product_in_cart():
    trigger_product = uuid.uuid4()
    rule = make_rule(trigger_type=TriggerType.product, trigger_product_id=trigger_product)

    missing = eligibility.evaluate_one(make_cart((1000, 1)), rule, NOW)
    assert missing.reason == eligibility.TRIGGER_PRODUCT_MISSING

    present = eligibility.evaluate_one(make_cart((1000, 1), product_ids=[trigger_product]), rule, NOW)
    assert present.eligible is True


def test_coupon_minimum_purchase_and_reward_amount():
    coupon = make_rule(PromotionKind.coupon, code="SAVE10", reward_value=Decimal("10"), minimum_purchase=30000)
    short = eligibility.evaluate_one(make_cart((20000, 1)), coupon, NOW)
    assert short.reason == eligibility.MINIMUM_PURCHASE_NOT_MET
    assert short.amount_needed == 10000

    ok = eligibility.evaluate_one(make_cart((20000, 2)), coupon, NOW)
    assert ok.eligible is True
    assert ok.discount_amount == 4000


def test_fixed_reward_is_capped_at_base():
    rule = make_rule(reward_type=RewardType.fixed, reward_value=Decimal("5000"))
    result = eligibility.evaluate_one(make_cart((1000, 1)), rule, NOW, reward_base=3000)
    assert result.discount_amount == 3000


def test_best_membership_promo_picks_largest_discount():
    cart = make_cart((10000, 1))
    small = make_rule(PromotionKind.membership, name="Small", reward_type=RewardType.fixed, reward_value=Decimal("500"))
    large = make_rule(PromotionKind.membership, name="Large", reward_value=Decimal("15"))
    blocked = make_rule(PromotionKind.membership, name="Later", starts_at=NOW + timedelta(days=2))

    best = eligibility.best_membership_promo(cart, [small, large, blocked], NOW)
    assert best is not None
    assert best.rule.name == "Large"
    assert best.discount_amount == 1500


def test_reward_hold_status_follows_trigger_and_window():
    rule = make_rule(trigger_type=TriggerType.cart_value, trigger_cart_value=10000)
    assert eligibility.reward_hold_status(make_cart((12000, 1)), rule, NOW).met is True

    dropped = eligibility.reward_hold_status(make_cart((4000, 1)), rule, NOW)
    assert dropped.met is False
    assert dropped.amount_needed == 6000

    assert eligibility.reward_hold_status(make_cart((12000, 1)), None, NOW).reason == eligibility.RULE_MISSING
