import asyncio
import uuid

from cartpricing.models import Cart, PromotionKind, PromotionRule, RewardType, TriggerType
from cartpricing.services import promo_usage
from cartpricing.services import reconciler


def test_checkout_counts_each_applied_rule_once(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id)
            trigger = await helper.variant(tiers=((20000, None, None),))
            reward = await helper.variant(title="Pouch", tiers=((3000, None, None),), stock=2)
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, trigger, unit_price=20000)
            coupon = await helper.rule(PromotionKind.coupon, name="Save 10", code="SAVE10")
            promo = await helper.rule(PromotionKind.membership, name="Members")
            pwp = await helper.rule(
                PromotionKind.pwp,
                name="Pouch deal",
                trigger_type=TriggerType.none,
                reward_product_id=reward.product_id,
            )

            await reconciler.apply_coupon(session, cart.id, "SAVE10")
            await reconciler.apply_membership_promo(session, cart.id, promo.id)
            outcome = await reconciler.apply_pwp(session, cart.id, pwp.id, reward.id)

            recorded = await promo_usage.record_promotion_usage(session, outcome.cart)
            assert recorded == [promo.id, coupon.id, pwp.id]

            for rule_id in recorded:
                rule = await session.get(PromotionRule, rule_id, populate_existing=True)
                assert rule.redemption_count == 1

    asyncio.run(run_flow())


def test_cart_without_promotions_records_nothing(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            cart = await seed(session).cart()
            assert await promo_usage.record_promotion_usage(session, cart) == []

    asyncio.run(run_flow())


def test_repeated_completion_counts_usage_once(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant(tiers=((5000, None, None),))
            cart = await helper.cart()
            await helper.line(cart, variant, unit_price=5000)
            coupon = await helper.rule(
                PromotionKind.coupon, name="Flat", code="FLAT", reward_type=RewardType.fixed, reward_value=700, usage_limit=1
            )
            outcome = await reconciler.apply_coupon(session, cart.id, "FLAT")

            first = await promo_usage.record_promotion_usage(session, outcome.cart)
            retried = await promo_usage.record_promotion_usage(session, outcome.cart)
            assert first == retried == [coupon.id]

            rule = await session.get(PromotionRule, coupon.id, populate_existing=True)
            assert rule.redemption_count == 1
            cart = await session.get(Cart, cart.id, populate_existing=True)
            assert cart.usage_recorded_at is not None

    asyncio.run(run_flow())
