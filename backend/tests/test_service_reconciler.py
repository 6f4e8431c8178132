import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cartpricing.core import metrics
from cartpricing.core.errors import CartNotFound, InvalidInput, InvalidQuantity, NotEligible, NotFound, UpstreamUnavailable
from cartpricing.models import MembershipStatus, PromotionKind, RewardType, TriggerType
from cartpricing.services import adjustments as ledger
from cartpricing.services import cart_store
from cartpricing.services import inventory as inventory_service
from cartpricing.services import reconciler


def codes(item) -> list[str]:
    return [line.code for line in ledger.lines_of(item)]


def test_coupon_apply_and_remove_leaves_points_untouched(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id, points=1000)
            variant = await helper.variant(tiers=((10000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, variant, quantity=2, unit_price=10000)
            await helper.rule(PromotionKind.coupon, name="Save 10", code="SAVE10", reward_value=10, minimum_purchase=0)

            applied = await reconciler.apply_coupon(session, cart.id, " save10 ")
            assert applied.changed is True
            assert applied.discount_amount == 2000
            assert applied.cart.applied_coupon_code == "SAVE10"
            coupon_line = ledger.find(ledger.lines_of(applied.cart.items[0]), "COUPON_SAVE10")
            assert coupon_line is not None
            assert coupon_line.amount == -2000

            points = await reconciler.apply_points(session, cart.id, 500)
            assert points.discount_amount == 500

            removed = await reconciler.remove_coupon(session, cart.id)
            assert removed.changed is True
            assert removed.cart.applied_coupon_code is None
            assert codes(removed.cart.items[0]) == ["POINTS_REDEMPTION"]
            assert removed.cart.points_redeemed == 500

            snapshot = await reconciler.snapshot(session, cart.id)
            assert snapshot.totals.subtotal == 20000
            assert snapshot.totals.adjustment_discount == 0
            assert snapshot.totals.points_discount == 500
            assert snapshot.totals.total == 19500
            assert metrics.snapshot()["discount_removed.coupon"] == 1

    asyncio.run(run_flow())


def test_membership_promo_apply_twice_is_idempotent(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id)
            variant = await helper.variant(tiers=((10000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, variant, quantity=2, unit_price=10000)
            promo = await helper.rule(
                PromotionKind.membership, name="Five off", reward_type=RewardType.fixed, reward_value=500
            )

            first = await reconciler.apply_membership_promo(session, cart.id, promo.id)
            assert first.changed is True
            second = await reconciler.apply_membership_promo(session, cart.id, promo.id)
            assert second.changed is False

            cart = await cart_store.get_cart(session, cart.id)
            lines = [line for item in cart.items for line in ledger.lines_of(item)]
            assert [(line.code, line.amount) for line in lines] == [(f"MEMBERSHIP_PROMO_{promo.id}", -500)]
            assert cart.applied_membership_promo_id == promo.id
            assert cart.applied_membership_promo_discount == 500

            other = await helper.rule(PromotionKind.membership, name="Other", reward_value=5)
            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_membership_promo(session, cart.id, other.id)
            assert excinfo.value.reason == reconciler.ANOTHER_PROMO_APPLIED

    asyncio.run(run_flow())


def test_remove_membership_promo_never_applied_is_a_no_op(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant()
            cart = await helper.cart()
            await helper.line(cart, variant)

            outcome = await reconciler.remove_membership_promo(session, cart.id)
            assert outcome.changed is False
            assert outcome.cart.applied_membership_promo_id is None
            assert codes(outcome.cart.items[0]) == []
            assert metrics.snapshot().get("discount_removed.membership_promo") is None

    asyncio.run(run_flow())


def test_membership_promo_requires_membership_and_picks_best(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant()
            guest_cart = await helper.cart(customer_id=uuid.uuid4())
            await helper.line(guest_cart, variant, quantity=10)
            small = await helper.rule(PromotionKind.membership, name="Small", reward_type=RewardType.fixed, reward_value=300)
            large = await helper.rule(PromotionKind.membership, name="Large", reward_value=10)

            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_membership_promo(session, guest_cart.id, small.id)
            assert excinfo.value.reason == reconciler.MEMBERSHIP_REQUIRED

            member_id = uuid.uuid4()
            await helper.member(member_id)
            cart = await helper.cart(customer_id=member_id)
            await helper.line(cart, variant, quantity=10)
            outcome = await reconciler.apply_membership_promo(session, cart.id)
            assert outcome.cart.applied_membership_promo_id == large.id
            assert outcome.discount_amount == 1000

    asyncio.run(run_flow())


def test_empty_cart_cannot_take_cart_level_discounts(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            cart = await helper.cart()
            await helper.rule(PromotionKind.coupon, name="Save 10", code="SAVE10")
            with pytest.raises(InvalidInput):
                await reconciler.apply_coupon(session, cart.id, "SAVE10")

            stocked = await helper.cart()
            await helper.line(stocked, await helper.variant())
            with pytest.raises(NotFound):
                await reconciler.apply_coupon(session, stocked.id, "NOPE")

    asyncio.run(run_flow())


def test_pwp_reward_is_suspended_not_deleted(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            trigger = await helper.variant(tiers=((6000, None, None),))
            reward = await helper.variant(title="Tote", tiers=((4000, None, None),), stock=5)
            cart = await helper.cart()
            line = await helper.line(cart, trigger, quantity=2, unit_price=6000)
            rule = await helper.rule(
                PromotionKind.pwp,
                name="Half price tote",
                trigger_type=TriggerType.cart_value,
                trigger_cart_value=10000,
                reward_product_id=reward.product_id,
                reward_value=50,
            )

            snapshot = await reconciler.snapshot(session, cart.id)
            assert [offer.rule_id for offer in snapshot.pwp_offers] == [rule.id]

            outcome = await reconciler.apply_pwp(session, cart.id, rule.id, reward.id)
            assert outcome.discount_amount == 2000
            reward_item = next(item for item in outcome.cart.items if item.is_reward)
            assert reward_item.quantity == 1
            assert reward_item.unit_price == 4000
            assert codes(reward_item) == [f"PWP_{rule.id}"]

            again = await reconciler.apply_pwp(session, cart.id, rule.id, reward.id)
            assert again.changed is False

            dropped = await reconciler.update_item_quantity(session, cart.id, line.id, 1)
            reward_line = next(entry for entry in dropped.lines if entry.item.is_reward)
            assert reward_line.discount_suspended is True
            assert reward_line.amount_needed == 4000
            assert codes(reward_line.item) == [f"PWP_{rule.id}"]
            assert dropped.totals.subtotal == 6000
            assert dropped.totals.pwp_discount == 0

            restored = await reconciler.update_item_quantity(session, cart.id, line.id, 2)
            reward_line = next(entry for entry in restored.lines if entry.item.is_reward)
            assert reward_line.discount_suspended is False
            assert restored.totals.pwp_discount == 2000

            with pytest.raises(InvalidInput):
                await reconciler.update_item_quantity(session, cart.id, reward_line.item.id, 2)

            removed = await reconciler.remove_pwp(session, cart.id, rule.id)
            assert removed.changed is True
            assert all(not item.is_reward for item in removed.cart.items)

    asyncio.run(run_flow())


def test_pwp_rejections(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            trigger = await helper.variant(tiers=((8000, None, None),))
            reward = await helper.variant(title="Tote", tiers=((4000, None, None),), stock=0)
            stranger = await helper.variant(title="Mug", tiers=((1500, None, None),), stock=3)
            cart = await helper.cart()
            line = await helper.line(cart, trigger, quantity=1, unit_price=8000)
            rule = await helper.rule(
                PromotionKind.pwp,
                name="Tote deal",
                trigger_type=TriggerType.cart_value,
                trigger_cart_value=10000,
                reward_product_id=reward.product_id,
            )

            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_pwp(session, cart.id, rule.id, reward.id)
            assert excinfo.value.reason == "below_cart_value"
            assert excinfo.value.amount_needed == 2000

            await reconciler.update_item_quantity(session, cart.id, line.id, 2)
            with pytest.raises(InvalidInput):
                await reconciler.apply_pwp(session, cart.id, rule.id, stranger.id)
            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_pwp(session, cart.id, rule.id, reward.id)
            assert excinfo.value.reason == reconciler.OUT_OF_STOCK
            with pytest.raises(NotFound):
                await reconciler.apply_pwp(session, cart.id, uuid.uuid4(), reward.id)

    asyncio.run(run_flow())


def test_points_validation_and_replacement(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id, points=5000)
            variant = await helper.variant(tiers=((2000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, variant, quantity=1, unit_price=2000)

            with pytest.raises(InvalidInput):
                await reconciler.apply_points(session, cart.id, 0)
            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_points(session, cart.id, 6000)
            assert excinfo.value.reason == reconciler.INSUFFICIENT_POINTS
            with pytest.raises(NotEligible) as excinfo:
                await reconciler.apply_points(session, cart.id, 2500)
            assert excinfo.value.reason == reconciler.POINTS_EXCEED_SUBTOTAL

            await reconciler.apply_points(session, cart.id, 500)
            outcome = await reconciler.apply_points(session, cart.id, 1200)
            lines = ledger.lines_of(outcome.cart.items[0])
            assert [(line.code, line.amount) for line in lines] == [("POINTS_REDEMPTION", -1200)]
            assert outcome.cart.points_redeemed == 1200

            removed = await reconciler.remove_points(session, cart.id)
            assert removed.cart.points_redeemed is None
            assert codes(removed.cart.items[0]) == []

    asyncio.run(run_flow())


def test_quantity_change_is_reported_then_synced(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant(tiers=((1000, 1, 9), (800, 10, None)))
            cart = await helper.cart()
            added = await reconciler.add_item(session, cart.id, variant.id, 5)
            item = added.lines[0].item
            assert item.unit_price == 1000

            bumped = await reconciler.update_item_quantity(session, cart.id, item.id, 12)
            assert bumped.needs_price_sync is True
            assert bumped.lines[0].correct_price == 800
            assert bumped.lines[0].item.unit_price == 1000

            await helper.rule(PromotionKind.coupon, name="Save 10", code="SAVE10", reward_value=10)
            await reconciler.apply_coupon(session, cart.id, "SAVE10")

            # A lost coupon adjustment and a stray promo adjustment from an interrupted write.
            stray = ledger.MembershipPromoDiscount(promo_id=uuid.uuid4(), amount=300, description="stale")
            await cart_store.set_line_item_adjustments(session, cart.id, item.id, [stray.to_line()])

            result = await reconciler.sync_prices(session, cart.id)
            change_types = {change.type for change in result.changes}
            assert {"price_updated", "adjustment_pruned", "adjustment_restored", "discount_repriced"} <= change_types

            synced = result.reconciled
            assert synced.needs_price_sync is False
            assert synced.lines[0].item.unit_price == 800
            assert [(line.code, line.amount) for line in synced.lines[0].adjustments] == [("COUPON_SAVE10", -960)]
            assert synced.cart.applied_coupon_discount == 960
            assert metrics.snapshot()["price_syncs"] == 1

            again = await reconciler.sync_prices(session, cart.id)
            assert again.changes == []

    asyncio.run(run_flow())


def test_sync_applies_and_clears_tier_discount(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            membership = await helper.member(
                customer_id, tier_slug="gold", tier_name="Gold", discount_percentage=Decimal("5")
            )
            variant = await helper.variant(tiers=((10000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, variant, quantity=2, unit_price=10000)

            first = await reconciler.sync_prices(session, cart.id)
            assert [change.type for change in first.changes] == ["tier_discount_applied"]
            cart = first.reconciled.cart
            assert cart.tier_slug == "gold"
            assert cart.tier_discount_amount == 1000
            assert [(line.code, line.amount) for line in first.reconciled.lines[0].adjustments] == [("TIER_gold", -1000)]

            second = await reconciler.sync_prices(session, cart.id)
            assert second.changes == []
            assert codes(second.reconciled.cart.items[0]) == ["TIER_gold"]

            membership.status = MembershipStatus.expired
            await session.commit()
            third = await reconciler.sync_prices(session, cart.id)
            assert [change.type for change in third.changes] == ["tier_discount_removed"]
            assert third.reconciled.cart.tier_slug is None
            assert codes(third.reconciled.cart.items[0]) == []

    asyncio.run(run_flow())


def test_deleting_anchor_moves_cart_level_discount(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            first_variant = await helper.variant(tiers=((5000, None, None),))
            second_variant = await helper.variant(title="Other", tiers=((5000, None, None),))
            cart = await helper.cart()
            first = await helper.line(cart, first_variant, unit_price=5000)
            await helper.line(cart, second_variant, unit_price=5000)
            await helper.rule(PromotionKind.coupon, name="Flat", code="FLAT", reward_type=RewardType.fixed, reward_value=700)
            applied = await reconciler.apply_coupon(session, cart.id, "FLAT")
            assert codes(applied.cart.items[0]) == ["COUPON_FLAT"]

            reconciled = await reconciler.delete_item(session, cart.id, first.id)
            assert len(reconciled.lines) == 1
            assert codes(reconciled.lines[0].item) == ["COUPON_FLAT"]
            assert reconciled.totals.adjustment_discount == 700

    asyncio.run(run_flow())


def test_deleting_anchor_moves_tier_discount(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id, tier_slug="gold", tier_name="Gold", discount_percentage=Decimal("10"))
            first_variant = await helper.variant(tiers=((5000, None, None),))
            second_variant = await helper.variant(title="Other", tiers=((5000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            first = await helper.line(cart, first_variant, unit_price=5000)
            await helper.line(cart, second_variant, unit_price=5000)

            synced = await reconciler.sync_prices(session, cart.id)
            assert synced.reconciled.totals.adjustment_discount == 1000
            assert codes(synced.reconciled.cart.items[0]) == ["TIER_gold"]

            reconciled = await reconciler.delete_item(session, cart.id, first.id)
            assert reconciled.cart.tier_slug == "gold"
            assert reconciled.cart.tier_discount_amount == 1000
            assert codes(reconciled.lines[0].item) == ["TIER_gold"]
            assert reconciled.totals.adjustment_discount == 1000

            resynced = await reconciler.sync_prices(session, cart.id)
            assert [change.type for change in resynced.changes] == ["tier_discount_applied"]
            assert resynced.reconciled.cart.tier_discount_amount == 500
            assert resynced.reconciled.totals.adjustment_discount == 500

    asyncio.run(run_flow())


def test_sync_restores_missing_tier_adjustment(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id, tier_slug="gold", tier_name="Gold", discount_percentage=Decimal("10"))
            variant = await helper.variant(tiers=((5000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            item = await helper.line(cart, variant, quantity=2, unit_price=5000)
            await reconciler.sync_prices(session, cart.id)

            await cart_store.set_line_item_adjustments(session, cart.id, item.id, [])
            repaired = await reconciler.sync_prices(session, cart.id)
            assert [change.type for change in repaired.changes] == ["adjustment_restored"]
            assert codes(repaired.reconciled.cart.items[0]) == ["TIER_gold"]
            assert repaired.reconciled.totals.adjustment_discount == 1000

    asyncio.run(run_flow())


def test_coupon_and_points_previews_do_not_write(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            customer_id = uuid.uuid4()
            await helper.member(customer_id, points=1000)
            variant = await helper.variant(tiers=((10000, None, None),))
            cart = await helper.cart(customer_id=customer_id)
            await helper.line(cart, variant, quantity=1, unit_price=10000)
            await helper.rule(PromotionKind.coupon, name="Save 10", code="SAVE10", reward_value=10)
            await helper.rule(PromotionKind.coupon, name="Later", code="LATER", starts_at=datetime.now(timezone.utc) + timedelta(days=3))

            preview = await reconciler.preview_coupon(session, cart.id, "save10")
            assert preview.valid is True
            assert preview.coupon is not None and preview.coupon.code == "SAVE10"
            assert preview.discount_amount == 1000
            assert preview.new_total == 9000

            unknown = await reconciler.preview_coupon(session, cart.id, "NOPE")
            assert (unknown.valid, unknown.reason) == (False, reconciler.INVALID_COUPON)
            later = await reconciler.preview_coupon(session, cart.id, "LATER")
            assert (later.valid, later.reason) == (False, "not_started")

            points = await reconciler.preview_points(session, cart.id, 400)
            assert (points.discount_amount, points.balance, points.new_total) == (400, 1000, 9600)
            with pytest.raises(NotEligible) as excinfo:
                await reconciler.preview_points(session, cart.id, 5000)
            assert excinfo.value.reason == reconciler.INSUFFICIENT_POINTS

            untouched = await cart_store.get_cart(session, cart.id)
            assert untouched.applied_coupon_code is None
            assert untouched.points_redeemed is None
            assert codes(untouched.items[0]) == []

            await reconciler.apply_coupon(session, cart.id, "SAVE10")
            again = await reconciler.preview_coupon(session, cart.id, "SAVE10")
            assert (again.valid, again.reason) == (False, "already_applied")
            other = await reconciler.preview_coupon(session, cart.id, "LATER")
            assert other.reason == reconciler.ANOTHER_PROMO_APPLIED

    asyncio.run(run_flow())


def test_item_mutation_validation(session_factory, seed):
    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant()
            cart = await helper.cart()
            await reconciler.add_item(session, cart.id, variant.id, 1)
            merged = await reconciler.add_item(session, cart.id, variant.id, 2)
            assert len(merged.lines) == 1
            assert merged.lines[0].item.quantity == 3

            with pytest.raises(InvalidQuantity):
                await reconciler.add_item(session, cart.id, variant.id, 0)
            with pytest.raises(NotFound):
                await reconciler.add_item(session, cart.id, uuid.uuid4(), 1)
            with pytest.raises(NotFound):
                await reconciler.delete_item(session, cart.id, uuid.uuid4())
            with pytest.raises(CartNotFound):
                await reconciler.snapshot(session, uuid.uuid4())

    asyncio.run(run_flow())


def test_snapshot_degrades_when_inventory_is_unavailable(session_factory, seed, monkeypatch):
    async def broken(session, variant_id):
        raise UpstreamUnavailable("inventory")

    async def run_flow():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant(stock=4)
            cart = await helper.cart()
            await helper.line(cart, variant, quantity=2)

            healthy = await reconciler.snapshot(session, cart.id)
            assert healthy.lines[0].inventory_quantity == 4

            monkeypatch.setattr(inventory_service, "get_available_quantity", broken)
            degraded = await reconciler.snapshot(session, cart.id)
            assert degraded.lines[0].inventory_quantity is None
            assert degraded.totals.subtotal == 2000
            assert metrics.snapshot()["upstream_failures.inventory"] == 1

    asyncio.run(run_flow())
