from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class DiscountStatePatch(BaseModel):
    """Partial update of a cart's discount state; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    applied_membership_promo_id: UUID | None = None
    applied_membership_promo_name: str | None = None
    applied_membership_promo_type: str | None = None
    applied_membership_promo_value: Decimal | None = None
    applied_membership_promo_discount: int | None = None

    applied_coupon_id: UUID | None = None
    applied_coupon_code: str | None = None
    applied_coupon_name: str | None = None
    applied_coupon_type: str | None = None
    applied_coupon_value: Decimal | None = None
    applied_coupon_discount: int | None = None

    points_redeemed: int | None = None
    points_discount_amount: int | None = None

    tier_slug: str | None = None
    tier_name: str | None = None
    tier_discount_percentage: Decimal | None = None
    tier_discount_amount: int | None = None

    @classmethod
    def clear_membership_promo(cls) -> "DiscountStatePatch":
        return cls(
            applied_membership_promo_id=None,
            applied_membership_promo_name=None,
            applied_membership_promo_type=None,
            applied_membership_promo_value=None,
            applied_membership_promo_discount=None,
        )

    @classmethod
    def clear_coupon(cls) -> "DiscountStatePatch":
        return cls(
            applied_coupon_id=None,
            applied_coupon_code=None,
            applied_coupon_name=None,
            applied_coupon_type=None,
            applied_coupon_value=None,
            applied_coupon_discount=None,
        )

    @classmethod
    def clear_points(cls) -> "DiscountStatePatch":
        return cls(points_redeemed=None, points_discount_amount=None)

    @classmethod
    def clear_tier(cls) -> "DiscountStatePatch":
        return cls(tier_slug=None, tier_name=None, tier_discount_percentage=None, tier_discount_amount=None)


class DiscountStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    applied_membership_promo_id: UUID | None = None
    applied_membership_promo_name: str | None = None
    applied_membership_promo_type: str | None = None
    applied_membership_promo_value: Decimal | None = None
    applied_membership_promo_discount: int | None = None
    applied_coupon_id: UUID | None = None
    applied_coupon_code: str | None = None
    applied_coupon_name: str | None = None
    applied_coupon_discount: int | None = None
    points_redeemed: int | None = None
    points_discount_amount: int | None = None
    tier_slug: str | None = None
    tier_name: str | None = None
    tier_discount_percentage: Decimal | None = None
    tier_discount_amount: int | None = None


class CartCreate(BaseModel):
    customer_id: UUID | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class CartItemCreate(BaseModel):
    variant_id: UUID
    quantity: int = Field(ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=1)


class AdjustmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    amount: int
    description: str
    kind: str
    promotion_id: UUID | None = None


class BulkTierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    min_quantity: int
    max_quantity: int | None = None
    amount: int
    savings_percent: int


class ItemPricingRead(BaseModel):
    base_price: int | None = None
    bulk_tiers: list[BulkTierRead] = []
    current_tier: BulkTierRead | None = None
    correct_price: int
    price_needs_update: bool
    is_bulk_price: bool


class CartItemRead(BaseModel):
    id: UUID
    variant_id: UUID | None = None
    product_id: UUID | None = None
    title: str
    quantity: int
    unit_price: int
    is_reward: bool = False
    pwp_rule_id: UUID | None = None
    discount_suspended: bool = False
    amount_needed: int | None = None
    inventory_quantity: int | None = None
    adjustments: list[AdjustmentRead] = []
    pricing: ItemPricingRead


class EligibilityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: UUID
    name: str
    description: str | None = None
    trigger_type: str
    trigger_cart_value: int | None = None
    trigger_product_id: UUID | None = None
    reward_product_id: UUID | None = None
    reward_type: str
    reward_value: Decimal
    is_eligible: bool
    reason: str | None = None
    current_cart_value: int
    amount_needed: int | None = None


class TotalsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal: int
    pwp_discount: int
    adjustment_discount: int
    points_discount: int
    total_discount: int
    shipping: int
    tax: int
    total: int


class CartPricingRead(BaseModel):
    id: UUID
    customer_id: UUID | None = None
    currency: str
    items: list[CartItemRead]
    discounts: DiscountStateRead
    pwp_offers: list[EligibilityRead] = []
    totals: TotalsRead
    needs_price_sync: bool
