from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from cartpricing.schemas.cart import CartPricingRead, EligibilityRead


class CartRef(BaseModel):
    cart_id: UUID


class MembershipPromoApply(CartRef):
    promo_id: UUID | None = None


class CouponApply(CartRef):
    code: str = Field(min_length=1, max_length=40)


class PointsApply(BaseModel):
    points_to_redeem: int


class PWPApply(CartRef):
    pwp_rule_id: UUID
    variant_id: UUID


class PWPRemove(CartRef):
    pwp_rule_id: UUID


class DiscountResponse(BaseModel):
    success: bool = True
    message: str
    changed: bool
    discount_amount: int | None = None
    cart: CartPricingRead


class PriceChangeRead(BaseModel):
    item_id: UUID | None = None
    type: str
    message: str


class SyncPricesResponse(BaseModel):
    changes: list[PriceChangeRead]
    cart: CartPricingRead


class PWPCheckResponse(BaseModel):
    cart_id: UUID
    current_cart_value: int
    offers: list[EligibilityRead]


class UsageRecordedRead(BaseModel):
    cart_id: UUID
    rule_ids: list[UUID]


class CouponSummaryRead(BaseModel):
    id: UUID
    code: str | None = None
    name: str
    type: str
    value: Decimal


class CouponValidateResponse(BaseModel):
    valid: bool
    message: str
    reason: str | None = None
    coupon: CouponSummaryRead | None = None
    discount_amount: int = 0
    cart_subtotal: int
    new_total: int


class PointsCalculateResponse(BaseModel):
    points: int
    discount_amount: int
    balance: int
    cart_subtotal: int
    new_total: int
