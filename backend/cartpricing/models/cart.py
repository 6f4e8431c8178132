import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cartpricing.db.base import Base


class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MYR")
    shipping_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Discount state, one explicit column per field.
    applied_membership_promo_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    applied_membership_promo_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    applied_membership_promo_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    applied_membership_promo_value: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    applied_membership_promo_discount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    applied_coupon_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    applied_coupon_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    applied_coupon_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    applied_coupon_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    applied_coupon_value: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    applied_coupon_discount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    points_redeemed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    points_discount_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    tier_slug: Mapped[str | None] = mapped_column(String(60), nullable=True)
    tier_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    tier_discount_percentage: Mapped[float | None] = mapped_column(Numeric(5, 2), nullable=True)
    tier_discount_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Set once the order placed from this cart has counted its promotions.
    usage_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    items: Mapped[list["CartItem"]] = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.position",
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cart_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("carts.id"), nullable=False, index=True)
    variant_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    product_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    title: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_reward: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pwp_rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    cart: Mapped[Cart] = relationship("Cart", back_populates="items")
    adjustments: Mapped[list["CartItemAdjustment"]] = relationship(
        "CartItemAdjustment",
        back_populates="item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItemAdjustment.position",
    )


class AdjustmentKind(str, enum.Enum):
    tier = "tier"
    pwp = "pwp"
    membership_promo = "membership_promo"
    coupon = "coupon"
    points = "points"


class CartItemAdjustment(Base):
    __tablename__ = "cart_item_adjustments"
    __table_args__ = (UniqueConstraint("item_id", "code", name="uq_cart_item_adjustments_item_code"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cart_items.id"), nullable=False, index=True
    )
    kind: Mapped[AdjustmentKind] = mapped_column(Enum(AdjustmentKind, native_enum=False), nullable=False)
    code: Mapped[str] = mapped_column(String(80), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    promotion_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    item: Mapped[CartItem] = relationship("CartItem", back_populates="adjustments")
