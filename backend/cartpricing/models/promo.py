import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from cartpricing.db.base import Base


class PromotionKind(str, enum.Enum):
    pwp = "pwp"
    membership = "membership"
    coupon = "coupon"


class PromotionStatus(str, enum.Enum):
    active = "active"
    non_active = "non-active"


class TriggerType(str, enum.Enum):
    cart_value = "cart_value"
    product = "product"
    none = "none"


class RewardType(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class PromotionRule(Base):
    """PWP offer, membership promo or coupon. Authored elsewhere; read-only here except the redemption counter."""

    __tablename__ = "promotion_rules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind: Mapped[PromotionKind] = mapped_column(Enum(PromotionKind, native_enum=False), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String(40), nullable=True, unique=True, index=True)
    status: Mapped[PromotionStatus] = mapped_column(
        Enum(PromotionStatus, native_enum=False), nullable=False, default=PromotionStatus.active
    )
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemption_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    trigger_type: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False), nullable=False, default=TriggerType.none
    )
    trigger_cart_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trigger_product_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reward_product_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    reward_type: Mapped[RewardType] = mapped_column(Enum(RewardType, native_enum=False), nullable=False)
    reward_value: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    minimum_purchase: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
