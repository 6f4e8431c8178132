from cartpricing.db.base import Base  # noqa: F401
from cartpricing.models.catalog import InventoryLevel, PriceTier, Product, ProductVariant  # noqa: F401
from cartpricing.models.cart import AdjustmentKind, Cart, CartItem, CartItemAdjustment  # noqa: F401
from cartpricing.models.membership import Membership, MembershipStatus, PointsBalance  # noqa: F401
from cartpricing.models.promo import (  # noqa: F401
    PromotionKind,
    PromotionRule,
    PromotionStatus,
    RewardType,
    TriggerType,
)

__all__ = [
    "Base",
    "Product",
    "ProductVariant",
    "PriceTier",
    "InventoryLevel",
    "Cart",
    "CartItem",
    "CartItemAdjustment",
    "AdjustmentKind",
    "Membership",
    "MembershipStatus",
    "PointsBalance",
    "PromotionRule",
    "PromotionKind",
    "PromotionStatus",
    "TriggerType",
    "RewardType",
]
