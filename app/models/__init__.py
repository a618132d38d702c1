# Models module
from app.models.store import Store, DeliveryArea
from app.models.product import Product, ProductSpecificationStock
from app.models.coupon import Coupon, DiscountType
from app.models.wholesaler import Wholesaler, WholesalerStatus
from app.models.affiliate import AffiliateAccount, AffiliateStatus
from app.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
)

__all__ = [
    "Store",
    "DeliveryArea",
    "Product",
    "ProductSpecificationStock",
    "Coupon",
    "DiscountType",
    "Wholesaler",
    "WholesalerStatus",
    "AffiliateAccount",
    "AffiliateStatus",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
]
