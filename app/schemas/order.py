from pydantic import BaseModel, Field, EmailStr, computed_field
from typing import Optional, List, Union, Dict, Any
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.order import OrderStatus, PaymentMethod
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== ORDER ITEM SCHEMAS ====================

class SelectedSpecification(BaseCreateSchema):
    """Specification value picked by the buyer; ids may be numbers or strings."""
    specification_id: Union[int, str] = Field(..., alias="specificationId")
    value_id: Union[int, str] = Field(..., alias="valueId")
    title: Optional[str] = None
    value: Optional[str] = None


class OrderItemCreate(BaseCreateSchema):
    """Order item creation schema."""
    product_id: uuid.UUID = Field(..., alias="productId")
    # Checked by the inventory ledger so the error carries the requested quantity
    quantity: int
    specifications: List[SelectedSpecification] = Field(default_factory=list)


class OrderItemResponse(BaseResponseSchema):
    """Order item response schema."""
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    name: str
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    pricing_source: str
    selected_specifications: List[Dict[str, Any]] = []
    product_snapshot: Dict[str, Any]


# ==================== ORDER SCHEMAS ====================

class CustomerInfo(BaseCreateSchema):
    """Buyer contact details, frozen on the order."""
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)


class PlaceOrderRequest(BaseCreateSchema):
    """Order placement schema. Exactly one of user_id / guest_id is required."""
    user_id: Optional[str] = Field(None, alias="userId", max_length=64)
    guest_id: Optional[str] = Field(None, alias="guestId", max_length=64)
    customer: CustomerInfo
    items: List[OrderItemCreate] = Field(..., min_length=1)
    delivery_area_id: Optional[uuid.UUID] = Field(None, alias="deliveryAreaId")
    coupon_code: Optional[str] = Field(None, alias="couponCode", max_length=50)
    affiliate_id: Optional[uuid.UUID] = Field(None, alias="affiliateId")
    affiliate_code: Optional[str] = Field(None, alias="affiliateCode", max_length=10)
    payment_method: PaymentMethod = Field(PaymentMethod.ONLINE, alias="paymentMethod")
    shipping_address: Optional[Dict[str, Any]] = Field(None, alias="shippingAddress")
    billing_address: Optional[Dict[str, Any]] = Field(None, alias="billingAddress")
    notes: Optional[str] = Field(None, max_length=2000)


class CancelOrderRequest(BaseCreateSchema):
    """Cancellation schema."""
    reason: Optional[str] = Field(None, max_length=500)
    cancelled_by: Optional[str] = Field(None, alias="cancelledBy", max_length=100)


class OrderStatusUpdate(BaseCreateSchema):
    """Fulfillment status change. CANCELLED restores stock like /cancel."""
    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = Field(None, alias="trackingNumber", max_length=100)
    carrier: Optional[str] = Field(None, max_length=100)
    changed_by: Optional[str] = Field(None, alias="changedBy", max_length=100)


class OrderStatusHistoryResponse(BaseResponseSchema):
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class OrderBrief(BaseResponseSchema):
    """Compact order view returned by the payment endpoints."""
    id: uuid.UUID
    order_number: str
    status: str
    payment_status: str
    payment_reference: Optional[str] = None
    total: Decimal
    currency: str
    paid_at: Optional[datetime] = None


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    order_number: str
    store_id: uuid.UUID
    store_snapshot: Dict[str, Any]
    user_id: Optional[str] = None
    guest_id: Optional[str] = None
    customer_snapshot: Dict[str, Any]
    status: str
    payment_status: str
    payment_method: str
    payment_reference: Optional[str] = None
    currency: str
    subtotal: Decimal
    discount: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal
    coupon_code: Optional[str] = None
    delivery_area_snapshot: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    affiliate_id: Optional[uuid.UUID] = None
    affiliate_snapshot: Optional[Dict[str, Any]] = None
    commission_amount: Optional[Decimal] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []
    status_history: List[OrderStatusHistoryResponse] = []

    @computed_field
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class OrderListResponse(BaseModel):
    """Paginated order list response."""
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int
