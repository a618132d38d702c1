import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, JSONType, Money


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""
    PENDING = "PENDING"               # Placed, awaiting payment or processing
    PROCESSING = "PROCESSING"         # Paid, being prepared
    SHIPPED = "SHIPPED"               # Handed to the courier
    DELIVERED = "DELIVERED"           # Received by the buyer
    CANCELLED = "CANCELLED"           # Cancelled, stock restored
    REFUNDED = "REFUNDED"             # Refund processed


class PaymentStatus(str, Enum):
    """Payment status enumeration. Moves UNPAID -> PAID only."""
    UNPAID = "UNPAID"
    PAID = "PAID"


class PaymentMethod(str, Enum):
    ONLINE = "ONLINE"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"


# Fulfillment states an order can no longer be cancelled from
NON_CANCELLABLE_STATUSES = (
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.REFUNDED.value,
)

# Forward moves allowed through the status endpoint
ALLOWED_STATUS_TRANSITIONS = {
    OrderStatus.PENDING.value: {
        OrderStatus.PROCESSING.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    },
    OrderStatus.PROCESSING.value: {
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.REFUNDED.value,
    },
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.REFUNDED.value},
}


class Order(Base):
    """
    Order placed on a store.

    Pricing, store, customer, delivery area and affiliate data are frozen
    at placement. Payment status changes only through the payment
    reconciler; fulfillment status through the reconciler, the cancellation
    service and OrderService.update_fulfillment_status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_store_created', 'store_id', 'created_at'),
        Index('ix_order_payment_status', 'payment_status', 'created_at'),
        Index('ix_order_guest', 'guest_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )

    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("stores.id", ondelete="RESTRICT"),
        nullable=False
    )
    store_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Buyer identity: exactly one of user_id / guest_id
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    guest_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        default="PENDING",
        nullable=False,
        index=True,
        comment="PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED"
    )
    payment_status: Mapped[str] = mapped_column(
        String(50),
        default="UNPAID",
        nullable=False,
        comment="UNPAID, PAID"
    )
    payment_method: Mapped[str] = mapped_column(
        String(50),
        default="ONLINE",
        nullable=False,
        comment="ONLINE, CASH_ON_DELIVERY"
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Gateway reference correlating webhook, poll and fallback signals"
    )

    # Pricing breakdown, frozen at placement
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Snapshots
    delivery_area_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Affiliate attribution
    affiliate_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    affiliate_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    commission_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    commission_accrued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once when commission is credited to the affiliate"
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Shipping
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at",
        lazy="selectin"
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}', payment='{self.payment_status}')>"


class OrderItem(Base):
    """Line item with a snapshot of the product at placement."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True
    )

    product_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    pricing_source: Mapped[str] = mapped_column(
        String(20),
        default="LIST",
        nullable=False,
        comment="LIST, SALE, WHOLESALE"
    )

    # [{specification_id, value_id, title, value}]
    selected_specifications: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    order: Mapped["Order"] = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    """Audit trail of status transitions."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")
