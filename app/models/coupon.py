"""
Coupon Model for storefront checkout.

A coupon is either a percentage off the subtotal (optionally capped) or a
fixed amount off.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, Money, ensure_utc


class DiscountType(str, Enum):
    """Discount type enumeration."""
    PERCENTAGE = "PERCENTAGE"  # e.g., 10% off
    FIXED_AMOUNT = "FIXED_AMOUNT"  # e.g., 20 ILS off


class Coupon(Base):
    """
    Coupon/Promo code scoped to one store.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        UniqueConstraint('store_id', 'code', name='uq_coupon_store_code'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Stored upper-cased, matched case-insensitively
    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Coupon code (case-insensitive)"
    )

    # Discount Type & Value
    discount_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PERCENTAGE",
        comment="PERCENTAGE, FIXED_AMOUNT"
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=0,
        comment="Discount value (percentage or amount)"
    )
    max_discount_amount: Mapped[Optional[Decimal]] = mapped_column(
        Money,
        nullable=True,
        comment="Cap on discount for PERCENTAGE type"
    )
    minimum_order_amount: Mapped[Optional[Decimal]] = mapped_column(
        Money,
        nullable=True,
        comment="Minimum subtotal to apply coupon"
    )

    # Usage Limits
    usage_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Total times this coupon can be used"
    )
    used_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0
    )

    # Validity Period
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Expiry date (null = never expires)"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def is_valid(self) -> bool:
        """Check if coupon is currently valid."""
        now = datetime.now(timezone.utc)
        if not self.is_active:
            return False
        if now < ensure_utc(self.valid_from):
            return False
        if self.valid_until and now > ensure_utc(self.valid_until):
            return False
        if self.usage_limit and self.used_count >= self.usage_limit:
            return False
        return True

    def __repr__(self) -> str:
        return f"<Coupon(code='{self.code}', type='{self.discount_type}', value={self.discount_value})>"
