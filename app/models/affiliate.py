import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType


class AffiliateStatus(str, Enum):
    """Affiliate account status."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class AffiliateAccount(Base):
    """
    Referral partner of a store.

    Aggregates are denormalized and only ever changed through single
    UPDATE statements (see AffiliateCommissionService), never by
    read-modify-write on a loaded instance.
    """
    __tablename__ = "affiliate_accounts"
    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_affiliate_balance_non_negative'),
        CheckConstraint('percent >= 0 AND percent <= 100', name='ck_affiliate_percent_range'),
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

    affiliate_code: Mapped[str] = mapped_column(
        String(10),
        unique=True,
        nullable=False,
        index=True,
        comment="6-10 uppercase alphanumeric characters"
    )
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    mobile: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        comment="Commission percent of (subtotal - discount)"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="PENDING",
        comment="PENDING, ACTIVE, INACTIVE, SUSPENDED"
    )

    # Performance Metrics (denormalized for quick access)
    total_sales: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0.00")
    )
    total_commission: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00")
    )
    total_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00")
    )
    balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="total_commission - total_paid"
    )
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE.value

    def snapshot(self) -> dict:
        """Frozen copy stored on referred orders."""
        return {
            "id": str(self.id),
            "affiliate_code": self.affiliate_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "percent": str(self.percent),
        }

    def __repr__(self) -> str:
        return f"<AffiliateAccount(code='{self.affiliate_code}', balance={self.balance})>"
