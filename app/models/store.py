import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, Money

if TYPE_CHECKING:
    from app.models.product import Product


class Store(Base):
    """
    A storefront served by this backend.
    Orders keep a snapshot of the store, so edits here never touch history.
    """
    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    name_en: Mapped[str] = mapped_column(String(200), nullable=False)
    name_ar: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")

    # Per-store gateway key, falls back to LAHZA_SECRET_KEY when empty
    payment_secret_key: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Secret key for the store's payment gateway account"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

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

    delivery_areas: Mapped[List["DeliveryArea"]] = relationship(
        "DeliveryArea",
        back_populates="store",
        cascade="all, delete-orphan"
    )
    products: Mapped[List["Product"]] = relationship(
        "Product",
        back_populates="store",
        cascade="all, delete-orphan"
    )

    def snapshot(self) -> dict:
        """Point-in-time copy stored on each order."""
        return {
            "id": str(self.id),
            "name_en": self.name_en,
            "name_ar": self.name_ar,
            "slug": self.slug,
            "contact_email": self.contact_email,
        }

    def __repr__(self) -> str:
        return f"<Store(slug='{self.slug}')>"


class DeliveryArea(Base):
    """Shipping zone with a flat delivery price."""
    __tablename__ = "delivery_areas"
    __table_args__ = (
        Index('ix_delivery_area_store_active', 'store_id', 'is_active'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False
    )

    location_en: Mapped[str] = mapped_column(String(200), nullable=False)
    location_ar: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    estimated_days: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    store: Mapped["Store"] = relationship("Store", back_populates="delivery_areas")

    def snapshot(self) -> dict:
        return {
            "id": str(self.id),
            "location_en": self.location_en,
            "location_ar": self.location_ar,
            "price": str(self.price),
            "estimated_days": self.estimated_days,
        }
