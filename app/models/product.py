import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Numeric, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, Money

if TYPE_CHECKING:
    from app.models.store import Store


class Product(Base):
    """
    Sellable product of a store.

    Stock lives at two levels: the general ``stock`` counter and one
    counter per specification value (size, colour, ...) in
    ``specification_stock``. Both are mutated only by InventoryLedger.
    """
    __tablename__ = "products"
    __table_args__ = (
        Index('ix_product_store_active', 'store_id', 'is_active'),
        CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
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

    # Basic Info
    name_en: Mapped[str] = mapped_column(String(255), nullable=False)
    name_ar: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    main_image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Pricing
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    compare_at_price: Mapped[Optional[Decimal]] = mapped_column(
        Money,
        nullable=True,
        comment="Wholesale price offered to verified wholesalers"
    )
    cost_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    is_on_sale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sale_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        default=Decimal("0"),
        nullable=False,
        comment="0-100, applied only when is_on_sale"
    )

    # Stock
    stock: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="General quantity, independent of any specification"
    )
    sold_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

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

    store: Mapped["Store"] = relationship("Store", back_populates="products")
    specification_stock: Mapped[List["ProductSpecificationStock"]] = relationship(
        "ProductSpecificationStock",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductSpecificationStock.position",
        lazy="selectin"
    )

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.low_stock_threshold

    def snapshot(self) -> dict:
        """Fields copied onto order items at placement."""
        return {
            "id": str(self.id),
            "name_en": self.name_en,
            "name_ar": self.name_ar,
            "sku": self.sku,
            "price": str(self.price),
            "image": self.main_image,
        }

    def __repr__(self) -> str:
        return f"<Product(name='{self.name_en}', stock={self.stock})>"


class ProductSpecificationStock(Base):
    """One specification value of a product with its own stock counter."""
    __tablename__ = "product_specification_stock"
    __table_args__ = (
        Index('ix_spec_stock_product_spec', 'product_id', 'specification_id'),
        CheckConstraint('quantity >= 0', name='ck_spec_stock_non_negative'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False
    )

    # Identifiers arrive from clients as numbers or strings, kept as text
    specification_id: Mapped[str] = mapped_column(String(64), nullable=False)
    value_id: Mapped[str] = mapped_column(String(64), nullable=False)

    title: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="e.g. Size")
    value: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="e.g. Large")
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="specification_stock")

    @property
    def key(self) -> str:
        return f"{self.specification_id}:{self.value_id}"

    def __repr__(self) -> str:
        return f"<ProductSpecificationStock({self.key}, quantity={self.quantity})>"
