"""
Inventory Ledger for product and specification stock.

Every product has a general stock counter plus one counter per
specification value (size, colour, ...). Mutations are single conditional
UPDATE statements ("decrement if sufficient"), so concurrent placements
against the same product can never drive a counter below zero.

Flow:
1. validate()  - read-only check against the loaded product
2. decrement() - atomic per-counter decrement, all-or-nothing per call
3. restore()   - best-effort give-back used by cancellation and compensation
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Union

from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    StorefrontError,
    InvalidQuantityError,
    InsufficientStockError,
    SpecificationNotFoundError,
)
from app.models.product import Product, ProductSpecificationStock

logger = logging.getLogger(__name__)


def normalize_identifier(value: Any) -> str:
    """
    Canonical form used on both sides of every identifier comparison.

    Clients send specification and value ids as numbers, UUIDs or strings
    with varying case; all of them compare equal once normalized.

    Examples:
        >>> normalize_identifier(42)
        '42'
        >>> normalize_identifier(" 64B1F0AA ")
        '64b1f0aa'
        >>> normalize_identifier(3.0)
        '3'
    """
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip().lower()


@dataclass
class SpecificationSelection:
    """A specification value chosen by the buyer for a line item."""
    specification_id: Any
    value_id: Any
    value: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def coerce(cls, data: Union["SpecificationSelection", dict, Any]) -> "SpecificationSelection":
        if isinstance(data, cls):
            return data
        if isinstance(data, dict):
            return cls(
                specification_id=data.get("specification_id", data.get("specificationId")),
                value_id=data.get("value_id", data.get("valueId")),
                value=data.get("value"),
                title=data.get("title"),
            )
        # pydantic models and other attribute carriers
        return cls(
            specification_id=getattr(data, "specification_id", None),
            value_id=getattr(data, "value_id", None),
            value=getattr(data, "value", None),
            title=getattr(data, "title", None),
        )


@dataclass
class StockCheck:
    """Result of a validate or decrement attempt."""
    success: bool
    product_id: Any = None
    quantity: int = 0
    matches: List[ProductSpecificationStock] = field(default_factory=list)
    error: Optional[StorefrontError] = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def match_specification(
    rows: Iterable[ProductSpecificationStock],
    selection: SpecificationSelection,
) -> Optional[ProductSpecificationStock]:
    """
    Resolve a selection to a specification stock row.

    Matches on normalized (specification_id, value_id). When the value id
    does not resolve but the selection carries a display value, a row of
    the same specification with that value is accepted.
    """
    spec_key = normalize_identifier(selection.specification_id)
    value_key = normalize_identifier(selection.value_id)

    candidates = [
        row for row in rows
        if normalize_identifier(row.specification_id) == spec_key
    ]
    for row in candidates:
        if normalize_identifier(row.value_id) == value_key:
            return row

    if selection.value:
        wanted = normalize_identifier(selection.value)
        for row in candidates:
            if normalize_identifier(row.value) == wanted:
                return row

    return None


class InventoryLedger:
    """
    Owns product quantity state.

    Usage:
        ledger = InventoryLedger(db)
        check = await ledger.decrement(product, 2, [{"specification_id": "size", "value_id": "L"}])
        check.raise_for_error()
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _coerce(selections) -> List[SpecificationSelection]:
        return [SpecificationSelection.coerce(s) for s in (selections or [])]

    def validate(
        self,
        product: Product,
        quantity: int,
        selections: Optional[Iterable] = None,
    ) -> StockCheck:
        """
        Check that the product can cover ``quantity`` at every level.

        Read-only; works on the already loaded product and its
        specification rows.

        Returns:
            StockCheck with the resolved specification rows, or the error
            that would be raised.
        """
        if quantity is None or quantity <= 0:
            return StockCheck(False, product.id, quantity or 0, error=InvalidQuantityError(quantity))

        if product.stock < quantity:
            return StockCheck(
                False,
                product.id,
                quantity,
                error=InsufficientStockError(
                    InsufficientStockError.GENERAL, product.stock, quantity, product_id=product.id
                ),
            )

        matches: List[ProductSpecificationStock] = []
        seen = set()
        for selection in self._coerce(selections):
            row = match_specification(product.specification_stock, selection)
            if row is None:
                return StockCheck(
                    False,
                    product.id,
                    quantity,
                    error=SpecificationNotFoundError(
                        product.id, selection.specification_id, selection.value_id
                    ),
                )
            if row.quantity < quantity:
                return StockCheck(
                    False,
                    product.id,
                    quantity,
                    error=InsufficientStockError(
                        InsufficientStockError.SPECIFICATION,
                        row.quantity,
                        quantity,
                        product_id=product.id,
                        key=row.key,
                    ),
                )
            if row.id not in seen:
                seen.add(row.id)
                matches.append(row)

        return StockCheck(True, product.id, quantity, matches=matches)

    async def decrement(
        self,
        product: Product,
        quantity: int,
        selections: Optional[Iterable] = None,
    ) -> StockCheck:
        """
        Take ``quantity`` from the general counter and every selected
        specification row, and add it to ``sold_count``.

        Each counter is decremented with ``WHERE counter >= quantity``. If
        any of them loses a race, the counters already decremented by this
        call are given back before returning the failure.
        """
        check = self.validate(product, quantity, selections)
        if not check.success:
            return check

        result = await self.db.execute(
            update(Product)
            .where(Product.id == product.id, Product.stock >= quantity)
            .values(
                stock=Product.stock - quantity,
                sold_count=Product.sold_count + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = await self._read_general(product.id)
            logger.warning(
                f"Concurrent decrement lost for product {product.id}: "
                f"available {available}, requested {quantity}"
            )
            await self._refresh(product, [])
            return StockCheck(
                False,
                product.id,
                quantity,
                error=InsufficientStockError(
                    InsufficientStockError.GENERAL, available, quantity, product_id=product.id
                ),
            )

        applied: List[ProductSpecificationStock] = []
        for row in check.matches:
            result = await self.db.execute(
                update(ProductSpecificationStock)
                .where(
                    ProductSpecificationStock.id == row.id,
                    ProductSpecificationStock.quantity >= quantity,
                )
                .values(quantity=ProductSpecificationStock.quantity - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                available = await self._read_row(row.id)
                logger.warning(
                    f"Concurrent decrement lost for {row.key} on product {product.id}: "
                    f"available {available}, requested {quantity}"
                )
                await self._give_back(product.id, quantity, applied)
                await self._refresh(product, check.matches)
                return StockCheck(
                    False,
                    product.id,
                    quantity,
                    error=InsufficientStockError(
                        InsufficientStockError.SPECIFICATION,
                        available,
                        quantity,
                        product_id=product.id,
                        key=row.key,
                    ),
                )
            applied.append(row)

        await self._refresh(product, check.matches)
        logger.info(
            f"Decremented {quantity} of product {product.id} "
            f"({len(applied)} specification rows), stock now {product.stock}"
        )
        if product.is_low_stock:
            logger.warning(
                f"Product {product.sku or product.id} is low on stock: "
                f"{product.stock} left (threshold {product.low_stock_threshold})"
            )
        return check

    async def restore(
        self,
        product: Product,
        quantity: int,
        selections: Optional[Iterable] = None,
    ) -> int:
        """
        Give ``quantity`` back to the general counter and every resolvable
        specification row.

        Unmatched specification rows are logged and skipped so cleanup
        paths never fail on them.

        Returns:
            Number of specification rows restored.
        """
        if quantity is None or quantity <= 0:
            logger.warning(f"Ignoring restore of non-positive quantity {quantity} for product {product.id}")
            return 0

        rows: List[ProductSpecificationStock] = []
        seen = set()
        for selection in self._coerce(selections):
            row = match_specification(product.specification_stock, selection)
            if row is None:
                logger.warning(
                    f"Restore skipped unknown specification "
                    f"{selection.specification_id}:{selection.value_id} on product {product.id}"
                )
                continue
            if row.id not in seen:
                seen.add(row.id)
                rows.append(row)

        await self._give_back(product.id, quantity, rows)
        await self._refresh(product, rows)
        logger.info(f"Restored {quantity} of product {product.id} ({len(rows)} specification rows)")
        return len(rows)

    # ==================== INTERNAL HELPERS ====================

    async def _give_back(
        self,
        product_id,
        quantity: int,
        rows: List[ProductSpecificationStock],
    ) -> None:
        await self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(
                stock=Product.stock + quantity,
                sold_count=case(
                    (Product.sold_count >= quantity, Product.sold_count - quantity),
                    else_=0,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        for row in rows:
            await self.db.execute(
                update(ProductSpecificationStock)
                .where(ProductSpecificationStock.id == row.id)
                .values(quantity=ProductSpecificationStock.quantity + quantity)
                .execution_options(synchronize_session=False)
            )

    async def _read_general(self, product_id) -> int:
        result = await self.db.execute(select(Product.stock).where(Product.id == product_id))
        return result.scalar() or 0

    async def _read_row(self, row_id) -> int:
        result = await self.db.execute(
            select(ProductSpecificationStock.quantity).where(ProductSpecificationStock.id == row_id)
        )
        return result.scalar() or 0

    async def _refresh(self, product: Product, rows: List[ProductSpecificationStock]) -> None:
        """Bring in-memory counters in line with the rows just updated in SQL."""
        await self.db.refresh(product, attribute_names=["stock", "sold_count"])
        for row in rows:
            await self.db.refresh(row, attribute_names=["quantity"])
