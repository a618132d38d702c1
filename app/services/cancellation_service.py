"""
Order cancellation with stock compensation.

Cancellation is a conditional UPDATE on the order's current status, so two
concurrent cancel requests (or a cancel racing a gateway failure) restore
stock exactly once: only the call whose UPDATE matched the row gives the
quantities back.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import CannotCancelError, NotFoundError
from app.models.order import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    NON_CANCELLABLE_STATUSES,
)
from app.models.product import Product
from app.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


class CancellationService:
    """Cancels orders and reverses their ledger effects."""

    def __init__(self, db: AsyncSession, ledger: Optional[InventoryLedger] = None):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)

    async def cancel(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
        only_if_unpaid: bool = False,
    ) -> Order:
        """
        Cancel an order and restore its stock.

        Args:
            order_id: Order to cancel
            reason: Free-text cancellation reason
            cancelled_by: User id, "customer", "payment-gateway", ...
            only_if_unpaid: Leave the order alone if it has been paid
                (used by the payment reconciler on gateway failures)

        Returns:
            The order, cancelled or unchanged.

        Raises:
            NotFoundError: order does not exist
            CannotCancelError: order is shipped, delivered or refunded
        """
        order = await self._get_order(order_id)

        if order.status in NON_CANCELLABLE_STATUSES:
            raise CannotCancelError(order.order_number, order.status)
        if order.status == OrderStatus.CANCELLED.value:
            logger.info(f"Order {order.order_number} already cancelled")
            return order

        previous_status = order.status
        now = datetime.now(timezone.utc)

        conditions = [Order.id == order.id, Order.status == previous_status]
        if only_if_unpaid:
            conditions.append(Order.payment_status == PaymentStatus.UNPAID.value)

        result = await self.db.execute(
            update(Order)
            .where(*conditions)
            .values(
                status=OrderStatus.CANCELLED.value,
                cancelled_at=now,
                cancelled_by=cancelled_by,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            # Lost a race; report whatever state won
            await self.db.refresh(order)
            if order.status in NON_CANCELLABLE_STATUSES:
                raise CannotCancelError(order.order_number, order.status)
            logger.info(
                f"Order {order.order_number} not cancelled, now {order.status}/{order.payment_status}"
            )
            return order

        restored = await self.restore_items(order)

        self.db.add(OrderStatusHistory(
            order_id=order.id,
            from_status=previous_status,
            to_status=OrderStatus.CANCELLED.value,
            changed_by=cancelled_by,
            notes=reason,
        ))
        await self.db.flush()
        await self.db.refresh(order)

        logger.info(
            f"Cancelled order {order.order_number} ({reason or 'no reason'}), "
            f"restored stock for {restored} items"
        )
        return order

    async def restore_items(self, order: Order) -> int:
        """
        Give every line's quantity back to the ledger.

        Lines whose product was deleted are skipped.

        Returns:
            Number of lines restored.
        """
        restored = 0
        for item in order.items:
            if item.product_id is None:
                logger.warning(f"Order item {item.id} has no product, skipping restore")
                continue

            product = await self.db.get(Product, item.product_id)
            if product is None:
                logger.warning(f"Product {item.product_id} no longer exists, skipping restore")
                continue

            await self.ledger.restore(product, item.quantity, item.selected_specifications)
            restored += 1
        return restored

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order
