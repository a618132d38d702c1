"""
Payment reconciliation.

Webhook, poll and client fallback all funnel into reconcile(), the single
UNPAID -> PAID transition. The transition is a compare-and-set UPDATE, so
whichever signal arrives first wins and every later one observes
ALREADY_PAID. Commission accrual runs only for the winner.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order, OrderStatus, OrderStatusHistory, PaymentStatus
from app.models.store import Store
from app.services.cancellation_service import CancellationService
from app.services.commission_service import AffiliateCommissionService
from app.services.order_service import OrderService
from app.services.payment_gateway import GatewayStatus, PaymentGateway

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    PAID = "PAID"                   # this call moved the order to PAID
    ALREADY_PAID = "ALREADY_PAID"   # another signal got there first
    CANCELLED = "CANCELLED"         # payment failed, or order was cancelled
    PENDING = "PENDING"             # gateway has no final answer yet


class PaymentSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"
    FALLBACK = "fallback"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    order: Optional[Order] = None
    gateway_status: Optional[str] = None

    @property
    def should_continue_polling(self) -> bool:
        return self.outcome == ReconcileOutcome.PENDING

    @property
    def is_terminal(self) -> bool:
        return not self.should_continue_polling


class PaymentReconciler:
    """Applies gateway payment signals to orders."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.orders = OrderService(db)

    async def reconcile(
        self,
        reference: str,
        gateway_status: Optional[str],
        source: PaymentSource = PaymentSource.WEBHOOK,
        store_id: Optional[uuid.UUID] = None,
    ) -> ReconcileResult:
        """
        Apply a gateway status to the order behind ``reference``.

        Args:
            reference: Gateway payment reference
            gateway_status: Raw status string from the gateway
            source: Which entry point delivered the signal
            store_id: Restrict the lookup to one store

        Returns:
            ReconcileResult; should_continue_polling is True only for PENDING.

        Raises:
            NotFoundError: no order carries this reference
        """
        order = await self.orders.get_order_by_reference(reference, store_id)
        status = (gateway_status or "").strip().lower()

        if status in GatewayStatus.SUCCEEDED:
            return await self._mark_paid(order, status, source)

        if status in GatewayStatus.FAILED_STATES:
            return await self._mark_failed(order, status, source)

        logger.debug(f"Payment {reference} still {status or 'unknown'} ({source.value})")
        return ReconcileResult(ReconcileOutcome.PENDING, order, status)

    async def poll(self, store: Store, reference: str, gateway: PaymentGateway) -> ReconcileResult:
        """
        One poll step: verify with the gateway, then reconcile.

        Gateway errors never fail the poll; they mean "ask again later".
        """
        order = await self.orders.get_order_by_reference(reference, store.id)
        if order.is_paid:
            return ReconcileResult(ReconcileOutcome.ALREADY_PAID, order, GatewayStatus.PAID)
        if order.status == OrderStatus.CANCELLED.value:
            return ReconcileResult(ReconcileOutcome.CANCELLED, order)

        verification = await gateway.verify(store, reference)
        if not verification.success:
            logger.warning(f"Verification of {reference} failed, will retry: {verification.error}")
            return ReconcileResult(ReconcileOutcome.PENDING, order)

        return await self.reconcile(reference, verification.status, PaymentSource.POLL, store.id)

    # ==================== TRANSITIONS ====================

    async def _mark_paid(self, order: Order, status: str, source: PaymentSource) -> ReconcileResult:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.payment_status == PaymentStatus.UNPAID.value,
                Order.status != OrderStatus.CANCELLED.value,
            )
            .values(
                payment_status=PaymentStatus.PAID.value,
                status=OrderStatus.PROCESSING.value,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await self.db.refresh(order)
            if order.is_paid:
                logger.info(f"Order {order.order_number} already paid ({source.value})")
                return ReconcileResult(ReconcileOutcome.ALREADY_PAID, order, status)

            logger.warning(
                f"Payment {order.payment_reference} succeeded on cancelled order "
                f"{order.order_number}; needs manual refund"
            )
            return ReconcileResult(ReconcileOutcome.CANCELLED, order, status)

        previous_status = order.status
        self.db.add(OrderStatusHistory(
            order_id=order.id,
            from_status=previous_status,
            to_status=OrderStatus.PROCESSING.value,
            changed_by=f"payment-{source.value}",
            notes=f"Payment {order.payment_reference} {status}",
        ))
        await self.db.flush()
        await self.db.refresh(order)

        await AffiliateCommissionService(self.db).accrue_for_order(order)

        logger.info(f"Order {order.order_number} paid via {source.value}")
        return ReconcileResult(ReconcileOutcome.PAID, order, status)

    async def _mark_failed(self, order: Order, status: str, source: PaymentSource) -> ReconcileResult:
        if order.is_paid:
            logger.warning(
                f"Ignoring {status} for paid order {order.order_number} ({source.value})"
            )
            return ReconcileResult(ReconcileOutcome.ALREADY_PAID, order, status)

        order = await CancellationService(self.db).cancel(
            order.id,
            reason=f"Payment {status}",
            cancelled_by=f"payment-{source.value}",
            only_if_unpaid=True,
        )

        if order.is_paid:
            return ReconcileResult(ReconcileOutcome.ALREADY_PAID, order, status)
        return ReconcileResult(ReconcileOutcome.CANCELLED, order, status)
