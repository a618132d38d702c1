"""
Payment background jobs.
"""

import logging
from datetime import datetime, timezone, timedelta

from sqlalchemy import select

from app.config import settings
from app.models.order import Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


async def sweep_pending_payments(registry, session_factory=None) -> int:
    """
    Re-arm payment polls for unpaid orders.

    This job runs every PAYMENT_SWEEP_INTERVAL_MINUTES to:
    1. Find UNPAID, PENDING orders with a payment reference
       created within PAYMENT_SWEEP_WINDOW_HOURS
    2. Start a poll for each one the registry is not already polling

    Returns:
        Number of polls started.
    """
    logger.info("Starting pending payments sweep...")
    start_time = datetime.now(timezone.utc)
    armed_count = 0

    from app.database import async_session_factory
    session_factory = session_factory or async_session_factory

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=settings.PAYMENT_SWEEP_WINDOW_HOURS)

    async with session_factory() as session:
        result = await session.execute(
            select(Order.store_id, Order.payment_reference)
            .where(
                Order.payment_status == PaymentStatus.UNPAID.value,
                Order.status == OrderStatus.PENDING.value,
                Order.payment_reference.is_not(None),
                Order.created_at >= cutoff_time,
            )
            .order_by(Order.created_at.asc())
            .limit(200)
        )
        pending_orders = result.all()

    for store_id, reference in pending_orders:
        if registry.start(store_id, reference):
            armed_count += 1

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Pending payments sweep completed: "
        f"found {len(pending_orders)}, started {armed_count} polls "
        f"in {elapsed:.2f}s"
    )
    return armed_count
