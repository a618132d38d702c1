"""
Affiliate commission accrual.

Commission is credited exactly once per order, on its UNPAID -> PAID
transition. Two guards make that hold under concurrent webhook/poll/fallback
signals:
1. PaymentReconciler only calls accrue_for_order() after winning the
   compare-and-set on payment_status
2. accrue_for_order() itself claims the order with a conditional UPDATE on
   commission_accrued_at IS NULL

Affiliate aggregates are updated with a single SQL statement, never with
read-modify-write on a loaded instance.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import update, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, ValidationError
from app.models.affiliate import AffiliateAccount
from app.models.order import Order
from app.services.pricing_service import money

logger = logging.getLogger(__name__)


def commission_for(subtotal: Decimal, discount: Decimal, percent: Decimal) -> tuple[Decimal, Decimal]:
    """
    Args:
        subtotal: Order subtotal
        discount: Order discount
        percent: Affiliate commission percent

    Returns:
        (commission base, commission amount); base excludes shipping and tax.
    """
    base = money(Decimal(subtotal) - Decimal(discount or 0))
    if base < 0:
        base = money(0)
    return base, money(base * Decimal(percent) / Decimal("100"))


class AffiliateCommissionService:
    """Credits and pays out affiliate commission."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def accrue_for_order(self, order: Order) -> Optional[Decimal]:
        """
        Credit the order's affiliate with its commission.

        Returns:
            The commission credited, or None when the order has no affiliate,
            the affiliate no longer exists, or commission was already accrued.
        """
        if order.affiliate_id is None:
            return None

        result = await self.db.execute(
            select(AffiliateAccount).where(AffiliateAccount.id == order.affiliate_id)
        )
        affiliate = result.scalar_one_or_none()
        if affiliate is None:
            logger.warning(f"Affiliate {order.affiliate_id} of order {order.order_number} no longer exists")
            return None

        base, commission = commission_for(order.subtotal, order.discount, affiliate.percent)
        now = datetime.now(timezone.utc)

        claimed = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.commission_accrued_at.is_(None))
            .values(commission_amount=commission, commission_accrued_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"Commission already accrued for order {order.order_number}")
            return None

        await self.db.execute(
            update(AffiliateAccount)
            .where(AffiliateAccount.id == affiliate.id)
            .values(
                total_sales=AffiliateAccount.total_sales + base,
                total_commission=AffiliateAccount.total_commission + commission,
                balance=AffiliateAccount.total_commission + commission - AffiliateAccount.total_paid,
                total_orders=AffiliateAccount.total_orders + 1,
                last_activity=now,
            )
            .execution_options(synchronize_session=False)
        )

        await self.db.refresh(order, attribute_names=["commission_amount", "commission_accrued_at"])
        await self.db.refresh(affiliate)

        logger.info(
            f"Accrued commission {commission} on {base} for affiliate {affiliate.affiliate_code} "
            f"(order {order.order_number})"
        )
        return commission

    async def record_payout(self, affiliate_id: uuid.UUID, amount: Decimal) -> AffiliateAccount:
        """
        Pay out part of an affiliate's balance.

        Raises:
            ValidationError: amount is not positive or exceeds the balance
            NotFoundError: affiliate does not exist
        """
        amount = money(amount)
        if amount <= 0:
            raise ValidationError("Payout amount must be greater than zero")

        result = await self.db.execute(
            select(AffiliateAccount).where(AffiliateAccount.id == affiliate_id)
        )
        affiliate = result.scalar_one_or_none()
        if affiliate is None:
            raise NotFoundError("Affiliate", affiliate_id)

        paid = await self.db.execute(
            update(AffiliateAccount)
            .where(AffiliateAccount.id == affiliate_id, AffiliateAccount.balance >= amount)
            .values(
                total_paid=AffiliateAccount.total_paid + amount,
                balance=AffiliateAccount.balance - amount,
                last_activity=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(affiliate)

        if paid.rowcount != 1:
            raise ValidationError(
                "Payout amount exceeds available balance",
                details={"balance": str(affiliate.balance), "requested": str(amount)},
            )

        logger.info(f"Paid out {amount} to affiliate {affiliate.affiliate_code}, balance {affiliate.balance}")
        return affiliate
