"""
Order placement workflow.

place_order() turns a storefront checkout into an UNPAID/PENDING order:
1. Resolve store, buyer identity, delivery area, coupon, affiliate, wholesaler
2. Price every line (PricingCalculator) and freeze the breakdown
3. Decrement stock line by line (InventoryLedger); the first failure
   restores every line already decremented by this request
4. Persist the order with snapshots, items and a status-history row

Orders are deleted only by discard_unpaid_order(), the compensating action
for a failed payment initialization.

update_fulfillment_status() moves an order forward through
ALLOWED_STATUS_TRANSITIONS and records each move in the status history.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    StorefrontError,
    ValidationError,
    NotFoundError,
    MissingIdentityError,
    InvalidStatusTransitionError,
)
from app.models.affiliate import AffiliateAccount
from app.models.coupon import Coupon
from app.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    PaymentMethod,
    ALLOWED_STATUS_TRANSITIONS,
)
from app.models.product import Product
from app.models.store import Store, DeliveryArea
from app.models.wholesaler import Wholesaler
from app.schemas.order import PlaceOrderRequest
from app.services.cancellation_service import CancellationService
from app.services.inventory_ledger import InventoryLedger
from app.services.pricing_service import (
    PricingCalculator,
    PricingContext,
    PricedLine,
    CouponTerms,
)

logger = logging.getLogger(__name__)


@dataclass
class _Line:
    """An item being placed: loaded product, its price and raw selections."""
    product: Product
    quantity: int
    selections: list
    priced: Optional[PricedLine] = None
    specifications: Optional[list] = None


class OrderService:
    """Service for placing and reading orders."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[InventoryLedger] = None,
        pricing: Optional[PricingCalculator] = None,
    ):
        self.db = db
        self.ledger = ledger or InventoryLedger(db)
        self.pricing = pricing or PricingCalculator()

    # ==================== LOOKUPS ====================

    async def generate_order_number(self) -> str:
        """Generate unique order number: ORD + YYMMDD + 4 random digits."""
        today = datetime.now(timezone.utc).strftime("%y%m%d")
        while True:
            candidate = f"ORD{today}{random.randint(0, 9999):04d}"
            exists = await self.db.execute(
                select(Order.id).where(Order.order_number == candidate)
            )
            if exists.scalar_one_or_none() is None:
                return candidate

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """Get order by ID with items and status history."""
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_by_reference(
        self,
        reference: str,
        store_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """Get order by payment reference, optionally scoped to a store."""
        stmt = select(Order).where(Order.payment_reference == reference)
        if store_id is not None:
            stmt = stmt.where(Order.store_id == store_id)

        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", reference)
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        """Get order by order number."""
        result = await self.db.execute(
            select(Order)
            .where(Order.order_number == order_number.strip().upper())
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_number)
        return order

    async def list_orders(
        self,
        store_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Get a store's orders, newest first, with the unpaginated count."""
        await self.get_store(store_id)

        filters = [Order.store_id == store_id]
        if status:
            filters.append(Order.status == OrderStatus(status).value)
        if payment_status:
            filters.append(Order.payment_status == PaymentStatus(payment_status).value)

        total = (await self.db.execute(select(func.count(Order.id)).where(*filters))).scalar()

        result = await self.db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def attach_payment_reference(self, order: Order, reference: str) -> Order:
        """Store the gateway reference that correlates webhook, poll and fallback."""
        order.payment_reference = reference
        await self.db.flush()
        logger.info(f"Order {order.order_number} linked to payment {reference}")
        return order

    async def get_store(self, store_id: uuid.UUID) -> Store:
        result = await self.db.execute(
            select(Store).where(Store.id == store_id, Store.is_active == True)
        )
        store = result.scalar_one_or_none()
        if store is None:
            raise NotFoundError("Store", store_id)
        return store

    # ==================== PLACEMENT ====================

    async def place_order(self, store_id: uuid.UUID, data: PlaceOrderRequest) -> Order:
        """
        Place an order.

        Args:
            store_id: Store the order is placed on
            data: Checkout payload

        Returns:
            The persisted UNPAID/PENDING order.

        Raises:
            NotFoundError: store, product, delivery area or affiliate missing
            MissingIdentityError: neither user_id nor guest_id supplied
            ValidationError: bad coupon, inactive product, invalid quantity
            InsufficientStockError / SpecificationNotFoundError: stock check failed
        """
        store = await self.get_store(store_id)

        if not data.user_id and not data.guest_id:
            raise MissingIdentityError()
        if data.user_id and data.guest_id:
            raise ValidationError("Provide either user_id or guest_id, not both")

        delivery_area = await self._resolve_delivery_area(store.id, data.delivery_area_id)
        coupon = await self._resolve_coupon(store.id, data.coupon_code)
        affiliate = await self._resolve_affiliate(store.id, data.affiliate_id, data.affiliate_code)
        wholesaler = await self._resolve_wholesaler(store.id, data.user_id, data.customer.email)

        context = PricingContext(
            wholesaler_discount=Decimal(wholesaler.discount) if wholesaler else None,
            coupon=CouponTerms(
                code=coupon.code,
                discount_type=coupon.discount_type,
                value=Decimal(coupon.discount_value),
                max_discount_amount=coupon.max_discount_amount,
            ) if coupon else None,
            delivery_cost=Decimal(delivery_area.price) if delivery_area else Decimal("0"),
            tax_rate=settings.DEFAULT_TAX_RATE,
        )

        lines: List[_Line] = []
        for item in data.items:
            product = await self._load_product(store.id, item.product_id)
            line = _Line(product=product, quantity=item.quantity, selections=list(item.specifications))
            line.priced = self.pricing.price_line(product, item.quantity, context)
            lines.append(line)

        breakdown = self.pricing.breakdown([line.priced for line in lines], context)

        if coupon and coupon.minimum_order_amount and breakdown.subtotal < coupon.minimum_order_amount:
            raise ValidationError(
                f"Minimum order amount of {coupon.minimum_order_amount} required for this coupon",
                details={"coupon_code": coupon.code, "subtotal": str(breakdown.subtotal)},
            )

        # The gateway cannot charge nothing; such an order could never settle
        if data.payment_method == PaymentMethod.ONLINE and breakdown.total <= 0:
            raise ValidationError(
                "Online payment requires an order total greater than zero",
                details={"total": str(breakdown.total)},
            )

        decremented = await self._decrement_lines(lines)

        try:
            if coupon:
                await self._claim_coupon(coupon)

            order = Order(
                order_number=await self.generate_order_number(),
                store_id=store.id,
                store_snapshot=store.snapshot(),
                user_id=data.user_id,
                guest_id=data.guest_id,
                customer_snapshot={
                    "name": data.customer.name,
                    "email": data.customer.email,
                    "phone": data.customer.phone,
                    "user_id": data.user_id,
                    "guest_id": data.guest_id,
                },
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
                payment_method=data.payment_method.value,
                currency=store.currency or settings.DEFAULT_CURRENCY,
                subtotal=breakdown.subtotal,
                discount=breakdown.discount,
                shipping_cost=breakdown.shipping,
                tax=breakdown.tax,
                total=breakdown.total,
                coupon_code=coupon.code if coupon else None,
                delivery_area_snapshot=delivery_area.snapshot() if delivery_area else None,
                shipping_address=data.shipping_address,
                billing_address=data.billing_address or data.shipping_address,
                affiliate_id=affiliate.id if affiliate else None,
                affiliate_snapshot=affiliate.snapshot() if affiliate else None,
                notes=data.notes,
            )

            for line in lines:
                order.items.append(OrderItem(
                    product_id=line.product.id,
                    product_snapshot=line.product.snapshot(),
                    name=line.product.name_en,
                    sku=line.product.sku,
                    quantity=line.quantity,
                    unit_price=line.priced.unit_price,
                    line_total=line.priced.line_total,
                    pricing_source=line.priced.source.value,
                    selected_specifications=line.specifications or [],
                ))

            order.status_history.append(OrderStatusHistory(
                from_status=None,
                to_status=OrderStatus.PENDING.value,
                changed_by=data.user_id or data.guest_id,
                notes="Order placed",
            ))

            self.db.add(order)
            await self.db.flush()

        except StorefrontError:
            await self._restore_lines(decremented)
            raise
        except SQLAlchemyError as e:
            # Decrements share the failed unit of work; rolling back undoes them
            logger.error(f"Database error placing order on store {store.id}: {e}")
            await self.db.rollback()
            raise

        logger.info(
            f"Placed order {order.order_number} on store {store.slug}: "
            f"{len(lines)} lines, total {order.total} {order.currency}"
        )
        return order

    async def discard_unpaid_order(self, order: Order, reason: str) -> None:
        """
        Compensate a placement whose payment could not be initialized.

        Restores every line through the ledger, gives back the coupon use
        and deletes the order.
        """
        if order.payment_status != PaymentStatus.UNPAID.value:
            raise ValidationError(
                f"Order {order.order_number} is {order.payment_status} and cannot be discarded"
            )

        restored = await CancellationService(self.db, self.ledger).restore_items(order)

        if order.coupon_code:
            await self.db.execute(
                update(Coupon)
                .where(
                    Coupon.store_id == order.store_id,
                    Coupon.code == order.coupon_code,
                    Coupon.used_count > 0,
                )
                .values(used_count=Coupon.used_count - 1)
                .execution_options(synchronize_session=False)
            )

        await self.db.delete(order)
        await self.db.flush()
        logger.warning(
            f"Discarded order {order.order_number} ({reason}), restored stock for {restored} items"
        )

    # ==================== FULFILLMENT ====================

    async def update_fulfillment_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Order:
        """
        Move an order along its fulfillment lifecycle.

        Allowed moves are listed in ALLOWED_STATUS_TRANSITIONS. CANCELLED is
        handed to CancellationService so stock is restored. Online orders
        must be paid before they are processed, shipped or delivered.

        Raises:
            NotFoundError: order does not exist
            InvalidStatusTransitionError: move not allowed from the current status
            CannotCancelError: cancellation requested for a shipped order
        """
        new_status = OrderStatus(new_status).value
        order = await self.get_order(order_id)

        if new_status == OrderStatus.CANCELLED.value:
            return await CancellationService(self.db, self.ledger).cancel(
                order.id, reason=notes, cancelled_by=changed_by
            )

        if order.status == new_status:
            logger.info(f"Order {order.order_number} already {new_status}")
            return order

        if new_status not in ALLOWED_STATUS_TRANSITIONS.get(order.status, set()):
            raise InvalidStatusTransitionError(order.order_number, order.status, new_status)

        awaiting_payment = (
            order.payment_method == PaymentMethod.ONLINE.value
            and not order.is_paid
            and new_status != OrderStatus.REFUNDED.value
        )
        if awaiting_payment:
            raise InvalidStatusTransitionError(
                order.order_number,
                order.status,
                new_status,
                reason=f"Order {order.order_number} is awaiting online payment",
            )

        previous_status = order.status
        now = datetime.now(timezone.utc)
        values = {"status": new_status, "updated_at": now}
        if new_status == OrderStatus.SHIPPED.value:
            values["shipped_at"] = now
        elif new_status == OrderStatus.DELIVERED.value:
            values["delivered_at"] = now
        if tracking_number:
            values["tracking_number"] = tracking_number
        if carrier:
            values["carrier"] = carrier

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == previous_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(order)
            raise InvalidStatusTransitionError(order.order_number, order.status, new_status)

        self.db.add(OrderStatusHistory(
            order_id=order.id,
            from_status=previous_status,
            to_status=new_status,
            changed_by=changed_by,
            notes=notes,
        ))
        await self.db.flush()
        await self.db.refresh(order)

        logger.info(f"Order {order.order_number} moved {previous_status} -> {new_status}")
        return order

    # ==================== INTERNAL HELPERS ====================

    async def _load_product(self, store_id: uuid.UUID, product_id: uuid.UUID) -> Product:
        result = await self.db.execute(
            select(Product)
            .where(Product.id == product_id, Product.store_id == store_id)
            .execution_options(populate_existing=True)
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise NotFoundError("Product", product_id)
        if not product.is_active:
            raise ValidationError(f"Product {product.name_en} is not available")
        return product

    async def _decrement_lines(self, lines: List[_Line]) -> List[_Line]:
        """Decrement every line or none of them."""
        decremented: List[_Line] = []
        for line in lines:
            check = await self.ledger.decrement(line.product, line.quantity, line.selections)
            if not check.success:
                await self._restore_lines(decremented)
                check.raise_for_error()
            line.specifications = [
                {
                    "specification_id": row.specification_id,
                    "value_id": row.value_id,
                    "title": row.title,
                    "value": row.value,
                }
                for row in check.matches
            ]
            decremented.append(line)
        return decremented

    async def _restore_lines(self, lines: List[_Line]) -> None:
        for line in lines:
            await self.ledger.restore(line.product, line.quantity, line.specifications)
        if lines:
            logger.info(f"Restored stock for {len(lines)} lines after failed placement")

    async def _resolve_delivery_area(
        self,
        store_id: uuid.UUID,
        area_id: Optional[uuid.UUID],
    ) -> Optional[DeliveryArea]:
        if area_id is None:
            return None
        result = await self.db.execute(
            select(DeliveryArea).where(
                DeliveryArea.id == area_id,
                DeliveryArea.store_id == store_id,
                DeliveryArea.is_active == True,
            )
        )
        area = result.scalar_one_or_none()
        if area is None:
            raise NotFoundError("DeliveryArea", area_id)
        return area

    async def _resolve_coupon(self, store_id: uuid.UUID, code: Optional[str]) -> Optional[Coupon]:
        if not code or not code.strip():
            return None
        code = code.strip().upper()
        result = await self.db.execute(
            select(Coupon).where(Coupon.store_id == store_id, Coupon.code == code)
        )
        coupon = result.scalar_one_or_none()
        if coupon is None or not coupon.is_valid:
            raise ValidationError("Invalid or expired coupon code", details={"coupon_code": code})
        return coupon

    async def _claim_coupon(self, coupon: Coupon) -> None:
        """Count one use, unless a concurrent order took the last one."""
        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError(
                "Coupon usage limit reached", details={"coupon_code": coupon.code}
            )

    async def _resolve_affiliate(
        self,
        store_id: uuid.UUID,
        affiliate_id: Optional[uuid.UUID],
        affiliate_code: Optional[str],
    ) -> Optional[AffiliateAccount]:
        if affiliate_id is None and not affiliate_code:
            return None

        stmt = select(AffiliateAccount).where(AffiliateAccount.store_id == store_id)
        if affiliate_id is not None:
            stmt = stmt.where(AffiliateAccount.id == affiliate_id)
        else:
            stmt = stmt.where(AffiliateAccount.affiliate_code == affiliate_code.strip().upper())

        affiliate = (await self.db.execute(stmt)).scalar_one_or_none()
        if affiliate is None or not affiliate.is_active:
            raise NotFoundError("Affiliate", affiliate_id or affiliate_code)
        return affiliate

    async def _resolve_wholesaler(
        self,
        store_id: uuid.UUID,
        user_id: Optional[str],
        email: Optional[str],
    ) -> Optional[Wholesaler]:
        """Only registered buyers can be wholesalers; guests never are."""
        if not user_id:
            return None

        conditions = [Wholesaler.user_id == user_id]
        if email:
            conditions.append(Wholesaler.email == email.lower())

        result = await self.db.execute(
            select(Wholesaler).where(Wholesaler.store_id == store_id, or_(*conditions))
        )
        for wholesaler in result.scalars().all():
            if wholesaler.is_eligible:
                return wholesaler
        return None

