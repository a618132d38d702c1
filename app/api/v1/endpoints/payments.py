"""Payment API endpoints for storefront checkout.

Three signals can settle a payment, and all of them go through
PaymentReconciler.reconcile():
- webhook: the gateway calls us
- poll: the client (or the polling registry) asks the gateway
- update-order-status: the client reports a successful checkout
"""
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, HTTPException, Header, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.api.deps import DB, Gateway, PollingRegistry
from app.config import settings
from app.core.exceptions import NotFoundError, PaymentGatewayError, ValidationError
from app.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from app.models.store import Store
from app.schemas.order import OrderBrief
from app.schemas.payment import (
    InitializePaymentRequest,
    InitializeOrderPaymentRequest,
    InitializePaymentResponse,
    VerifyPaymentResponse,
    PaymentStatusResponse,
    WebhookPayload,
    WebhookAck,
    PollResponse,
    UpdateOrderStatusResponse,
    ActivePollsResponse,
)
from app.services.order_service import OrderService
from app.services.payment_gateway import PaymentGateway, PaymentInitRequest, verify_webhook_signature
from app.services.payment_polling import PaymentPollingRegistry
from app.services.payment_reconciler import PaymentReconciler, PaymentSource


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payments"])


# ==================== POLLING REGISTRY ====================

@router.get("/polling/active", response_model=ActivePollsResponse)
async def list_active_polls(registry: PollingRegistry):
    """List payments currently being polled."""
    items = registry.active()
    return ActivePollsResponse(items=items, total=len(items))


@router.delete("/polling/{reference}", status_code=status.HTTP_204_NO_CONTENT)
async def stop_poll(reference: str, registry: PollingRegistry):
    """Stop polling a payment."""
    if not registry.stop(reference):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active poll for {reference}"
        )


# ==================== CHECKOUT ====================

async def _start_payment(
    orders: OrderService,
    store: Store,
    order: Order,
    gateway: PaymentGateway,
    registry: PaymentPollingRegistry,
    description: Optional[str] = None,
    callback_url: Optional[str] = None,
) -> InitializePaymentResponse:
    """
    Ask the gateway for a checkout URL for a committed UNPAID order.

    Any failure before the reference is linked discards the order and
    restores its stock, then answers 502.
    """
    customer = order.customer_snapshot or {}
    try:
        result = await gateway.initialize(store, PaymentInitRequest(
            amount=order.total,
            currency=order.currency,
            email=customer.get("email") or "",
            customer_name=customer.get("name") or "",
            customer_phone=customer.get("phone"),
            description=description or f"Order {order.order_number}",
            metadata={"orderId": str(order.id), "orderNumber": order.order_number},
            callback_url=callback_url,
        ))
        result.raise_for_error()
        if not result.reference:
            raise PaymentGatewayError("Payment gateway returned no reference")
    except Exception as e:
        await orders.discard_unpaid_order(order, reason=str(e) or "payment initialization failed")
        await orders.db.commit()
        if isinstance(e, PaymentGatewayError):
            raise
        logger.exception(f"Payment initialization crashed for order {order.order_number}")
        raise PaymentGatewayError(
            "Payment initialization failed",
            details={"order_number": order.order_number},
        ) from e

    await orders.attach_payment_reference(order, result.reference)
    await orders.db.commit()

    polling = False
    if settings.PAYMENT_POLLING_ENABLED:
        polling = registry.start(store.id, result.reference)

    return InitializePaymentResponse(
        reference=result.reference,
        authorization_url=result.authorization_url,
        polling=polling,
        order=OrderBrief.model_validate(order),
    )


@router.post(
    "/{store_id}/initialize",
    response_model=InitializePaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initialize_payment(
    store_id: uuid.UUID,
    data: InitializePaymentRequest,
    db: DB,
    gateway: Gateway,
    registry: PollingRegistry,
):
    """
    Place an order and initialize its online payment.

    Flow:
    1. Place the order (stock is decremented)
    2. Ask the gateway for a checkout URL
    3. On gateway failure, discard the order, restore stock, answer 502
    4. Otherwise link the reference to the order and start polling it
    """
    if data.order.payment_method != PaymentMethod.ONLINE:
        raise ValidationError("Only online orders can initialize a payment")

    orders = OrderService(db)
    store = await orders.get_store(store_id)
    order = await orders.place_order(store_id, data.order)
    # Reservation is durable before we wait on the gateway
    await db.commit()

    return await _start_payment(
        orders, store, order, gateway, registry,
        description=data.description,
        callback_url=data.callback_url,
    )


@router.post(
    "/{store_id}/orders/{order_id}/initialize",
    response_model=InitializePaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def initialize_order_payment(
    store_id: uuid.UUID,
    order_id: uuid.UUID,
    db: DB,
    gateway: Gateway,
    registry: PollingRegistry,
    data: Optional[InitializeOrderPaymentRequest] = None,
):
    """
    Initialize the online payment of an order placed through /orders.

    The order must be ONLINE, UNPAID, PENDING and not yet linked to a
    payment. A gateway failure discards it like a failed checkout.
    """
    orders = OrderService(db)
    store = await orders.get_store(store_id)
    order = await orders.get_order(order_id)
    if order.store_id != store.id:
        raise NotFoundError("Order", order_id)

    if order.payment_method != PaymentMethod.ONLINE.value:
        raise ValidationError("Only online orders can initialize a payment")
    if (
        order.payment_status != PaymentStatus.UNPAID.value
        or order.status != OrderStatus.PENDING.value
        or order.payment_reference
    ):
        raise ValidationError(
            f"Order {order.order_number} already has a payment or is no longer pending",
            details={
                "status": order.status,
                "payment_status": order.payment_status,
                "payment_reference": order.payment_reference,
            },
        )

    data = data or InitializeOrderPaymentRequest()
    return await _start_payment(
        orders, store, order, gateway, registry,
        description=data.description,
        callback_url=data.callback_url,
    )


@router.get("/{store_id}/verify/{reference}", response_model=VerifyPaymentResponse)
async def verify_payment(
    store_id: uuid.UUID,
    reference: str,
    db: DB,
    gateway: Gateway,
):
    """Ask the gateway for the payment's status. Read only."""
    store = await OrderService(db).get_store(store_id)
    verification = await gateway.verify(store, reference)
    verification.raise_for_error()

    return VerifyPaymentResponse(
        success=True,
        reference=verification.reference or reference,
        status=verification.status,
        amount=verification.amount,
        currency=verification.currency,
        paid_at=verification.paid_at,
    )


@router.get("/{store_id}/status/{reference}", response_model=PaymentStatusResponse)
async def get_payment_status(
    store_id: uuid.UUID,
    reference: str,
    db: DB,
):
    """Payment state as recorded on the order."""
    order = await OrderService(db).get_order_by_reference(reference, store_id)
    return PaymentStatusResponse(
        reference=reference,
        is_paid=order.is_paid,
        order=OrderBrief.model_validate(order),
    )


# ==================== SETTLEMENT SIGNALS ====================

@router.post(
    "/{store_id}/webhook",
    response_model=WebhookAck,
    summary="Payment gateway webhook handler",
    include_in_schema=False  # Hide from API docs for security
)
async def payment_webhook(
    store_id: uuid.UUID,
    request: Request,
    db: DB,
    gateway: Gateway,
    registry: PollingRegistry,
    x_lahza_signature: Optional[str] = Header(None, alias="X-Lahza-Signature"),
):
    """
    Handle gateway webhook events.

    The event body is never trusted for the payment status: the reference
    is re-verified with the gateway before reconciling. Unknown references
    are acknowledged so the gateway stops retrying.
    """
    # Get raw body for signature verification
    body = await request.body()

    if settings.PAYMENT_WEBHOOK_SECRET:
        if not x_lahza_signature:
            logger.warning("Webhook received without signature header")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing webhook signature"
            )
        if not verify_webhook_signature(body, x_lahza_signature, settings.PAYMENT_WEBHOOK_SECRET):
            logger.warning("Webhook signature verification failed")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature"
            )

    try:
        payload = WebhookPayload.model_validate_json(body)
    except PydanticValidationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    reference = payload.extract_reference()
    if not reference:
        raise ValidationError("Webhook payload has no payment reference")

    logger.info(f"Received payment webhook {payload.event} for {reference}")

    orders = OrderService(db)
    store = await orders.get_store(store_id)
    try:
        await orders.get_order_by_reference(reference, store.id)
    except NotFoundError:
        logger.warning(f"Webhook for unknown payment {reference} on store {store.id}")
        return WebhookAck(event=payload.event, message="Order not found")

    verification = await gateway.verify(store, reference)
    verification.raise_for_error()

    result = await PaymentReconciler(db).reconcile(
        reference, verification.status, PaymentSource.WEBHOOK, store.id
    )
    if result.is_terminal:
        registry.stop(reference)

    return WebhookAck(event=payload.event, outcome=result.outcome.value)


@router.get("/{store_id}/poll/{reference}", response_model=PollResponse)
async def poll_payment(
    store_id: uuid.UUID,
    reference: str,
    db: DB,
    gateway: Gateway,
    registry: PollingRegistry,
):
    """
    One poll step. Gateway errors answer shouldContinuePolling=true
    rather than failing the request.
    """
    store = await OrderService(db).get_store(store_id)
    result = await PaymentReconciler(db).poll(store, reference, gateway)
    if result.is_terminal:
        registry.stop(reference)

    return PollResponse(
        reference=reference,
        outcome=result.outcome.value,
        gateway_status=result.gateway_status,
        should_continue_polling=result.should_continue_polling,
        order=OrderBrief.model_validate(result.order) if result.order else None,
    )


@router.patch(
    "/{store_id}/update-order-status/{reference}",
    response_model=UpdateOrderStatusResponse,
)
async def update_order_status(
    store_id: uuid.UUID,
    reference: str,
    db: DB,
    registry: PollingRegistry,
):
    """Fallback: the client reports a completed checkout for this reference."""
    result = await PaymentReconciler(db).reconcile(
        reference, "paid", PaymentSource.FALLBACK, store_id
    )
    registry.stop(reference)

    return UpdateOrderStatusResponse(
        message=f"Order {result.order.order_number} is {result.order.payment_status}",
        outcome=result.outcome.value,
        order=OrderBrief.model_validate(result.order),
    )
