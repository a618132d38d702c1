import uuid
from math import ceil
from typing import Optional

from fastapi import APIRouter, Query, status

from app.api.deps import DB
from app.models.order import OrderStatus, PaymentStatus
from app.schemas.order import (
    PlaceOrderRequest,
    CancelOrderRequest,
    OrderStatusUpdate,
    OrderResponse,
    OrderListResponse,
)
from app.services.cancellation_service import CancellationService
from app.services.order_service import OrderService


router = APIRouter(tags=["Orders"])


@router.post(
    "/store/{store_id}",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def place_order(
    store_id: uuid.UUID,
    data: PlaceOrderRequest,
    db: DB,
):
    """
    Place an order without starting an online payment.

    Used for cash on delivery. Online orders placed here get their payment
    through POST /payments/{store_id}/orders/{order_id}/initialize.
    """
    service = OrderService(db)
    order = await service.place_order(store_id, data)
    return OrderResponse.model_validate(order)


@router.get(
    "/store/{store_id}",
    response_model=OrderListResponse,
)
async def list_store_orders(
    store_id: uuid.UUID,
    db: DB,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
):
    """List a store's orders, newest first."""
    service = OrderService(db)
    skip = (page - 1) * size
    orders, total = await service.list_orders(
        store_id=store_id,
        status=order_status,
        payment_status=payment_status,
        skip=skip,
        limit=size,
    )

    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.get(
    "/number/{order_number}",
    response_model=OrderResponse,
)
async def get_order_by_number(
    order_number: str,
    db: DB,
):
    """Get order details by order number."""
    service = OrderService(db)
    order = await service.get_order_by_number(order_number)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
)
async def get_order(
    order_id: uuid.UUID,
    db: DB,
):
    """Get order details by ID."""
    service = OrderService(db)
    order = await service.get_order(order_id)
    return OrderResponse.model_validate(order)


@router.put(
    "/{order_id}/status",
    response_model=OrderResponse,
)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
):
    """
    Move an order to a new fulfillment status.

    Disallowed moves answer 409. CANCELLED restores stock.
    """
    service = OrderService(db)
    order = await service.update_fulfillment_status(
        order_id,
        data.status,
        changed_by=data.changed_by,
        notes=data.notes,
        tracking_number=data.tracking_number,
        carrier=data.carrier,
    )
    return OrderResponse.model_validate(order)


@router.put(
    "/{order_id}/cancel",
    response_model=OrderResponse,
)
async def cancel_order(
    order_id: uuid.UUID,
    data: CancelOrderRequest,
    db: DB,
):
    """
    Cancel an order and restore its stock.

    Shipped, delivered and refunded orders cannot be cancelled (409).
    """
    service = CancellationService(db)
    order = await service.cancel(
        order_id,
        reason=data.reason,
        cancelled_by=data.cancelled_by or "customer",
    )
    return OrderResponse.model_validate(order)
