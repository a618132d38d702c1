from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Checkout
    orders,
    payments,
)

api_router = APIRouter(prefix="/api/v1")

# Orders
api_router.include_router(orders.router, prefix="/orders", tags=["Orders"])

# Payments (webhook, poll and fallback settlement)
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
