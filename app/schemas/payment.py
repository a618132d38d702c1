"""Payment schemas for the storefront payment endpoints."""
from typing import Optional, Dict, Any, List
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.base import BaseCreateSchema
from app.schemas.order import PlaceOrderRequest, OrderBrief


# ==================== INITIALIZE ====================

class InitializePaymentRequest(BaseCreateSchema):
    """Place an order and start its online payment."""
    order: PlaceOrderRequest = Field(..., alias="orderData")
    callback_url: Optional[str] = Field(None, alias="callbackUrl", max_length=500)
    description: Optional[str] = Field(None, max_length=255)


class InitializeOrderPaymentRequest(BaseCreateSchema):
    """Start the online payment of an existing order."""
    callback_url: Optional[str] = Field(None, alias="callbackUrl", max_length=500)
    description: Optional[str] = Field(None, max_length=255)


class InitializePaymentResponse(BaseModel):
    success: bool = True
    reference: str
    authorization_url: Optional[str] = None
    polling: bool = False
    order: OrderBrief


# ==================== VERIFY / STATUS ====================

class VerifyPaymentResponse(BaseModel):
    """Raw gateway view of a payment."""
    success: bool
    reference: str
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid_at: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Local view of a payment, read from the order."""
    success: bool = True
    reference: str
    is_paid: bool
    order: OrderBrief


# ==================== WEBHOOK / POLL / FALLBACK ====================

class WebhookPayload(BaseModel):
    """Gateway callback body; the reference may sit in data or at the top level."""
    event: Optional[str] = None
    reference: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def extract_reference(self) -> Optional[str]:
        if self.data and self.data.get("reference"):
            return str(self.data["reference"])
        return self.reference


class WebhookAck(BaseModel):
    status: str = "ok"
    event: Optional[str] = None
    outcome: Optional[str] = None
    message: Optional[str] = None


class PollResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    reference: str
    outcome: str
    gateway_status: Optional[str] = None
    should_continue_polling: bool = Field(..., alias="shouldContinuePolling")
    order: Optional[OrderBrief] = None


class UpdateOrderStatusResponse(BaseModel):
    success: bool = True
    message: str
    outcome: str
    order: OrderBrief


class ActivePollsResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
