"""
Payment Gateway adapters.

The order backend only depends on the PaymentGateway contract:
- initialize(): start a payment, get back a reference and a checkout URL
- verify(): ask the gateway for the current status of a reference

Adapters report upstream failures as ``success=False`` results rather than
raising, so callers decide whether a failure is fatal (initialization) or
just means "try again later" (polling).

Implementations:
- LahzaGateway: Lahza transaction API over httpx
- FakePaymentGateway: in-memory gateway for local development and tests
"""

import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

import httpx
from pydantic import BaseModel, Field

from app.config import settings
from app.core.exceptions import PaymentGatewayError
from app.models.store import Store

logger = logging.getLogger(__name__)


class GatewayStatus:
    """Gateway status strings, compared lower-case."""
    SUCCESS = "success"
    CAPTURED = "captured"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    PENDING = "pending"

    SUCCEEDED = frozenset({SUCCESS, CAPTURED, PAID})
    FAILED_STATES = frozenset({FAILED, CANCELLED, DECLINED})


class PaymentInitRequest(BaseModel):
    """Request to initialize a payment."""
    amount: Decimal = Field(..., gt=0, description="Amount in major currency units")
    currency: str = "ILS"
    email: str
    customer_name: str = ""
    customer_phone: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    callback_url: Optional[str] = None


class PaymentInitResult(BaseModel):
    """Outcome of a payment initialization."""
    success: bool
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def raise_for_error(self) -> None:
        if not self.success:
            raise PaymentGatewayError(
                self.error or "Payment initialization failed",
                details=self.details or {},
            )


class PaymentVerification(BaseModel):
    """Outcome of a payment verification."""
    success: bool
    reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid_at: Optional[str] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def raise_for_error(self) -> None:
        if not self.success:
            raise PaymentGatewayError(
                self.error or "Payment verification failed",
                details=self.details or {},
            )


def to_smallest_unit(amount: Decimal) -> int:
    """ILS, USD and EUR all use 100 minor units."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_smallest_unit(amount) -> Decimal:
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    Args:
        body: Raw request body bytes
        signature: Hex digest sent by the gateway
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret or not signature:
        return False

    expected_signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    # Compare signatures (constant-time comparison)
    return hmac.compare_digest(expected_signature, signature.strip().lower())


class PaymentGateway(ABC):
    """Contract every payment gateway adapter implements."""

    name: str = "abstract"

    @abstractmethod
    async def initialize(self, store: Store, request: PaymentInitRequest) -> PaymentInitResult:
        ...

    @abstractmethod
    async def verify(self, store: Store, reference: str) -> PaymentVerification:
        ...


class LahzaGateway(PaymentGateway):
    """
    Lahza transaction API.

    Usage:
        gateway = LahzaGateway()
        result = await gateway.initialize(store, PaymentInitRequest(amount=Decimal("50"), email="a@b.c"))
        verification = await gateway.verify(store, result.reference)
    """

    name = "lahza"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.LAHZA_API_URL).rstrip("/")
        self.timeout = timeout or settings.LAHZA_TIMEOUT_SECONDS
        self._transport = transport

    def _secret_key(self, store: Store) -> Optional[str]:
        return store.payment_secret_key or settings.LAHZA_SECRET_KEY or None

    def _client(self, secret_key: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def initialize(self, store: Store, request: PaymentInitRequest) -> PaymentInitResult:
        secret_key = self._secret_key(store)
        if not secret_key:
            return PaymentInitResult(success=False, error="Store does not have a payment secret key configured")

        name_parts = request.customer_name.strip().split(" ") if request.customer_name else [""]
        payload = {
            "amount": str(to_smallest_unit(request.amount)),
            "email": request.email,
            "currency": request.currency,
            "first_name": name_parts[0],
            "last_name": " ".join(name_parts[1:]),
            "callback_url": request.callback_url or settings.PAYMENT_CALLBACK_URL,
            # Lahza expects metadata as a JSON string
            "metadata": json.dumps({"storeId": str(store.id), **request.metadata}, default=str),
        }
        if request.customer_phone:
            payload["mobile"] = request.customer_phone

        try:
            async with self._client(secret_key) as client:
                response = await client.post("/initialize", json=payload)
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Lahza initialize failed for store {store.id}: {e}")
            return PaymentInitResult(success=False, error=str(e))

        if not isinstance(body, dict):
            body = {}
        data = body.get("data")
        if response.status_code >= 400 or body.get("status") is not True or not data:
            logger.error(f"Lahza initialize rejected ({response.status_code}): {body}")
            return PaymentInitResult(
                success=False,
                error=body.get("message") or "Failed to initialize payment",
                details=body,
            )

        logger.info(f"Initialized Lahza payment {data.get('reference')} for store {store.id}")
        return PaymentInitResult(
            success=True,
            reference=data.get("reference"),
            authorization_url=data.get("authorization_url") or data.get("payment_url"),
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
        )

    async def verify(self, store: Store, reference: str) -> PaymentVerification:
        secret_key = self._secret_key(store)
        if not secret_key:
            return PaymentVerification(
                success=False,
                reference=reference,
                error="Store does not have a payment secret key configured",
            )

        try:
            async with self._client(secret_key) as client:
                response = await client.get(f"/verify/{reference}")
            body = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Lahza verify failed for {reference}: {e}")
            return PaymentVerification(success=False, reference=reference, error=str(e))

        if not isinstance(body, dict):
            body = {}
        data = body.get("data")
        if response.status_code >= 400 or body.get("status") is not True or not data:
            return PaymentVerification(
                success=False,
                reference=reference,
                error=body.get("message") or "Payment verification failed",
                details=body,
            )

        amount = data.get("amount")
        return PaymentVerification(
            success=True,
            reference=data.get("reference") or reference,
            status=str(data.get("status") or "").lower() or None,
            amount=from_smallest_unit(amount) if amount is not None else None,
            currency=data.get("currency"),
            paid_at=data.get("paid_at"),
        )


class FakePaymentGateway(PaymentGateway):
    """
    In-memory gateway.

    References start in ``pending``; ``set_status`` moves them, and
    ``should_succeed=False`` makes every call fail as if upstream were down.
    """

    name = "fake"

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.statuses: Dict[str, str] = {}
        self.calls: List[Dict[str, Any]] = []

    def configure(self, should_succeed: bool = True) -> None:
        self.should_succeed = should_succeed

    def set_status(self, reference: str, status: str) -> None:
        self.statuses[reference] = status

    async def initialize(self, store: Store, request: PaymentInitRequest) -> PaymentInitResult:
        self.calls.append({"method": "initialize", "store_id": store.id, "amount": request.amount})
        if not self.should_succeed:
            return PaymentInitResult(success=False, error="Gateway unavailable", details={"fake": True})

        reference = f"fake_{uuid.uuid4().hex[:16]}"
        self.statuses[reference] = GatewayStatus.PENDING
        return PaymentInitResult(
            success=True,
            reference=reference,
            authorization_url=f"https://pay.example.test/{reference}",
        )

    async def verify(self, store: Store, reference: str) -> PaymentVerification:
        self.calls.append({"method": "verify", "store_id": store.id, "reference": reference})
        if not self.should_succeed:
            return PaymentVerification(success=False, reference=reference, error="Gateway unavailable")
        if reference not in self.statuses:
            return PaymentVerification(success=False, reference=reference, error="Transaction not found")
        return PaymentVerification(success=True, reference=reference, status=self.statuses[reference])


def build_payment_gateway(name: Optional[str] = None) -> PaymentGateway:
    """Create the adapter selected by PAYMENT_GATEWAY."""
    name = (name or settings.PAYMENT_GATEWAY).lower()
    if name == LahzaGateway.name:
        return LahzaGateway()
    if name == FakePaymentGateway.name:
        return FakePaymentGateway()
    raise ValueError(f"Unknown payment gateway: {name}")
