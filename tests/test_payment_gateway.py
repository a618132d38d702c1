import hashlib
import hmac
import json
import uuid
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import PaymentGatewayError
from app.models.store import Store
from app.services.payment_gateway import (
    FakePaymentGateway,
    LahzaGateway,
    PaymentInitRequest,
    build_payment_gateway,
    from_smallest_unit,
    to_smallest_unit,
    verify_webhook_signature,
)

BASE_URL = "https://api.lahza.io/transaction"


@pytest.fixture
def lahza_store():
    return Store(id=uuid.uuid4(), name_en="Olive Tree Shop", slug="olive-tree", payment_secret_key="sk_test_olive")


def lahza_with(handler, requests=None):
    """LahzaGateway whose HTTP calls are answered by ``handler``."""
    def record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    return LahzaGateway(base_url=BASE_URL, timeout=5, transport=httpx.MockTransport(record))


def init_request(**overrides):
    fields = {
        "amount": Decimal("159.00"),
        "currency": "ILS",
        "email": "lina@example.com",
        "customer_name": "Lina Al Haddad",
        "customer_phone": "+970599000000",
        "metadata": {"orderNumber": "ORD2610180001"},
    }
    fields.update(overrides)
    return PaymentInitRequest(**fields)


class TestLahzaInitialize:
    async def test_sends_minor_units_and_bearer_key(self, lahza_store):
        requests = []
        lahza = lahza_with(lambda request: httpx.Response(200, json={
            "status": True,
            "data": {"id": 991, "reference": "ref_abc", "authorization_url": "https://checkout.lahza.io/ref_abc"},
        }), requests)

        result = await lahza.initialize(lahza_store, init_request())

        assert result.success
        assert result.reference == "ref_abc"
        assert result.authorization_url == "https://checkout.lahza.io/ref_abc"
        assert result.transaction_id == "991"

        request = requests[-1]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/initialize"
        assert request.headers["Authorization"] == "Bearer sk_test_olive"
        body = json.loads(request.content)
        assert body["amount"] == "15900"
        assert body["first_name"] == "Lina"
        assert body["last_name"] == "Al Haddad"
        assert body["mobile"] == "+970599000000"
        metadata = json.loads(body["metadata"])
        assert metadata == {"storeId": str(lahza_store.id), "orderNumber": "ORD2610180001"}

    async def test_rejected_initialization(self, lahza_store):
        lahza = lahza_with(
            lambda request: httpx.Response(400, json={"status": False, "message": "Invalid currency"})
        )

        result = await lahza.initialize(lahza_store, init_request())

        assert not result.success
        assert result.error == "Invalid currency"
        with pytest.raises(PaymentGatewayError):
            result.raise_for_error()

    async def test_network_error_is_a_result(self, lahza_store):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await lahza_with(refuse).initialize(lahza_store, init_request())

        assert not result.success
        assert "connection refused" in result.error

    async def test_store_without_key(self):
        store = Store(id=uuid.uuid4(), name_en="No Key", slug="no-key", payment_secret_key=None)
        lahza = lahza_with(lambda request: httpx.Response(500))

        result = await lahza.initialize(store, init_request())

        assert not result.success
        assert "secret key" in result.error


class TestLahzaVerify:
    async def test_status_normalized_and_amount_converted(self, lahza_store):
        requests = []
        lahza = lahza_with(lambda request: httpx.Response(200, json={
            "status": True,
            "data": {"reference": "ref_abc", "status": "Success", "amount": 15900, "currency": "ILS"},
        }), requests)

        verification = await lahza.verify(lahza_store, "ref_abc")

        assert str(requests[-1].url) == f"{BASE_URL}/verify/ref_abc"
        assert verification.success
        assert verification.status == "success"
        assert verification.amount == Decimal("159.00")
        assert verification.currency == "ILS"

    async def test_non_json_body(self, lahza_store):
        lahza = lahza_with(lambda request: httpx.Response(502, text="Bad Gateway"))

        verification = await lahza.verify(lahza_store, "ref_abc")

        assert not verification.success

    async def test_timeout(self, lahza_store):
        def stall(request):
            raise httpx.ReadTimeout("timed out", request=request)

        verification = await lahza_with(stall).verify(lahza_store, "ref_abc")

        assert not verification.success
        assert verification.reference == "ref_abc"


class TestFakeGateway:
    async def test_initialize_then_verify(self, lahza_store):
        gateway = FakePaymentGateway()
        result = await gateway.initialize(lahza_store, init_request())

        assert (await gateway.verify(lahza_store, result.reference)).status == "pending"
        gateway.set_status(result.reference, "success")
        assert (await gateway.verify(lahza_store, result.reference)).status == "success"

    async def test_unavailable(self, lahza_store):
        gateway = FakePaymentGateway(should_succeed=False)

        assert not (await gateway.initialize(lahza_store, init_request())).success
        assert not (await gateway.verify(lahza_store, "ref_any")).success

    async def test_unknown_reference(self, lahza_store):
        assert not (await FakePaymentGateway().verify(lahza_store, "ref_any")).success


def test_minor_unit_conversion():
    assert to_smallest_unit(Decimal("10.005")) == 1001
    assert from_smallest_unit(1999) == Decimal("19.99")


def test_build_payment_gateway():
    assert isinstance(build_payment_gateway("LAHZA"), LahzaGateway)
    assert isinstance(build_payment_gateway("fake"), FakePaymentGateway)
    with pytest.raises(ValueError):
        build_payment_gateway("paypal")


class TestWebhookSignature:
    body = b'{"event":"charge.success","data":{"reference":"ref_abc"}}'

    def sign(self, secret):
        return hmac.new(secret.encode(), self.body, hashlib.sha256).hexdigest()

    def test_valid(self):
        assert verify_webhook_signature(self.body, self.sign("whsec"), "whsec")

    def test_wrong_secret(self):
        assert not verify_webhook_signature(self.body, self.sign("other"), "whsec")

    def test_missing_parts(self):
        assert not verify_webhook_signature(self.body, None, "whsec")
        assert not verify_webhook_signature(self.body, self.sign("whsec"), None)
