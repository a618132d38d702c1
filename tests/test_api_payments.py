import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from app.config import settings
from app.models.coupon import Coupon, DiscountType
from app.models.order import Order

PAYMENTS = "/api/v1/payments"


async def order_count(db) -> int:
    return (await db.execute(select(func.count(Order.id)))).scalar()


class TestInitialize:
    async def test_places_order_and_returns_checkout(self, client, db, store, shirt, order_payload, gateway):
        payload = {"orderData": order_payload((shirt, 2, None)), "callbackUrl": "https://shop.example.com/thanks"}

        response = await client.post(f"{PAYMENTS}/{store.id}/initialize", json=payload)

        assert response.status_code == 201
        body = response.json()
        assert body["reference"].startswith("fake_")
        assert body["authorization_url"].endswith(body["reference"])
        assert body["polling"] is False
        assert body["order"]["payment_reference"] == body["reference"]
        assert gateway.calls[0]["amount"] == Decimal("200.00")
        await db.refresh(shirt)
        assert shirt.stock == 8

    async def test_starts_polling_when_enabled(self, client, store, mug, order_payload, registry, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_POLLING_ENABLED", True)
        registry.initial_interval = 60

        response = await client.post(
            f"{PAYMENTS}/{store.id}/initialize", json={"orderData": order_payload((mug, 1, None))}
        )

        assert response.json()["polling"] is True
        assert registry.is_polling(response.json()["reference"])

    async def test_gateway_failure_discards_order_and_restores_stock(
        self, client, db, store, shirt, order_payload, gateway
    ):
        gateway.configure(should_succeed=False)

        response = await client.post(
            f"{PAYMENTS}/{store.id}/initialize", json={"orderData": order_payload((shirt, 3, None))}
        )

        assert response.status_code == 502
        assert response.json()["error"] == "PaymentGatewayError"
        assert await order_count(db) == 0
        await db.refresh(shirt)
        assert shirt.stock == 10
        assert shirt.sold_count == 0

    async def test_cash_on_delivery_rejected(self, client, store, mug, order_payload):
        payload = {"orderData": order_payload((mug, 1, None), paymentMethod="CASH_ON_DELIVERY")}

        response = await client.post(f"{PAYMENTS}/{store.id}/initialize", json=payload)

        assert response.status_code == 400

    async def test_free_order_rejected_before_stock_moves(self, client, db, store, mug, order_payload):
        coupon = Coupon(
            store_id=store.id,
            code="FREE100",
            discount_type=DiscountType.PERCENTAGE.value,
            discount_value=Decimal("100"),
            valid_from=datetime.now(timezone.utc) - timedelta(days=1),
        )
        db.add(coupon)
        await db.commit()
        payload = {"orderData": order_payload((mug, 2, None), couponCode="FREE100")}

        response = await client.post(f"{PAYMENTS}/{store.id}/initialize", json=payload)

        assert response.status_code == 400
        assert Decimal(response.json()["details"]["total"]) == 0
        assert await order_count(db) == 0
        await db.refresh(mug)
        await db.refresh(coupon)
        assert mug.stock == 3
        assert mug.sold_count == 0
        assert coupon.used_count == 0

    async def test_gateway_crash_discards_order_and_restores_stock(
        self, client, db, store, mug, order_payload, gateway, monkeypatch
    ):
        async def crash(store, request):
            raise RuntimeError("connection reset by peer")

        monkeypatch.setattr(gateway, "initialize", crash)

        response = await client.post(
            f"{PAYMENTS}/{store.id}/initialize", json={"orderData": order_payload((mug, 2, None))}
        )

        assert response.status_code == 502
        assert response.json()["error"] == "PaymentGatewayError"
        assert await order_count(db) == 0
        await db.refresh(mug)
        assert mug.stock == 3
        assert mug.sold_count == 0


class TestInitializeExistingOrder:
    async def test_starts_payment_for_order_placed_without_one(self, client, db, store, mug, place_order, gateway):
        order = await place_order((mug, 2, None))

        response = await client.post(
            f"{PAYMENTS}/{store.id}/orders/{order.id}/initialize",
            json={"callbackUrl": "https://shop.example.com/thanks"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["order"]["id"] == str(order.id)
        assert body["order"]["payment_reference"] == body["reference"]
        assert gateway.calls[0]["amount"] == Decimal("50.00")

        gateway.set_status(body["reference"], "success")
        paid = (await client.get(f"{PAYMENTS}/{store.id}/poll/{body['reference']}")).json()
        assert paid["outcome"] == "PAID"

    async def test_body_is_optional(self, client, store, mug, place_order):
        order = await place_order((mug, 1, None))

        response = await client.post(f"{PAYMENTS}/{store.id}/orders/{order.id}/initialize")

        assert response.status_code == 201

    async def test_order_with_payment_rejected(self, client, store, mug, place_order, gateway):
        order = await place_order((mug, 1, None), reference="ref_existing")

        response = await client.post(f"{PAYMENTS}/{store.id}/orders/{order.id}/initialize", json={})

        assert response.status_code == 400
        assert response.json()["details"]["payment_reference"] == "ref_existing"
        assert gateway.calls == []

    async def test_cash_on_delivery_order_rejected(self, client, store, mug, place_order):
        order = await place_order((mug, 1, None), paymentMethod="CASH_ON_DELIVERY")

        response = await client.post(f"{PAYMENTS}/{store.id}/orders/{order.id}/initialize", json={})

        assert response.status_code == 400

    async def test_unknown_order(self, client, store):
        response = await client.post(f"{PAYMENTS}/{store.id}/orders/{uuid.uuid4()}/initialize", json={})

        assert response.status_code == 404

    async def test_gateway_failure_discards_order(self, client, db, store, mug, place_order, gateway):
        order = await place_order((mug, 2, None))
        gateway.configure(should_succeed=False)

        response = await client.post(f"{PAYMENTS}/{store.id}/orders/{order.id}/initialize", json={})

        assert response.status_code == 502
        assert await order_count(db) == 0
        await db.refresh(mug)
        assert mug.stock == 3


class TestSettlement:
    async def initialize(self, client, store, product, order_payload, quantity=1):
        response = await client.post(
            f"{PAYMENTS}/{store.id}/initialize", json={"orderData": order_payload((product, quantity, None))}
        )
        return response.json()["reference"]

    async def test_webhook_with_nested_reference(self, client, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload)
        gateway.set_status(reference, "success")

        response = await client.post(
            f"{PAYMENTS}/{store.id}/webhook",
            json={"event": "charge.success", "data": {"reference": reference}},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "PAID"
        status = (await client.get(f"{PAYMENTS}/{store.id}/status/{reference}")).json()
        assert status["is_paid"] is True
        assert status["order"]["status"] == "PROCESSING"

    async def test_webhook_with_top_level_reference(self, client, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload)
        gateway.set_status(reference, "captured")

        response = await client.post(f"{PAYMENTS}/{store.id}/webhook", json={"reference": reference})

        assert response.json()["outcome"] == "PAID"

    async def test_webhook_rechecks_status_with_gateway(self, client, store, mug, order_payload):
        reference = await self.initialize(client, store, mug, order_payload)

        # Event claims success but the gateway still reports pending
        response = await client.post(
            f"{PAYMENTS}/{store.id}/webhook",
            json={"event": "charge.success", "data": {"reference": reference, "status": "success"}},
        )

        assert response.json()["outcome"] == "PENDING"

    async def test_webhook_unknown_order_is_acknowledged(self, client, store):
        response = await client.post(f"{PAYMENTS}/{store.id}/webhook", json={"data": {"reference": "ref_nope"}})

        assert response.status_code == 200
        assert response.json()["message"] == "Order not found"

    async def test_webhook_without_reference(self, client, store):
        response = await client.post(f"{PAYMENTS}/{store.id}/webhook", json={"event": "charge.success"})

        assert response.status_code == 400

    async def test_webhook_signature_checked_when_secret_set(self, client, store, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
        body = json.dumps({"data": {"reference": "ref_nope"}}).encode()

        bad = await client.post(
            f"{PAYMENTS}/{store.id}/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Lahza-Signature": "deadbeef"},
        )
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
        good = await client.post(
            f"{PAYMENTS}/{store.id}/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Lahza-Signature": signature},
        )

        assert bad.status_code == 401
        assert good.status_code == 200

    async def test_webhook_without_signature_rejected_when_secret_set(self, client, store, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")

        response = await client.post(f"{PAYMENTS}/{store.id}/webhook", json={"data": {"reference": "ref_nope"}})

        assert response.status_code == 401

    async def test_poll_until_paid(self, client, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload)

        pending = (await client.get(f"{PAYMENTS}/{store.id}/poll/{reference}")).json()
        gateway.set_status(reference, "success")
        paid = (await client.get(f"{PAYMENTS}/{store.id}/poll/{reference}")).json()
        again = (await client.get(f"{PAYMENTS}/{store.id}/poll/{reference}")).json()

        assert pending["shouldContinuePolling"] is True
        assert paid["shouldContinuePolling"] is False
        assert paid["outcome"] == "PAID"
        assert again["outcome"] == "ALREADY_PAID"

    async def test_poll_gateway_outage_keeps_polling(self, client, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload)
        gateway.configure(should_succeed=False)

        response = await client.get(f"{PAYMENTS}/{store.id}/poll/{reference}")

        assert response.status_code == 200
        assert response.json()["shouldContinuePolling"] is True

    async def test_poll_failed_payment_restores_stock(self, client, db, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload, quantity=2)
        gateway.set_status(reference, "failed")

        response = await client.get(f"{PAYMENTS}/{store.id}/poll/{reference}")

        assert response.json()["outcome"] == "CANCELLED"
        assert response.json()["order"]["status"] == "CANCELLED"
        await db.refresh(mug)
        assert mug.stock == 3

    async def test_fallback_marks_paid_once(self, client, store, mug, order_payload):
        reference = await self.initialize(client, store, mug, order_payload)

        first = await client.patch(f"{PAYMENTS}/{store.id}/update-order-status/{reference}")
        second = await client.patch(f"{PAYMENTS}/{store.id}/update-order-status/{reference}")

        assert first.status_code == 200
        assert first.json()["outcome"] == "PAID"
        assert second.json()["outcome"] == "ALREADY_PAID"
        assert first.json()["order"]["paid_at"] == second.json()["order"]["paid_at"]

    async def test_fallback_unknown_reference(self, client, store):
        response = await client.patch(f"{PAYMENTS}/{store.id}/update-order-status/ref_nope")

        assert response.status_code == 404

    async def test_verify_is_read_only(self, client, store, mug, order_payload, gateway):
        reference = await self.initialize(client, store, mug, order_payload)
        gateway.set_status(reference, "success")

        verify = await client.get(f"{PAYMENTS}/{store.id}/verify/{reference}")
        status = await client.get(f"{PAYMENTS}/{store.id}/status/{reference}")

        assert verify.json()["status"] == "success"
        assert status.json()["is_paid"] is False

    async def test_verify_gateway_error(self, client, store):
        response = await client.get(f"{PAYMENTS}/{store.id}/verify/ref_nope")

        assert response.status_code == 502


class TestPollingEndpoints:
    async def test_list_and_stop(self, client, store, registry):
        registry.initial_interval = 60
        registry.start(store.id, "ref_listed")

        listed = (await client.get(f"{PAYMENTS}/polling/active")).json()
        stopped = await client.delete(f"{PAYMENTS}/polling/ref_listed")
        missing = await client.delete(f"{PAYMENTS}/polling/ref_listed")

        assert listed["total"] == 1
        assert listed["items"][0]["reference"] == "ref_listed"
        assert stopped.status_code == 204
        assert missing.status_code == 404
