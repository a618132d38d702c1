from decimal import Decimal

import pytest
from sqlalchemy import update

from app.core.exceptions import NotFoundError
from app.models.order import Order, OrderStatus, PaymentStatus
from app.services.payment_gateway import FakePaymentGateway
from app.services.payment_reconciler import (
    PaymentReconciler,
    PaymentSource,
    ReconcileOutcome,
)


@pytest.fixture
async def referred_order(shirt, affiliate, place_order):
    """Two shirts (200.00) referred by a 10% affiliate, awaiting payment."""
    return await place_order((shirt, 2, None), affiliateCode="AFF1234", reference="ref_paid")


class TestSuccess:
    @pytest.mark.parametrize("status", ["success", "CAPTURED", " Paid "])
    async def test_marks_paid_and_accrues_commission(self, db, referred_order, affiliate, status):
        result = await PaymentReconciler(db).reconcile("ref_paid", status, PaymentSource.WEBHOOK)

        assert result.outcome == ReconcileOutcome.PAID
        assert not result.should_continue_polling
        order = result.order
        assert order.payment_status == PaymentStatus.PAID.value
        assert order.status == OrderStatus.PROCESSING.value
        assert order.paid_at is not None
        assert order.commission_amount == Decimal("20.00")
        assert order.status_history[-1].to_status == OrderStatus.PROCESSING.value

        await db.refresh(affiliate)
        assert affiliate.total_sales == Decimal("200.00")
        assert affiliate.total_commission == Decimal("20.00")
        assert affiliate.balance == Decimal("20.00")
        assert affiliate.total_orders == 1

    async def test_webhook_then_poll_transitions_once(self, db, referred_order, affiliate):
        reconciler = PaymentReconciler(db)
        first = await reconciler.reconcile("ref_paid", "success", PaymentSource.WEBHOOK)
        paid_at = first.order.paid_at

        second = await reconciler.reconcile("ref_paid", "success", PaymentSource.POLL)
        third = await reconciler.reconcile("ref_paid", "paid", PaymentSource.FALLBACK)

        assert second.outcome == ReconcileOutcome.ALREADY_PAID
        assert third.outcome == ReconcileOutcome.ALREADY_PAID
        assert third.order.paid_at == paid_at
        await db.refresh(affiliate)
        assert affiliate.total_orders == 1
        assert affiliate.total_commission == Decimal("20.00")

    async def test_stale_unpaid_read_does_not_reapply(self, db, referred_order, affiliate):
        # A concurrent request already marked the row paid; our copy still says UNPAID
        await db.execute(
            update(Order)
            .where(Order.id == referred_order.id)
            .values(payment_status=PaymentStatus.PAID.value, status=OrderStatus.PROCESSING.value)
            .execution_options(synchronize_session=False)
        )

        result = await PaymentReconciler(db)._mark_paid(referred_order, "success", PaymentSource.POLL)

        assert result.outcome == ReconcileOutcome.ALREADY_PAID
        await db.refresh(affiliate)
        assert affiliate.total_orders == 0

    async def test_success_on_cancelled_order_is_not_applied(self, db, referred_order):
        await PaymentReconciler(db).reconcile("ref_paid", "failed")

        result = await PaymentReconciler(db).reconcile("ref_paid", "success")

        assert result.outcome == ReconcileOutcome.CANCELLED
        assert result.order.payment_status == PaymentStatus.UNPAID.value


class TestFailureAndPending:
    @pytest.mark.parametrize("status", ["failed", "cancelled", "DECLINED"])
    async def test_failure_cancels_and_restores_stock(self, db, shirt, referred_order, status):
        assert shirt.stock == 8

        result = await PaymentReconciler(db).reconcile("ref_paid", status, PaymentSource.POLL)

        assert result.outcome == ReconcileOutcome.CANCELLED
        assert not result.should_continue_polling
        assert result.order.status == OrderStatus.CANCELLED.value
        assert result.order.cancelled_by == "payment-poll"
        await db.refresh(shirt)
        assert shirt.stock == 10

    async def test_repeated_failure_restores_once(self, db, shirt, referred_order):
        reconciler = PaymentReconciler(db)
        await reconciler.reconcile("ref_paid", "failed")
        await reconciler.reconcile("ref_paid", "failed")

        await db.refresh(shirt)
        assert shirt.stock == 10

    async def test_failure_after_payment_is_ignored(self, db, shirt, referred_order):
        reconciler = PaymentReconciler(db)
        await reconciler.reconcile("ref_paid", "success")

        result = await reconciler.reconcile("ref_paid", "failed")

        assert result.outcome == ReconcileOutcome.ALREADY_PAID
        assert result.order.status == OrderStatus.PROCESSING.value
        await db.refresh(shirt)
        assert shirt.stock == 8

    @pytest.mark.parametrize("status", ["pending", "processing", "", None])
    async def test_other_statuses_keep_polling(self, db, referred_order, status):
        result = await PaymentReconciler(db).reconcile("ref_paid", status)

        assert result.outcome == ReconcileOutcome.PENDING
        assert result.should_continue_polling
        assert result.order.payment_status == PaymentStatus.UNPAID.value

    async def test_unknown_reference(self, db, store):
        with pytest.raises(NotFoundError):
            await PaymentReconciler(db).reconcile("ref_missing", "success")


class TestPoll:
    async def test_poll_verifies_then_reconciles(self, db, store, referred_order):
        gateway = FakePaymentGateway()
        gateway.set_status("ref_paid", "success")

        result = await PaymentReconciler(db).poll(store, "ref_paid", gateway)

        assert result.outcome == ReconcileOutcome.PAID
        assert gateway.calls[-1]["method"] == "verify"

    async def test_gateway_error_means_continue(self, db, store, referred_order):
        gateway = FakePaymentGateway(should_succeed=False)

        result = await PaymentReconciler(db).poll(store, "ref_paid", gateway)

        assert result.outcome == ReconcileOutcome.PENDING
        assert result.should_continue_polling

    async def test_paid_order_skips_gateway(self, db, store, referred_order):
        await PaymentReconciler(db).reconcile("ref_paid", "success")
        gateway = FakePaymentGateway()

        result = await PaymentReconciler(db).poll(store, "ref_paid", gateway)

        assert result.outcome == ReconcileOutcome.ALREADY_PAID
        assert gateway.calls == []
