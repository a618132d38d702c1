import uuid
from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.services.commission_service import AffiliateCommissionService, commission_for


def test_commission_excludes_shipping_and_tax():
    base, commission = commission_for(Decimal("200.00"), Decimal("20.00"), Decimal("7.5"))

    assert base == Decimal("180.00")
    assert commission == Decimal("13.50")


def test_commission_base_never_negative():
    assert commission_for(Decimal("10"), Decimal("15"), Decimal("10")) == (Decimal("0.00"), Decimal("0.00"))


class TestAccrual:
    async def test_accrues_once_per_order(self, db, shirt, affiliate, place_order):
        order = await place_order((shirt, 1, None), affiliateId=str(affiliate.id))
        service = AffiliateCommissionService(db)

        assert await service.accrue_for_order(order) == Decimal("10.00")
        assert await service.accrue_for_order(order) is None

        await db.refresh(affiliate)
        assert affiliate.total_orders == 1
        assert affiliate.total_sales == Decimal("100.00")
        assert affiliate.balance == Decimal("10.00")
        assert affiliate.last_activity is not None
        assert order.commission_accrued_at is not None

    async def test_order_without_affiliate(self, db, mug, place_order):
        order = await place_order((mug, 1, None))

        assert await AffiliateCommissionService(db).accrue_for_order(order) is None


class TestPayout:
    async def fund(self, db, shirt, affiliate, place_order):
        order = await place_order((shirt, 2, None), affiliateCode="AFF1234")
        await AffiliateCommissionService(db).accrue_for_order(order)

    async def test_payout_reduces_balance(self, db, shirt, affiliate, place_order):
        await self.fund(db, shirt, affiliate, place_order)

        account = await AffiliateCommissionService(db).record_payout(affiliate.id, Decimal("15"))

        assert account.total_paid == Decimal("15.00")
        assert account.balance == Decimal("5.00")
        assert account.total_commission == Decimal("20.00")

    async def test_payout_above_balance_rejected(self, db, shirt, affiliate, place_order):
        await self.fund(db, shirt, affiliate, place_order)

        with pytest.raises(ValidationError) as exc_info:
            await AffiliateCommissionService(db).record_payout(affiliate.id, Decimal("20.01"))

        assert exc_info.value.details["balance"] == "20.00"

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    async def test_non_positive_payout_rejected(self, db, affiliate, amount):
        with pytest.raises(ValidationError):
            await AffiliateCommissionService(db).record_payout(affiliate.id, amount)

    async def test_unknown_affiliate(self, db, store):
        with pytest.raises(NotFoundError):
            await AffiliateCommissionService(db).record_payout(uuid.uuid4(), Decimal("1"))
