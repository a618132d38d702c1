# Services module
from app.services.inventory_ledger import InventoryLedger
from app.services.pricing_service import PricingCalculator
from app.services.order_service import OrderService
from app.services.cancellation_service import CancellationService
from app.services.commission_service import AffiliateCommissionService

# Payments
from app.services.payment_gateway import PaymentGateway, LahzaGateway, FakePaymentGateway
from app.services.payment_reconciler import PaymentReconciler
from app.services.payment_polling import PaymentPollingRegistry

__all__ = [
    "InventoryLedger",
    "PricingCalculator",
    "OrderService",
    "CancellationService",
    "AffiliateCommissionService",
    # Payments
    "PaymentGateway",
    "LahzaGateway",
    "FakePaymentGateway",
    "PaymentReconciler",
    "PaymentPollingRegistry",
]
