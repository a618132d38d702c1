from typing import Annotated
import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.services.payment_gateway import PaymentGateway, build_payment_gateway
from app.services.payment_polling import PaymentPollingRegistry


logger = logging.getLogger(__name__)


def get_payment_gateway(request: Request) -> PaymentGateway:
    """
    Dependency to get the application's payment gateway.

    Set on app.state during startup; built from settings when missing
    (e.g. an app mounted without its lifespan).
    """
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        gateway = build_payment_gateway()
        request.app.state.payment_gateway = gateway
        logger.info(f"Payment gateway '{gateway.name}' created on first use")
    return gateway


def get_polling_registry(request: Request) -> PaymentPollingRegistry:
    """Dependency to get the application-scoped payment polling registry."""
    registry = getattr(request.app.state, "polling_registry", None)
    if registry is None:
        registry = PaymentPollingRegistry(get_payment_gateway(request))
        request.app.state.polling_registry = registry
    return registry


DB = Annotated[AsyncSession, Depends(get_db)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
PollingRegistry = Annotated[PaymentPollingRegistry, Depends(get_polling_registry)]
