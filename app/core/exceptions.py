"""
Domain errors raised by the order, inventory and payment services.

Each error carries the HTTP status the API layer answers with, so services
stay free of FastAPI imports. See ``storefront_exception_handler`` in
``app.main``.
"""
from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(StorefrontError):
    """Malformed or missing request fields."""
    status_code = 400


class InvalidQuantityError(ValidationError):
    """Requested quantity is zero or negative."""

    def __init__(self, quantity: int):
        self.quantity = quantity
        super().__init__(
            f"Quantity must be greater than zero, got {quantity}",
            details={"requested": quantity},
        )


class NotFoundError(StorefrontError):
    """Store, product, order or affiliate missing."""
    status_code = 404

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} not found: {identifier}",
            details={"entity": entity, "id": str(identifier)},
        )


class InsufficientStockError(StorefrontError):
    """General or specification counter cannot cover the requested quantity."""
    status_code = 409

    GENERAL = "general"
    SPECIFICATION = "specification"

    def __init__(
        self,
        level: str,
        available: int,
        requested: int,
        product_id: Any = None,
        key: Optional[str] = None,
    ):
        self.level = level
        self.available = available
        self.requested = requested
        self.product_id = product_id
        self.key = key
        where = f" for specification {key}" if key else ""
        super().__init__(
            f"Insufficient stock{where}. Available: {available}, requested: {requested}",
            details={
                "level": level,
                "available": available,
                "requested": requested,
                "product_id": str(product_id) if product_id else None,
                "key": key,
            },
        )


class SpecificationNotFoundError(StorefrontError):
    """A selected specification value does not exist on the product."""
    status_code = 409

    def __init__(self, product_id: Any, specification_id: Any, value_id: Any):
        self.product_id = product_id
        self.specification_id = specification_id
        self.value_id = value_id
        super().__init__(
            f"Specification {specification_id}:{value_id} not found on product {product_id}",
            details={
                "product_id": str(product_id),
                "specification_id": str(specification_id),
                "value_id": str(value_id),
            },
        )


class MissingIdentityError(StorefrontError):
    """Neither a registered user nor a guest identity was supplied."""
    status_code = 400

    def __init__(self, message: str = "Either user_id or guest_id is required"):
        super().__init__(message)


class PaymentGatewayError(StorefrontError):
    """Payment initialization or verification failed upstream."""
    status_code = 502


class CannotCancelError(StorefrontError):
    """Order is past the point where it can be cancelled."""
    status_code = 409

    def __init__(self, order_number: str, status: str):
        self.order_number = order_number
        self.status = status
        super().__init__(
            f"Order {order_number} cannot be cancelled in status {status}",
            details={"order_number": order_number, "status": status},
        )


class InvalidStatusTransitionError(StorefrontError):
    """Fulfillment status cannot move from the current to the requested value."""
    status_code = 409

    def __init__(self, order_number: str, current: str, requested: str, reason: Optional[str] = None):
        self.order_number = order_number
        self.current = current
        self.requested = requested
        super().__init__(
            reason or f"Order {order_number} cannot move from {current} to {requested}",
            details={"order_number": order_number, "status": current, "requested": requested},
        )
