"""
Base Schema Classes for Pydantic Models

This module provides base classes that handle common patterns like ORM reads
and camelCase request aliases, ensuring consistency across all schemas.

RULE: All response schemas that use `from_attributes=True` MUST inherit from BaseResponseSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - UUIDs, Decimals and datetimes serialize to strings in JSON

    Usage:
        class OrderBrief(BaseResponseSchema):
            id: UUID
            order_number: str
            paid_at: Optional[datetime] = None
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Allow population by field name or alias
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Storefront clients send camelCase; every aliased field also accepts its
    snake_case name.
    """
    model_config = ConfigDict(
        # Allow extra fields to be ignored (forward compatibility)
        extra='ignore',
        populate_by_name=True,
    )
