"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that use `from_attributes=True` MUST inherit from BaseResponseSchema.
"""

from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict

from app.models.stock import Owner, OwnerType


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class LotResponse(BaseResponseSchema):
            id: UUID
            vaccine_id: UUID
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    These schemas accept string UUIDs from the client and convert to UUID objects.
    """
    model_config = ConfigDict(
        # Allow extra fields to be ignored (forward compatibility)
        extra='ignore',
    )


class OwnerRef(BaseCreateSchema):
    """An owner tag as sent by clients. ``owner_id`` is ignored for NATIONAL."""
    owner_type: OwnerType
    owner_id: Optional[UUID] = None

    def to_owner(self) -> Owner:
        return Owner(self.owner_type, self.owner_id)
