"""Stock lot and stock line schemas for API requests/responses."""
from datetime import datetime
from typing import Optional, List
import uuid

from pydantic import Field

from app.models.stock import LotStatus, OwnerType
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, OwnerRef


# ==================== LOT SCHEMAS ====================

class StockLotCreate(OwnerRef):
    """Receive new doses into an owner's stock."""
    vaccine_id: uuid.UUID
    quantity: int = Field(..., ge=1)
    expiration: datetime
    status: Optional[LotStatus] = None


class StockLotResponse(BaseResponseSchema):
    id: uuid.UUID
    vaccine_id: uuid.UUID
    owner_type: OwnerType
    owner_id: Optional[uuid.UUID] = None
    quantity: int
    remaining_quantity: int
    expiration: datetime
    status: LotStatus
    source_lot_id: Optional[uuid.UUID] = None
    created_at: datetime


class ConsumeStockRequest(OwnerRef):
    vaccine_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class LotAllocation(BaseResponseSchema):
    lot_id: uuid.UUID
    quantity: int
    expiration: datetime
    status: LotStatus


class ConsumeStockResponse(BaseResponseSchema):
    vaccine_id: uuid.UUID
    quantity: int
    allocations: List[LotAllocation]


class DeletedLotsResponse(BaseResponseSchema):
    deleted_lot_ids: List[uuid.UUID]


# ==================== STOCK LINE SCHEMAS ====================

class AggregateStockResponse(BaseResponseSchema):
    id: uuid.UUID
    vaccine_id: uuid.UUID
    owner_type: OwnerType
    owner_id: Optional[uuid.UUID] = None
    quantity: int
    nearest_expiration: Optional[datetime] = None
    has_expired_lot: bool
    updated_at: datetime


class StockLineDetail(AggregateStockResponse):
    lots: List[StockLotResponse] = []


# ==================== RESERVATION SCHEMAS ====================

class DoseReservationCreate(BaseCreateSchema):
    vaccine_id: uuid.UUID
    health_center_id: uuid.UUID
    quantity: int = Field(1, ge=1)
    appointment_date: Optional[datetime] = None


class DoseReservationResponse(BaseResponseSchema):
    lot_id: uuid.UUID
    quantity: int


class DoseReleaseRequest(BaseCreateSchema):
    vaccine_id: uuid.UUID
    health_center_id: uuid.UUID
    lot_id: uuid.UUID
    quantity: int = Field(1, ge=1)
