"""Stock Transfer schemas for API requests/responses."""
from pydantic import Field

from app.schemas.base import BaseResponseSchema, BaseCreateSchema, OwnerRef
from typing import Optional, List, Any, Dict
from datetime import datetime
import uuid

from app.models.stock import LotStatus, OwnerType
from app.models.stock_transfer import TransferStatus


# ==================== TRANSFER LINE SCHEMAS ====================

class TransferLotResponse(BaseResponseSchema):
    """Allocation line of a transfer."""
    source_lot_id: uuid.UUID
    quantity: int
    snapshot_expiration: datetime
    snapshot_status: LotStatus


# ==================== TRANSFER SCHEMAS ====================

class StockTransferCreate(BaseCreateSchema):
    """Send doses one tier down."""
    vaccine_id: uuid.UUID
    source: OwnerRef = Field(..., alias="from")
    destination: OwnerRef = Field(..., alias="to")
    quantity: int = Field(..., ge=1)
    initiated_by: Optional[uuid.UUID] = None
    create_destination_line: bool = False


class TransferAction(OwnerRef):
    """The owner acting on a transfer (receiver for confirm/reject, sender for cancel)."""
    actor_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None


class StockTransferResponse(BaseResponseSchema):
    """Pending stock transfer response schema."""
    id: uuid.UUID
    vaccine_id: uuid.UUID
    from_type: OwnerType
    from_id: Optional[uuid.UUID] = None
    to_type: OwnerType
    to_id: Optional[uuid.UUID] = None
    quantity: int
    status: TransferStatus
    created_by_id: Optional[uuid.UUID] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by_id: Optional[uuid.UUID] = None
    closed_at: Optional[datetime] = None
    reason: Optional[str] = None
    created_at: datetime
    lots: List[TransferLotResponse] = []


class StockTransferHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    transfer_id: uuid.UUID
    vaccine_id: uuid.UUID
    vaccine_name: Optional[str] = None
    from_type: OwnerType
    from_id: Optional[uuid.UUID] = None
    from_name: Optional[str] = None
    to_type: OwnerType
    to_id: Optional[uuid.UUID] = None
    to_name: Optional[str] = None
    quantity: int
    status: TransferStatus
    sent_at: datetime
    confirmed_at: Optional[datetime] = None
    confirmed_by_id: Optional[uuid.UUID] = None
    closed_at: Optional[datetime] = None
    reason: Optional[str] = None
    lot_snapshots: List[Dict[str, Any]] = []


class StockTransferHistoryList(BaseResponseSchema):
    items: List[StockTransferHistoryResponse]
    total: int
    skip: int = 0
    limit: int = 50
