"""Stock lot and stock line endpoints.

Callers are expected to have been authorized for the owner they pass.
"""
from typing import Optional
import uuid

from fastapi import APIRouter, Query, status

from app.api.deps import DB
from app.models.stock import Owner, OwnerType
from app.schemas.stock import (
    StockLotCreate,
    StockLotResponse,
    ConsumeStockRequest,
    ConsumeStockResponse,
    LotAllocation,
    DeletedLotsResponse,
    StockLineDetail,
    DoseReservationCreate,
    DoseReservationResponse,
    DoseReleaseRequest,
)
from app.services.lot_ledger import LotLedger


router = APIRouter(tags=["Stocks"])


@router.post("/lots", response_model=StockLotResponse, status_code=status.HTTP_201_CREATED)
async def add_stock(data: StockLotCreate, db: DB):
    """Receive new doses: create a lot and credit the owner's stock line."""
    ledger = LotLedger(db)
    lot = await ledger.add_stock(
        data.vaccine_id,
        data.to_owner(),
        data.quantity,
        data.expiration,
        status=data.status,
    )
    return StockLotResponse.model_validate(lot)


@router.post("/consume", response_model=ConsumeStockResponse)
async def consume_stock(data: ConsumeStockRequest, db: DB):
    """Draw doses from an owner's lots, earliest expiration first."""
    ledger = LotLedger(db)
    allocations = await ledger.consume_stock(data.vaccine_id, data.to_owner(), data.quantity)
    return ConsumeStockResponse(
        vaccine_id=data.vaccine_id,
        quantity=data.quantity,
        allocations=[LotAllocation.model_validate(a) for a in allocations],
    )


@router.delete("/lots/{lot_id}", response_model=DeletedLotsResponse)
async def delete_lot(lot_id: uuid.UUID, db: DB):
    """Delete a lot and every lot derived from it."""
    deleted = await LotLedger(db).delete_lot_cascade(lot_id)
    return DeletedLotsResponse(deleted_lot_ids=deleted)


@router.get("/lines", response_model=StockLineDetail)
async def get_stock_line(
    db: DB,
    vaccine_id: uuid.UUID = Query(...),
    owner_type: OwnerType = Query(...),
    owner_id: Optional[uuid.UUID] = Query(None),
    include_empty: bool = Query(False),
):
    """Stock line with its lots in allocation order."""
    ledger = LotLedger(db)
    owner = Owner(owner_type, owner_id)
    stock = await ledger.aggregates.require(vaccine_id, owner)
    lots = await ledger.list_lots(vaccine_id, owner, include_empty=include_empty)

    detail = StockLineDetail.model_validate(stock)
    detail.lots = [StockLotResponse.model_validate(lot) for lot in lots]
    return detail


@router.delete("/lines", response_model=DeletedLotsResponse)
async def remove_stock_line(
    db: DB,
    vaccine_id: uuid.UUID = Query(...),
    owner_type: OwnerType = Query(...),
    owner_id: Optional[uuid.UUID] = Query(None),
):
    """Remove an owner's stock line for a vaccine, with all its lots."""
    deleted = await LotLedger(db).remove_stock_line(vaccine_id, Owner(owner_type, owner_id))
    return DeletedLotsResponse(deleted_lot_ids=deleted)


@router.get("/lines/verify")
async def verify_stock_line(
    db: DB,
    vaccine_id: uuid.UUID = Query(...),
    owner_type: OwnerType = Query(...),
    owner_id: Optional[uuid.UUID] = Query(None),
):
    """Compare the cached quantity with the lots."""
    return await LotLedger(db).aggregates.verify(vaccine_id, Owner(owner_type, owner_id))


@router.post("/reservations", response_model=DoseReservationResponse, status_code=status.HTTP_201_CREATED)
async def reserve_dose(data: DoseReservationCreate, db: DB):
    """Hold doses at a health center for an appointment."""
    reservation = await LotLedger(db).reserve_dose(
        data.vaccine_id,
        data.health_center_id,
        quantity=data.quantity,
        appointment_date=data.appointment_date,
    )
    return DoseReservationResponse.model_validate(reservation)


@router.delete("/reservations", response_model=StockLotResponse)
async def release_dose(data: DoseReleaseRequest, db: DB):
    """Give held doses back to their lot."""
    lot = await LotLedger(db).release_dose(
        data.vaccine_id,
        data.health_center_id,
        data.lot_id,
        quantity=data.quantity,
    )
    return StockLotResponse.model_validate(lot)
