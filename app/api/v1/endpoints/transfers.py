"""Stock Transfer API endpoints."""
from typing import List, Literal, Optional
import uuid

from fastapi import APIRouter, status, Query

from app.api.deps import DB, Notifier
from app.models.stock import Owner, OwnerType
from app.models.stock_transfer import TransferStatus
from app.schemas.stock_transfer import (
    StockTransferCreate,
    StockTransferResponse,
    StockTransferHistoryResponse,
    StockTransferHistoryList,
    TransferAction,
)
from app.services.transfer_service import TransferCoordinator


router = APIRouter(tags=["Stock Transfers"])


@router.post("", response_model=StockTransferResponse, status_code=status.HTTP_201_CREATED)
async def initiate_transfer(data: StockTransferCreate, db: DB, notifier: Notifier):
    """
    Send doses to the tier directly below.

    The source is debited now; the destination is credited on confirmation.
    """
    coordinator = TransferCoordinator(db, notifier=notifier)
    transfer = await coordinator.initiate_transfer(
        data.source.to_owner(),
        data.destination.to_owner(),
        data.vaccine_id,
        data.quantity,
        initiated_by=data.initiated_by,
        create_destination_line=data.create_destination_line,
    )
    return StockTransferResponse.model_validate(transfer)


@router.get("/pending", response_model=List[StockTransferResponse])
async def list_pending_transfers(
    db: DB,
    owner_type: OwnerType = Query(...),
    owner_id: Optional[uuid.UUID] = Query(None),
    direction: Literal["incoming", "outgoing"] = Query("incoming"),
    vaccine_id: Optional[uuid.UUID] = Query(None),
):
    """Pending transfers addressed to or sent by an owner."""
    coordinator = TransferCoordinator(db)
    transfers = await coordinator.list_pending(
        Owner.of(owner_type, owner_id),
        direction=direction,
        vaccine_id=vaccine_id,
    )
    return [StockTransferResponse.model_validate(t) for t in transfers]


@router.get("/history", response_model=StockTransferHistoryList)
async def get_transfer_history(
    db: DB,
    owner_type: Optional[OwnerType] = Query(None),
    owner_id: Optional[uuid.UUID] = Query(None),
    vaccine_id: Optional[uuid.UUID] = Query(None),
    status: Optional[TransferStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """Closed transfers, newest first."""
    owner = Owner.of(owner_type, owner_id) if owner_type else None
    items, total = await TransferCoordinator(db).get_history(
        owner=owner,
        vaccine_id=vaccine_id,
        status=status,
        skip=skip,
        limit=limit,
    )
    return StockTransferHistoryList(
        items=[StockTransferHistoryResponse.model_validate(h) for h in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{transfer_id}", response_model=StockTransferResponse)
async def get_transfer(transfer_id: uuid.UUID, db: DB):
    transfer = await TransferCoordinator(db).get_transfer(transfer_id)
    return StockTransferResponse.model_validate(transfer)


@router.post("/{transfer_id}/confirm", response_model=StockTransferResponse)
async def confirm_transfer(transfer_id: uuid.UUID, data: TransferAction, db: DB):
    """Receiver accepts the doses; lots are created at the destination."""
    transfer = await TransferCoordinator(db).confirm_transfer(
        transfer_id,
        data.to_owner(),
        confirmed_by=data.actor_id,
    )
    return StockTransferResponse.model_validate(transfer)


@router.post("/{transfer_id}/reject", response_model=StockTransferResponse)
async def reject_transfer(transfer_id: uuid.UUID, data: TransferAction, db: DB, notifier: Notifier):
    """Receiver refuses the doses; they are restored at the sender."""
    transfer = await TransferCoordinator(db, notifier=notifier).reject_transfer(
        transfer_id,
        data.to_owner(),
        actor=data.actor_id,
        reason=data.reason,
    )
    return StockTransferResponse.model_validate(transfer)


@router.post("/{transfer_id}/cancel", response_model=StockTransferResponse)
async def cancel_transfer(transfer_id: uuid.UUID, data: TransferAction, db: DB):
    """Sender withdraws the transfer; the doses are restored."""
    transfer = await TransferCoordinator(db).cancel_transfer(
        transfer_id,
        data.to_owner(),
        actor=data.actor_id,
        reason=data.reason,
    )
    return StockTransferResponse.model_validate(transfer)
