"""
Two-phase stock transfers between adjacent tiers.

Phase 1 debits the source and parks the quantity in a pending transfer
together with a snapshot of the lots it was drawn from. Phase 2 either
credits the destination with lots derived from those snapshots (confirm)
or puts the quantity back at the source (reject / cancel).
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationError, NotFoundError, InsufficientStockError, AuthorizationError
from app.database import atomic
from app.models.organization import Vaccine
from app.models.stock import Owner, StockLot
from app.models.stock_transfer import (
    PendingStockTransfer, PendingStockTransferLot, StockTransferHistory, TransferStatus,
)
from app.services.lot_ledger import LotLedger, ensure_positive_quantity, utcnow
from app.services.notification_service import NotificationType
from app.services.recipient_resolver import RecipientResolver

logger = logging.getLogger(__name__)


def transfer_source(transfer: PendingStockTransfer) -> Owner:
    return Owner.of(transfer.from_type, transfer.from_id)


def transfer_destination(transfer: PendingStockTransfer) -> Owner:
    return Owner.of(transfer.to_type, transfer.to_id)


class TransferCoordinator:
    """Service for pending stock transfer operations."""

    def __init__(
        self,
        db: AsyncSession,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.clock = clock or utcnow
        self.ledger = LotLedger(db, clock=self.clock)
        self.aggregates = self.ledger.aggregates
        self.resolver = RecipientResolver(db)

    # ==================== Phase 1 ====================

    async def initiate_transfer(
        self,
        from_owner: Owner,
        to_owner: Owner,
        vaccine_id: uuid.UUID,
        quantity: int,
        initiated_by: Optional[uuid.UUID] = None,
        create_destination_line: bool = False,
    ) -> PendingStockTransfer:
        """
        Debit the source and create a PENDING transfer.

        The destination stock line must exist unless
        ``create_destination_line`` is set. The destination quantity is not
        touched until the transfer is confirmed.
        """
        ensure_positive_quantity(quantity)
        if not from_owner.is_parent_of(to_owner):
            raise ValidationError(
                f"Transfers go one tier down: {from_owner.tier.value} cannot send to {to_owner.tier.value}",
                details={"from": str(from_owner), "to": str(to_owner)},
            )

        async with atomic(self.db):
            if create_destination_line:
                await self.aggregates.get_or_create(vaccine_id, to_owner)
            else:
                await self.aggregates.require(vaccine_id, to_owner)

            source = await self.aggregates.require(vaccine_id, from_owner)
            if source.quantity < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock at {from_owner}: {source.quantity} available, {quantity} requested",
                    details={"available": source.quantity, "requested": quantity},
                )

            allocations = await self.ledger.consume_lots(vaccine_id, from_owner, quantity)
            await self.aggregates.adjust(vaccine_id, from_owner, -quantity)
            await self.ledger.update_nearest_expiration(vaccine_id, from_owner)

            transfer = PendingStockTransfer(
                vaccine_id=vaccine_id,
                from_type=from_owner.tier.value,
                from_id=from_owner.id,
                to_type=to_owner.tier.value,
                to_id=to_owner.id,
                quantity=quantity,
                status=TransferStatus.PENDING.value,
                created_by_id=initiated_by,
            )
            for position, allocation in enumerate(allocations):
                transfer.lots.append(PendingStockTransferLot(
                    position=position,
                    source_lot_id=allocation["lot_id"],
                    quantity=allocation["quantity"],
                    snapshot_expiration=allocation["expiration"],
                    snapshot_status=allocation["status"],
                ))
            self.db.add(transfer)
            await self.db.flush()

        logger.info(
            f"Transfer {transfer.id} initiated: {quantity} doses of vaccine {vaccine_id} "
            f"from {from_owner} to {to_owner} ({len(allocations)} lot(s))"
        )

        await self._notify(
            to_owner,
            NotificationType.TRANSFER_PENDING,
            "Incoming vaccine shipment awaiting confirmation",
            f"{quantity} dose(s) of {await self._vaccine_name(vaccine_id)} were sent by "
            f"{await self.resolver.owner_name(from_owner)}. Please confirm receipt.",
        )
        return transfer

    # ==================== Phase 2 ====================

    async def confirm_transfer(
        self,
        transfer_id: uuid.UUID,
        confirming_owner: Owner,
        confirmed_by: Optional[uuid.UUID] = None,
    ) -> PendingStockTransfer:
        """Credit the destination with one derived lot per allocation line."""
        async with atomic(self.db):
            transfer = await self.get_transfer(transfer_id, for_update=True)
            destination = transfer_destination(transfer)
            if destination != confirming_owner:
                raise AuthorizationError(
                    "Only the receiving owner can confirm this transfer",
                    details={"transfer_id": str(transfer_id)},
                )
            self._ensure_pending(transfer)

            await self.aggregates.get_or_create(transfer.vaccine_id, destination)
            for line in transfer.lots:
                await self.ledger.create_lot(
                    transfer.vaccine_id,
                    destination,
                    line.quantity,
                    line.snapshot_expiration,
                    source_lot_id=await self._existing_lot_id(line.source_lot_id),
                    status=line.snapshot_status,
                )
            await self.aggregates.adjust(transfer.vaccine_id, destination, transfer.quantity)
            await self.ledger.update_nearest_expiration(transfer.vaccine_id, destination)

            transfer.status = TransferStatus.CONFIRMED.value
            transfer.confirmed_at = self.clock()
            transfer.confirmed_by_id = confirmed_by
            await self.db.flush()

            await self._write_history(transfer)

        logger.info(f"Transfer {transfer.id} confirmed by {confirming_owner}")
        return transfer

    async def reject_transfer(
        self,
        transfer_id: uuid.UUID,
        rejecting_owner: Owner,
        actor: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> PendingStockTransfer:
        """Refuse an incoming transfer; the doses go back to the sender."""
        transfer = await self._close(
            transfer_id,
            TransferStatus.REJECTED,
            acting_owner=rejecting_owner,
            party=transfer_destination,
            actor=actor,
            reason=reason,
        )

        source = transfer_source(transfer)
        message = (
            f"Your shipment of {transfer.quantity} dose(s) of {await self._vaccine_name(transfer.vaccine_id)} "
            f"to {await self.resolver.owner_name(transfer_destination(transfer))} was rejected. "
            "The doses were returned to your stock."
        )
        if reason:
            message += f" Reason: {reason}"
        await self._notify(source, NotificationType.TRANSFER_REJECTED, "Vaccine shipment rejected", message)
        return transfer

    async def cancel_transfer(
        self,
        transfer_id: uuid.UUID,
        cancelling_owner: Owner,
        actor: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> PendingStockTransfer:
        """Withdraw an outgoing transfer; the doses go back to the sender."""
        return await self._close(
            transfer_id,
            TransferStatus.CANCELLED,
            acting_owner=cancelling_owner,
            party=transfer_source,
            actor=actor,
            reason=reason,
        )

    async def _close(
        self,
        transfer_id: uuid.UUID,
        status: TransferStatus,
        acting_owner: Owner,
        party: Callable[[PendingStockTransfer], Owner],
        actor: Optional[uuid.UUID],
        reason: Optional[str],
    ) -> PendingStockTransfer:
        """
        Restore a pending transfer at its source.

        Each allocation line becomes a compensating lot at the source with
        the snapshot expiration and status. Compensating lots carry no
        lineage link, so a cascade delete of the drained original never
        reaches them; the snapshot lines and history keep the audit trail.
        Historical lot rows are left untouched.
        """
        async with atomic(self.db):
            transfer = await self.get_transfer(transfer_id, for_update=True)
            if party(transfer) != acting_owner:
                raise AuthorizationError(
                    f"{acting_owner} is not allowed to mark this transfer {status.value}",
                    details={"transfer_id": str(transfer_id)},
                )
            self._ensure_pending(transfer)

            source = transfer_source(transfer)
            await self.aggregates.get_or_create(transfer.vaccine_id, source)
            for line in transfer.lots:
                await self.ledger.create_lot(
                    transfer.vaccine_id,
                    source,
                    line.quantity,
                    line.snapshot_expiration,
                    status=line.snapshot_status,
                )
            await self.aggregates.adjust(transfer.vaccine_id, source, transfer.quantity)
            await self.ledger.update_nearest_expiration(transfer.vaccine_id, source)

            transfer.status = status.value
            transfer.closed_at = self.clock()
            transfer.closed_by_id = actor
            transfer.reason = reason
            await self.db.flush()

            await self._write_history(transfer)

        logger.info(f"Transfer {transfer.id} {status.value.lower()}, {transfer.quantity} doses restored at {source}")
        return transfer

    # ==================== Queries ====================

    async def get_transfer(self, transfer_id: uuid.UUID, for_update: bool = False) -> PendingStockTransfer:
        query = select(PendingStockTransfer).where(PendingStockTransfer.id == transfer_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        transfer = result.scalar_one_or_none()
        if transfer is None:
            raise NotFoundError("Transfer not found", details={"transfer_id": str(transfer_id)})
        return transfer

    async def list_pending(
        self,
        owner: Owner,
        direction: str = "incoming",
        vaccine_id: Optional[uuid.UUID] = None,
    ) -> List[PendingStockTransfer]:
        """Pending transfers addressed to (incoming) or sent by (outgoing) an owner."""
        if direction == "incoming":
            type_col, id_col = PendingStockTransfer.to_type, PendingStockTransfer.to_id
        elif direction == "outgoing":
            type_col, id_col = PendingStockTransfer.from_type, PendingStockTransfer.from_id
        else:
            raise ValidationError(f"Unknown direction: {direction}")

        conditions = [
            PendingStockTransfer.status == TransferStatus.PENDING.value,
            type_col == owner.tier.value,
            id_col.is_(None) if owner.id is None else id_col == owner.id,
        ]
        if vaccine_id:
            conditions.append(PendingStockTransfer.vaccine_id == vaccine_id)

        result = await self.db.execute(
            select(PendingStockTransfer)
            .where(and_(*conditions))
            .order_by(PendingStockTransfer.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_history(
        self,
        owner: Optional[Owner] = None,
        vaccine_id: Optional[uuid.UUID] = None,
        status: Optional[TransferStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockTransferHistory], int]:
        """Paginated transfer history, newest first."""
        query = select(StockTransferHistory)

        conditions = []
        if owner is not None:
            def side(type_col, id_col):
                id_clause = id_col.is_(None) if owner.id is None else id_col == owner.id
                return and_(type_col == owner.tier.value, id_clause)

            conditions.append(or_(
                side(StockTransferHistory.from_type, StockTransferHistory.from_id),
                side(StockTransferHistory.to_type, StockTransferHistory.to_id),
            ))
        if vaccine_id:
            conditions.append(StockTransferHistory.vaccine_id == vaccine_id)
        if status:
            conditions.append(StockTransferHistory.status == TransferStatus(status).value)

        if conditions:
            query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(StockTransferHistory.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # ==================== Helpers ====================

    @staticmethod
    def _ensure_pending(transfer: PendingStockTransfer) -> None:
        if not transfer.is_pending:
            raise ValidationError(
                f"Transfer is already {transfer.status}",
                details={"transfer_id": str(transfer.id), "status": transfer.status},
            )

    async def _existing_lot_id(self, lot_id: uuid.UUID) -> Optional[uuid.UUID]:
        """Lineage link to ``lot_id`` if that lot still exists."""
        lot = await self.db.get(StockLot, lot_id)
        if lot is None:
            logger.warning(f"Source lot {lot_id} no longer exists, lineage dropped")
            return None
        return lot.id

    async def _vaccine_name(self, vaccine_id: uuid.UUID) -> str:
        vaccine = await self.db.get(Vaccine, vaccine_id)
        return vaccine.name if vaccine else str(vaccine_id)

    async def _write_history(self, transfer: PendingStockTransfer) -> StockTransferHistory:
        source = transfer_source(transfer)
        destination = transfer_destination(transfer)
        history = StockTransferHistory(
            transfer_id=transfer.id,
            vaccine_id=transfer.vaccine_id,
            vaccine_name=await self._vaccine_name(transfer.vaccine_id),
            from_type=transfer.from_type,
            from_id=transfer.from_id,
            from_name=await self.resolver.owner_name(source),
            to_type=transfer.to_type,
            to_id=transfer.to_id,
            to_name=await self.resolver.owner_name(destination),
            quantity=transfer.quantity,
            status=transfer.status,
            sent_at=transfer.created_at,
            confirmed_at=transfer.confirmed_at,
            confirmed_by_id=transfer.confirmed_by_id,
            closed_at=transfer.closed_at,
            closed_by_id=transfer.closed_by_id,
            reason=transfer.reason,
            lot_snapshots=[
                {
                    "source_lot_id": str(line.source_lot_id),
                    "quantity": line.quantity,
                    "expiration": line.snapshot_expiration.isoformat(),
                    "status": line.snapshot_status,
                }
                for line in transfer.lots
            ],
        )
        self.db.add(history)
        await self.db.flush()
        return history

    async def _notify(self, owner: Owner, kind: NotificationType, subject: str, body: str) -> None:
        """Tell an owner's staff about a transfer. Failures are only logged."""
        if self.notifier is None:
            return
        for recipient in await self.resolver.for_owner(owner):
            outcome = await self.notifier.send(recipient, {
                "type": kind.value,
                "subject": subject,
                "body": body,
            })
            if not outcome.get("success"):
                logger.warning(f"{kind.value} notification to {recipient.key} failed: {outcome.get('error')}")
