"""
Lot ledger: stock lots and per-lot quantity bookkeeping.

Every public mutation runs as one atomic unit together with the aggregate
stock lines it touches, so the cached quantity never drifts from the sum
of remaining lot quantities.
"""
import logging
import uuid
from datetime import datetime, timezone, date
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationError, NotFoundError, InsufficientStockError
from app.database import atomic
from app.db_types import to_utc
from app.models.stock import (
    StockLot, LotStatus, Owner, OwnerType, COUNTED_LOT_STATUSES,
)
from app.services.aggregate_stock import AggregateStockService, owner_filter
from app.services.allocation import EarliestExpirationFirst, DEFAULT_STRATEGY

logger = logging.getLogger(__name__)

DateLike = Union[datetime, date]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_positive_quantity(value, field_name: str = "quantity") -> int:
    """Quantities are whole doses, strictly positive."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be a whole number", details={field_name: value})
    if value <= 0:
        raise ValidationError(f"{field_name} must be positive", details={field_name: value})
    return value


def status_for_expiration(expiration: datetime, now: datetime, requested: Optional[str] = None) -> str:
    """
    Status of a lot given its expiration.

    An expiration at or before ``now`` always yields EXPIRED, whatever was
    requested.
    """
    if expiration <= now:
        return LotStatus.EXPIRED.value
    if requested is None:
        return LotStatus.VALID.value
    return LotStatus(requested).value


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


class LotLedger:
    """Service owning stock lot records."""

    def __init__(
        self,
        db: AsyncSession,
        strategy: Optional[EarliestExpirationFirst] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.strategy = strategy or DEFAULT_STRATEGY
        self.clock = clock or utcnow
        self.aggregates = AggregateStockService(db)

    # ==================== Lots ====================

    async def get_lot(self, lot_id: uuid.UUID) -> StockLot:
        lot = await self.db.get(StockLot, lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found", details={"lot_id": str(lot_id)})
        return lot

    async def list_lots(
        self,
        vaccine_id: uuid.UUID,
        owner: Owner,
        include_empty: bool = False,
    ) -> List[StockLot]:
        """Lots of one owner for a vaccine, in allocation order."""
        conditions = [owner_filter(StockLot, vaccine_id, owner)]
        if not include_empty:
            conditions.append(StockLot.remaining_quantity > 0)
        result = await self.db.execute(
            select(StockLot).where(and_(*conditions)).order_by(*self.strategy.order_by())
        )
        return list(result.scalars().all())

    async def create_lot(
        self,
        vaccine_id: uuid.UUID,
        owner: Owner,
        quantity: int,
        expiration: Optional[DateLike],
        source_lot_id: Optional[uuid.UUID] = None,
        status: Optional[Union[LotStatus, str]] = None,
    ) -> StockLot:
        """
        Create a lot with ``remaining_quantity == quantity``.

        Only the lot row is written. Callers that grow stock credit the
        aggregate line themselves (see ``add_stock``).
        """
        if not vaccine_id:
            raise ValidationError("vaccine_id is required")
        ensure_positive_quantity(quantity)
        if expiration is None:
            raise ValidationError("expiration is required", details={"vaccine_id": str(vaccine_id)})

        expiration = to_utc(expiration)
        lot = StockLot(
            vaccine_id=vaccine_id,
            owner_type=owner.tier.value,
            owner_id=owner.id,
            quantity=quantity,
            remaining_quantity=quantity,
            expiration=expiration,
            status=status_for_expiration(expiration, self.clock(), status),
            source_lot_id=source_lot_id,
        )
        self.db.add(lot)
        await self.db.flush()

        logger.info(
            f"Created lot {lot.id} for vaccine {vaccine_id} at {owner}: "
            f"{quantity} doses, expires {expiration:%Y-%m-%d} ({lot.status})"
        )
        return lot

    async def consume_lots(
        self,
        vaccine_id: uuid.UUID,
        owner: Owner,
        quantity: int,
    ) -> List[Dict]:
        """
        Draw ``quantity`` doses from the owner's lots in allocation order.

        Returns one allocation per lot touched, carrying the lot's
        expiration and status as they were before the draw. Raises
        InsufficientStockError before touching anything when the lots
        cannot cover the request. The aggregate line is not changed here.
        """
        ensure_positive_quantity(quantity)

        result = await self.db.execute(
            select(StockLot)
            .where(
                and_(
                    owner_filter(StockLot, vaccine_id, owner),
                    StockLot.remaining_quantity > 0,
                    StockLot.status.in_(COUNTED_LOT_STATUSES),
                )
            )
            .order_by(*self.strategy.order_by())
            .with_for_update()
        )
        candidates = list(result.scalars().all())

        available = sum(lot.remaining_quantity for lot in candidates)
        if available < quantity:
            raise InsufficientStockError(
                f"Insufficient stock: {available} available, {quantity} requested",
                details={
                    "vaccine_id": str(vaccine_id),
                    "owner_type": owner.tier.value,
                    "owner_id": str(owner.id) if owner.id else None,
                    "available": available,
                    "requested": quantity,
                },
            )

        allocations = []
        for lot, take in self.strategy.plan(candidates, quantity):
            allocations.append({
                "lot_id": lot.id,
                "quantity": take,
                "expiration": lot.expiration,
                "status": lot.status,
            })
            lot.remaining_quantity -= take

        await self.db.flush()
        logger.info(
            f"Consumed {quantity} doses of vaccine {vaccine_id} at {owner} "
            f"from {len(allocations)} lot(s)"
        )
        return allocations

    async def update_nearest_expiration(self, vaccine_id: uuid.UUID, owner: Owner) -> None:
        """Recompute ``nearest_expiration`` and ``has_expired_lot`` on the stock line."""
        stock = await self.aggregates.get(vaccine_id, owner)
        if stock is None:
            return

        result = await self.db.execute(
            select(StockLot.expiration, StockLot.status)
            .where(
                and_(
                    owner_filter(StockLot, vaccine_id, owner),
                    StockLot.remaining_quantity > 0,
                    StockLot.status.in_(COUNTED_LOT_STATUSES),
                )
            )
            .order_by(StockLot.expiration.asc())
        )
        rows = result.all()

        nearest = rows[0].expiration if rows else None
        has_expired = any(row.status == LotStatus.EXPIRED.value for row in rows)
        if stock.nearest_expiration != nearest or stock.has_expired_lot != has_expired:
            stock.nearest_expiration = nearest
            stock.has_expired_lot = has_expired
            await self.db.flush()

    async def refresh_expired_lots(self) -> int:
        """Mark VALID and PENDING lots past their expiration as EXPIRED."""
        now = self.clock()
        async with atomic(self.db):
            result = await self.db.execute(
                select(StockLot).where(
                    and_(
                        StockLot.status.in_([LotStatus.VALID.value, LotStatus.PENDING.value]),
                        StockLot.expiration < now,
                    )
                )
            )
            lots = list(result.scalars().all())

            touched: Set[Tuple[uuid.UUID, Owner]] = set()
            for lot in lots:
                if lot.status == LotStatus.PENDING.value and lot.remaining_quantity > 0:
                    # Placeholder lots start counting once they become EXPIRED
                    await self.aggregates.adjust(lot.vaccine_id, lot.owner, lot.remaining_quantity)
                lot.status = LotStatus.EXPIRED.value
                touched.add((lot.vaccine_id, lot.owner))
            await self.db.flush()

            for vaccine_id, owner in touched:
                await self.update_nearest_expiration(vaccine_id, owner)

        if lots:
            logger.info(f"Marked {len(lots)} lot(s) as expired")
        return len(lots)

    # ==================== Stock lines ====================

    async def add_stock(
        self,
        vaccine_id: uuid.UUID,
        owner: Owner,
        quantity: int,
        expiration: Optional[DateLike],
        status: Optional[Union[LotStatus, str]] = None,
    ) -> StockLot:
        """Receive new doses: create a lot and credit the owner's stock line."""
        async with atomic(self.db):
            await self.aggregates.get_or_create(vaccine_id, owner)
            lot = await self.create_lot(vaccine_id, owner, quantity, expiration, status=status)
            if lot.status in COUNTED_LOT_STATUSES:
                await self.aggregates.adjust(vaccine_id, owner, lot.quantity)
            await self.update_nearest_expiration(vaccine_id, owner)
        return lot

    async def consume_stock(self, vaccine_id: uuid.UUID, owner: Owner, quantity: int) -> List[Dict]:
        """Draw doses from lots and debit the stock line in one unit."""
        async with atomic(self.db):
            await self.aggregates.require(vaccine_id, owner)
            allocations = await self.consume_lots(vaccine_id, owner, quantity)
            await self.aggregates.adjust(vaccine_id, owner, -quantity)
            await self.update_nearest_expiration(vaccine_id, owner)
        return allocations

    async def delete_lot_cascade(self, lot_id: uuid.UUID) -> List[uuid.UUID]:
        """
        Delete a lot and every lot derived from it through transfers.

        Each deleted lot's remaining quantity is debited from its own
        owner's stock line. Returns all deleted ids, root first.
        """
        async with atomic(self.db):
            deleted = await self._delete_cascade(lot_id)
        return deleted

    async def remove_stock_line(self, vaccine_id: uuid.UUID, owner: Owner) -> List[uuid.UUID]:
        """Remove an owner's stock line and cascade-delete all its lots."""
        async with atomic(self.db):
            stock = await self.aggregates.require(vaccine_id, owner)
            lots = await self.list_lots(vaccine_id, owner, include_empty=True)

            deleted: List[uuid.UUID] = []
            for lot_id in [lot.id for lot in lots]:
                if lot_id in deleted:
                    continue
                deleted.extend(await self._delete_cascade(lot_id))

            await self.db.delete(stock)
            await self.db.flush()

        logger.info(f"Removed stock line for vaccine {vaccine_id} at {owner} ({len(deleted)} lot(s))")
        return deleted

    async def _delete_cascade(self, lot_id: uuid.UUID) -> List[uuid.UUID]:
        root = await self.get_lot(lot_id)

        # Depth-first walk of the lineage tree
        ordered: List[Tuple[StockLot, int]] = []
        seen: Set[uuid.UUID] = set()
        stack: List[Tuple[StockLot, int]] = [(root, 0)]
        while stack:
            lot, depth = stack.pop()
            if lot.id in seen:
                continue
            seen.add(lot.id)
            ordered.append((lot, depth))

            result = await self.db.execute(
                select(StockLot).where(StockLot.source_lot_id == lot.id)
            )
            for child in result.scalars().all():
                stack.append((child, depth + 1))

        touched: Set[Tuple[uuid.UUID, Owner]] = set()
        # Deepest first so no surviving lot points at a deleted one
        for lot, _ in sorted(ordered, key=lambda item: item[1], reverse=True):
            owner = lot.owner
            if lot.remaining_quantity > 0 and lot.status in COUNTED_LOT_STATUSES:
                await self.aggregates.adjust(lot.vaccine_id, owner, -lot.remaining_quantity)
            touched.add((lot.vaccine_id, owner))
            await self.db.delete(lot)
            await self.db.flush()

        for vaccine_id, owner in touched:
            await self.update_nearest_expiration(vaccine_id, owner)

        deleted_ids = [lot.id for lot, _ in ordered]
        logger.info(f"Deleted lot {lot_id} and {len(deleted_ids) - 1} derived lot(s)")
        return deleted_ids

    # ==================== Appointment doses ====================

    async def reserve_dose(
        self,
        vaccine_id: uuid.UUID,
        health_center_id: uuid.UUID,
        quantity: int = 1,
        appointment_date: Optional[DateLike] = None,
    ) -> Dict:
        """
        Hold doses at a health center for an appointment.

        Picks the earliest-expiring VALID lot that is still valid on the
        appointment day and covers the whole quantity.
        """
        if not health_center_id:
            raise ValidationError("A health center is required to reserve a dose")
        ensure_positive_quantity(quantity)
        owner = Owner(OwnerType.HEALTHCENTER, health_center_id)

        async with atomic(self.db):
            stock = await self.aggregates.get(vaccine_id, owner)
            available = stock.quantity if stock else 0
            if available < quantity:
                raise InsufficientStockError(
                    "Insufficient stock for this vaccine",
                    details={"available": available, "requested": quantity},
                )

            appointment_day = _start_of_day(to_utc(appointment_date)) if appointment_date else None

            conditions = [
                owner_filter(StockLot, vaccine_id, owner),
                StockLot.status == LotStatus.VALID.value,
                StockLot.remaining_quantity > 0,
            ]
            if appointment_day is not None:
                conditions.append(StockLot.expiration > appointment_day)
            result = await self.db.execute(
                select(StockLot)
                .where(and_(*conditions))
                .order_by(StockLot.expiration.asc())
                .limit(1)
                .with_for_update()
            )
            lot = result.scalar_one_or_none()

            if lot is None or lot.remaining_quantity < quantity:
                raise InsufficientStockError(await self._reservation_failure(vaccine_id, owner, appointment_day))

            lot.remaining_quantity -= quantity
            await self.aggregates.adjust(vaccine_id, owner, -quantity)
            await self.update_nearest_expiration(vaccine_id, owner)

        logger.info(f"Reserved {quantity} dose(s) of vaccine {vaccine_id} from lot {lot.id} at {owner}")
        return {"lot_id": lot.id, "quantity": quantity}

    async def _reservation_failure(
        self,
        vaccine_id: uuid.UUID,
        owner: Owner,
        appointment_day: Optional[datetime],
    ) -> str:
        async def exists(*conditions) -> bool:
            result = await self.db.execute(
                select(StockLot.id)
                .where(and_(owner_filter(StockLot, vaccine_id, owner), StockLot.remaining_quantity > 0, *conditions))
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

        if appointment_day is not None and await exists(
            StockLot.status == LotStatus.VALID.value,
            StockLot.expiration <= appointment_day,
        ):
            return "Remaining stock will expire before the scheduled appointment"
        if await exists(StockLot.status == LotStatus.EXPIRED.value):
            return "All available lots for this vaccine are expired"
        return "No lot available to reserve this vaccine"

    async def release_dose(
        self,
        vaccine_id: uuid.UUID,
        health_center_id: uuid.UUID,
        lot_id: uuid.UUID,
        quantity: int = 1,
    ) -> StockLot:
        """Give reserved doses back to their lot and to the stock line."""
        ensure_positive_quantity(quantity)
        owner = Owner(OwnerType.HEALTHCENTER, health_center_id)

        async with atomic(self.db):
            lot = await self.get_lot(lot_id)
            if lot.owner != owner or lot.vaccine_id != vaccine_id:
                raise ValidationError(
                    "Lot does not belong to this health center and vaccine",
                    details={"lot_id": str(lot_id)},
                )

            credited = min(quantity, lot.quantity - lot.remaining_quantity)
            lot.remaining_quantity += credited
            await self.aggregates.get_or_create(vaccine_id, owner)
            if lot.status in COUNTED_LOT_STATUSES:
                await self.aggregates.adjust(vaccine_id, owner, credited)
            await self.update_nearest_expiration(vaccine_id, owner)

        logger.info(f"Released {credited} dose(s) back to lot {lot.id}")
        return lot
