"""Aggregate stock lines: the cached per-(vaccine, owner) quantity."""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, NotFoundError
from app.models.stock import AggregateStock, StockLot, Owner, COUNTED_LOT_STATUSES

logger = logging.getLogger(__name__)


def owner_filter(model, vaccine_id: uuid.UUID, owner: Owner):
    """WHERE clause matching ``model`` rows of one vaccine and owner."""
    owner_id_clause = (
        model.owner_id.is_(None) if owner.id is None else model.owner_id == owner.id
    )
    return and_(
        model.vaccine_id == vaccine_id,
        model.owner_type == owner.tier.value,
        owner_id_clause,
    )


class AggregateStockService:
    """Reads and adjusts aggregate stock lines."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, vaccine_id: uuid.UUID, owner: Owner) -> Optional[AggregateStock]:
        result = await self.db.execute(
            select(AggregateStock).where(owner_filter(AggregateStock, vaccine_id, owner))
        )
        return result.scalar_one_or_none()

    async def require(self, vaccine_id: uuid.UUID, owner: Owner) -> AggregateStock:
        """Get the stock line or raise NotFoundError."""
        stock = await self.get(vaccine_id, owner)
        if stock is None:
            raise NotFoundError(
                f"No stock line for vaccine {vaccine_id} at {owner}",
                details={"vaccine_id": str(vaccine_id), **_owner_details(owner)},
            )
        return stock

    async def get_or_create(self, vaccine_id: uuid.UUID, owner: Owner) -> AggregateStock:
        """Get the stock line, creating an empty one if the owner has none yet."""
        stock = await self.get(vaccine_id, owner)
        if stock is None:
            stock = AggregateStock(
                vaccine_id=vaccine_id,
                owner_type=owner.tier.value,
                owner_id=owner.id,
                quantity=0,
                has_expired_lot=False,
            )
            self.db.add(stock)
            try:
                await self.db.flush()
            except IntegrityError as e:
                # Another writer created the same line first
                raise ConflictError(
                    "Stock line was created concurrently, retry the operation",
                    details={"vaccine_id": str(vaccine_id), **_owner_details(owner)},
                ) from e
            logger.info(f"Created stock line for vaccine {vaccine_id} at {owner}")
        return stock

    async def adjust(self, vaccine_id: uuid.UUID, owner: Owner, delta: int) -> Optional[AggregateStock]:
        """
        Add ``delta`` to the cached quantity.

        A debit that would take the line below zero means the cache no
        longer matches the lots; ConflictError aborts the enclosing unit.
        Returns None when the owner has no stock line.
        """
        stock = await self.get(vaccine_id, owner)
        if stock is None:
            return None
        if delta:
            quantity = (stock.quantity or 0) + delta
            if quantity < 0:
                logger.error(
                    f"Aggregate drift for vaccine {vaccine_id} at {owner}: "
                    f"cached={stock.quantity} delta={delta}"
                )
                raise ConflictError(
                    "Stock line is out of sync with its lots",
                    details={
                        "vaccine_id": str(vaccine_id),
                        **_owner_details(owner),
                        "cached_quantity": stock.quantity,
                        "delta": delta,
                    },
                )
            stock.quantity = quantity
            await self.db.flush()
        return stock

    async def lot_total(self, vaccine_id: uuid.UUID, owner: Owner) -> int:
        """Summed remaining quantity of the owner's counted lots."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(StockLot.remaining_quantity), 0)).where(
                and_(
                    owner_filter(StockLot, vaccine_id, owner),
                    StockLot.remaining_quantity > 0,
                    StockLot.status.in_(COUNTED_LOT_STATUSES),
                )
            )
        )
        return int(result.scalar_one())

    async def verify(self, vaccine_id: uuid.UUID, owner: Owner) -> dict:
        """Compare the cached quantity with the lot ledger."""
        stock = await self.get(vaccine_id, owner)
        cached = stock.quantity if stock else 0
        from_lots = await self.lot_total(vaccine_id, owner)
        if cached != from_lots:
            logger.warning(
                f"Aggregate drift for vaccine {vaccine_id} at {owner}: "
                f"cached={cached} lots={from_lots}"
            )
        return {
            "vaccine_id": vaccine_id,
            **_owner_details(owner),
            "cached_quantity": cached,
            "lot_quantity": from_lots,
            "consistent": cached == from_lots,
        }


def _owner_details(owner: Owner) -> dict:
    return {
        "owner_type": owner.tier.value,
        "owner_id": str(owner.id) if owner.id else None,
    }
