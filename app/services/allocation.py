"""
Lot allocation strategies.

A strategy decides the order in which an owner's lots are drawn down. The
ledger asks the strategy for a SQL ordering (so candidates come back from
the database already sorted and locked in that order) and can also sort
in-memory lots with the same rule.
"""
from enum import Enum
from typing import Iterable, List, Sequence

from sqlalchemy import case

from app.models.stock import StockLot, LotStatus


class AllocationStrategyType(str, Enum):
    """Inventory allocation strategy."""
    FEFO = "FEFO"  # First Expiry First Out


class EarliestExpirationFirst:
    """
    FEFO: usable lots before expired ones, then the earliest expiration.

    Older lots win ties so the order is total and repeatable.
    """

    name = AllocationStrategyType.FEFO

    _status_rank = {LotStatus.VALID.value: 0, LotStatus.EXPIRED.value: 1}

    def order_by(self) -> Sequence:
        status_rank = case(
            (StockLot.status == LotStatus.VALID.value, 0),
            else_=1,
        )
        return (
            status_rank.asc(),
            StockLot.expiration.asc(),
            StockLot.created_at.asc(),
            StockLot.id.asc(),
        )

    def sort_key(self, lot: StockLot):
        return (
            self._status_rank.get(lot.status, 2),
            lot.expiration,
            lot.created_at,
            str(lot.id),
        )

    def sort(self, lots: Iterable[StockLot]) -> List[StockLot]:
        return sorted(lots, key=self.sort_key)

    def plan(self, lots: Iterable[StockLot], quantity: int) -> List[tuple]:
        """
        Walk ``lots`` in strategy order and return ``(lot, take)`` pairs that
        cover ``quantity``. Callers must check availability first.
        """
        remaining = quantity
        picks = []
        for lot in self.sort(lots):
            if remaining <= 0:
                break
            if lot.remaining_quantity <= 0:
                continue
            take = min(remaining, lot.remaining_quantity)
            picks.append((lot, take))
            remaining -= take
        return picks


DEFAULT_STRATEGY = EarliestExpirationFirst()
