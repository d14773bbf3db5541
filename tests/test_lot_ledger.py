"""Tests for lots, stock lines, consumption order and cascade deletion."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from app.database import run_atomic
from app.models import AggregateStock, LotStatus, Owner, OwnerType, StockLot
from app.services.aggregate_stock import AggregateStockService
from app.services.allocation import EarliestExpirationFirst
from app.services.lot_ledger import LotLedger, status_for_expiration


async def stock_quantity(ledger: LotLedger, vaccine_id, owner) -> int:
    stock = await ledger.aggregates.get(vaccine_id, owner)
    return stock.quantity if stock else 0


# =============================================================================
# LOT CREATION
# =============================================================================

class TestCreateLot:
    """Validation and initial status of new lots."""

    @pytest.mark.asyncio
    async def test_remaining_starts_at_quantity(self, db, hierarchy, now):
        ledger = LotLedger(db)
        lot = await ledger.create_lot(hierarchy["vaccine_id"], hierarchy["national"], 100, now + timedelta(days=90))

        assert lot.quantity == 100
        assert lot.remaining_quantity == 100
        assert lot.status == LotStatus.VALID.value
        assert lot.owner == Owner.national()

    @pytest.mark.asyncio
    async def test_past_expiration_is_expired(self, db, hierarchy, now):
        ledger = LotLedger(db)
        lot = await ledger.create_lot(hierarchy["vaccine_id"], hierarchy["national"], 10, now - timedelta(days=1))

        assert lot.status == LotStatus.EXPIRED.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -5])
    async def test_non_positive_quantity_rejected(self, db, hierarchy, now, quantity):
        ledger = LotLedger(db)
        with pytest.raises(ValidationError):
            await ledger.create_lot(hierarchy["vaccine_id"], hierarchy["national"], quantity, now + timedelta(days=5))

    @pytest.mark.asyncio
    async def test_missing_expiration_rejected(self, db, hierarchy):
        ledger = LotLedger(db)
        with pytest.raises(ValidationError):
            await ledger.create_lot(hierarchy["vaccine_id"], hierarchy["national"], 10, None)

    @pytest.mark.asyncio
    async def test_missing_vaccine_rejected(self, db, hierarchy, now):
        ledger = LotLedger(db)
        with pytest.raises(ValidationError):
            await ledger.create_lot(None, hierarchy["national"], 10, now + timedelta(days=5))

    def test_national_owner_has_no_id(self):
        owner = Owner(OwnerType.NATIONAL, uuid.uuid4())
        assert owner.id is None

    def test_lower_tier_owner_requires_id(self):
        with pytest.raises(ValidationError):
            Owner(OwnerType.DISTRICT)

    def test_status_for_expiration(self, now):
        assert status_for_expiration(now + timedelta(days=1), now) == LotStatus.VALID.value
        assert status_for_expiration(now, now) == LotStatus.EXPIRED.value
        assert status_for_expiration(now + timedelta(days=1), now, LotStatus.PENDING) == LotStatus.PENDING.value
        assert status_for_expiration(now - timedelta(days=1), now, LotStatus.PENDING) == LotStatus.EXPIRED.value


# =============================================================================
# ADD / CONSUME
# =============================================================================

class TestConsumeStock:
    """Earliest-expiration-first consumption."""

    @pytest.mark.asyncio
    async def test_add_stock_credits_line(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        await ledger.add_stock(vaccine_id, owner, 40, now + timedelta(days=60))
        await ledger.add_stock(vaccine_id, owner, 25, now + timedelta(days=30))

        stock = await ledger.aggregates.get(vaccine_id, owner)
        assert stock.quantity == 65
        assert stock.nearest_expiration == now + timedelta(days=30)
        assert stock.has_expired_lot is False

    @pytest.mark.asyncio
    async def test_draws_earliest_expiring_lots_first(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        late = await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=30))
        early = await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=10))
        middle = await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=20))

        allocations = await ledger.consume_stock(vaccine_id, owner, 15)

        assert [a["lot_id"] for a in allocations] == [early.id, middle.id]
        assert [a["quantity"] for a in allocations] == [10, 5]
        assert early.remaining_quantity == 0
        assert middle.remaining_quantity == 5
        assert late.remaining_quantity == 10
        assert await stock_quantity(ledger, vaccine_id, owner) == 15

    @pytest.mark.asyncio
    async def test_valid_lots_before_expired_lots(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        expired = await ledger.add_stock(vaccine_id, owner, 5, now - timedelta(days=3))
        valid = await ledger.add_stock(vaccine_id, owner, 5, now + timedelta(days=100))

        allocations = await ledger.consume_stock(vaccine_id, owner, 7)

        assert [a["lot_id"] for a in allocations] == [valid.id, expired.id]
        assert allocations[1]["status"] == LotStatus.EXPIRED.value
        assert expired.remaining_quantity == 3

    @pytest.mark.asyncio
    async def test_insufficient_stock_changes_nothing(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        first = await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=10))
        second = await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=20))

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.consume_stock(vaccine_id, owner, 21)

        assert exc_info.value.details["available"] == 20
        await db.refresh(first)
        await db.refresh(second)
        assert first.remaining_quantity == 10
        assert second.remaining_quantity == 10
        assert await stock_quantity(ledger, vaccine_id, owner) == 20

    @pytest.mark.asyncio
    async def test_consume_requires_stock_line(self, db, hierarchy):
        ledger = LotLedger(db)
        with pytest.raises(NotFoundError):
            await ledger.consume_stock(hierarchy["vaccine_id"], hierarchy["regional"], 1)

    @pytest.mark.asyncio
    async def test_pending_lots_do_not_count(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        await ledger.add_stock(vaccine_id, owner, 10, now + timedelta(days=10), status=LotStatus.PENDING)

        assert await stock_quantity(ledger, vaccine_id, owner) == 0
        with pytest.raises(InsufficientStockError):
            await ledger.consume_stock(vaccine_id, owner, 1)

    @pytest.mark.asyncio
    async def test_aggregate_matches_lots(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]

        await ledger.add_stock(vaccine_id, owner, 30, now + timedelta(days=10))
        await ledger.add_stock(vaccine_id, owner, 12, now - timedelta(days=1))
        await ledger.consume_stock(vaccine_id, owner, 17)

        report = await ledger.aggregates.verify(vaccine_id, owner)
        assert report["consistent"] is True
        assert report["cached_quantity"] == report["lot_quantity"] == 25


class TestAllocationStrategy:
    def _lot(self, status, days, remaining=10, created=0):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return StockLot(
            id=uuid.uuid4(),
            status=status,
            expiration=base + timedelta(days=days),
            created_at=base + timedelta(seconds=created),
            quantity=remaining,
            remaining_quantity=remaining,
        )

    def test_sort_orders_by_status_then_expiration(self):
        strategy = EarliestExpirationFirst()
        expired = self._lot(LotStatus.EXPIRED.value, 1)
        late = self._lot(LotStatus.VALID.value, 50)
        soon = self._lot(LotStatus.VALID.value, 5)

        assert strategy.sort([expired, late, soon]) == [soon, late, expired]

    def test_ties_broken_by_creation(self):
        strategy = EarliestExpirationFirst()
        newer = self._lot(LotStatus.VALID.value, 5, created=10)
        older = self._lot(LotStatus.VALID.value, 5, created=1)

        assert strategy.sort([newer, older]) == [older, newer]

    def test_plan_skips_empty_lots(self):
        strategy = EarliestExpirationFirst()
        empty = self._lot(LotStatus.VALID.value, 1, remaining=0)
        full = self._lot(LotStatus.VALID.value, 2, remaining=10)

        assert strategy.plan([empty, full], 4) == [(full, 4)]


# =============================================================================
# EXPIRATION REFRESH
# =============================================================================

class TestRefreshExpiredLots:

    @pytest.mark.asyncio
    async def test_marks_past_lots_expired(self, db, hierarchy, now):
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]
        past = LotLedger(db, clock=lambda: now - timedelta(days=10))
        lot = await past.add_stock(vaccine_id, owner, 10, now - timedelta(days=2))
        assert lot.status == LotStatus.VALID.value

        ledger = LotLedger(db, clock=lambda: now)
        assert await ledger.refresh_expired_lots() == 1

        assert lot.status == LotStatus.EXPIRED.value
        stock = await ledger.aggregates.get(vaccine_id, owner)
        assert stock.quantity == 10
        assert stock.has_expired_lot is True

    @pytest.mark.asyncio
    async def test_expired_placeholder_starts_counting(self, db, hierarchy, now):
        vaccine_id, owner = hierarchy["vaccine_id"], hierarchy["national"]
        past = LotLedger(db, clock=lambda: now - timedelta(days=10))
        await past.add_stock(vaccine_id, owner, 6, now - timedelta(days=1), status=LotStatus.PENDING)

        ledger = LotLedger(db, clock=lambda: now)
        assert await stock_quantity(ledger, vaccine_id, owner) == 0

        await ledger.refresh_expired_lots()

        assert await stock_quantity(ledger, vaccine_id, owner) == 6

    @pytest.mark.asyncio
    async def test_nothing_to_refresh(self, db, hierarchy, now):
        ledger = LotLedger(db)
        await ledger.add_stock(hierarchy["vaccine_id"], hierarchy["national"], 10, now + timedelta(days=3))

        assert await ledger.refresh_expired_lots() == 0


# =============================================================================
# CASCADE DELETE
# =============================================================================

class TestDeleteLotCascade:

    async def _lineage(self, db, hierarchy, now):
        """National lot -> regional lot -> district lot."""
        ledger = LotLedger(db)
        vaccine_id = hierarchy["vaccine_id"]
        expiration = now + timedelta(days=60)

        root = await ledger.add_stock(vaccine_id, hierarchy["national"], 50, expiration)
        for owner in (hierarchy["regional"], hierarchy["district_owner"]):
            await ledger.aggregates.get_or_create(vaccine_id, owner)

        child = await ledger.create_lot(vaccine_id, hierarchy["regional"], 20, expiration, source_lot_id=root.id)
        await ledger.aggregates.adjust(vaccine_id, hierarchy["regional"], 20)
        grandchild = await ledger.create_lot(
            vaccine_id, hierarchy["district_owner"], 8, expiration, source_lot_id=child.id
        )
        await ledger.aggregates.adjust(vaccine_id, hierarchy["district_owner"], 8)
        await db.commit()
        return ledger, root, child, grandchild

    @pytest.mark.asyncio
    async def test_deletes_lot_and_descendants(self, db, hierarchy, now):
        ledger, root, child, grandchild = await self._lineage(db, hierarchy, now)
        ids = [root.id, child.id, grandchild.id]

        deleted = await ledger.delete_lot_cascade(root.id)

        assert deleted == ids
        result = await db.execute(select(StockLot).where(StockLot.id.in_(ids)))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_debits_each_owner(self, db, hierarchy, now):
        ledger, root, child, grandchild = await self._lineage(db, hierarchy, now)
        vaccine_id = hierarchy["vaccine_id"]

        await ledger.delete_lot_cascade(child.id)

        assert await stock_quantity(ledger, vaccine_id, hierarchy["national"]) == 50
        assert await stock_quantity(ledger, vaccine_id, hierarchy["regional"]) == 0
        assert await stock_quantity(ledger, vaccine_id, hierarchy["district_owner"]) == 0
        assert await ledger.get_lot(root.id) is root

    @pytest.mark.asyncio
    async def test_unknown_lot(self, db, hierarchy):
        with pytest.raises(NotFoundError):
            await LotLedger(db).delete_lot_cascade(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_remove_stock_line(self, db, hierarchy, now):
        ledger, root, child, grandchild = await self._lineage(db, hierarchy, now)
        vaccine_id = hierarchy["vaccine_id"]

        deleted = await ledger.remove_stock_line(vaccine_id, hierarchy["regional"])

        assert set(deleted) == {child.id, grandchild.id}
        result = await db.execute(
            select(AggregateStock).where(AggregateStock.owner_type == OwnerType.REGIONAL.value)
        )
        assert result.scalar_one_or_none() is None
        assert await stock_quantity(ledger, vaccine_id, hierarchy["district_owner"]) == 0


# =============================================================================
# APPOINTMENT DOSES
# =============================================================================

class TestDoseReservation:

    @pytest.mark.asyncio
    async def test_reserve_takes_earliest_valid_lot(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, center = hierarchy["vaccine_id"], hierarchy["center"]
        owner = hierarchy["center_owner"]

        await ledger.add_stock(vaccine_id, owner, 5, now + timedelta(days=40))
        soon = await ledger.add_stock(vaccine_id, owner, 5, now + timedelta(days=10))

        reservation = await ledger.reserve_dose(vaccine_id, center.id, appointment_date=now + timedelta(days=3))

        assert reservation == {"lot_id": soon.id, "quantity": 1}
        assert soon.remaining_quantity == 4
        assert await stock_quantity(ledger, vaccine_id, owner) == 9

    @pytest.mark.asyncio
    async def test_reserve_skips_lots_expiring_before_appointment(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, center = hierarchy["vaccine_id"], hierarchy["center"]

        await ledger.add_stock(vaccine_id, hierarchy["center_owner"], 5, now + timedelta(days=2))

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve_dose(vaccine_id, center.id, appointment_date=now + timedelta(days=5))
        assert "expire before" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_reserve_with_only_expired_lots(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, center = hierarchy["vaccine_id"], hierarchy["center"]

        await ledger.add_stock(vaccine_id, hierarchy["center_owner"], 5, now - timedelta(days=2))

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve_dose(vaccine_id, center.id)
        assert "expired" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_reserve_without_stock(self, db, hierarchy):
        with pytest.raises(InsufficientStockError):
            await LotLedger(db).reserve_dose(hierarchy["vaccine_id"], hierarchy["center"].id)

    @pytest.mark.asyncio
    async def test_release_returns_dose(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, center = hierarchy["vaccine_id"], hierarchy["center"]
        owner = hierarchy["center_owner"]
        lot = await ledger.add_stock(vaccine_id, owner, 5, now + timedelta(days=10))
        await ledger.reserve_dose(vaccine_id, center.id, quantity=2)

        released = await ledger.release_dose(vaccine_id, center.id, lot.id, quantity=2)

        assert released.remaining_quantity == 5
        assert await stock_quantity(ledger, vaccine_id, owner) == 5

    @pytest.mark.asyncio
    async def test_release_never_exceeds_lot_quantity(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id, center = hierarchy["vaccine_id"], hierarchy["center"]
        lot = await ledger.add_stock(vaccine_id, hierarchy["center_owner"], 5, now + timedelta(days=10))
        await ledger.reserve_dose(vaccine_id, center.id)

        released = await ledger.release_dose(vaccine_id, center.id, lot.id, quantity=3)

        assert released.remaining_quantity == 5
        assert await stock_quantity(ledger, vaccine_id, hierarchy["center_owner"]) == 5

    @pytest.mark.asyncio
    async def test_release_rejects_foreign_lot(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id = hierarchy["vaccine_id"]
        lot = await ledger.add_stock(vaccine_id, hierarchy["national"], 5, now + timedelta(days=10))

        with pytest.raises(ValidationError):
            await ledger.release_dose(vaccine_id, hierarchy["center"].id, lot.id)


# =============================================================================
# STOCK LINE INTEGRITY
# =============================================================================

class TestStockLineIntegrity:

    @pytest.mark.asyncio
    async def test_stale_writer_gets_conflict(self, db, session_factory, hierarchy, now):
        vaccine_id = hierarchy["vaccine_id"]
        national = hierarchy["national"]
        await LotLedger(db).add_stock(vaccine_id, national, 10, now + timedelta(days=30))

        # The slow writer reads the stock line, then a second session consumes first
        slow = session_factory()
        await LotLedger(slow).aggregates.get(vaccine_id, national)
        await slow.commit()

        async with session_factory() as fast:
            await LotLedger(fast).consume_stock(vaccine_id, national, 4)

        with pytest.raises(ConflictError):
            await LotLedger(slow).consume_stock(vaccine_id, national, 4)
        await slow.close()

        async with session_factory() as check:
            report = await LotLedger(check).aggregates.verify(vaccine_id, national)
        assert report["cached_quantity"] == 6
        assert report["consistent"] is True

        allocations = await run_atomic(
            lambda session: LotLedger(session).consume_stock(vaccine_id, national, 4),
            factory=session_factory,
        )
        assert sum(a["quantity"] for a in allocations) == 4

        async with session_factory() as check:
            report = await LotLedger(check).aggregates.verify(vaccine_id, national)
        assert (report["cached_quantity"], report["consistent"]) == (2, True)

    @pytest.mark.asyncio
    async def test_debit_below_zero_aborts_unit(self, db, hierarchy, now):
        ledger = LotLedger(db)
        vaccine_id = hierarchy["vaccine_id"]
        national = hierarchy["national"]
        lot = await ledger.add_stock(vaccine_id, national, 10, now + timedelta(days=30))
        await db.execute(
            update(AggregateStock).where(AggregateStock.vaccine_id == vaccine_id).values(quantity=3)
        )
        await db.commit()

        with pytest.raises(ConflictError):
            await ledger.consume_stock(vaccine_id, national, 5)

        await db.refresh(lot)
        assert lot.remaining_quantity == 10
        assert await stock_quantity(ledger, vaccine_id, national) == 3

    @pytest.mark.asyncio
    async def test_single_national_line_per_vaccine(self, db, hierarchy):
        vaccine_id = hierarchy["vaccine_id"]
        db.add_all([
            AggregateStock(vaccine_id=vaccine_id, owner_type=OwnerType.NATIONAL.value, owner_id=None, quantity=0),
            AggregateStock(vaccine_id=vaccine_id, owner_type=OwnerType.NATIONAL.value, owner_id=None, quantity=0),
        ])

        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_racing_line_creation_is_a_conflict(self, db, hierarchy):
        vaccine_id = hierarchy["vaccine_id"]
        service = AggregateStockService(db)
        await service.get_or_create(vaccine_id, hierarchy["national"])
        await db.commit()

        # A writer that checked before the line existed
        with patch.object(AggregateStockService, "get", AsyncMock(return_value=None)):
            with pytest.raises(ConflictError):
                await service.get_or_create(vaccine_id, hierarchy["national"])
        await db.rollback()

        lines = (await db.execute(select(AggregateStock))).scalars().all()
        assert len(lines) == 1
