"""
Stock expiration alerts.

Warns the staff responsible for each owner's stock as its lots approach
their expiration date, at the configured day thresholds.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notifications import NotificationSubjectType
from app.models.organization import Vaccine
from app.models.stock import StockLot, LotStatus, Owner
from app.services.lot_ledger import LotLedger
from app.services.notification_service import Recipient, NotificationType
from app.services.recipient_resolver import RecipientResolver
from app.services.threshold_notifier import ThresholdNotifier, ThresholdSource, Subject, DueItem

logger = logging.getLogger(__name__)


class StockExpirationSource(ThresholdSource):
    """VALID lots with doses left whose expiration is still ahead."""

    subject_type = NotificationSubjectType.STOCK_LOT.value

    def __init__(self, db: AsyncSession, resolver: RecipientResolver):
        self.db = db
        self.resolver = resolver

    async def enumerate(self, now: datetime) -> List[Subject]:
        result = await self.db.execute(
            select(StockLot, Vaccine.name)
            .join(Vaccine, Vaccine.id == StockLot.vaccine_id)
            .where(
                and_(
                    StockLot.status == LotStatus.VALID.value,
                    StockLot.remaining_quantity > 0,
                    StockLot.expiration >= now,
                )
            )
            .order_by(StockLot.expiration.asc())
        )

        subjects = []
        for lot, vaccine_name in result.all():
            subjects.append(Subject(
                subject_id=str(lot.id),
                target_at=lot.expiration,
                data={
                    "lot_id": lot.id,
                    "vaccine_id": lot.vaccine_id,
                    "vaccine_name": vaccine_name,
                    "owner": lot.owner,
                    "remaining_quantity": lot.remaining_quantity,
                    "expiration": lot.expiration,
                },
            ))
        return subjects

    async def recipients(self, subject: Subject) -> List[Recipient]:
        return await self.resolver.for_owner(subject.data["owner"])

    async def build_message(self, recipient: Recipient, items: List[DueItem]) -> Dict[str, Any]:
        by_owner: "OrderedDict[Owner, List[DueItem]]" = OrderedDict()
        for item in items:
            by_owner.setdefault(item.subject.data["owner"], []).append(item)

        lines = []
        html_rows = []
        for owner, owner_items in by_owner.items():
            info = await self.resolver.describe_owner(owner)
            heading = f"{info['type']}: {info['name']}"
            if info.get("location"):
                heading += f" ({info['location']})"
            lines.append(heading)
            for item in owner_items:
                lot = item.subject.data
                days_left = max(0, int(item.days_remaining))
                lines.append(
                    f"  - {lot['vaccine_name']}: {lot['remaining_quantity']} dose(s), "
                    f"expires {lot['expiration']:%Y-%m-%d} ({days_left} day(s) left)"
                )
                html_rows.append(
                    f"<tr><td>{info['name']}</td><td>{lot['vaccine_name']}</td>"
                    f"<td>{lot['remaining_quantity']}</td><td>{lot['expiration']:%Y-%m-%d}</td>"
                    f"<td>{days_left}</td></tr>"
                )

        count = len(items)
        subject = f"Stock expiration alert: {count} lot(s) expiring soon"
        greeting = f"Hello {recipient.name}," if recipient.name else "Hello,"
        body = "\n".join([
            greeting,
            "",
            "The following vaccine lots are approaching their expiration date:",
            "",
            *lines,
            "",
            "Please use or redistribute these doses before they expire.",
        ])
        html = (
            f"<p>{greeting}</p>"
            "<p>The following vaccine lots are approaching their expiration date:</p>"
            "<table><tr><th>Owner</th><th>Vaccine</th><th>Doses</th><th>Expires</th><th>Days left</th></tr>"
            f"{''.join(html_rows)}</table>"
        )
        return {
            "type": NotificationType.STOCK_EXPIRATION.value,
            "subject": subject,
            "body": body,
            "html": html,
        }


async def check_stock_expirations(
    db: AsyncSession,
    notifier,
    thresholds: Optional[Sequence[int]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Dict[str, Any]:
    """
    Expire lots that are past their date, then send due expiration alerts.

    Returns the engine summary plus ``lots_expired``.
    """
    ledger = LotLedger(db, clock=clock)
    lots_expired = await ledger.refresh_expired_lots()
    await db.commit()

    resolver = RecipientResolver(db)
    engine = ThresholdNotifier(
        db,
        StockExpirationSource(db, resolver),
        notifier,
        thresholds or settings.STOCK_EXPIRATION_WARNING_DAYS,
        clock=clock,
    )
    results = await engine.run_threshold_check()
    results["lots_expired"] = lots_expired
    return results
