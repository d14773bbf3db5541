"""
Sliding-threshold notification engine.

A subject (a stock lot, an appointment) has a target instant. Thresholds are
day offsets before that instant. When the days remaining fall inside the
24-hour arming window that ends at a threshold, the subject is due at that
threshold. The notification ledger remembers what was sent, so running the
engine more often than once a day never sends the same reminder twice.

The engine is generic; a *source* supplies the subjects, the recipients and
the message for one domain (see ``stock_expiration`` and
``appointment_reminders``).
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import atomic
from app.models.notifications import NotificationRecord
from app.services.notification_service import Recipient

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# Width of the arming window before each threshold, in days
ARMING_WINDOW_DAYS = 1


def days_until(target: datetime, now: datetime) -> float:
    """Signed, fractional days from ``now`` to ``target``."""
    return (target - now).total_seconds() / SECONDS_PER_DAY


def find_next_threshold(days: float, thresholds: Sequence[int]) -> int:
    """
    The smallest threshold ``t`` with ``days <= t``.

    Past the target (``days < 0``) this is the smallest threshold; beyond
    every threshold it is the largest.
    """
    ordered = sorted(thresholds)
    if not ordered:
        raise ValueError("At least one threshold is required")
    if days < 0:
        return ordered[0]
    for threshold in ordered:
        if days <= threshold:
            return threshold
    return ordered[-1]


def is_due(days: float, threshold: int) -> bool:
    """True inside the arming window ``[threshold - 1, threshold]``."""
    return threshold - ARMING_WINDOW_DAYS <= days <= threshold


@dataclass
class Subject:
    """Something with a deadline that people must be reminded of."""
    subject_id: str
    target_at: datetime
    data: Any = None


@dataclass
class DueItem:
    subject: Subject
    threshold: int
    label: str
    days_remaining: float


@dataclass
class _Batch:
    recipient: Recipient
    items: List[DueItem] = field(default_factory=list)


class ThresholdSource:
    """
    Domain half of a threshold notifier.

    Subclasses enumerate subjects, resolve recipients and render messages.
    """

    subject_type: str = ""

    def threshold_label(self, threshold: int) -> str:
        return f"{threshold}_DAYS"

    def days_remaining(self, subject: Subject, now: datetime) -> float:
        return days_until(subject.target_at, now)

    async def enumerate(self, now: datetime) -> List[Subject]:
        raise NotImplementedError

    async def recipients(self, subject: Subject) -> List[Recipient]:
        raise NotImplementedError

    async def build_message(self, recipient: Recipient, items: List[DueItem]) -> Dict[str, Any]:
        raise NotImplementedError


class ThresholdNotifier:
    """Runs one source against the notification ledger and a notifier."""

    def __init__(
        self,
        db: AsyncSession,
        source: ThresholdSource,
        notifier,
        thresholds: Sequence[int],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not thresholds:
            raise ValueError("At least one threshold is required")
        self.db = db
        self.source = source
        self.notifier = notifier
        self.thresholds = sorted(thresholds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def collect_due(self, now: datetime) -> List[DueItem]:
        """Subjects inside the arming window of their next threshold."""
        due = []
        seen = set()
        for subject in await self.source.enumerate(now):
            if subject.subject_id in seen:
                continue
            seen.add(subject.subject_id)

            days = self.source.days_remaining(subject, now)
            threshold = find_next_threshold(days, self.thresholds)
            if not is_due(days, threshold):
                continue
            due.append(DueItem(
                subject=subject,
                threshold=threshold,
                label=self.source.threshold_label(threshold),
                days_remaining=days,
            ))
        return due

    async def _already_sent(self, recipient_key: str, items: List[DueItem]) -> set:
        result = await self.db.execute(
            select(NotificationRecord.subject_id, NotificationRecord.threshold_label).where(
                and_(
                    NotificationRecord.recipient_id == recipient_key,
                    NotificationRecord.subject_id.in_([item.subject.subject_id for item in items]),
                )
            )
        )
        return {(row.subject_id, row.threshold_label) for row in result.all()}

    async def _record(self, recipient: Recipient, items: List[DueItem], channel: Optional[str]) -> None:
        async with atomic(self.db):
            for item in items:
                self.db.add(NotificationRecord(
                    subject_type=self.source.subject_type,
                    subject_id=item.subject.subject_id,
                    recipient_id=recipient.key,
                    threshold_label=item.label,
                    days_before=item.threshold,
                    target_at=item.subject.target_at,
                    channel=channel,
                ))
            await self.db.flush()

    async def run_threshold_check(self) -> Dict[str, Any]:
        """
        One pass of the engine.

        Returns:
            Dict with ``notifications_sent``, ``skipped`` and ``errors``
        """
        results = {
            "notifications_sent": 0,
            "skipped": 0,
            "errors": [],
        }
        now = self.clock()

        due = await self.collect_due(now)

        batches: "OrderedDict[str, _Batch]" = OrderedDict()
        for item in due:
            recipients = await self.source.recipients(item.subject)
            if not recipients:
                logger.warning(f"No recipient for {self.source.subject_type} {item.subject.subject_id}")
                results["skipped"] += 1
                continue
            for recipient in recipients:
                batch = batches.setdefault(recipient.key, _Batch(recipient=recipient))
                batch.items.append(item)

        for key, batch in batches.items():
            sent = await self._already_sent(key, batch.items)
            pending = [item for item in batch.items if (item.subject.subject_id, item.label) not in sent]
            results["skipped"] += len(batch.items) - len(pending)
            if not pending:
                continue

            try:
                payload = await self.source.build_message(batch.recipient, pending)
                outcome = await self.notifier.send(batch.recipient, payload)
            except Exception as e:
                logger.error(f"Notification to {key} failed: {e}")
                results["errors"].append({"recipient": key, "error": str(e)})
                continue

            if not outcome.get("success"):
                results["errors"].append({"recipient": key, "error": outcome.get("error")})
                continue

            try:
                await self._record(batch.recipient, pending, outcome.get("channel"))
                await self.db.commit()
            except IntegrityError:
                # A concurrent run recorded the same key first
                await self.db.rollback()
                logger.info(f"Notification records for {key} already written by another run")
                results["skipped"] += len(pending)
                continue

            results["notifications_sent"] += 1

        logger.info(
            f"{self.source.subject_type} threshold check: "
            f"{results['notifications_sent']} sent, {results['skipped']} skipped, "
            f"{len(results['errors'])} errors"
        )
        return results
