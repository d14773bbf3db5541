"""Appointment reminders sent to guardians before scheduled vaccinations."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.models.child import Child, ScheduledVaccination
from app.models.notifications import NotificationSubjectType
from app.services.notification_service import Recipient, NotificationType, NotificationChannel
from app.services.recipient_resolver import RecipientResolver
from app.services.threshold_notifier import ThresholdNotifier, ThresholdSource, Subject, DueItem

logger = logging.getLogger(__name__)


APPOINTMENT_LABELS = {
    7: "1_WEEK",
    2: "2_DAYS",
    1: "1_DAY",
    0: "SAME_DAY",
}


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def appointment_key(child_id, appointment_at: datetime) -> str:
    """One subject per child and appointment day."""
    return f"{child_id}:{appointment_at:%Y-%m-%d}"


class AppointmentReminderSource(ThresholdSource):
    """Upcoming appointments, counted in whole days."""

    subject_type = NotificationSubjectType.APPOINTMENT.value

    def __init__(self, db: AsyncSession):
        self.db = db

    def threshold_label(self, threshold: int) -> str:
        return APPOINTMENT_LABELS.get(threshold, f"{threshold}_DAYS")

    def days_remaining(self, subject: Subject, now: datetime) -> float:
        delta = start_of_day(subject.target_at) - start_of_day(now)
        return delta / timedelta(days=1)

    async def enumerate(self, now: datetime) -> List[Subject]:
        today = start_of_day(now)
        subjects = []

        result = await self.db.execute(
            select(ScheduledVaccination)
            .options(
                selectinload(ScheduledVaccination.child).selectinload(Child.health_center),
                selectinload(ScheduledVaccination.vaccine),
            )
            .where(ScheduledVaccination.scheduled_for >= today)
            .order_by(ScheduledVaccination.scheduled_for.asc())
        )
        for scheduled in result.scalars().all():
            child = scheduled.child
            if child is None or not child.is_active:
                continue
            subjects.append(self._subject(
                child,
                scheduled.scheduled_for,
                scheduled.vaccine.name if scheduled.vaccine else None,
                scheduled.id,
            ))

        # Appointments only tracked on the child record
        result = await self.db.execute(
            select(Child)
            .options(selectinload(Child.health_center), selectinload(Child.next_vaccine))
            .where(
                and_(
                    Child.next_appointment.is_not(None),
                    Child.next_appointment >= today,
                    Child.is_active.is_(True),
                )
            )
        )
        for child in result.scalars().all():
            subjects.append(self._subject(
                child,
                child.next_appointment,
                child.next_vaccine.name if child.next_vaccine else None,
                None,
            ))
        return subjects

    @staticmethod
    def _subject(child: Child, appointment_at: datetime, vaccine_name, scheduled_id) -> Subject:
        return Subject(
            subject_id=appointment_key(child.id, appointment_at),
            target_at=appointment_at,
            data={
                "child_id": child.id,
                "child_name": child.full_name,
                "scheduled_vaccination_id": scheduled_id,
                "vaccine_name": vaccine_name,
                "health_center_name": child.health_center.name if child.health_center else None,
                "recipient": RecipientResolver.for_guardian(child),
            },
        )

    async def recipients(self, subject: Subject) -> List[Recipient]:
        recipient = subject.data["recipient"]
        return [recipient] if recipient else []

    async def build_message(self, recipient: Recipient, items: List[DueItem]) -> Dict[str, Any]:
        lines = []
        for item in items:
            info = item.subject.data
            when = f"{item.subject.target_at:%A %d %B %Y at %H:%M}"
            if item.label == "SAME_DAY":
                lead = f"today ({when})"
            elif item.label == "1_DAY":
                lead = f"tomorrow ({when})"
            else:
                lead = f"on {when}"
            line = f"Reminder: vaccination appointment for {info['child_name']} {lead}"
            if info.get("vaccine_name"):
                line += f" - Vaccine: {info['vaccine_name']}"
            if info.get("health_center_name"):
                line += f" - Center: {info['health_center_name']}"
            lines.append(line)

        first = items[0]
        if first.label == "SAME_DAY":
            subject = "Reminder: vaccination appointment today"
        elif first.label == "1_WEEK":
            subject = "Reminder: vaccination appointment in 1 week"
        else:
            subject = f"Reminder: vaccination appointment in {first.threshold} day(s)"

        channel = NotificationChannel.SMS if recipient.phone else NotificationChannel.EMAIL
        return {
            "type": NotificationType.APPOINTMENT_REMINDER.value,
            "channel": channel.value,
            "subject": subject,
            "body": "\n".join(lines),
        }


async def check_appointment_reminders(
    db: AsyncSession,
    notifier,
    thresholds: Optional[Sequence[int]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Dict[str, Any]:
    """Send the guardian reminders that are due now."""
    engine = ThresholdNotifier(
        db,
        AppointmentReminderSource(db),
        notifier,
        thresholds or settings.APPOINTMENT_WARNING_DAYS,
        clock=clock,
    )
    return await engine.run_threshold_check()
