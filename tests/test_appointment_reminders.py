"""Tests for guardian appointment reminders."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.models import Child, NotificationRecord, ScheduledVaccination
from app.services.appointment_reminders import (
    AppointmentReminderSource,
    appointment_key,
    check_appointment_reminders,
)
from app.services.threshold_notifier import Subject

NOW = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def add_child(db, hierarchy):
    async def _add(phone="+237 677 000 000", email=None, next_appointment=None, active=True):
        child = Child(
            first_name="Awa",
            last_name="Mbarga",
            guardian_phone=phone,
            guardian_email=email,
            health_center_id=hierarchy["center"].id,
            next_appointment=next_appointment,
            next_vaccine_id=hierarchy["vaccine_id"] if next_appointment else None,
            is_active=active,
        )
        db.add(child)
        await db.commit()
        return child

    return _add


async def schedule(db, child, vaccine_id, when):
    scheduled = ScheduledVaccination(child_id=child.id, vaccine_id=vaccine_id, scheduled_for=when)
    db.add(scheduled)
    await db.commit()
    return scheduled


class TestDaysRemaining:

    def test_counts_calendar_days(self):
        source = AppointmentReminderSource(db=None)
        late_evening = Subject("s", datetime(2026, 3, 12, 23, 0, tzinfo=timezone.utc))
        early_morning = Subject("s", datetime(2026, 3, 12, 0, 30, tzinfo=timezone.utc))

        assert source.days_remaining(late_evening, NOW) == 2
        assert source.days_remaining(early_morning, NOW) == 2

    def test_labels(self):
        source = AppointmentReminderSource(db=None)
        assert [source.threshold_label(t) for t in (7, 2, 1, 0, 3)] == [
            "1_WEEK", "2_DAYS", "1_DAY", "SAME_DAY", "3_DAYS",
        ]

    def test_key_includes_day(self):
        assert appointment_key("c1", datetime(2026, 3, 12, 15, 0, tzinfo=timezone.utc)) == "c1:2026-03-12"


class TestCheckAppointmentReminders:

    @pytest.mark.asyncio
    async def test_reminds_guardian_by_sms(self, db, hierarchy, notifier, add_child):
        child = await add_child()
        await schedule(db, child, hierarchy["vaccine_id"], datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc))

        result = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)

        assert result["notifications_sent"] == 1
        recipient, payload = notifier.send.await_args.args
        assert recipient.phone == "+237 677 000 000"
        assert payload["channel"] == "sms"
        assert "Awa Mbarga" in payload["body"]
        assert "BCG" in payload["body"]
        assert "CSI Nlongkak" in payload["body"]

        record = (await db.execute(select(NotificationRecord))).scalar_one()
        assert record.subject_id == f"{child.id}:2026-03-12"
        assert record.threshold_label == "2_DAYS"

    @pytest.mark.asyncio
    async def test_same_day_and_repeat_runs(self, db, hierarchy, notifier, add_child):
        child = await add_child()
        await schedule(db, child, hierarchy["vaccine_id"], datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))

        first = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)
        later = NOW + timedelta(hours=3)
        second = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: later)

        assert first["notifications_sent"] == 1
        assert second["notifications_sent"] == 0
        _, payload = notifier.send.await_args.args
        assert payload["subject"] == "Reminder: vaccination appointment today"

    @pytest.mark.asyncio
    async def test_uses_child_next_appointment(self, db, notifier, add_child):
        await add_child(phone=None, email="Parent@Example.org",
                        next_appointment=datetime(2026, 3, 17, 9, 0, tzinfo=timezone.utc))

        result = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)

        assert result["notifications_sent"] == 1
        recipient, payload = notifier.send.await_args.args
        assert recipient.key == "parent@example.org"
        assert payload["channel"] == "email"
        assert payload["subject"] == "Reminder: vaccination appointment in 1 week"

    @pytest.mark.asyncio
    async def test_same_appointment_counted_once(self, db, hierarchy, notifier, add_child):
        when = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)
        child = await add_child(next_appointment=when)
        await schedule(db, child, hierarchy["vaccine_id"], when)

        result = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)

        assert result["notifications_sent"] == 1
        records = (await db.execute(select(NotificationRecord))).scalars().all()
        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_skips_inactive_and_contactless(self, db, hierarchy, notifier, add_child):
        when = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)
        inactive = await add_child(active=False)
        await schedule(db, inactive, hierarchy["vaccine_id"], when)
        unreachable = await add_child(phone=None, email=None)
        await schedule(db, unreachable, hierarchy["vaccine_id"], when)

        result = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)

        assert result["notifications_sent"] == 0
        assert result["skipped"] == 1
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_past_appointments_ignored(self, db, hierarchy, notifier, add_child):
        child = await add_child()
        await schedule(db, child, hierarchy["vaccine_id"], datetime(2026, 3, 9, 10, 0, tzinfo=timezone.utc))

        result = await check_appointment_reminders(db, notifier, thresholds=[7, 2, 0], clock=lambda: NOW)

        assert result == {"notifications_sent": 0, "skipped": 0, "errors": []}
