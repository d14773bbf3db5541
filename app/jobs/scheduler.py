"""
APScheduler configuration for the notification checks.

NotificationScheduler is built explicitly with its settings, session
factory and notifier, and has a start/stop lifecycle driven by the
application lifespan. Two cron jobs run on it:
- stock expiration check (expire past-date lots, then send alerts)
- appointment reminder check

Overlapping runs are harmless: the notification ledger deduplicates sends.
"""

import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings
from app.database import get_db_session
from app.services.appointment_reminders import check_appointment_reminders
from app.services.notification_service import NotificationService
from app.services.stock_expiration import check_stock_expirations

logger = logging.getLogger(__name__)

STOCK_EXPIRATION_JOB_ID = "stock_expiration_check"
APPOINTMENT_JOB_ID = "appointment_reminder_check"


class NotificationScheduler:
    """Periodic trigger for the threshold notifiers."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        notifier: Optional[NotificationService] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.notifier = notifier or NotificationService()
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Combine multiple pending executions into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': settings.SCHEDULER_MISFIRE_GRACE_SECONDS,
            },
            timezone=settings.SCHEDULER_TIMEZONE,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def register_jobs(self) -> None:
        timezone = self.settings.SCHEDULER_TIMEZONE

        self.scheduler.add_job(
            self.run_stock_expiration_check,
            CronTrigger.from_crontab(self.settings.STOCK_CHECK_CRON, timezone=timezone),
            id=STOCK_EXPIRATION_JOB_ID,
            name='Stock expiration alerts',
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_appointment_check,
            CronTrigger.from_crontab(self.settings.APPOINTMENT_CHECK_CRON, timezone=timezone),
            id=APPOINTMENT_JOB_ID,
            name='Appointment reminders',
            replace_existing=True,
        )

    def start(self) -> None:
        """Register the cron jobs and start the scheduler."""
        if self.scheduler.running:
            return
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"Notification scheduler started (stock: '{self.settings.STOCK_CHECK_CRON}', "
            f"appointments: '{self.settings.APPOINTMENT_CHECK_CRON}', tz={self.settings.SCHEDULER_TIMEZONE})"
        )

    def stop(self, wait: bool = True) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Notification scheduler stopped")

    def get_job_status(self) -> List[Dict[str, Any]]:
        """Get status of all scheduled jobs."""
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run_time': str(job.next_run_time) if getattr(job, 'next_run_time', None) else None,
                'trigger': str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]

    async def run_stock_expiration_check(self) -> Optional[Dict[str, Any]]:
        try:
            async with get_db_session(self.session_factory) as db:
                result = await check_stock_expirations(
                    db,
                    self.notifier,
                    thresholds=self.settings.STOCK_EXPIRATION_WARNING_DAYS,
                )
        except Exception as e:
            logger.error(f"Job '{STOCK_EXPIRATION_JOB_ID}' failed: {e}")
            return None

        logger.info(
            f"Job '{STOCK_EXPIRATION_JOB_ID}' completed: {result['notifications_sent']} sent, "
            f"{result['lots_expired']} lot(s) expired, {len(result['errors'])} errors"
        )
        return result

    async def run_appointment_check(self) -> Optional[Dict[str, Any]]:
        try:
            async with get_db_session(self.session_factory) as db:
                result = await check_appointment_reminders(
                    db,
                    self.notifier,
                    thresholds=self.settings.APPOINTMENT_WARNING_DAYS,
                )
        except Exception as e:
            logger.error(f"Job '{APPOINTMENT_JOB_ID}' failed: {e}")
            return None

        logger.info(
            f"Job '{APPOINTMENT_JOB_ID}' completed: {result['notifications_sent']} sent, "
            f"{result['skipped']} skipped, {len(result['errors'])} errors"
        )
        return result
