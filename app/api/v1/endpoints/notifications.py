"""Manual triggers and status for the notification checks."""
from typing import List

from fastapi import APIRouter

from app.api.deps import DB, Notifier, Scheduler
from app.config import settings
from app.schemas.notifications import ThresholdCheckResult, JobStatus
from app.services.appointment_reminders import check_appointment_reminders
from app.services.stock_expiration import check_stock_expirations


router = APIRouter(tags=["Notifications"])


@router.post("/stock-expiration/run", response_model=ThresholdCheckResult)
async def run_stock_expiration_check(db: DB, notifier: Notifier):
    """Expire past-date lots and send the expiration alerts due now."""
    result = await check_stock_expirations(db, notifier, thresholds=settings.STOCK_EXPIRATION_WARNING_DAYS)
    return ThresholdCheckResult(**result)


@router.post("/appointments/run", response_model=ThresholdCheckResult)
async def run_appointment_check(db: DB, notifier: Notifier):
    """Send the guardian reminders due now."""
    result = await check_appointment_reminders(db, notifier, thresholds=settings.APPOINTMENT_WARNING_DAYS)
    return ThresholdCheckResult(**result)


@router.get("/jobs", response_model=List[JobStatus])
async def get_job_status(scheduler: Scheduler):
    return [JobStatus(**job) for job in scheduler.get_job_status()]
