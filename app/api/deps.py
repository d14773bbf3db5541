from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.jobs.scheduler import NotificationScheduler
from app.services.notification_service import NotificationService


def get_notifier(request: Request) -> NotificationService:
    """Notifier built at startup (tests may replace it on app.state)."""
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        notifier = NotificationService()
        request.app.state.notifier = notifier
    return notifier


def get_scheduler(request: Request) -> NotificationScheduler:
    return request.app.state.scheduler


DB = Annotated[AsyncSession, Depends(get_db)]
Notifier = Annotated[NotificationService, Depends(get_notifier)]
Scheduler = Annotated[NotificationScheduler, Depends(get_scheduler)]
