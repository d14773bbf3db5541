"""
Background Jobs Module

Handles scheduled tasks for:
- Stock expiration alerts
- Appointment reminders
"""

from app.jobs.scheduler import NotificationScheduler

__all__ = [
    "NotificationScheduler",
]
