"""Notification run summaries."""
from typing import Any, Dict, List, Optional

from app.schemas.base import BaseResponseSchema


class ThresholdCheckResult(BaseResponseSchema):
    notifications_sent: int
    skipped: int
    errors: List[Dict[str, Any]] = []
    lots_expired: Optional[int] = None


class JobStatus(BaseResponseSchema):
    id: str
    name: str
    next_run_time: Optional[str] = None
    trigger: str
