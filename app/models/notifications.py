"""
Notification ledger.

A row means "already sent" for its (subject, recipient, threshold) key.
Rows are only ever inserted, after a successful delivery.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, UTCDateTime


class NotificationSubjectType(str, Enum):
    STOCK_LOT = "STOCK_LOT"
    APPOINTMENT = "APPOINTMENT"


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        UniqueConstraint(
            "subject_id", "recipient_id", "threshold_label",
            name="uq_notification_record_key",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)

    subject_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(255), nullable=False)
    threshold_label: Mapped[str] = mapped_column(String(50), nullable=False)

    days_before: Mapped[int] = mapped_column(Integer, nullable=False)
    target_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    sent_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<NotificationRecord {self.subject_type}:{self.subject_id} -> {self.recipient_id} {self.threshold_label}>"
