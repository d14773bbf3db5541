"""Children and their scheduled vaccinations (appointment store)."""
import uuid
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import String, Integer, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, UTCDateTime


class Child(Base):
    __tablename__ = "children"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Guardian contact
    guardian_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    guardian_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    health_center_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("health_centers.id", ondelete="SET NULL"),
        nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Next appointment as tracked on the child record
    next_appointment: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_vaccine_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("vaccines.id", ondelete="SET NULL"),
        nullable=True
    )

    health_center = relationship("HealthCenter")
    next_vaccine = relationship("Vaccine")
    scheduled_vaccinations: Mapped[List["ScheduledVaccination"]] = relationship(
        "ScheduledVaccination",
        back_populates="child",
        cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ScheduledVaccination(Base):
    """An appointment, optionally holding a reserved dose."""
    __tablename__ = "scheduled_vaccinations"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    child_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("children.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    vaccine_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("vaccines.id", ondelete="CASCADE"),
        nullable=False
    )
    health_center_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("health_centers.id", ondelete="SET NULL"),
        nullable=True
    )
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    dose: Mapped[int] = mapped_column(Integer, default=1)

    reserved_lot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("stock_lots.id", ondelete="SET NULL"),
        nullable=True
    )
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    child: Mapped["Child"] = relationship("Child", back_populates="scheduled_vaccinations")
    vaccine = relationship("Vaccine")
    health_center = relationship("HealthCenter")
