"""
Reference data read by the ledger: vaccines, the geographic hierarchy and
staff accounts.

These rows are maintained elsewhere; the ledger only reads them to resolve
owner names and notification recipients.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, UTCDateTime


class UserRole(str, Enum):
    """Account roles."""
    NATIONAL = "NATIONAL"
    REGIONAL = "REGIONAL"
    DISTRICT = "DISTRICT"
    AGENT = "AGENT"


class AgentLevel(str, Enum):
    """Health-center agent levels."""
    ADMIN = "ADMIN"
    STAFF = "STAFF"


class Vaccine(Base):
    __tablename__ = "vaccines"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    doses_required: Mapped[int] = mapped_column(default=1)

    def __repr__(self) -> str:
        return f"<Vaccine {self.name}>"


class Region(Base):
    __tablename__ = "regions"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    districts: Mapped[List["District"]] = relationship("District", back_populates="region")


class District(Base):
    __tablename__ = "districts"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    region_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("regions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    region: Mapped["Region"] = relationship("Region", back_populates="districts")
    health_centers: Mapped[List["HealthCenter"]] = relationship("HealthCenter", back_populates="district")


class HealthCenter(Base):
    __tablename__ = "health_centers"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    district_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("districts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    district: Mapped["District"] = relationship("District", back_populates="health_centers")


class User(Base):
    """Staff account. Scope ids are set according to the role."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    role: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="NATIONAL, REGIONAL, DISTRICT, AGENT"
    )
    agent_level: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="ADMIN, STAFF (agents only)"
    )

    region_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True), ForeignKey("regions.id", ondelete="SET NULL"), nullable=True
    )
    district_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True), ForeignKey("districts.id", ondelete="SET NULL"), nullable=True
    )
    health_center_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True), ForeignKey("health_centers.id", ondelete="SET NULL"), nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"
