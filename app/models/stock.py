"""Stock lots and the per-owner aggregate stock cache."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Integer, Boolean, ForeignKey, UniqueConstraint, CheckConstraint, Index, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, UTCDateTime
from app.core.exceptions import ValidationError


class OwnerType(str, Enum):
    """Tiers of the stock hierarchy, top to bottom."""
    NATIONAL = "NATIONAL"
    REGIONAL = "REGIONAL"
    DISTRICT = "DISTRICT"
    HEALTHCENTER = "HEALTHCENTER"


# NATIONAL -> REGIONAL -> DISTRICT -> HEALTHCENTER
TIER_ORDER = [
    OwnerType.NATIONAL,
    OwnerType.REGIONAL,
    OwnerType.DISTRICT,
    OwnerType.HEALTHCENTER,
]


class LotStatus(str, Enum):
    """Stock lot status. Sorted VALID < EXPIRED for consumption order."""
    VALID = "VALID"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"


# Lots in these statuses count toward the aggregate and can be consumed
COUNTED_LOT_STATUSES = [LotStatus.VALID.value, LotStatus.EXPIRED.value]


@dataclass(frozen=True)
class Owner:
    """
    A stock holder: one tier of the hierarchy plus the entity id.

    The national tier has a single stock, so its id is always None.
    """
    tier: OwnerType
    id: Optional[uuid.UUID] = None

    def __post_init__(self):
        tier = OwnerType(self.tier)
        object.__setattr__(self, "tier", tier)
        if tier == OwnerType.NATIONAL:
            object.__setattr__(self, "id", None)
        elif self.id is None:
            raise ValidationError(
                f"An owner id is required for {tier.value} stock",
                details={"owner_type": tier.value},
            )
        elif not isinstance(self.id, uuid.UUID):
            object.__setattr__(self, "id", uuid.UUID(str(self.id)))

    @classmethod
    def national(cls) -> "Owner":
        return cls(OwnerType.NATIONAL)

    @classmethod
    def of(cls, owner_type, owner_id=None) -> "Owner":
        return cls(OwnerType(owner_type), owner_id)

    def is_parent_of(self, other: "Owner") -> bool:
        """True when ``other`` sits exactly one tier below this owner."""
        return TIER_ORDER.index(other.tier) - TIER_ORDER.index(self.tier) == 1

    def as_dict(self) -> dict:
        return {"owner_type": self.tier.value, "owner_id": self.id}

    def __str__(self):
        return self.tier.value if self.id is None else f"{self.tier.value}:{self.id}"


class StockLot(Base):
    """
    A batch of doses with one expiration date.

    ``remaining_quantity`` is decremented by consumption and transfers.
    Lots created by a confirmed transfer point back to the lot they were
    drawn from through ``source_lot_id``.
    """
    __tablename__ = "stock_lots"
    __table_args__ = (
        CheckConstraint(
            "remaining_quantity >= 0 AND remaining_quantity <= quantity",
            name="ck_stock_lots_remaining_bounds",
        ),
        Index("ix_stock_lots_owner_vaccine", "vaccine_id", "owner_type", "owner_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    vaccine_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("vaccines.id", ondelete="CASCADE"),
        nullable=False
    )
    owner_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="NATIONAL, REGIONAL, DISTRICT, HEALTHCENTER"
    )
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True,
        comment="NULL only for NATIONAL"
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    expiration: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=LotStatus.VALID.value,
        index=True,
        comment="VALID, EXPIRED, PENDING"
    )

    # Lineage: the lot this one was transferred from
    source_lot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("stock_lots.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    source_lot: Mapped[Optional["StockLot"]] = relationship(
        "StockLot",
        remote_side=[id],
        back_populates="derived_lots"
    )
    derived_lots: Mapped[List["StockLot"]] = relationship(
        "StockLot",
        back_populates="source_lot",
        passive_deletes=True
    )

    @property
    def owner(self) -> Owner:
        return Owner.of(self.owner_type, self.owner_id)

    def __repr__(self) -> str:
        return f"<StockLot {self.id} {self.remaining_quantity}/{self.quantity} exp={self.expiration:%Y-%m-%d}>"


class AggregateStock(Base):
    """
    Cached stock line per (vaccine, owner).

    ``quantity`` always equals the summed remaining quantity of the owner's
    VALID and EXPIRED lots for the vaccine. ``version`` guards concurrent
    writers.
    """
    __tablename__ = "aggregate_stocks"
    __table_args__ = (
        UniqueConstraint("vaccine_id", "owner_type", "owner_id", name="uq_aggregate_stock_owner"),
        # NULL owner ids never collide in the constraint above
        Index(
            "uq_aggregate_stock_national",
            "vaccine_id",
            "owner_type",
            unique=True,
            postgresql_where=text("owner_id IS NULL"),
            sqlite_where=text("owner_id IS NULL"),
        ),
        CheckConstraint("quantity >= 0", name="ck_aggregate_stocks_quantity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    vaccine_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("vaccines.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    owner_type: Mapped[str] = mapped_column(String(50), nullable=False)
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nearest_expiration: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    has_expired_lot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def owner(self) -> Owner:
        return Owner.of(self.owner_type, self.owner_id)

    def __repr__(self) -> str:
        return f"<AggregateStock {self.vaccine_id} {self.owner_type}:{self.owner_id} qty={self.quantity}>"
