"""Pending stock transfers between adjacent tiers and their audit history."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, ForeignKey, Integer, CheckConstraint
from sqlalchemy.orm import relationship
import uuid

from app.database import Base
from app.db_types import UUIDType, UTCDateTime, JSONType


class TransferStatus(str, Enum):
    """Transfer status enum. Only PENDING can transition."""
    PENDING = "PENDING"  # Debited at source, in flight
    CONFIRMED = "CONFIRMED"  # Credited at destination
    REJECTED = "REJECTED"  # Refused by destination, restored at source
    CANCELLED = "CANCELLED"  # Withdrawn by source, restored at source


class PendingStockTransfer(Base):
    """Quantity debited from a source owner and not yet credited to the destination."""

    __tablename__ = "pending_stock_transfers"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_pending_transfers_quantity"),
    )

    id = Column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)

    vaccine_id = Column(UUIDType(as_uuid=True), ForeignKey("vaccines.id", ondelete="CASCADE"), nullable=False, index=True)

    # Owners
    from_type = Column(String(50), nullable=False)
    from_id = Column(UUIDType(as_uuid=True), nullable=True)
    to_type = Column(String(50), nullable=False)
    to_id = Column(UUIDType(as_uuid=True), nullable=True, index=True)

    quantity = Column(Integer, nullable=False)
    status = Column(String(50), default=TransferStatus.PENDING.value, nullable=False, index=True)

    # Users involved
    created_by_id = Column(UUIDType(as_uuid=True), nullable=True)
    confirmed_by_id = Column(UUIDType(as_uuid=True), nullable=True)
    closed_by_id = Column(UUIDType(as_uuid=True), nullable=True)

    confirmed_at = Column(UTCDateTime)
    closed_at = Column(UTCDateTime)  # rejection or cancellation time
    reason = Column(Text)

    # Timestamps
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    lots = relationship(
        "PendingStockTransferLot",
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="PendingStockTransferLot.position",
        lazy="selectin",
    )
    vaccine = relationship("Vaccine")

    @property
    def is_pending(self) -> bool:
        return self.status == TransferStatus.PENDING.value

    def __repr__(self):
        return f"<PendingStockTransfer {self.id} {self.from_type}->{self.to_type} qty={self.quantity} {self.status}>"


class PendingStockTransferLot(Base):
    """
    Allocation line: how much was drawn from which source lot, with the
    lot's expiration and status as they were at debit time.
    """

    __tablename__ = "pending_stock_transfer_lots"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_pending_transfer_lots_quantity"),
    )

    id = Column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)

    transfer_id = Column(
        UUIDType(as_uuid=True),
        ForeignKey("pending_stock_transfers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, default=0)

    # No FK: the line must outlive a later deletion of the source lot
    source_lot_id = Column(UUIDType(as_uuid=True), nullable=False)
    quantity = Column(Integer, nullable=False)
    snapshot_expiration = Column(UTCDateTime, nullable=False)
    snapshot_status = Column(String(50), nullable=False)

    transfer = relationship("PendingStockTransfer", back_populates="lots")

    def __repr__(self):
        return f"<PendingStockTransferLot {self.source_lot_id} qty={self.quantity}>"


class StockTransferHistory(Base):
    """Immutable audit row written when a transfer reaches a terminal status."""

    __tablename__ = "stock_transfer_history"

    id = Column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transfer_id = Column(UUIDType(as_uuid=True), nullable=False, index=True)

    vaccine_id = Column(UUIDType(as_uuid=True), nullable=False, index=True)
    vaccine_name = Column(String(200))

    from_type = Column(String(50), nullable=False)
    from_id = Column(UUIDType(as_uuid=True), nullable=True)
    from_name = Column(String(200))
    to_type = Column(String(50), nullable=False)
    to_id = Column(UUIDType(as_uuid=True), nullable=True)
    to_name = Column(String(200))

    quantity = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, index=True)

    sent_at = Column(UTCDateTime, nullable=False)
    confirmed_at = Column(UTCDateTime)
    confirmed_by_id = Column(UUIDType(as_uuid=True))
    closed_at = Column(UTCDateTime)
    closed_by_id = Column(UUIDType(as_uuid=True))
    reason = Column(Text)

    # [{"source_lot_id", "quantity", "expiration", "status"}, ...]
    lot_snapshots = Column(JSONType, nullable=False, default=list)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<StockTransferHistory {self.transfer_id} {self.status}>"
