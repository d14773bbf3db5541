from app.models.organization import Vaccine, Region, District, HealthCenter, User, UserRole, AgentLevel
from app.models.child import Child, ScheduledVaccination
from app.models.stock import (
    OwnerType, LotStatus, Owner, StockLot, AggregateStock, TIER_ORDER, COUNTED_LOT_STATUSES,
)
from app.models.stock_transfer import (
    TransferStatus, PendingStockTransfer, PendingStockTransferLot, StockTransferHistory,
)
from app.models.notifications import NotificationSubjectType, NotificationRecord

__all__ = [
    "Vaccine",
    "Region",
    "District",
    "HealthCenter",
    "User",
    "UserRole",
    "AgentLevel",
    "Child",
    "ScheduledVaccination",
    "OwnerType",
    "LotStatus",
    "Owner",
    "StockLot",
    "AggregateStock",
    "TIER_ORDER",
    "COUNTED_LOT_STATUSES",
    "TransferStatus",
    "PendingStockTransfer",
    "PendingStockTransferLot",
    "StockTransferHistory",
    "NotificationSubjectType",
    "NotificationRecord",
]
