# Services module
from app.services.aggregate_stock import AggregateStockService
from app.services.lot_ledger import LotLedger
from app.services.transfer_service import TransferCoordinator

# Notifications
from app.services.notification_service import NotificationService
from app.services.recipient_resolver import RecipientResolver
from app.services.threshold_notifier import ThresholdNotifier

__all__ = [
    "AggregateStockService",
    "LotLedger",
    "TransferCoordinator",
    # Notifications
    "NotificationService",
    "RecipientResolver",
    "ThresholdNotifier",
]
