from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Stock lots and stock lines
    stocks,
    # Two-phase transfers
    transfers,
    # Threshold notifications
    notifications,
)

api_router = APIRouter(prefix="/api/v1")

# ==================== Stocks ====================
api_router.include_router(
    stocks.router,
    prefix="/stocks",
    tags=["Stocks"]
)

# ==================== Stock Transfers ====================
api_router.include_router(
    transfers.router,
    prefix="/transfers",
    tags=["Stock Transfers"]
)

# ==================== Notifications ====================
api_router.include_router(
    notifications.router,
    prefix="/notifications",
    tags=["Notifications"]
)
