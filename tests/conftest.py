"""
Pytest fixtures for the ledger tests.

Every test gets its own in-memory SQLite database (aiosqlite, one shared
connection through StaticPool) with the full schema and a small hierarchy:
one vaccine, one region, one district, one health center and one staff
account per tier.
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from app.database import build_engine, build_session_factory, init_db
from app.models import (
    Vaccine,
    Region,
    District,
    HealthCenter,
    User,
    UserRole,
    AgentLevel,
    Owner,
    OwnerType,
)
from app.services.notification_service import Recipient


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with all tables."""
    test_engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# =============================================================================
# REFERENCE DATA
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def hierarchy(db) -> dict:
    """One entity per tier and one active staff account for each of them."""
    vaccine = Vaccine(name="BCG", description="Bacillus Calmette-Guerin")
    region = Region(name="Centre")
    db.add_all([vaccine, region])
    await db.flush()

    district = District(name="Mfoundi", region_id=region.id)
    db.add(district)
    await db.flush()

    center = HealthCenter(name="CSI Nlongkak", address="Rue 1.234", district_id=district.id)
    db.add(center)
    await db.flush()

    users = {
        "national": User(email="national@example.org", first_name="Nadia", last_name="National",
                         role=UserRole.NATIONAL.value),
        "regional": User(email="regional@example.org", first_name="Remi", last_name="Regional",
                         role=UserRole.REGIONAL.value, region_id=region.id),
        "district": User(email="district@example.org", first_name="Dora", last_name="District",
                         role=UserRole.DISTRICT.value, district_id=district.id),
        "agent": User(email="agent@example.org", phone="+237 600 000 001", first_name="Alain",
                      last_name="Agent", role=UserRole.AGENT.value, agent_level=AgentLevel.ADMIN.value,
                      health_center_id=center.id),
    }
    db.add_all(users.values())
    await db.commit()

    return {
        "vaccine": vaccine,
        "vaccine_id": vaccine.id,
        "region": region,
        "district": district,
        "center": center,
        "users": users,
        "national": Owner.national(),
        "regional": Owner(OwnerType.REGIONAL, region.id),
        "district_owner": Owner(OwnerType.DISTRICT, district.id),
        "center_owner": Owner(OwnerType.HEALTHCENTER, center.id),
    }


# =============================================================================
# NOTIFIER FIXTURES
# =============================================================================

@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier double that accepts every message."""
    mock = AsyncMock()
    mock.send.return_value = {"success": True, "channel": "email", "error": None}
    return mock


@pytest.fixture
def failing_notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.send.return_value = {"success": False, "channel": "email", "error": "SMTP down"}
    return mock


@pytest.fixture
def recipient() -> Recipient:
    return Recipient(key=str(uuid.uuid4()), name="Alain Agent", email="agent@example.org")
