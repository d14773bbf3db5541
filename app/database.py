import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from datetime import datetime, date
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy import event
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError
from psycopg.types.json import set_json_dumps

from app.config import settings
from app.core.exceptions import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Custom JSON encoder that handles Decimal, datetime, UUID, etc.
class CustomJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime, UUID and other types."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


def custom_json_dumps(obj):
    """Custom JSON dumps function for psycopg."""
    return json.dumps(obj, cls=CustomJSONEncoder)


# Configure psycopg to use our custom JSON encoder globally
set_json_dumps(custom_json_dumps)


def enable_sqlite_savepoints(async_engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs behave on the sqlite driver."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False, **engine_kwargs):
    """Create an async engine for SQLite (aiosqlite) or PostgreSQL (psycopg)."""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            database_url,
            echo=echo,
            future=True,
            json_serializer=custom_json_dumps,
            connect_args={"check_same_thread": False},
            **engine_kwargs,
        )
        enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    if database_url.startswith("postgresql+asyncpg://"):
        database_url = database_url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://")

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={"connect_timeout": 30},
    )


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session(factory: Optional[async_sessionmaker] = None):
    """Context manager for getting database session (for background jobs)."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def atomic(session: AsyncSession):
    """
    Run a ledger unit atomically.

    Lot rows and the aggregate cache are written inside one transaction
    (or one SAVEPOINT when the caller already has a transaction open), so
    either every write lands or none does. A concurrent update of the same
    versioned row surfaces as ConflictError.
    """
    if session.in_transaction():
        ctx = session.begin_nested()
    else:
        ctx = session.begin()
    try:
        async with ctx:
            yield session
    except StaleDataError as e:
        logger.warning(f"Concurrent write detected: {e}")
        raise ConflictError(
            "Stock was modified concurrently, retry the operation",
            details={"reason": str(e)},
        ) from e


async def run_atomic(
    fn: Callable[[AsyncSession], Awaitable[T]],
    factory: Optional[async_sessionmaker] = None,
    attempts: Optional[int] = None,
) -> T:
    """
    Run ``fn`` in a fresh session and commit, retrying on ConflictError.

    Every attempt gets its own session so no stale state leaks between
    retries.
    """
    attempts = attempts or settings.TRANSACTION_RETRY_ATTEMPTS
    factory = factory or async_session_factory
    last_error: Optional[ConflictError] = None

    for attempt in range(1, attempts + 1):
        async with factory() as session:
            try:
                async with session.begin():
                    return await fn(session)
            except StaleDataError as e:
                last_error = ConflictError(
                    "Stock was modified concurrently, retry the operation",
                    details={"reason": str(e)},
                )
            except ConflictError as e:
                last_error = e
        logger.warning(f"Ledger write conflict (attempt {attempt}/{attempts}), retrying")

    raise last_error


async def init_db(bind=None) -> None:
    """Initialize database tables."""
    # Import all models to register them with Base.metadata
    from app import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables)")
