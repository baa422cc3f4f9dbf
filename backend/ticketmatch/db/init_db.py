"""
Database Initialization

Creates the async SQLAlchemy engine and session factory for TicketMatch and
the offers, listings and transactions tables.

SQLite connections run in WAL mode and open every transaction with
BEGIN IMMEDIATE, so a read-validate-write unit holds the write lock from its
first read. Conditional updates stay the real guarantee on other backends.
"""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine with concurrency settings for SQLite.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite+aiosqlite:///./ticketmatch.db

    Returns:
        Configured AsyncEngine
    """
    is_sqlite = database_url.startswith("sqlite")

    engine = create_async_engine(
        database_url,
        echo=False,
        future=True,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        } if is_sqlite else {},
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600  # Recycle connections after 1 hour
    )

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Take over transaction control from the driver
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def initialize_database(db_engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all tables and indexes if they do not exist.

    Called during FastAPI startup and by the test fixtures.
    """
    db_engine = db_engine or engine

    if db_engine.url.drivername.startswith("sqlite") and db_engine.url.database:
        Path(db_engine.url.database).parent.mkdir(parents=True, exist_ok=True)

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database initialized at {db_engine.url}")


# ============================================================================
# Default engine for the application
# ============================================================================

DATABASE_URL = f"sqlite+aiosqlite:///{settings.database_path}"
engine = create_db_engine(DATABASE_URL)
AsyncSessionLocal = create_session_factory(engine)
