"""
Database connection and session management for the generation pipeline.

The graph store is an embedded, single-writer database (SQLite through
aiosqlite by default). Connection string is loaded from the environment.

Node metadata is updated with read-modify-write cycles, so every SQLite
transaction is opened with BEGIN IMMEDIATE: the write lock is taken before the
read, which turns each session into a critical section. Other backends get the
usual pooled engine and rely on SELECT ... FOR UPDATE at the call site.
"""
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
import structlog

from .models import Base

logger = structlog.get_logger()

# Expected format: sqlite+aiosqlite:///path/to/file.db
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/mediagen.db"

# Seconds a writer waits for the SQLite lock before giving up
SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", "30"))


def _resolve_database_url(raw_url: Optional[str] = None) -> str:
    url = raw_url or os.environ.get(
        "MEDIAGEN_DATABASE_URL",
        os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
    )
    # Plain sqlite:// URLs get the async driver
    if url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _install_sqlite_write_lock(sqlite_engine: AsyncEngine) -> None:
    """Make every transaction on this engine take the write lock up front."""

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy instead of the driver
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
        _install_sqlite_write_lock(sqlite_engine)
        return sqlite_engine

    return create_async_engine(
        url,
        echo=False,
        pool_size=10,       # Max persistent connections
        max_overflow=20,    # Extra connections when pool is exhausted
        pool_timeout=30,    # Wait up to 30s for a connection
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


DATABASE_URL = _resolve_database_url()
engine = _build_engine(DATABASE_URL)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def is_sqlite() -> bool:
    """True when the active engine is SQLite (no row-level locking)."""
    return engine.dialect.name == "sqlite"


async def configure_database(url: str) -> AsyncEngine:
    """
    Point the module at a different database.

    Disposes the previous engine. Used by scripts and tests; application code
    normally relies on MEDIAGEN_DATABASE_URL.
    """
    global DATABASE_URL, engine, async_session_maker

    await engine.dispose()

    DATABASE_URL = _resolve_database_url(url)
    engine = _build_engine(DATABASE_URL)
    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("database_configured", dialect=engine.dialect.name)
    return engine


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    One session is one transaction: commit on clean exit, rollback on error.

    Usage:
        async with get_db_session() as db:
            result = await db.execute(...)
    """
    session = async_session_maker()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db():
    """
    Initialize database tables.

    Call this once during setup to create all tables if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=list(Base.metadata.tables.keys()))


async def check_db_connection() -> bool:
    """
    Check if database is accessible.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_connection_failed", error=str(e))
        return False
