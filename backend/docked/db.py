"""Database configuration and session management."""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from docked.config import DATABASE_URL

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite") or ":memory:" in url:
        return
    db_path = url.replace("sqlite+aiosqlite:///", "").replace("sqlite+aiosqlite://", "")
    db_dir = Path(db_path).resolve().parent
    try:
        db_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create database directory {db_dir}: {e}")
        raise ValueError(f"Invalid DATABASE_URL path: {e}") from e


def create_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """Create the async engine for url.

    SQLite uses a StaticPool: one persistent connection, every write
    funnelled through the DatabaseOperationQueue.
    """
    if "sqlite" in url:
        _ensure_sqlite_dir(url)
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_reset_on_return=None,
        )
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


engine = create_engine()

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def init_db(db_engine: Optional[AsyncEngine] = None) -> None:
    """Create tables and apply SQLite pragmas.

    The schema is created with ``Base.metadata.create_all``; there is no
    migration framework.
    """
    # Register every model on Base.metadata
    import docked.models  # noqa: F401

    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if db_engine.dialect.name == "sqlite":
            # WAL lets status reads proceed while a run is being written
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            # Negative = KB, -64000 = 64MB
            await conn.execute(text("PRAGMA cache_size=-64000"))
            await conn.execute(text("PRAGMA busy_timeout=5000"))
            logger.info("SQLite optimizations applied: WAL mode, 64MB cache, 5s busy timeout")
