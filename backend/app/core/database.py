"""
Database layer — async SQLAlchemy 2.0 engine and session factory.

Provides:
    • Async engine and session factory
    • Declarative base for the ORM tables in dispatch.orm
    • Lifecycle helpers (create tables, dispose engine)

The default URL points at a local SQLite file through aiosqlite; any
async SQLAlchemy URL works.

Usage:
    from backend.app.core.database import async_session_factory, init_db

    await init_db()
    async with async_session_factory() as session:
        ...
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    if not make_url(url).get_backend_name() == "sqlite":
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# ── Engine & Session Factory ──
engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
async_session_factory = build_session_factory(engine)


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


# ── Lifecycle ──
async def init_db(bind: AsyncEngine = engine) -> None:
    """Create all tables (the schema is small enough to skip migrations)."""
    # Register the ORM tables on Base.metadata
    from backend.app.dispatch import orm  # noqa: F401

    _ensure_sqlite_directory(str(bind.url))
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(bind: AsyncEngine = engine) -> None:
    """Dispose engine connections."""
    await bind.dispose()
    logger.info("Database connections closed")
