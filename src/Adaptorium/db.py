# src/Adaptorium/db.py
from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Adaptorium.config import load_settings

log = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Upgrade to async drivers if user supplies sync URLs
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_schema_initialized: bool = False


def database_url() -> str:
    return _normalize_url(load_settings().database_url)


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        url = database_url()
        kwargs: dict[str, object] = {}
        if url.startswith("sqlite+aiosqlite://"):
            kwargs.update(connect_args={"timeout": 30})
            # In-memory DBs need one shared connection so the schema persists
            if ":memory:" in url:
                kwargs.update(poolclass=StaticPool)
        elif url.startswith("postgresql+asyncpg://"):
            kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=10, pool_timeout=30)

        _engine = create_async_engine(url, **kwargs)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        parsed = make_url(url)
        log.info(
            "db.connection.config",
            driver=parsed.drivername,
            host=parsed.host or "",
            database=parsed.database or "",
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def _ensure_schema_created_if_needed() -> None:
    """Create tables for in-memory SQLite, where Alembic never runs."""
    global _schema_initialized
    if _schema_initialized:
        return
    url = database_url()
    if url.startswith("sqlite+aiosqlite://") and ":memory:" in url:
        from Adaptorium import models  # noqa: F401  registers tables

        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    _schema_initialized = True


async def dispose_engine() -> None:
    global _engine, _sessionmaker, _schema_initialized
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    _schema_initialized = False


@contextlib.asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    await _ensure_schema_created_if_needed()
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
            await s.commit()
        except Exception:
            log.error("db.session.error", exc_info=True)
            await s.rollback()
            raise
