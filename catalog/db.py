"""Database bootstrap: engine/session factories and schema initialization.

Configures the async SQLAlchemy engine and session factory handed to the
record store, creates the schema, and optionally waits for the database on
cold starts.

Env:
    DATABASE_URL            Async SQLAlchemy URL (e.g., postgresql+asyncpg://...).
                            Defaults to a SQLite file DB (see settings).

    # Optional Postgres pooling hints (applied only for postgresql URLs)
    DB_POOL_SIZE            e.g., "5"
    DB_MAX_OVERFLOW         e.g., "10"
    DB_POOL_RECYCLE         e.g., "1800"

    # Startup wait/retry controls for wait_for_db()
    DB_WAIT_MAX_ATTEMPTS    max connection attempts (default 30)
    DB_WAIT_BACKOFF_START   initial backoff seconds (default 0.5)
    DB_WAIT_BACKOFF_MAX     backoff cap seconds (default 5.0)
"""

from __future__ import annotations

import os
import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.engine.url import make_url, URL
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool, NullPool

from .settings import get_settings

log = logging.getLogger(__name__)

DB_WAIT_MAX_ATTEMPTS = int(os.getenv("DB_WAIT_MAX_ATTEMPTS", "30"))
DB_WAIT_BACKOFF_START = float(os.getenv("DB_WAIT_BACKOFF_START", "0.5"))
DB_WAIT_BACKOFF_MAX = float(os.getenv("DB_WAIT_BACKOFF_MAX", "5.0"))


class Base(DeclarativeBase):
    """Declarative base for ORM models."""

    pass


def _safe_url_parts(url_str: str) -> dict:
    """Parse an SQLAlchemy URL and return non-sensitive parts for logging."""
    try:
        u: URL = make_url(url_str)
        return {
            "driver": u.drivername or "",
            "host": u.host or "",
            "port": u.port or "",
            "database": u.database or "",
        }
    except Exception:
        return {"driver": "unknown", "host": "", "port": "", "database": ""}


def _mk_engine(url: str) -> AsyncEngine:
    """Build an async engine with sensible defaults by backend."""
    kwargs: dict = {"pool_pre_ping": True}

    if url.startswith("sqlite+aiosqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory DB
        kwargs["poolclass"] = StaticPool
    elif url.startswith("sqlite+aiosqlite://"):
        kwargs["poolclass"] = NullPool
    elif url.startswith("postgresql"):
        for env, key in (
            ("DB_POOL_SIZE", "pool_size"),
            ("DB_MAX_OVERFLOW", "max_overflow"),
            ("DB_POOL_RECYCLE", "pool_recycle"),
        ):
            value = os.getenv(env)
            if value is not None:
                kwargs[key] = int(value)

    eng = create_async_engine(url, **kwargs)

    parts = _safe_url_parts(url)
    log.debug(
        "db.engine_created driver=%s host=%s port=%s db=%s kwargs=%s",
        parts["driver"],
        parts["host"],
        parts["port"],
        parts["database"],
        {k: kwargs[k] for k in sorted(kwargs)},
    )
    return eng


# Global engine/session factory (reconfigurable in tests)
engine = _mk_engine(get_settings().DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def configure_engine(url: str) -> None:
    """Reconfigure the global engine/session factory (handy for tests)."""
    global engine, SessionLocal
    engine = _mk_engine(url)
    SessionLocal = async_sessionmaker(
        engine, expire_on_commit=False, class_=AsyncSession
    )
    parts = _safe_url_parts(url)
    log.info(
        "db.engine_reconfigured driver=%s host=%s port=%s db=%s",
        parts["driver"],
        parts["host"],
        parts["port"],
        parts["database"],
    )


async def init_db() -> None:
    """Create all database tables for registered ORM models."""
    from . import models  # noqa: F401 (import registers metadata)

    parts = _safe_url_parts(str(engine.url))
    log.info(
        "db.init begin driver=%s host=%s db=%s",
        parts["driver"],
        parts["host"],
        parts["database"],
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping_db() -> bool:
    """Return True if a simple SELECT succeeds against the current engine."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        log.debug("db.ping failed: %r", e)
        return False


async def wait_for_db(
    *,
    max_attempts: int = DB_WAIT_MAX_ATTEMPTS,
    backoff_start: float = DB_WAIT_BACKOFF_START,
    backoff_max: float = DB_WAIT_BACKOFF_MAX,
) -> None:
    """Poll the database until `ping_db()` returns True or attempts are exhausted."""
    delay = backoff_start
    log.info("db.wait start attempts=%d", max_attempts)

    for attempt in range(1, max_attempts + 1):
        if await ping_db():
            return
        if attempt >= max_attempts:
            break
        await asyncio.sleep(delay)
        delay = min(delay * 2.0, backoff_max)
    raise RuntimeError(f"Database not ready after {max_attempts} attempts")
