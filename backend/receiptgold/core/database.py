"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application.  ``DATABASE_URL`` is normalised for async
drivers (``postgresql+psycopg`` for Postgres, ``sqlite+aiosqlite`` for
SQLite).  When no URL is configured a local SQLite database is used if
``DB_DEV_FALLBACK_SQLITE`` is enabled.

Reconciliation services never open sessions on their own; they are handed
an ``async_sessionmaker`` and run each transition inside
``async with factory.begin() as session``.  Dramatiq actors run under
``asyncio.run`` and use :func:`standalone_session_factory` so that every
run gets an engine bound to its own event loop.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from receiptgold.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./receiptgold.db"


def resolve_database_url(raw_url: str | None = None) -> str:
    """Return an async-driver URL for the configured database."""
    db_url = raw_url if raw_url is not None else settings.DATABASE_URL
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL
    url_obj = make_url(db_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def build_engine(db_url: str | None = None, **kwargs: Any) -> AsyncEngine:
    url = resolve_database_url(db_url)
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    engine_kwargs.update(kwargs)
    logger.info("Creating async engine for %s", make_url(url).render_as_string(hide_password=True))
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()

# Create session factory
AsyncSessionLocal = build_session_factory(engine)

# Declarative base
Base = declarative_base()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the application session factory.

    Routes that apply transitions need a factory rather than a single
    session so that every transition runs in its own transaction.
    """
    return AsyncSessionLocal


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``."""
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from receiptgold.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def standalone_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory backed by a short-lived engine.

    Worker actors call ``asyncio.run`` once per message; pooled async
    connections must not outlive the loop that opened them.
    """
    run_engine = build_engine()
    try:
        yield build_session_factory(run_engine)
    finally:
        await run_engine.dispose()
