"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and the
session factory consumed by the step history store, the executor and the
worker. Every write uses the short-transaction pattern::

    async with session_factory() as db, db.begin():
        db.add(record)

so that a record is durable before the executor moves to the next sub-step.

Usage:
    from cutflow.database import create_engine_and_factory, init_models

    engine, session_factory = create_engine_and_factory()
    await init_models(engine)
"""

import os

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from cutflow.config import get_database_url
from cutflow.models import Base


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine_and_factory(
    database_url: str | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the production engine and session factory.

    Args:
        database_url: Override for DATABASE_URL.

    Returns:
        Tuple of (engine, async_session_factory).

    Raises:
        ValueError: If no URL is given and DATABASE_URL is not set.
    """
    url = database_url or get_database_url()
    echo = os.getenv("DATABASE_ECHO", "").lower() == "true"

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _enable_sqlite_foreign_keys(engine)
    else:
        engine = create_async_engine(
            url,
            pool_size=10,
            max_overflow=5,
            pool_pre_ping=True,
            echo=echo,
        )

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: prevents attribute expiration after commit
    )
    return engine, session_factory


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite uses a StaticPool so every session shares one connection
    (and therefore one database).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    test_engine = create_async_engine(
        database_url,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    _enable_sqlite_foreign_keys(test_engine)
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
