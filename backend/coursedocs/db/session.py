"""
Database engine and session management.

Every public operation of the ingestion core runs in its own short
transaction opened through `session_scope()`. Pipeline runs outlive the
request that scheduled them, so services receive the session *factory*,
never a live session.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from coursedocs.core.config import Settings, get_settings
from coursedocs.models.documents import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = settings.database_url

    if url.startswith("sqlite"):
        # SQLite ignores pool sizing; foreign keys must be switched on per connection
        engine = create_async_engine(url, echo=settings.db_echo_sql)
        _enable_sqlite_foreign_keys(engine)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_engine_from_settings()


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


# ---------------------------------------------------------------------------
# Transaction scope
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session inside a transaction.
    Commits on clean exit, rolls back if the body raises.
    """
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema + health helpers
# ---------------------------------------------------------------------------

async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet (dev / tests; prod uses migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database."""
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
