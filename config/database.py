"""
config/database.py
Async SQLAlchemy engines and sessions for the intake log, ledger shards,
config tables and run log (PostgreSQL via asyncpg).

Two lifetimes:
- the API process owns `engine` from startup to shutdown (init_db / close_db)
- each Celery task gets a NullPool engine through task_session(), bound to
  the event loop of its asyncio.run() and disposed with it

The storage classes commit after every mutating call, so sessions handed out
here never commit on their own; they only roll back what a failure left open.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import settings

logger = logging.getLogger(__name__)


def _sessions(bind: AsyncEngine) -> async_sessionmaker:
    # Records are read back after commit, so attributes must not expire
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ── API engine ────────────────────────────────────────────────
engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_timeout=settings.DATABASE_POOL_TIMEOUT,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.DEBUG,
)
AsyncSessionLocal = _sessions(engine)


class Base(DeclarativeBase):
    """Declarative base of the ledger tables (shared/models/models.py)."""
    pass


# ── Sessions ──────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, rolled back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def task_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for one Celery task run; its engine is disposed on exit."""
    task_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    try:
        async with _sessions(task_engine)() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await task_engine.dispose()


# ── Lifecycle ─────────────────────────────────────────────────
@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=0.5, max=8), reraise=True)
async def init_db() -> None:
    """Create missing tables. Retried while the database is still starting."""
    import shared.models.models  # noqa: F401  (registers the tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Ledger schema ready ({len(Base.metadata.tables)} tables)")


async def close_db() -> None:
    await engine.dispose()
