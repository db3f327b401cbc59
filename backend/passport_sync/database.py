"""Destination (passport) database engine and session helpers."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from passport_sync.config import Settings, settings
from passport_sync.models import Base

logger = logging.getLogger("passport_sync.database")

# Tables the sync engine cannot run without
REQUIRED_TABLES = ("patients", "medical_records", "sync_cursors")


def build_engine(config: Settings) -> AsyncEngine:
    return create_async_engine(
        config.database_url,
        echo=config.database_echo,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        pool_timeout=30,
        pool_recycle=config.database_pool_recycle,
        pool_pre_ping=config.database_pool_pre_ping,
    )


engine = build_engine(settings)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def _missing_tables(conn: AsyncConnection) -> list[str]:
    existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return [name for name in REQUIRED_TABLES if name not in existing]


async def _prepare_schema() -> None:
    async with engine.begin() as conn:
        if settings.debug:
            await conn.run_sync(Base.metadata.create_all)
            return
        missing = await _missing_tables(conn)
        if missing:
            logger.warning(
                "Destination schema is missing %s; run `alembic upgrade head`",
                ", ".join(missing),
            )


async def init_db() -> None:
    """Wait for the destination database and make sure the sync tables exist.

    In debug mode tables are created from metadata; otherwise Alembic owns the
    schema and missing tables are only reported.
    """
    attempts = settings.database_init_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            await _prepare_schema()
        except Exception as exc:
            if attempt == attempts:
                logger.exception("Destination database unavailable after %d attempts", attempt)
                raise
            delay = min(settings.database_init_retry_delay_seconds * attempt, 10.0)
            logger.warning(
                "Destination database not ready (%s), attempt %d/%d; retrying in %.1fs",
                exc.__class__.__name__,
                attempt,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info("Destination database ready after %d attempts", attempt)
            return


async def close_db() -> None:
    await engine.dispose()


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on success and rolls back on any error."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a transactional session."""
    async with session_scope() as session:
        yield session
