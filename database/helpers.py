"""
Database helper functions — schema bootstrap, dialect-aware upserts and
timestamp normalisation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database.models import Base

logger = logging.getLogger(__name__)


async def init_models(engine: AsyncEngine) -> None:
    """Create any missing tables (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", engine.dialect.name)


def insert_for(session: AsyncSession, table):
    """
    Return a dialect-specific ``INSERT`` construct that supports
    ``on_conflict_do_update``.

    Only PostgreSQL and SQLite are supported; both spell the upsert the
    same way.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
