"""
Async SQLAlchemy engine and session factory.

PostgreSQL (asyncpg) in production; a ``sqlite+aiosqlite`` URL works for
local runs, in which case the pool settings are left to SQLAlchemy.
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config


def _engine_options(url: str) -> Dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        return {}
    return {"pool_size": 10, "max_overflow": 20, "pool_recycle": 3600}


engine = create_async_engine(
    config.database_url,
    echo=False,
    **_engine_options(config.database_url),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
