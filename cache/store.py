"""
CacheStore — persisted, TTL-bounded cache keyed by (account_id, cache_key).

Two read strategies:

  • ``get_or_fetch``                — strict: miss → fetch → store → return.
  • ``get_with_background_refresh`` — stale-while-revalidate: an expired row
    is served immediately while a detached task refetches it.

Consistency is eventual.  Rows are addressed independently with no
cross-row locking, and concurrent misses on one cold key may each invoke
the fetcher (no single-flight de-duplication).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Set

from pydantic_core import PydanticSerializationError, to_jsonable_python
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config as settings
from connectors.exceptions import SerializationError
from database.helpers import as_utc, insert_for
from database.models import CachedData
from utils.schemas import CachedRead, CacheStats

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_payload(value: Any) -> str:
    try:
        return json.dumps(to_jsonable_python(value))
    except (PydanticSerializationError, TypeError, ValueError) as exc:
        raise SerializationError(f"Cannot serialize cache payload: {exc}") from exc


def decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Cannot decode cache payload: {exc}") from exc


class CacheStore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self._clock = clock
        self._default_ttl = settings.cache_default_ttl_seconds
        self._background: Set[asyncio.Task] = set()

    # ── primitives ──────────────────────────────────────────────────────

    async def _load(self, account_id: str, key: str) -> Optional[CachedData]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CachedData).where(
                    CachedData.account_id == account_id,
                    CachedData.cache_key == key,
                )
            )
            return result.scalar_one_or_none()

    def _is_expired(self, row: CachedData) -> bool:
        return as_utc(row.expires_at) < self._clock()

    async def get(self, account_id: str, key: str) -> Optional[Any]:
        """
        Return the cached payload, or None on a miss.

        An expired row counts as a miss and is deleted on the way out.
        Undecodable payloads are misses too.
        """
        row = await self._load(account_id, key)
        if row is None:
            return None

        if self._is_expired(row):
            await self._delete_row(row.id)
            return None

        try:
            return decode_payload(row.payload)
        except SerializationError as exc:
            logger.warning("Cache %s/%s unreadable, treating as miss: %s", account_id, key, exc)
            return None

    async def _delete_row(self, row_id: str) -> None:
        # A concurrent reader may have removed it already; that is still a miss.
        try:
            async with self._session_factory() as session:
                await session.execute(delete(CachedData).where(CachedData.id == row_id))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.debug("Lazy delete of cache row %s skipped: %s", row_id, exc)

    async def set(
        self,
        account_id: str,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
    ) -> None:
        """Upsert: one row per (account_id, key); ``expires_at = now + ttl``."""
        payload = encode_payload(value)
        now = self._clock()
        expires_at = now + timedelta(seconds=self._default_ttl if ttl is None else ttl)

        async with self._session_factory() as session:
            stmt = insert_for(session, CachedData.__table__).values(
                account_id=account_id,
                cache_key=key,
                payload=payload,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id", "cache_key"],
                set_={
                    "payload": stmt.excluded.payload,
                    "expires_at": stmt.excluded.expires_at,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def invalidate(self, account_id: str, key: Optional[str] = None) -> int:
        """Delete one entry, or every entry for the account when ``key`` is None."""
        stmt = delete(CachedData).where(CachedData.account_id == account_id)
        if key is not None:
            stmt = stmt.where(CachedData.cache_key == key)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount

    async def cleanup_expired(self) -> int:
        """Bulk-delete every expired row; returns the count removed."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CachedData).where(CachedData.expires_at < self._clock())
            )
            await session.commit()
        if result.rowcount:
            logger.info("Removed %d expired cache entries", result.rowcount)
        return result.rowcount

    # ── read strategies ─────────────────────────────────────────────────

    async def get_or_fetch(
        self,
        account_id: str,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
    ) -> Any:
        cached = await self.get(account_id, key)
        if cached is not None:
            return cached

        data = await fetcher()
        await self.set(account_id, key, data, ttl)
        return data

    async def get_with_background_refresh(
        self,
        account_id: str,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float] = None,
    ) -> CachedRead:
        row = await self._load(account_id, key)

        stale: Any = None
        if row is not None:
            try:
                stale = decode_payload(row.payload)
            except SerializationError as exc:
                logger.warning("Cache %s/%s unreadable, refetching: %s", account_id, key, exc)
                row = None

        if row is None:
            data = await fetcher()
            await self.set(account_id, key, data, ttl)
            return CachedRead(data=data, is_stale=False)

        if not self._is_expired(row):
            return CachedRead(data=stale, is_stale=False)

        task = asyncio.create_task(self._refresh_in_background(account_id, key, fetcher, ttl))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return CachedRead(data=stale, is_stale=True, refresh=task)

    async def _refresh_in_background(
        self,
        account_id: str,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[float],
    ) -> Optional[Any]:
        try:
            data = await fetcher()
            await self.set(account_id, key, data, ttl)
        except Exception:
            logger.exception("Background refresh failed for %s/%s", account_id, key)
            return None
        logger.debug("Background refresh stored %s/%s", account_id, key)
        return data

    # ── diagnostics ─────────────────────────────────────────────────────

    async def get_stats(self, account_id: Optional[str] = None) -> List[CacheStats]:
        """All entries (no payloads), most recently updated first."""
        stmt = select(
            CachedData.account_id,
            CachedData.cache_key,
            CachedData.expires_at,
            CachedData.created_at,
            CachedData.updated_at,
        ).order_by(CachedData.updated_at.desc())
        if account_id is not None:
            stmt = stmt.where(CachedData.account_id == account_id)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        now = self._clock()
        stats = []
        for row in rows:
            expires_at = as_utc(row.expires_at)
            stats.append(
                CacheStats(
                    account_id=row.account_id,
                    cache_key=row.cache_key,
                    expires_at=expires_at,
                    created_at=as_utc(row.created_at),
                    updated_at=as_utc(row.updated_at),
                    is_expired=expires_at < now,
                    ttl_remaining_seconds=max(0.0, (expires_at - now).total_seconds()),
                )
            )
        return stats
