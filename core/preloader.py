"""
Preload orchestrator — warm the cache for every enabled account ahead of
interactive use.

Connector modules plug in through a ``PreloadRegistry``: connector type →
ordered list of (cache_key, ttl, fetcher).  The orchestrator knows nothing
about providers; it only walks the registry.

Policy: specs for one account run **sequentially** so a single backend
never sees a burst; accounts run **in parallel** through the FanOutRouter
so total latency is bounded by the slowest account.  Every per-spec
failure becomes a ``PreloadResult`` — nothing here raises.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from cache.store import CacheStore
from connectors.accounts import AccountStore
from connectors.broker import CredentialBroker
from connectors.exceptions import ConfigError
from connectors.registry import BrokerRegistry
from core.fanout import FanOutRouter
from database.models import ConnectorAccount
from utils.schemas import Branch, CacheStatusEntry, PreloadResult, PreloadSummary

logger = logging.getLogger(__name__)


class PreloadContext:
    """What a fetcher gets to work with for one account."""

    def __init__(
        self,
        account_id: str,
        connector_type: str,
        config: Dict[str, Any],
        brokers: Optional[BrokerRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_id = account_id
        self.connector_type = connector_type
        self.config = config
        self.transport = transport
        self._brokers = brokers

    async def get_broker(self) -> CredentialBroker:
        if self._brokers is None:
            raise ConfigError("No broker registry available for preload")
        return await self._brokers.get(self.account_id)


PreloadFetcher = Callable[[PreloadContext], Awaitable[Any]]


class PreloadSpec:
    __slots__ = ("cache_key", "ttl", "fetcher")

    def __init__(self, cache_key: str, ttl: float, fetcher: PreloadFetcher):
        self.cache_key = cache_key
        self.ttl = ttl
        self.fetcher = fetcher

    def __repr__(self) -> str:
        return f"PreloadSpec({self.cache_key!r}, ttl={self.ttl})"


class PreloadRegistry:
    def __init__(self):
        self._specs: Dict[str, List[PreloadSpec]] = {}

    def register(
        self,
        connector_type: str,
        cache_key: str,
        fetcher: PreloadFetcher,
        ttl: float,
    ) -> None:
        specs = self._specs.setdefault(connector_type, [])
        specs[:] = [s for s in specs if s.cache_key != cache_key]
        specs.append(PreloadSpec(cache_key, ttl, fetcher))

    def preload(self, connector_type: str, cache_key: str, ttl: float):
        """Decorator form of ``register``."""

        def decorator(fn: PreloadFetcher) -> PreloadFetcher:
            self.register(connector_type, cache_key, fn, ttl)
            return fn

        return decorator

    def specs_for(self, connector_type: str) -> List[PreloadSpec]:
        return list(self._specs.get(connector_type, []))

    def connector_types(self) -> List[str]:
        return list(self._specs.keys())


class PreloadOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        accounts: AccountStore,
        registry: PreloadRegistry,
        *,
        brokers: Optional[BrokerRegistry] = None,
        router: Optional[FanOutRouter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._cache = cache
        self._accounts = accounts
        self._registry = registry
        self._brokers = brokers
        self._transport = transport
        self._router = router or FanOutRouter("preload")

    # ── single account ──────────────────────────────────────────────────

    async def preload_account(
        self,
        account_id: str,
        connector_type: str,
        config: Dict[str, Any],
    ) -> List[PreloadResult]:
        ctx = PreloadContext(account_id, connector_type, config, self._brokers, self._transport)
        results: List[PreloadResult] = []

        for spec in self._registry.specs_for(connector_type):
            try:
                if await self._cache.get(account_id, spec.cache_key) is not None:
                    results.append(
                        PreloadResult(
                            account_id=account_id,
                            connector_type=connector_type,
                            cache_key=spec.cache_key,
                            success=True,
                            from_cache=True,
                        )
                    )
                    continue

                data = await spec.fetcher(ctx)
                await self._cache.set(account_id, spec.cache_key, data, spec.ttl)
                results.append(
                    PreloadResult(
                        account_id=account_id,
                        connector_type=connector_type,
                        cache_key=spec.cache_key,
                        success=True,
                    )
                )
            except Exception as exc:
                logger.warning(
                    "Preload %s for %s account %s failed: %s",
                    spec.cache_key, connector_type, account_id, exc,
                )
                results.append(
                    PreloadResult(
                        account_id=account_id,
                        connector_type=connector_type,
                        cache_key=spec.cache_key,
                        success=False,
                        error=str(exc) or exc.__class__.__name__,
                    )
                )
        return results

    # ── every enabled account ───────────────────────────────────────────

    async def _preload_branch(self, account: ConnectorAccount) -> List[PreloadResult]:
        # ConfigError here drops just this account (FanOutRouter logs it).
        config = self._accounts.decrypt(account)
        return await self.preload_account(account.account_id, account.connector_type, config)

    async def preload_all(self) -> List[PreloadResult]:
        accounts = [
            a for a in await self._accounts.list_enabled()
            if self._registry.specs_for(a.connector_type)
        ]
        branches = [
            Branch(label=a.account_id, target=a, meta={"connector_type": a.connector_type})
            for a in accounts
        ]
        logger.info("Preloading caches for %d account(s)", len(branches))

        per_account = await self._router.query_all(branches, self._preload_branch)

        results: List[PreloadResult] = []
        for br in per_account:
            results.extend(br.result)
        return results

    @staticmethod
    def summarize(results: List[PreloadResult]) -> PreloadSummary:
        return PreloadSummary(
            total=len(results),
            successful=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            from_cache=sum(1 for r in results if r.from_cache),
            results=results,
        )

    # ── diagnostics ─────────────────────────────────────────────────────

    async def get_cache_status(self) -> List[CacheStatusEntry]:
        """Registered keys of every enabled account vs. persisted rows. No network."""
        accounts = await self._accounts.list_enabled()
        status: List[CacheStatusEntry] = []

        for account in accounts:
            specs = self._registry.specs_for(account.connector_type)
            if not specs:
                continue
            rows = {s.cache_key: s for s in await self._cache.get_stats(account.account_id)}
            for spec in specs:
                row = rows.get(spec.cache_key)
                status.append(
                    CacheStatusEntry(
                        account_id=account.account_id,
                        connector_type=account.connector_type,
                        cache_key=spec.cache_key,
                        is_stale=row.is_expired if row else True,
                        expires_at=row.expires_at if row else None,
                    )
                )
        return status
