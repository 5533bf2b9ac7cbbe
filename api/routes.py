"""
Cache API routes — statistics, sweep, invalidation and preload.

Route prefix: /api/v1/cache
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import Services, get_services
from utils.schemas import CacheStats, CacheStatusEntry, PreloadSummary

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cache"])


@router.get("")
async def cache_stats(
    account_id: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> List[CacheStats]:
    """List cache entries (no payloads), most recently updated first."""
    return await services.cache.get_stats(account_id)


@router.delete("")
async def cleanup_cache(services: Services = Depends(get_services)) -> Dict[str, int]:
    """Sweep expired entries.  Meant to be hit by an external scheduler."""
    count = await services.cache.cleanup_expired()
    return {"cleaned": count}


@router.delete("/{account_id}")
async def invalidate_cache(
    account_id: str,
    key: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    """Drop one cache key for the account, or all of them when ``key`` is omitted."""
    removed = await services.cache.invalidate(account_id, key)
    logger.info("Invalidated %d cache entries for account %s", removed, account_id)
    return {"removed": removed}


@router.get("/preload")
async def preload_status(services: Services = Depends(get_services)) -> List[CacheStatusEntry]:
    """Staleness of every registered preload key.  Makes no network calls."""
    return await services.preloader.get_cache_status()


@router.post("/preload")
async def trigger_preload(services: Services = Depends(get_services)) -> PreloadSummary:
    """Warm caches for every enabled account and report per-key outcomes."""
    results = await services.preloader.preload_all()
    return services.preloader.summarize(results)
