"""
Pydantic schemas shared by the cache, fan-out and preload layers and the
HTTP routes.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════════


class Branch(BaseModel):
    """
    One unit of parallel work: an account, or one instance of a
    multi-site connector.  ``meta`` is copied onto the result as provenance.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    label: str
    target: Any = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class BranchResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    label: str
    result: Any = None
    meta: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Cache
# ═══════════════════════════════════════════════════════════════════════════════


class CachedRead(BaseModel):
    """
    Outcome of a stale-while-revalidate read.

    ``refresh`` is set only when ``is_stale`` is True: a detached task that
    resolves to the fresh payload, or to None if the refetch failed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: Any = None
    is_stale: bool = False
    refresh: Optional[asyncio.Task] = None


class CacheStats(BaseModel):
    account_id: str
    cache_key: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_expired: bool
    ttl_remaining_seconds: float


# ═══════════════════════════════════════════════════════════════════════════════
# Preload
# ═══════════════════════════════════════════════════════════════════════════════


class PreloadResult(BaseModel):
    account_id: str
    connector_type: str
    cache_key: str
    success: bool
    from_cache: bool = False
    error: Optional[str] = None


class PreloadSummary(BaseModel):
    total: int
    successful: int
    failed: int
    from_cache: int
    results: List[PreloadResult] = Field(default_factory=list)


class CacheStatusEntry(BaseModel):
    account_id: str
    connector_type: str
    cache_key: str
    is_stale: bool
    expires_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Connector accounts (HTTP)
# ═══════════════════════════════════════════════════════════════════════════════


class AccountCreate(BaseModel):
    connector_type: str
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class AccountUpdate(BaseModel):
    enabled: bool


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None
