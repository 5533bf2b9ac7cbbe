"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import Request

from cache.store import CacheStore
from connectors.accounts import AccountStore
from connectors.registry import BrokerRegistry
from core.preloader import PreloadOrchestrator


class Services:
    """Process-wide service objects, built once in ``create_app``."""

    def __init__(
        self,
        accounts: AccountStore,
        cache: CacheStore,
        brokers: BrokerRegistry,
        preloader: PreloadOrchestrator,
    ):
        self.accounts = accounts
        self.cache = cache
        self.brokers = brokers
        self.preloader = preloader


def get_services(request: Request) -> Services:
    """Use in route handlers as ``Depends(get_services)``."""
    return request.app.state.services
