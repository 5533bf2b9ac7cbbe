"""
Integration Hub — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import Services
from api.middleware import register_middleware
from api.routes import router as cache_router
from cache.store import CacheStore
from config.settings import config
from connectors.accounts import AccountStore
from connectors.encryption import is_encryption_enabled
from connectors.fetchers import default_registry
from connectors.registry import BrokerRegistry
from connectors.routes import router as connectors_router
from core.preloader import PreloadOrchestrator

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "aiosqlite", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_services(session_factory=None, *, cipher=None, transport=None) -> Services:
    accounts = AccountStore(session_factory, cipher)
    cache = CacheStore(session_factory)
    brokers = BrokerRegistry(accounts, transport=transport)
    preloader = PreloadOrchestrator(
        cache, accounts, default_registry, brokers=brokers, transport=transport
    )
    return Services(accounts=accounts, cache=cache, brokers=brokers, preloader=preloader)


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Integration Hub",
        version="1.0.0",
        description="OAuth credential broker, response cache and fan-out preload for connectors.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(cache_router, prefix="/api/v1/cache")
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    if services is not None:
        app.state.services = services

    @app.on_event("startup")
    async def on_startup():
        if getattr(app.state, "services", None) is not None:
            return

        from database.helpers import init_models
        from database.session import engine

        await init_models(engine)
        app.state.services = build_services()

        if not is_encryption_enabled():
            logger.warning("Connector configs are stored unencrypted")

        # Drop rows that expired while the process was down
        if config.cache_cleanup_on_startup:
            removed = await app.state.services.cache.cleanup_expired()
            if removed:
                logger.info("Cleaned up %d expired cache entries from previous run", removed)

        logger.info(
            "Application ready to accept requests (%d preload connector types).",
            len(default_registry.connector_types()),
        )

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
