"""
Global middleware and connector-error handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connectors.exceptions import (
    AllBranchesFailed,
    AuthorizationRequired,
    ConfigError,
    ConnectorError,
    ProviderError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


def _status_for(exc: ConnectorError) -> int:
    if isinstance(exc, AuthorizationRequired):
        return 401
    if isinstance(exc, ConfigError):
        return 400
    if isinstance(exc, TransientNetworkError):
        return 503
    if isinstance(exc, AllBranchesFailed):
        return 503 if exc.retryable else 502
    if isinstance(exc, ProviderError):
        return 502
    return 500


def register_middleware(app: FastAPI) -> None:
    """Attach request timing and translate uncaught ``ConnectorError``s."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError):
        status_code = _status_for(exc)
        logger.warning(
            "%s %s failed with %s: %s",
            request.method, request.url.path, exc.__class__.__name__, exc,
        )
        body = {
            "detail": str(exc),
            "error": exc.__class__.__name__,
            "retryable": exc.retryable,
        }
        auth_route = getattr(exc, "auth_route", None)
        if auth_route:
            body["auth_route"] = auth_route
        return JSONResponse(status_code=status_code, content=body)
