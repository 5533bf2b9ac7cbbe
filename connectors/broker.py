"""
CredentialBroker — one account's OAuth token lifecycle.

Acquires access tokens by refresh, refreshes them shortly before expiry,
persists refresh-token rotations back into the account's encrypted config
blob, and executes authenticated requests against the provider API.

Concurrency: ``get_access_token`` is not guarded by a lock.  Two callers
that both see an expired token may both call ``refresh``; providers treat
refresh as idempotent, so the later token simply wins.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from config.settings import config as settings
from connectors.exceptions import (
    AuthorizationRequired,
    ProviderError,
    TransientNetworkError,
)
from connectors.providers import OAuthProviderConfig

logger = logging.getLogger(__name__)


class TokenState(str, enum.Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    NEEDS_REFRESH = "needs_refresh"


class CredentialBroker:
    def __init__(
        self,
        account_id: str,
        provider: OAuthProviderConfig,
        config: Dict[str, Any],
        *,
        accounts: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        refresh_buffer: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """
        Parameters
        ----------
        config     : decrypted account config (clientId, clientSecret,
                     refreshToken, plus provider-specific fields such as
                     tenantId).  The broker owns this copy.
        accounts   : ``AccountStore`` used to persist rotated refresh tokens.
        transport  : optional httpx transport (tests inject a MockTransport).
        clock      : returns the current time in epoch seconds.
        """
        self.account_id = account_id
        self.provider = provider
        self._config = dict(config)
        self._accounts = accounts
        self._transport = transport
        self._clock = clock
        self._refresh_buffer = (
            settings.token_refresh_buffer_seconds if refresh_buffer is None else refresh_buffer
        )
        self._timeout = settings.http_timeout_seconds if timeout is None else timeout
        self._access_token: Optional[str] = None
        self._expiry: float = 0.0

    # ── state ───────────────────────────────────────────────────────────

    @property
    def refresh_token(self) -> Optional[str]:
        return self._config.get("refreshToken") or None

    def has_refresh_token(self) -> bool:
        return self.refresh_token is not None

    @property
    def state(self) -> TokenState:
        if self._access_token is None:
            return TokenState.NO_TOKEN
        if self._clock() < self._expiry - self._refresh_buffer:
            return TokenState.VALID
        return TokenState.NEEDS_REFRESH

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # ── tokens ──────────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        """Return the cached token unless it is within the refresh buffer of expiry."""
        if self.state is TokenState.VALID:
            return self._access_token
        return await self.refresh()

    async def refresh(self) -> str:
        """
        Exchange the stored refresh token for a new access token.

        Raises
        ------
        AuthorizationRequired  – no refresh token, or the provider rejected it
        ProviderError          – token endpoint answered non-2xx
        TransientNetworkError  – transport failure (state is left unchanged)
        """
        refresh_token = self.refresh_token
        if refresh_token is None:
            raise AuthorizationRequired(
                "No refresh token available. Please complete OAuth authorization first "
                f"by visiting /api/auth/{self.provider.auth_route}.",
                auth_route=self.provider.auth_route,
            )

        params = {
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            **self.provider.refresh_params(self._config),
        }
        data = await self._token_request(params)

        self._access_token = data["access_token"]
        self._expiry = self._clock() + float(data.get("expires_in", 3600))

        rotated = data.get("refresh_token")
        if rotated and rotated != refresh_token:
            self._config["refreshToken"] = rotated
            await self._persist_refresh_token(rotated)

        logger.info(
            "Refreshed %s token for account %s", self.provider.connector_type, self.account_id
        )
        return self._access_token

    async def _token_request(self, params: Dict[str, str]) -> Dict[str, Any]:
        client_id = self._config.get("clientId", "")
        client_secret = self._config.get("clientSecret", "")
        auth = None
        if self.provider.use_basic_auth:
            auth = httpx.BasicAuth(client_id, client_secret)
        else:
            params = {**params, "client_id": client_id, "client_secret": client_secret}

        try:
            async with self._client() as client:
                resp = await client.post(
                    self.provider.resolve_token_url(self._config),
                    data=params,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as exc:
            logger.warning(
                "Token endpoint unreachable for account %s: %s", self.account_id, exc
            )
            raise TransientNetworkError(f"Token refresh failed: {exc}") from exc

        if resp.status_code in (400, 401) and _error_code(resp) == "invalid_grant":
            raise AuthorizationRequired(
                f"Refresh token rejected by provider: {resp.text}. "
                f"Re-authorize via /api/auth/{self.provider.auth_route}.",
                auth_route=self.provider.auth_route,
            )
        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text, prefix="Failed to refresh token")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                resp.status_code, resp.text, prefix="Token response is not valid JSON"
            ) from exc
        if not isinstance(data, dict) or "access_token" not in data:
            raise ProviderError(resp.status_code, resp.text, prefix="Token response missing access_token")
        return data

    async def _persist_refresh_token(self, refresh_token: str) -> None:
        if self._accounts is None:
            return
        try:
            await self._accounts.patch_config(self.account_id, "refreshToken", refresh_token)
        except Exception:
            logger.exception(
                "Failed to persist rotated refresh token for account %s", self.account_id
            )

    # ── authorization-code bootstrap ────────────────────────────────────

    def build_auth_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self._config.get("clientId", ""),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.provider.scopes),
            "state": state,
            **self.provider.extra_auth_params,
        }
        return f"{self.provider.resolve_auth_url(self._config)}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> None:
        """
        Trade an authorization code for tokens and store the refresh token.

        The first access token is kept in memory so the next call does not
        need a refresh round-trip.
        """
        params = {
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        data = await self._token_request(params)
        self._access_token = data["access_token"]
        self._expiry = self._clock() + float(data.get("expires_in", 3600))

        refresh_token = data.get("refresh_token")
        if not refresh_token:
            raise AuthorizationRequired(
                "Provider did not return a refresh token; offline access was not granted.",
                auth_route=self.provider.auth_route,
            )
        self._config["refreshToken"] = refresh_token
        if self._accounts is not None:
            await self._accounts.patch_config(self.account_id, "refreshToken", refresh_token)
        logger.info(
            "Stored %s authorization for account %s", self.provider.connector_type, self.account_id
        )

    # ── authenticated requests ──────────────────────────────────────────

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.provider.api_base_url}{endpoint}"

    async def execute(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Perform an authenticated request.

        ``endpoint`` is joined onto the provider's API base URL unless it is
        already absolute.

        Raises
        ------
        AuthorizationRequired / ProviderError / TransientNetworkError
        """
        token = await self.get_access_token()
        merged = {"Authorization": f"Bearer {token}", **(headers or {})}
        try:
            async with self._client() as client:
                resp = await client.request(
                    method, self._url(endpoint), params=params, json=json, headers=merged
                )
        except httpx.TransportError as exc:
            raise TransientNetworkError(
                f"{self.provider.error_prefix}: {exc}"
            ) from exc

        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text, prefix=self.provider.error_prefix)
        return resp

    async def fetch_json(self, endpoint: str, **kwargs: Any) -> Any:
        resp = await self.execute("GET", endpoint, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(
                resp.status_code, resp.text, prefix=f"{self.provider.error_prefix}, invalid JSON"
            ) from exc

    async def fetch_text(self, endpoint: str, **kwargs: Any) -> str:
        resp = await self.execute("GET", endpoint, **kwargs)
        return resp.text

    async def test_connection(self) -> None:
        """Hit the provider's cheapest authenticated endpoint; raises on failure."""
        await self.execute("GET", self.provider.test_endpoint or "/")


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("error") if isinstance(body, dict) else None
