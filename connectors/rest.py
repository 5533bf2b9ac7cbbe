"""
Token-based REST shims for GitHub (bearer PAT) and Jenkins (HTTP Basic).

Neither goes through the CredentialBroker: their credentials are static
tokens stored in the account config.  ``get_json`` is the one request
path shared with the Atlassian instance client.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from config.settings import config as settings
from connectors.exceptions import ConfigError, ProviderError, TransientNetworkError

logger = logging.getLogger(__name__)

_GH_API = "https://api.github.com"


async def get_json(
    url: str,
    *,
    error_prefix: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    auth: Optional[Tuple[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """
    GET ``url`` and decode its JSON body.

    Raises
    ------
    TransientNetworkError – transport failure
    ProviderError         – non-2xx status, or a 2xx body that is not JSON
    """
    try:
        async with httpx.AsyncClient(
            transport=transport, timeout=settings.http_timeout_seconds
        ) as client:
            resp = await client.get(
                url,
                params=params,
                auth=auth,
                headers={"Accept": "application/json", **(headers or {})},
            )
    except httpx.TransportError as exc:
        raise TransientNetworkError(f"{error_prefix}: {exc}") from exc

    if not resp.is_success:
        raise ProviderError(resp.status_code, resp.text, prefix=error_prefix)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(resp.status_code, resp.text, prefix=f"{error_prefix}, invalid JSON") from exc


# ── GitHub ─────────────────────────────────────────────────────────────


class GitHubClient:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = config.get("token") or ""
        self.default_owner = config.get("defaultOwner") or ""
        self._transport = transport

    def has_credentials(self) -> bool:
        return bool(self.token)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.token:
            raise ConfigError("GitHub token not configured")
        return await get_json(
            f"{_GH_API}{path}",
            error_prefix="GitHub API error",
            params=params,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=self._transport,
        )

    async def test_connection(self) -> Dict[str, Any]:
        return await self._get("/user")

    async def list_open_pull_requests(self, limit: int = 30) -> List[Dict[str, Any]]:
        """Open PRs in repos of ``defaultOwner``, or authored by the token's user."""
        scope = f"user:{self.default_owner}" if self.default_owner else "author:@me"
        data = await self._get(
            "/search/issues",
            {"q": f"is:pr is:open {scope}", "sort": "updated", "per_page": limit},
        )
        return [
            {
                "number": item.get("number"),
                "title": item.get("title"),
                "user": (item.get("user") or {}).get("login"),
                "updated_at": item.get("updated_at"),
                "url": item.get("html_url"),
            }
            for item in data.get("items", [])
        ]


# ── Jenkins ────────────────────────────────────────────────────────────


class JenkinsClient:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (config.get("url") or "").rstrip("/")
        self.username = config.get("username") or ""
        self.api_token = config.get("apiToken") or ""
        self._transport = transport

    def has_credentials(self) -> bool:
        return bool(self.base_url and self.username and self.api_token)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.has_credentials():
            raise ConfigError("Jenkins url, username and API token are required")
        return await get_json(
            f"{self.base_url}{path}/api/json",
            error_prefix="Jenkins API error",
            params=params,
            auth=(self.username, self.api_token),
            transport=self._transport,
        )

    async def test_connection(self) -> Dict[str, Any]:
        return await self._get("", {"tree": "mode"})

    async def list_jobs(self, folder: Optional[str] = None) -> List[Dict[str, Any]]:
        path = f"/job/{quote(folder, safe='')}" if folder else ""
        data = await self._get(path, {"tree": "jobs[name,url,color]"})
        return data.get("jobs") or []
