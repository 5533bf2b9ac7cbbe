"""
Multi-instance Atlassian connector — one logical Jira / Confluence
connector backed by several sites.

Config accepts either an ``instances`` list::

    {"instances": [{"name": "Work", "host": "acme.atlassian.net",
                    "email": "me@acme.io", "apiToken": "..."}]}

or the legacy single-site fields ``host`` / ``email`` / ``apiToken``, which
become one instance named ``Default``.

Queries fan out across every instance via the FanOutRouter; merged rows
carry provenance (``instance``, ``host``) so the assistant can tell sites
apart.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from connectors.exceptions import ConfigError
from connectors.rest import get_json
from core.fanout import FanOutRouter, merge_results
from utils.schemas import Branch, BranchResult

logger = logging.getLogger(__name__)


class AtlassianInstance(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    host: str
    email: str
    api_token: str = Field(alias="apiToken")


def _normalize_host(host: str) -> str:
    return re.sub(r"^https?://", "", host.strip()).rstrip("/")


def parse_instances(config: Dict[str, Any]) -> List[AtlassianInstance]:
    """
    Raises
    ------
    ConfigError – an ``instances`` entry is missing required fields
    """
    raw = config.get("instances") or []
    if not raw and config.get("host") and config.get("email") and config.get("apiToken"):
        raw = [{
            "name": "Default",
            "host": config["host"],
            "email": config["email"],
            "apiToken": config["apiToken"],
        }]

    instances = []
    for entry in raw:
        try:
            inst = AtlassianInstance.model_validate(entry)
        except ValueError as exc:
            raise ConfigError(f"Invalid Atlassian instance config: {exc}") from exc
        inst.host = _normalize_host(inst.host)
        instances.append(inst)
    return instances


class InstanceClient:
    """Basic-auth REST shim for one Atlassian site."""

    def __init__(
        self,
        instance: AtlassianInstance,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instance = instance
        self._transport = transport

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def host(self) -> str:
        return self.instance.host

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await get_json(
            f"https://{self.host}{path}",
            error_prefix=f"Atlassian API error ({self.host})",
            params=params,
            auth=(self.instance.email, self.instance.api_token),
            transport=self._transport,
        )


class MultiInstanceConnector:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        router: Optional[FanOutRouter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._clients = {
            inst.name: InstanceClient(inst, transport=transport)
            for inst in parse_instances(config)
        }
        self._router = router or FanOutRouter("atlassian")

    def has_credentials(self) -> bool:
        return bool(self._clients)

    def instance_names(self) -> List[str]:
        return list(self._clients.keys())

    def branches(self) -> List[Branch]:
        return [
            Branch(label=name, target=client, meta={"instance": name, "host": client.host})
            for name, client in self._clients.items()
        ]

    async def query_all(
        self,
        fn: Callable[[InstanceClient], Awaitable[Any]],
        instance: Optional[str] = None,
        *,
        strict: bool = False,
    ) -> List[BranchResult]:
        """
        Fan ``fn`` out over every site, or only ``instance``.

        With ``strict`` set, raises ``ConfigError`` when no site is configured
        and ``AllBranchesFailed`` when no site answered.
        """
        if strict and not self._clients:
            raise ConfigError("No instances configured. Add host, email and API token.")
        return await self._router.query_all(self.branches(), fn, target=instance, strict=strict)

    # ── merged queries ──────────────────────────────────────────────────

    async def search_issues(
        self,
        jql: str,
        limit: int = 20,
        instance: Optional[str] = None,
        *,
        strict: bool = False,
    ) -> List[Dict[str, Any]]:
        """Search every site; newest-updated first, one row per (host, key)."""

        async def search(client: InstanceClient) -> List[Dict[str, Any]]:
            data = await client.get_json(
                "/rest/api/3/search/jql",
                {"jql": jql, "maxResults": limit, "fields": "summary,status,assignee,updated"},
            )
            return [_issue_row(client.host, issue) for issue in data.get("issues", [])]

        results = await self.query_all(search, instance, strict=strict)
        merged = merge_results(
            results,
            dedupe_key=lambda row: (row["host"], row["key"]),
            sort_key=lambda row: row.get("updated") or "",
        )
        logger.info(
            "[Jira] Search returned %d issues across %d instances", len(merged), len(results)
        )
        return merged

    async def list_boards(
        self, instance: Optional[str] = None, *, strict: bool = False
    ) -> List[Dict[str, Any]]:
        async def boards(client: InstanceClient) -> List[Dict[str, Any]]:
            data = await client.get_json("/rest/agile/1.0/board")
            return [
                {"id": b.get("id"), "name": b.get("name"), "type": b.get("type")}
                for b in data.get("values", [])
            ]

        return merge_results(
            await self.query_all(boards, instance, strict=strict),
            dedupe_key=lambda row: (row["host"], row["id"]),
        )

    async def list_spaces(
        self, instance: Optional[str] = None, *, strict: bool = False
    ) -> List[Dict[str, Any]]:
        async def spaces(client: InstanceClient) -> List[Dict[str, Any]]:
            data = await client.get_json("/wiki/rest/api/space", {"limit": 50})
            return [
                {"key": s.get("key"), "name": s.get("name"), "type": s.get("type")}
                for s in data.get("results", [])
            ]

        return merge_results(
            await self.query_all(spaces, instance, strict=strict),
            dedupe_key=lambda row: (row["host"], row["key"]),
        )


def _issue_row(host: str, issue: Dict[str, Any]) -> Dict[str, Any]:
    fields = issue.get("fields") or {}
    return {
        "key": issue.get("key"),
        "summary": fields.get("summary"),
        "status": (fields.get("status") or {}).get("name"),
        "assignee": (fields.get("assignee") or {}).get("displayName"),
        "updated": fields.get("updated"),
        "url": f"https://{host}/browse/{issue.get('key')}",
    }
