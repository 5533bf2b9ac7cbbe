"""
Default preload fetchers.

Each function registers itself on ``default_registry`` for one connector
type and cache key.  OAuth connectors go through the account's
CredentialBroker, Atlassian connectors fan out across their instances,
and GitHub and Jenkins use the static tokens in the account config.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from cache.keys import CACHE_KEYS, CACHE_TTL
from connectors.instances import MultiInstanceConnector
from connectors.rest import GitHubClient, JenkinsClient
from core.preloader import PreloadContext, PreloadRegistry

default_registry = PreloadRegistry()


# ── Jira / Confluence ──────────────────────────────────────────────────
#
# Strict fan-out: a preload with no configured site, or with every site
# failing, is an error rather than an empty result.


def _atlassian(ctx: PreloadContext) -> MultiInstanceConnector:
    return MultiInstanceConnector(ctx.config, transport=ctx.transport)


@default_registry.preload("jira", CACHE_KEYS.JIRA_MY_ISSUES, ttl=CACHE_TTL.MEDIUM)
async def jira_my_issues(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _atlassian(ctx).search_issues(
        "assignee = currentUser() ORDER BY updated DESC", 20, strict=True
    )


@default_registry.preload("jira", CACHE_KEYS.JIRA_BOARDS, ttl=CACHE_TTL.LONG)
async def jira_boards(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _atlassian(ctx).list_boards(strict=True)


@default_registry.preload("confluence", CACHE_KEYS.CONFLUENCE_SPACES, ttl=CACHE_TTL.LONG)
async def confluence_spaces(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _atlassian(ctx).list_spaces(strict=True)


# ── Microsoft Graph ────────────────────────────────────────────────────


@default_registry.preload("outlook", CACHE_KEYS.OUTLOOK_FOLDERS, ttl=CACHE_TTL.LONG)
async def outlook_folders(ctx: PreloadContext) -> List[Dict[str, Any]]:
    broker = await ctx.get_broker()
    data = await broker.fetch_json(
        "/me/mailFolders",
        params={
            "$top": 50,
            "$select": "id,displayName,parentFolderId,childFolderCount,unreadItemCount,totalItemCount",
        },
    )
    return data.get("value", [])


@default_registry.preload("outlook", CACHE_KEYS.OUTLOOK_RECENT_EMAILS, ttl=CACHE_TTL.SHORT)
async def outlook_recent_emails(ctx: PreloadContext) -> List[Dict[str, Any]]:
    broker = await ctx.get_broker()
    data = await broker.fetch_json(
        "/me/messages",
        params={
            "$top": 20,
            "$orderby": "receivedDateTime desc",
            "$select": "id,subject,bodyPreview,from,receivedDateTime,isRead,webLink",
        },
    )
    return data.get("value", [])


# ── Google ─────────────────────────────────────────────────────────────


@default_registry.preload("google-calendar", CACHE_KEYS.GOOGLE_CALENDAR_EVENTS, ttl=CACHE_TTL.SHORT)
async def google_calendar_events(ctx: PreloadContext) -> List[Dict[str, Any]]:
    broker = await ctx.get_broker()
    now = datetime.now(timezone.utc)
    data = await broker.fetch_json(
        "/calendars/primary/events",
        params={
            "timeMin": now.isoformat(),
            "timeMax": (now + timedelta(days=7)).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 50,
        },
    )
    return data.get("items", [])


async def _recent_drive_files(ctx: PreloadContext, mime_type: str | None = None) -> List[Dict[str, Any]]:
    broker = await ctx.get_broker()
    params: Dict[str, Any] = {
        "orderBy": "modifiedTime desc",
        "pageSize": 20,
        "fields": "files(id,name,mimeType,modifiedTime,webViewLink)",
    }
    if mime_type:
        params["q"] = f"mimeType='{mime_type}' and trashed=false"
    data = await broker.fetch_json("https://www.googleapis.com/drive/v3/files", params=params)
    return data.get("files", [])


@default_registry.preload("google-drive", CACHE_KEYS.GOOGLE_DRIVE_RECENT, ttl=CACHE_TTL.MEDIUM)
async def google_drive_recent(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _recent_drive_files(ctx)


@default_registry.preload("google-docs", CACHE_KEYS.GOOGLE_DOCS_RECENT, ttl=CACHE_TTL.MEDIUM)
async def google_docs_recent(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _recent_drive_files(ctx, "application/vnd.google-apps.document")


@default_registry.preload("google-sheets", CACHE_KEYS.GOOGLE_SHEETS_RECENT, ttl=CACHE_TTL.MEDIUM)
async def google_sheets_recent(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await _recent_drive_files(ctx, "application/vnd.google-apps.spreadsheet")


# ── GitHub / Jenkins ───────────────────────────────────────────────────


@default_registry.preload("github", CACHE_KEYS.GITHUB_PRS, ttl=CACHE_TTL.MEDIUM)
async def github_open_prs(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await GitHubClient(ctx.config, transport=ctx.transport).list_open_pull_requests()


@default_registry.preload("jenkins", CACHE_KEYS.JENKINS_JOBS, ttl=CACHE_TTL.MEDIUM)
async def jenkins_jobs(ctx: PreloadContext) -> List[Dict[str, Any]]:
    return await JenkinsClient(ctx.config, transport=ctx.transport).list_jobs()
