"""
OAuth provider capabilities.

Every OAuth-based connector is described by one ``OAuthProviderConfig``
value; the credential broker is generic and reads provider quirks from it
instead of being subclassed per provider:

  • ``token_url_resolver`` — tenant-specific token endpoints (Microsoft)
  • ``extra_refresh_params`` — mandatory extras such as ``scope``
  • ``use_basic_auth``       — client credentials in an HTTP Basic header (Yahoo)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

ConfigDict = Dict[str, Any]
ParamsSource = Union[Mapping[str, str], Callable[[ConfigDict], Mapping[str, str]]]


@dataclass(frozen=True)
class OAuthProviderConfig:
    connector_type: str
    api_base_url: str
    token_url: str = ""
    token_url_resolver: Optional[Callable[[ConfigDict], str]] = None
    auth_url: str = ""
    auth_url_resolver: Optional[Callable[[ConfigDict], str]] = None
    scopes: Tuple[str, ...] = ()
    extra_refresh_params: ParamsSource = field(default_factory=dict)
    extra_auth_params: Mapping[str, str] = field(default_factory=dict)
    use_basic_auth: bool = False
    error_prefix: str = "Provider API error"
    auth_route: str = ""
    test_endpoint: str = ""

    def resolve_token_url(self, config: ConfigDict) -> str:
        if self.token_url_resolver is not None:
            return self.token_url_resolver(config)
        return self.token_url

    def resolve_auth_url(self, config: ConfigDict) -> str:
        if self.auth_url_resolver is not None:
            return self.auth_url_resolver(config)
        return self.auth_url

    def refresh_params(self, config: ConfigDict) -> Dict[str, str]:
        extra = self.extra_refresh_params
        if callable(extra):
            extra = extra(config)
        return dict(extra)


# ── Google ──────────────────────────────────────────────────────────────

_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_OFFLINE = {"access_type": "offline", "prompt": "consent"}


def _google(connector_type: str, api_base_url: str, scopes: Tuple[str, ...], test_endpoint: str) -> OAuthProviderConfig:
    return OAuthProviderConfig(
        connector_type=connector_type,
        api_base_url=api_base_url,
        token_url=_GOOGLE_TOKEN_URL,
        auth_url=_GOOGLE_AUTH_URL,
        scopes=scopes,
        extra_auth_params=_GOOGLE_OFFLINE,
        error_prefix="Google API error",
        auth_route=connector_type,
        test_endpoint=test_endpoint,
    )


GOOGLE_CALENDAR = _google(
    "google-calendar",
    "https://www.googleapis.com/calendar/v3",
    ("https://www.googleapis.com/auth/calendar.readonly",),
    "/users/me/calendarList?maxResults=1",
)
GOOGLE_DRIVE = _google(
    "google-drive",
    "https://www.googleapis.com/drive/v3",
    ("https://www.googleapis.com/auth/drive.readonly",),
    "/about?fields=user",
)
GOOGLE_DOCS = _google(
    "google-docs",
    "https://docs.googleapis.com/v1",
    (
        "https://www.googleapis.com/auth/documents.readonly",
        "https://www.googleapis.com/auth/drive.readonly",
    ),
    "https://www.googleapis.com/drive/v3/about?fields=user",
)
GOOGLE_SHEETS = _google(
    "google-sheets",
    "https://sheets.googleapis.com/v4",
    (
        "https://www.googleapis.com/auth/spreadsheets.readonly",
        "https://www.googleapis.com/auth/drive.readonly",
    ),
    "https://www.googleapis.com/drive/v3/about?fields=user",
)


# ── Microsoft (tenant-specific endpoints, scope required on refresh) ───

_OUTLOOK_SCOPES = (
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/Calendars.Read",
    "offline_access",
)


def _ms_login(config: ConfigDict) -> str:
    return f"https://login.microsoftonline.com/{config.get('tenantId') or 'common'}/oauth2/v2.0"


OUTLOOK = OAuthProviderConfig(
    connector_type="outlook",
    api_base_url="https://graph.microsoft.com/v1.0",
    token_url_resolver=lambda config: f"{_ms_login(config)}/token",
    auth_url_resolver=lambda config: f"{_ms_login(config)}/authorize",
    scopes=_OUTLOOK_SCOPES,
    extra_refresh_params={"scope": " ".join(_OUTLOOK_SCOPES)},
    extra_auth_params={"response_mode": "query"},
    error_prefix="Microsoft Graph API error",
    auth_route="outlook",
    test_endpoint="/me",
)


# ── Yahoo (client credentials via HTTP Basic) ──────────────────────────

YAHOO = OAuthProviderConfig(
    connector_type="yahoo",
    api_base_url="https://api.login.yahoo.com",
    token_url="https://api.login.yahoo.com/oauth2/get_token",
    auth_url="https://api.login.yahoo.com/oauth2/request_auth",
    scopes=("openid", "mail-r"),
    use_basic_auth=True,
    error_prefix="Yahoo API error",
    auth_route="yahoo",
    test_endpoint="/openid/v1/userinfo",
)


OAUTH_PROVIDERS: Dict[str, OAuthProviderConfig] = {
    p.connector_type: p
    for p in (GOOGLE_CALENDAR, GOOGLE_DRIVE, GOOGLE_DOCS, GOOGLE_SHEETS, OUTLOOK, YAHOO)
}


def get_provider(connector_type: str) -> Optional[OAuthProviderConfig]:
    return OAUTH_PROVIDERS.get(connector_type)
