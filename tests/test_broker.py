"""
Tests for CredentialBroker — refresh policy, rotation persistence, provider
quirks and error mapping.  The provider is simulated with httpx.MockTransport.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from connectors.broker import CredentialBroker, TokenState
from connectors.exceptions import (
    AuthorizationRequired,
    ProviderError,
    TransientNetworkError,
)
from connectors.providers import GOOGLE_CALENDAR, OUTLOOK, YAHOO

BASE_CONFIG = {"clientId": "cid", "clientSecret": "secret", "refreshToken": "r1"}


class TokenEndpoint:
    """Records token requests and answers with a fixed body."""

    def __init__(self, status=200, body=None, rotate_to=None):
        self.status = status
        self.body = body
        self.rotate_to = rotate_to
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.requests.append(request)
            if self.body is not None:
                return httpx.Response(self.status, json=self.body)
            body = {"access_token": f"tok-{len(self.requests)}", "expires_in": 3600}
            if self.rotate_to:
                body["refresh_token"] = self.rotate_to
            return httpx.Response(self.status, json=body)
        return httpx.Response(
            200, json={"url": str(request.url), "auth": request.headers.get("Authorization")}
        )

    def form(self, index=-1):
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


def _broker(endpoint, clock, provider=GOOGLE_CALENDAR, config=None, **kwargs):
    return CredentialBroker(
        "acc-1",
        provider,
        config or dict(BASE_CONFIG),
        transport=httpx.MockTransport(endpoint),
        clock=clock.epoch,
        refresh_buffer=60,
        **kwargs,
    )


class TestRefreshPolicy:
    @pytest.mark.asyncio
    async def test_token_reused_until_refresh_buffer(self, clock):
        endpoint = TokenEndpoint()
        broker = _broker(endpoint, clock)

        assert await broker.get_access_token() == "tok-1"
        assert await broker.get_access_token() == "tok-1"
        assert len(endpoint.requests) == 1

        clock.advance(3600 - 60 - 1)
        assert await broker.get_access_token() == "tok-1"

        clock.advance(2)
        assert await broker.get_access_token() == "tok-2"
        assert len(endpoint.requests) == 2

    @pytest.mark.asyncio
    async def test_state_transitions(self, clock):
        broker = _broker(TokenEndpoint(), clock)
        assert broker.state is TokenState.NO_TOKEN

        await broker.get_access_token()
        assert broker.state is TokenState.VALID

        clock.advance(3550)
        assert broker.state is TokenState.NEEDS_REFRESH

    @pytest.mark.asyncio
    async def test_no_refresh_token_requires_authorization(self, clock):
        endpoint = TokenEndpoint()
        broker = _broker(endpoint, clock, config={"clientId": "cid", "clientSecret": "s"})

        assert not broker.has_refresh_token()
        with pytest.raises(AuthorizationRequired) as exc_info:
            await broker.get_access_token()

        assert exc_info.value.auth_route == "google-calendar"
        assert endpoint.requests == []


class TestRotation:
    @pytest.mark.asyncio
    async def test_rotated_token_persisted_and_used_next(self, clock, accounts):
        account_id = await accounts.create(
            "outlook", {**BASE_CONFIG, "tenantId": "contoso"}, account_id="acc-1"
        )
        endpoint = TokenEndpoint(rotate_to="r2")
        broker = _broker(
            endpoint, clock, provider=OUTLOOK,
            config=await accounts.load_config(account_id), accounts=accounts,
        )

        await broker.refresh()

        stored = await accounts.load_config(account_id)
        assert stored == {**BASE_CONFIG, "tenantId": "contoso", "refreshToken": "r2"}

        await broker.refresh()
        assert endpoint.form(0)["refresh_token"] == "r1"
        assert endpoint.form(1)["refresh_token"] == "r2"

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_in_memory_rotation(self, clock):
        store = MagicMock()
        store.patch_config = AsyncMock(side_effect=RuntimeError("db gone"))
        broker = _broker(TokenEndpoint(rotate_to="r2"), clock, accounts=store)

        assert await broker.refresh() == "tok-1"
        assert broker.refresh_token == "r2"
        store.patch_config.assert_awaited_once_with("acc-1", "refreshToken", "r2")

    @pytest.mark.asyncio
    async def test_same_refresh_token_not_rewritten(self, clock):
        store = MagicMock()
        store.patch_config = AsyncMock()
        broker = _broker(TokenEndpoint(rotate_to="r1"), clock, accounts=store)

        await broker.refresh()
        store.patch_config.assert_not_awaited()


class TestProviderQuirks:
    @pytest.mark.asyncio
    async def test_credentials_in_body_by_default(self, clock):
        endpoint = TokenEndpoint()
        await _broker(endpoint, clock).refresh()

        form = endpoint.form()
        assert form["client_id"] == "cid"
        assert form["client_secret"] == "secret"
        assert form["grant_type"] == "refresh_token"
        assert "Authorization" not in endpoint.requests[0].headers
        assert str(endpoint.requests[0].url) == "https://oauth2.googleapis.com/token"

    @pytest.mark.asyncio
    async def test_basic_auth_provider(self, clock):
        endpoint = TokenEndpoint()
        await _broker(endpoint, clock, provider=YAHOO).refresh()

        form = endpoint.form()
        assert "client_secret" not in form
        assert endpoint.requests[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_tenant_token_url_and_scope(self, clock):
        endpoint = TokenEndpoint()
        config = {**BASE_CONFIG, "tenantId": "contoso"}
        await _broker(endpoint, clock, provider=OUTLOOK, config=config).refresh()

        assert str(endpoint.requests[0].url) == (
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"
        )
        assert "offline_access" in endpoint.form()["scope"]

    @pytest.mark.asyncio
    async def test_tenant_defaults_to_common(self, clock):
        endpoint = TokenEndpoint()
        await _broker(endpoint, clock, provider=OUTLOOK).refresh()
        assert "/common/oauth2/v2.0/token" in str(endpoint.requests[0].url)


class TestErrors:
    @pytest.mark.asyncio
    async def test_invalid_grant_requires_authorization(self, clock):
        endpoint = TokenEndpoint(status=400, body={"error": "invalid_grant"})
        with pytest.raises(AuthorizationRequired):
            await _broker(endpoint, clock).refresh()

    @pytest.mark.asyncio
    async def test_other_failure_is_provider_error(self, clock):
        endpoint = TokenEndpoint(status=500, body={"error": "server_error"})
        with pytest.raises(ProviderError) as exc_info:
            await _broker(endpoint, clock).refresh()

        assert exc_info.value.status == 500
        assert "server_error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_access_token_is_provider_error(self, clock):
        endpoint = TokenEndpoint(body={"token_type": "Bearer"})
        with pytest.raises(ProviderError):
            await _broker(endpoint, clock).refresh()

    @pytest.mark.asyncio
    async def test_non_json_token_response_is_provider_error(self, clock):
        def captive_portal(request):
            return httpx.Response(200, text="<html>Sign in to Wi-Fi</html>")

        broker = _broker(captive_portal, clock)
        with pytest.raises(ProviderError) as exc_info:
            await broker.refresh()

        assert exc_info.value.status == 200
        assert exc_info.value.body == "<html>Sign in to Wi-Fi</html>"
        assert broker.state is TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_network_failure_leaves_state_unchanged(self, clock):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        broker = _broker(unreachable, clock)
        with pytest.raises(TransientNetworkError) as exc_info:
            await broker.refresh()

        assert exc_info.value.retryable is True
        assert broker.state is TokenState.NO_TOKEN
        assert broker.refresh_token == "r1"


class TestAuthenticatedRequests:
    @pytest.mark.asyncio
    async def test_execute_injects_bearer_and_base_url(self, clock):
        broker = _broker(TokenEndpoint(), clock, provider=OUTLOOK)

        data = await broker.fetch_json("/me")

        assert data["url"] == "https://graph.microsoft.com/v1.0/me"
        assert data["auth"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_absolute_endpoint_untouched(self, clock):
        broker = _broker(TokenEndpoint(), clock)
        data = await broker.fetch_json("https://www.googleapis.com/drive/v3/files")
        assert data["url"] == "https://www.googleapis.com/drive/v3/files"

    @pytest.mark.asyncio
    async def test_fetch_text_returns_raw_body(self, clock):
        broker = _broker(TokenEndpoint(), clock)
        body = await broker.fetch_text("/users/me/calendarList")
        assert "calendar/v3/users/me/calendarList" in body

    @pytest.mark.asyncio
    async def test_api_error_maps_to_provider_error(self, clock):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            return httpx.Response(403, text="forbidden")

        broker = _broker(handler, clock, provider=OUTLOOK)
        with pytest.raises(ProviderError) as exc_info:
            await broker.execute("GET", "/me")

        assert str(exc_info.value).startswith("Microsoft Graph API error (403)")

    @pytest.mark.asyncio
    async def test_non_json_api_body_is_provider_error(self, clock):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            return httpx.Response(200, text="maintenance in progress")

        broker = _broker(handler, clock, provider=OUTLOOK)
        with pytest.raises(ProviderError) as exc_info:
            await broker.fetch_json("/me")

        assert exc_info.value.status == 200
        assert exc_info.value.body == "maintenance in progress"
        assert "invalid JSON" in str(exc_info.value)


class TestAuthorizationCode:
    def test_build_auth_url(self, clock):
        broker = _broker(TokenEndpoint(), clock)
        url = urlparse(broker.build_auth_url("http://localhost/cb", "st4te"))
        query = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert url.netloc == "accounts.google.com"
        assert query["client_id"] == "cid"
        assert query["state"] == "st4te"
        assert query["access_type"] == "offline"
        assert "calendar.readonly" in query["scope"]

    @pytest.mark.asyncio
    async def test_exchange_code_stores_refresh_token(self, clock, accounts):
        await accounts.create("google-calendar", {"clientId": "cid", "clientSecret": "s"}, account_id="acc-1")
        endpoint = TokenEndpoint(rotate_to="fresh-refresh")
        broker = _broker(
            endpoint, clock,
            config={"clientId": "cid", "clientSecret": "s"}, accounts=accounts,
        )

        await broker.exchange_code("the-code", "http://localhost/cb")

        assert endpoint.form()["grant_type"] == "authorization_code"
        assert endpoint.form()["code"] == "the-code"
        assert broker.state is TokenState.VALID
        assert (await accounts.load_config("acc-1"))["refreshToken"] == "fresh-refresh"

    @pytest.mark.asyncio
    async def test_exchange_without_refresh_token(self, clock):
        broker = _broker(TokenEndpoint(), clock, config={"clientId": "cid"})
        with pytest.raises(AuthorizationRequired):
            await broker.exchange_code("the-code", "http://localhost/cb")
