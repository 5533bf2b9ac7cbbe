"""
Connector API routes — account CRUD, connection test, OAuth auth-url and
callback.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import hashlib
import hmac
import html
import json
import logging
import time
from base64 import b64decode, b64encode
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from api.dependencies import Services, get_services
from config.settings import config
from connectors.exceptions import ConfigError, ConnectorError
from connectors.instances import InstanceClient, MultiInstanceConnector
from connectors.providers import get_provider
from connectors.rest import GitHubClient, JenkinsClient
from utils.schemas import AccountCreate, AccountUpdate, ConnectionTestResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

# ── State token helpers (CSRF protection) ──────────────────────────────

_STATE_TTL = 600  # seconds
_ATLASSIAN_PING = {
    "jira": "/rest/api/3/myself",
    "confluence": "/wiki/rest/api/space?limit=1",
}


def _create_state(account_id: str) -> str:
    """Create an opaque state string encoding account_id + expiry."""
    payload = json.dumps({"account_id": account_id, "exp": int(time.time()) + _STATE_TTL})
    raw = payload.encode()
    sig = hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()[:16]
    return b64encode(raw).decode() + "." + sig


def _verify_state(state: str) -> str:
    """Verify state token, return account_id. Raises on failure."""
    try:
        parts = state.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(
            config.oauth_state_secret.encode(), raw, hashlib.sha256
        ).hexdigest()[:16]
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("state expired")
        return payload["account_id"]
    except (ValueError, KeyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid or expired OAuth state: {exc}",
        )


def _redirect_uri() -> str:
    return f"{config.oauth_redirect_base}/api/v1/connectors/oauth/callback"


# ── Accounts ───────────────────────────────────────────────────────────


@router.get("")
async def list_accounts(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    """List all configured connector accounts (config never exposed)."""
    return await services.accounts.list_accounts()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    body: AccountCreate,
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    account_id = await services.accounts.create(
        body.connector_type, body.config, name=body.name, enabled=body.enabled
    )
    return {"account_id": account_id}


@router.patch("/{account_id}")
async def update_account(
    account_id: str,
    body: AccountUpdate,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if not await services.accounts.set_enabled(account_id, body.enabled):
        raise HTTPException(404, "Account not found")
    return {"account_id": account_id, "enabled": body.enabled}


@router.delete("/{account_id}")
async def delete_account(
    account_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    """Remove the account; its cache rows cascade and its broker is dropped."""
    if not await services.accounts.delete(account_id):
        raise HTTPException(404, "Account not found")
    services.brokers.discard(account_id)
    return {"status": "deleted", "account_id": account_id}


@router.post("/{account_id}/test")
async def test_connection(
    account_id: str,
    services: Services = Depends(get_services),
) -> ConnectionTestResult:
    """
    Interactive connectivity check.  Unlike background preload, the raw
    provider error text is returned to the caller.
    """
    account = await services.accounts.get(account_id)
    if account is None:
        raise HTTPException(404, "Account not found")

    try:
        if get_provider(account.connector_type) is not None:
            broker = await services.brokers.get(account_id)
            await broker.test_connection()
        elif account.connector_type in _ATLASSIAN_PING:
            await _test_instances(
                MultiInstanceConnector(services.accounts.decrypt(account)),
                _ATLASSIAN_PING[account.connector_type],
            )
        elif account.connector_type == "github":
            await GitHubClient(services.accounts.decrypt(account)).test_connection()
        elif account.connector_type == "jenkins":
            await JenkinsClient(services.accounts.decrypt(account)).test_connection()
        else:
            return ConnectionTestResult(
                success=False,
                error=f"No connection test for connector type '{account.connector_type}'",
            )
    except ConnectorError as exc:
        logger.info("Connection test failed for account %s: %s", account_id, exc)
        return ConnectionTestResult(success=False, error=str(exc))

    await services.accounts.mark_healthy(account_id)
    return ConnectionTestResult(success=True)


async def _test_instances(connector: MultiInstanceConnector, path: str) -> None:
    if not connector.has_credentials():
        raise ConfigError("No instances configured. Add host, email and API token.")

    async def ping(client: InstanceClient) -> Any:
        return await client.get_json(path)

    failures = []
    for name in connector.instance_names():
        try:
            await connector.query_all(ping, instance=name)
        except ConnectorError as exc:
            failures.append(f"{name}: {exc}")
    if failures:
        raise ConfigError("; ".join(failures))


# ── OAuth ──────────────────────────────────────────────────────────────


@router.get("/{account_id}/auth-url")
async def get_auth_url(
    account_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for an account.

    Frontend should open this URL in a popup window.
    """
    try:
        broker = await services.brokers.get(account_id)
    except ConfigError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    auth_url = broker.build_auth_url(_redirect_uri(), _create_state(account_id))
    return {"auth_url": auth_url, "account_id": account_id}


@router.get("/oauth/callback")
async def oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    services: Services = Depends(get_services),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code, stores the refresh token in the account's config
    blob, and returns a small page that notifies the opener and closes.
    """
    account_id = _verify_state(state)

    try:
        broker = await services.brokers.get(account_id)
        await broker.exchange_code(code, _redirect_uri())
    except ConnectorError as exc:
        logger.error("OAuth callback failed for account %s: %s", account_id, exc)
        return HTMLResponse(_callback_html(success=False, message=f"Connection failed: {exc}"))

    logger.info("OAuth connected: account=%s provider=%s", account_id, broker.provider.connector_type)
    return HTMLResponse(_callback_html(success=True, message="Connected"))


def _callback_html(success: bool, message: str) -> str:
    """Popup page: posts the outcome to the opener and auto-closes."""
    status_text = "Connected!" if success else "Failed"
    payload = json.dumps({"type": "oauth-callback", "success": success, "message": message})
    payload = payload.replace("<", "\\u003c")
    message = html.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head><title>{status_text}</title></head>
<body>
    <h2>{status_text}</h2>
    <p>{message}</p>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
