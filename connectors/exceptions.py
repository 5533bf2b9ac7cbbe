"""
Error taxonomy shared by the credential broker, the cache and the
connector shims.

Callers branch on the concrete class (or on ``retryable``) rather than on
message text:

  • ``AuthorizationRequired`` — a human must re-run the OAuth consent flow.
  • ``ProviderError``         — non-2xx status, or a 2xx body that is not JSON.
  • ``TransientNetworkError`` — transport-level failure, safe to retry.
  • ``SerializationError``    — a cache payload could not be encoded/decoded.
  • ``ConfigError``           — a persisted account blob is missing or malformed.
  • ``AllBranchesFailed``     — a strict fan-out produced no successful branch.
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for every error raised by this layer."""

    retryable: bool = False


class AuthorizationRequired(ConnectorError):
    """No usable refresh token; the account needs re-authorization."""

    def __init__(self, message: str, *, auth_route: str | None = None):
        super().__init__(message)
        self.auth_route = auth_route


class ProviderError(ConnectorError):
    """Non-2xx (or non-JSON 2xx) response from a provider API or token endpoint."""

    def __init__(self, status: int, body: str, *, prefix: str = "Provider error"):
        super().__init__(f"{prefix} ({status}): {body}")
        self.status = status
        self.body = body


class TransientNetworkError(ConnectorError):
    retryable = True


class SerializationError(ConnectorError):
    pass


class ConfigError(ConnectorError):
    pass


class AllBranchesFailed(ConnectorError):
    """Every branch of a strict fan-out failed; ``errors`` maps label → exception."""

    def __init__(self, errors: dict[str, BaseException]):
        detail = "; ".join(
            f"{label}: {str(exc) or exc.__class__.__name__}" for label, exc in errors.items()
        )
        super().__init__(f"All {len(errors)} branch(es) failed: {detail}")
        self.errors = errors
        self.retryable = all(getattr(exc, "retryable", False) for exc in errors.values())
