"""
Error taxonomy for the review sync engine.

Every exception carries a ``category`` so the orchestrator and callers can
react differently: configuration errors are fatal, credential errors need
the merchant to re-authorize, transient errors wait for the next scheduled
tick.  Provider adapters may raise these directly or let ``httpx``
exceptions escape; ``classify_provider_error`` maps the latter.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    category = "unknown"
    retryable = False


# ── configuration ───────────────────────────────────────────────────────


class ProviderNotFoundError(SyncError):
    category = "configuration"

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"provider not found for platform: {platform}")


class ConnectionNotFoundError(SyncError):
    category = "not_found"

    def __init__(self, connection_id: int):
        self.connection_id = connection_id
        super().__init__(f"api connection {connection_id} not found")


# ── credentials ─────────────────────────────────────────────────────────


class CredentialError(SyncError):
    """The stored credential cannot be used; the merchant must reconnect."""

    category = "credential"


class TokenDecryptionError(CredentialError):
    def __init__(self, message: str = "stored token could not be decrypted"):
        super().__init__(message)


class InvalidTokenError(CredentialError):
    def __init__(self, message: str = "invalid or expired access token"):
        super().__init__(message)


class InvalidStateError(SyncError):
    category = "oauth_state"


# ── concurrency ─────────────────────────────────────────────────────────


class SyncInProgressError(SyncError):
    category = "busy"
    retryable = True

    def __init__(self, connection_id: int):
        self.connection_id = connection_id
        super().__init__(f"sync already in progress for connection {connection_id}")


# ── provider / upstream ─────────────────────────────────────────────────


class ProviderError(SyncError):
    """An upstream platform call failed."""

    category = "provider"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class AuthError(ProviderError, CredentialError):
    category = "auth"
    retryable = False


class RateLimitError(ProviderError):
    category = "rate_limit"


class TransientNetworkError(ProviderError):
    category = "network"


class NotFoundError(ProviderError):
    category = "not_found"
    retryable = False


def classify_provider_error(exc: BaseException, platform: Optional[str] = None) -> SyncError:
    """
    Map an arbitrary exception raised inside a provider call to the taxonomy.

    ``SyncError`` instances pass through unchanged.
    """
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        message = f"{platform or 'provider'} returned HTTP {code}: {exc.response.text[:200]}"
        if code in (401, 403):
            return AuthError(message, platform=platform, status_code=code)
        if code == 404:
            return NotFoundError(message, platform=platform, status_code=code)
        if code == 429:
            return RateLimitError(message, platform=platform, status_code=code)
        if code >= 500:
            return TransientNetworkError(message, platform=platform, status_code=code)
        return ProviderError(message, platform=platform, status_code=code)

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        detail = str(exc) or type(exc).__name__
        return TransientNetworkError(
            f"{platform or 'provider'} network error: {detail}", platform=platform,
        )

    return ProviderError(str(exc) or type(exc).__name__, platform=platform)
