"""
SocialMediaProvider — abstract interface for all review platforms.

Every platform (Google Business Profile, Facebook, Instagram, Xiaohongshu, …)
subclasses this and implements the OAuth and data methods.  Adapters absorb
their platform's response shapes, pagination and error codes; the sync core
only ever sees the normalized types from ``utils.schemas``.

Errors should be raised from ``integrations.errors`` (``AuthError``,
``RateLimitError``, ``TransientNetworkError``, ``NotFoundError``).  Raw
``httpx`` exceptions are also accepted and classified by the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from utils.schemas import AccountInfo, Review, TokenResponse


class SocialMediaProvider(ABC):
    """Abstract base for all review platform providers."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Unique slug: 'google_business', 'facebook', 'instagram', …"""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable name, defaults to the slug."""
        return self.platform_name

    def is_configured(self) -> bool:
        """
        Return True if this provider has all required config
        (client IDs, secrets, redirect URI, …).
        """
        return True

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_authorization_url(self, state: str) -> str:
        """
        Build the platform's OAuth authorization URL.

        Parameters
        ----------
        state : str
            Opaque CSRF state string; must be echoed back on the callback.
        """
        ...

    @abstractmethod
    async def exchange_code_for_token(self, code: str) -> TokenResponse:
        """Exchange the authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """
        Obtain a fresh access token.

        Platforms without a true refresh token (e.g. long-lived token
        re-exchange) must still implement this using whatever credential
        they stored in the refresh slot.
        """
        ...

    @abstractmethod
    async def validate_token(self, access_token: str) -> bool:
        """Liveness check for an access token."""
        ...

    # ── Data ────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_account_info(self, access_token: str) -> AccountInfo:
        """Return the external account the token belongs to."""
        ...

    @abstractmethod
    async def fetch_reviews(
        self,
        access_token: str,
        since: Optional[datetime],
    ) -> List[Review]:
        """
        Fetch reviews created or changed since ``since``.

        ``since=None`` means the full history.  Order is not significant,
        but every Review must carry a ``platform_review_id`` that is stable
        across repeated fetches.
        """
        ...
