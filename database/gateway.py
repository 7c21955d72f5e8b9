"""
SocialMediaGateway — the persistence contract consumed by the sync core.

All methods are coroutines that either succeed or raise; none retry
internally.  ``get_*`` lookups return ``None`` when the row is absent.
Records are exchanged as the pydantic models from ``utils.schemas`` and
updates are whole-record writes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from utils.schemas import APIConnection, ReviewStats, SyncedReview, SyncLog


class PersistenceError(Exception):
    """A gateway call failed."""


class DuplicateRecordError(PersistenceError):
    """An insert violated a unique key (e.g. platform + platform_review_id)."""


class SocialMediaGateway(ABC):

    # ── API connections ─────────────────────────────────────────────────

    @abstractmethod
    async def create_connection(self, conn: APIConnection) -> APIConnection:
        """Insert and return the connection with ``id`` and timestamps set."""

    @abstractmethod
    async def get_connection(self, connection_id: int) -> Optional[APIConnection]: ...

    @abstractmethod
    async def get_connections_by_merchant(self, merchant_id: int) -> List[APIConnection]:
        """Newest first."""

    @abstractmethod
    async def get_connection_by_platform(
        self, merchant_id: int, platform: str,
    ) -> Optional[APIConnection]: ...

    @abstractmethod
    async def get_connection_by_account(
        self, merchant_id: int, platform: str, platform_account_id: str,
    ) -> Optional[APIConnection]: ...

    @abstractmethod
    async def update_connection(self, conn: APIConnection) -> APIConnection: ...

    @abstractmethod
    async def delete_connection(self, connection_id: int) -> bool: ...

    @abstractmethod
    async def get_active_connections(self) -> List[APIConnection]:
        """Active connections, never-synced first, then oldest ``last_sync_at`` first."""

    # ── Synced reviews ──────────────────────────────────────────────────

    @abstractmethod
    async def create_synced_review(self, review: SyncedReview) -> SyncedReview:
        """Insert; raises ``DuplicateRecordError`` on a (platform, platform_review_id) clash."""

    @abstractmethod
    async def get_synced_review(self, review_id: int) -> Optional[SyncedReview]: ...

    @abstractmethod
    async def get_synced_review_by_platform_id(
        self, platform: str, platform_review_id: str,
    ) -> Optional[SyncedReview]: ...

    @abstractmethod
    async def get_synced_reviews_by_merchant(
        self, merchant_id: int, limit: int = 50, offset: int = 0,
    ) -> List[SyncedReview]:
        """Visible reviews only, newest ``reviewed_at`` first."""

    @abstractmethod
    async def update_synced_review(self, review: SyncedReview) -> SyncedReview: ...

    @abstractmethod
    async def delete_synced_review(self, review_id: int) -> bool: ...

    @abstractmethod
    async def get_merchant_review_stats(self, merchant_id: int) -> ReviewStats: ...

    # ── Sync logs ───────────────────────────────────────────────────────

    @abstractmethod
    async def create_sync_log(self, log: SyncLog) -> SyncLog: ...

    @abstractmethod
    async def get_sync_log(self, log_id: int) -> Optional[SyncLog]: ...

    @abstractmethod
    async def get_sync_logs_by_connection(self, connection_id: int, limit: int = 20) -> List[SyncLog]:
        """Newest ``started_at`` first."""

    @abstractmethod
    async def update_sync_log(self, log: SyncLog) -> SyncLog: ...

    # ── Maintenance ─────────────────────────────────────────────────────

    @abstractmethod
    async def reset_stale_syncs(self, message: str) -> int:
        """
        Mark connections left ``syncing`` and logs left ``started`` as failed.

        Called once on worker startup, before any sync can be running.
        Returns the number of connections reset.
        """
