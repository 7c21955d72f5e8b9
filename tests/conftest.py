"""
Shared fixtures: an in-memory gateway and a scriptable provider.
"""

from __future__ import annotations

import copy
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from database.gateway import DuplicateRecordError, SocialMediaGateway
from integrations.base import SocialMediaProvider
from integrations.encryption import TokenEncryptor
from integrations.registry import ProviderRegistry
from utils.schemas import (
    AccountInfo,
    APIConnection,
    Review,
    ReviewStats,
    SyncedReview,
    SyncLog,
    SyncLogStatus,
    SyncStatus,
    TokenResponse,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryGateway(SocialMediaGateway):
    """Dict-backed gateway with the same uniqueness rules as the SQL schema."""

    def __init__(self):
        self.connections: Dict[int, APIConnection] = {}
        self.reviews: Dict[int, SyncedReview] = {}
        self.logs: Dict[int, SyncLog] = {}
        self._next_id = {"conn": 0, "review": 0, "log": 0}
        self.connection_writes: List[APIConnection] = []
        self.fail_review_ids: set = set()

    def _id(self, kind: str) -> int:
        self._next_id[kind] += 1
        return self._next_id[kind]

    # connections

    async def create_connection(self, conn):
        for c in self.connections.values():
            if (c.merchant_id, c.platform, c.platform_account_id) == (
                conn.merchant_id, conn.platform, conn.platform_account_id,
            ):
                raise DuplicateRecordError("api_connections unique key")
        stored = conn.model_copy(
            update={"id": self._id("conn"), "created_at": _now(), "updated_at": _now()}
        )
        self.connections[stored.id] = stored
        return stored.model_copy()

    async def get_connection(self, connection_id):
        conn = self.connections.get(connection_id)
        return conn.model_copy() if conn else None

    async def get_connections_by_merchant(self, merchant_id):
        rows = [c for c in self.connections.values() if c.merchant_id == merchant_id]
        return [c.model_copy() for c in sorted(rows, key=lambda c: c.id, reverse=True)]

    async def get_connection_by_platform(self, merchant_id, platform):
        for c in await self.get_connections_by_merchant(merchant_id):
            if c.platform == platform:
                return c
        return None

    async def get_connection_by_account(self, merchant_id, platform, platform_account_id):
        for c in self.connections.values():
            if (c.merchant_id, c.platform, c.platform_account_id) == (
                merchant_id, platform, platform_account_id,
            ):
                return c.model_copy()
        return None

    async def update_connection(self, conn):
        stored = conn.model_copy(update={"updated_at": _now()})
        self.connections[conn.id] = stored
        self.connection_writes.append(stored.model_copy())
        return stored.model_copy()

    async def delete_connection(self, connection_id):
        if self.connections.pop(connection_id, None) is None:
            return False
        for review in self.reviews.values():
            if review.api_connection_id == connection_id:
                review.api_connection_id = None
        self.logs = {k: v for k, v in self.logs.items() if v.api_connection_id != connection_id}
        return True

    async def get_active_connections(self):
        rows = [c for c in self.connections.values() if c.is_active]
        rows.sort(key=lambda c: (c.last_sync_at is not None, c.last_sync_at or _now(), c.id))
        return [c.model_copy() for c in rows]

    # reviews

    async def create_synced_review(self, review):
        if review.platform_review_id in self.fail_review_ids:
            raise RuntimeError(f"write rejected for {review.platform_review_id}")
        for r in self.reviews.values():
            if (r.platform, r.platform_review_id) == (review.platform, review.platform_review_id):
                raise DuplicateRecordError("synced_reviews unique key")
        stored = review.model_copy(
            update={"id": self._id("review"), "created_at": _now(), "updated_at": _now()}
        )
        self.reviews[stored.id] = stored
        return stored.model_copy()

    async def get_synced_review(self, review_id):
        review = self.reviews.get(review_id)
        return review.model_copy() if review else None

    async def get_synced_review_by_platform_id(self, platform, platform_review_id):
        for r in self.reviews.values():
            if (r.platform, r.platform_review_id) == (platform, platform_review_id):
                return r.model_copy()
        return None

    async def get_synced_reviews_by_merchant(self, merchant_id, limit=50, offset=0):
        rows = [r for r in self.reviews.values() if r.merchant_id == merchant_id and r.is_visible]
        return [r.model_copy() for r in rows[offset:offset + limit]]

    async def update_synced_review(self, review):
        if review.platform_review_id in self.fail_review_ids:
            raise RuntimeError(f"write rejected for {review.platform_review_id}")
        self.reviews[review.id] = review.model_copy(update={"updated_at": _now()})
        return self.reviews[review.id].model_copy()

    async def delete_synced_review(self, review_id):
        return self.reviews.pop(review_id, None) is not None

    async def get_merchant_review_stats(self, merchant_id):
        rows = [r for r in self.reviews.values() if r.merchant_id == merchant_id and r.is_visible]
        ratings = [r.rating for r in rows if r.rating is not None]
        return ReviewStats(
            total_reviews=len(rows),
            platforms_connected=len({r.platform for r in rows}),
            avg_rating=round(sum(ratings) / len(ratings), 1) if ratings else 0.0,
        )

    # logs

    async def create_sync_log(self, log):
        stored = log.model_copy(update={"id": self._id("log")})
        self.logs[stored.id] = stored
        return stored.model_copy()

    async def get_sync_log(self, log_id):
        log = self.logs.get(log_id)
        return log.model_copy() if log else None

    async def get_sync_logs_by_connection(self, connection_id, limit=20):
        rows = [l for l in self.logs.values() if l.api_connection_id == connection_id]
        rows.sort(key=lambda l: l.id, reverse=True)
        return [l.model_copy() for l in rows[:limit]]

    async def update_sync_log(self, log):
        self.logs[log.id] = log.model_copy()
        return log.model_copy()

    async def reset_stale_syncs(self, message):
        count = 0
        for c in self.connections.values():
            if c.sync_status == SyncStatus.SYNCING.value:
                c.sync_status = SyncStatus.FAILED.value
                c.error_message = message
                count += 1
        for log in self.logs.values():
            if log.status == SyncLogStatus.STARTED.value:
                log.status = SyncLogStatus.FAILED.value
                log.error_message = message
        return count


class FakeProvider(SocialMediaProvider):
    """
    Provider whose responses are set per test.

    ``reviews`` is returned by ``fetch_reviews``; setting ``fetch_error``
    (or ``refresh_error``) makes that call raise instead.
    """

    def __init__(self, platform: str = "google_business"):
        self._platform = platform
        self.valid_tokens = {"access-ok"}
        self.reviews: List[Review] = []
        self.fetch_error: Optional[BaseException] = None
        self.refresh_error: Optional[BaseException] = None
        self.refreshed = TokenResponse(access_token="access-new", refresh_token="refresh-new", expires_in=3600)
        self.account = AccountInfo(account_id="acct-1", account_name="Cafe Mocha")
        self.fetch_calls: List[tuple] = []
        self.refresh_calls: List[str] = []
        self.on_fetch = None

    @property
    def platform_name(self) -> str:
        return self._platform

    def get_authorization_url(self, state):
        return f"https://auth.example.com/{self._platform}?state={state}"

    async def exchange_code_for_token(self, code):
        return TokenResponse(access_token=f"access-{code}", refresh_token=f"refresh-{code}", expires_in=3600)

    async def refresh_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed

    async def validate_token(self, access_token):
        return access_token in self.valid_tokens

    async def get_account_info(self, access_token):
        return self.account

    async def fetch_reviews(self, access_token, since):
        self.fetch_calls.append((access_token, since))
        if self.on_fetch is not None:
            await self.on_fetch()
        if self.fetch_error is not None:
            raise self.fetch_error
        return copy.deepcopy(self.reviews)


def make_review(review_id: str, rating: float = 5.0, text: str = "Great coffee") -> Review:
    return Review(
        platform_review_id=review_id,
        author_name="Alice",
        rating=rating,
        review_text=text,
        reviewed_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )


@pytest.fixture(autouse=True)
def _fresh_registry():
    ProviderRegistry.reset()
    yield
    ProviderRegistry.reset()


@pytest.fixture
def encryptor() -> TokenEncryptor:
    return TokenEncryptor(os.urandom(32))


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
