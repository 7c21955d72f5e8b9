"""
Pydantic schemas for the review sync engine.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════════


class Platform(str, Enum):
    GOOGLE_BUSINESS = "google_business"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    XIAOHONGSHU = "xiaohongshu"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class SyncLogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# Provider DTOs
# ═══════════════════════════════════════════════════════════════════════════════


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 0
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None

    def resolve_expiry(self, now: datetime) -> Optional[datetime]:
        """Absolute expiry: explicit ``expires_at`` wins, else ``now + expires_in``."""
        if self.expires_at is not None:
            return self.expires_at
        if self.expires_in > 0:
            return now + timedelta(seconds=self.expires_in)
        return None


class AccountInfo(BaseModel):
    account_id: str
    account_name: str = ""
    avatar_url: Optional[str] = None


class Review(BaseModel):
    """
    A review as returned by a provider fetch, already normalized.

    Transient: mapped into ``SyncedReview`` during reconciliation and
    never stored as-is.
    """

    platform_review_id: str
    author_name: str = ""
    author_photo_url: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    review_text: str = ""
    review_reply: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════════════════════════════════


_TOKEN_FIELDS = {"access_token", "refresh_token"}


class APIConnection(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    merchant_id: int
    platform: str
    platform_account_id: str = ""
    platform_account_name: str = ""
    access_token: str = Field(default="", repr=False)    # encrypted
    refresh_token: str = Field(default="", repr=False)   # encrypted
    token_expires_at: Optional[datetime] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    sync_status: str = SyncStatus.PENDING.value
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public_view(self) -> Dict[str, Any]:
        """Serializable view with the token columns stripped."""
        return self.model_dump(mode="json", exclude=_TOKEN_FIELDS)


class SyncedReview(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    merchant_id: int
    api_connection_id: Optional[int] = None
    platform: str
    platform_review_id: str
    author_name: str = ""
    author_photo_url: Optional[str] = None
    rating: Optional[float] = None
    review_text: str = ""
    review_reply: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None
    is_visible: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncLog(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    api_connection_id: int
    sync_type: str = SyncType.MANUAL.value
    status: str = SyncLogStatus.STARTED.value
    reviews_fetched: int = 0
    reviews_added: int = 0
    reviews_updated: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ReviewStats(BaseModel):
    total_reviews: int = 0
    platforms_connected: int = 0
    avg_rating: float = 0.0
    latest_review_date: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Sync results
# ═══════════════════════════════════════════════════════════════════════════════


class ItemError(BaseModel):
    platform_review_id: str
    message: str


class SyncStats(BaseModel):
    total_fetched: int = 0
    total_added: int = 0
    total_updated: int = 0
    errors: List[ItemError] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def error_messages(self) -> List[str]:
        return [f"{e.platform_review_id}: {e.message}" for e in self.errors]

    def summary(self) -> str:
        if self.has_errors:
            return "Completed with errors"
        if self.total_fetched == 0:
            return "No new reviews found"
        return "Completed successfully"


class ConnectionSyncResult(BaseModel):
    """Outcome of one connection inside a scheduled tick."""

    connection_id: int
    platform: str = ""
    stats: Optional[SyncStats] = None
    error: Optional[str] = None
    skipped: bool = False


class SchedulerRunSummary(BaseModel):
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_connections: int = 0
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[ConnectionSyncResult] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()
