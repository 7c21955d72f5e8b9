"""
SQLAlchemy ORM models for connections, synced reviews and sync logs.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ApiConnectionRecord(Base):
    __tablename__ = "api_connections"
    __table_args__ = (
        UniqueConstraint("merchant_id", "platform", "platform_account_id"),
        Index("idx_api_connections_active_last_sync", "is_active", "last_sync_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    platform = Column(String(50), nullable=False, index=True)
    platform_account_id = Column(String(255), nullable=False, default="")
    platform_account_name = Column(String(255), nullable=False, default="")
    access_token = Column(Text, nullable=False, default="")    # encrypted
    refresh_token = Column(Text, nullable=False, default="")   # encrypted
    token_expires_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True))
    sync_status = Column(String(20), nullable=False, default="pending")
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class SyncedReviewRecord(Base):
    __tablename__ = "synced_reviews"
    __table_args__ = (
        UniqueConstraint("platform", "platform_review_id", name="uq_synced_reviews_platform_review"),
        Index("idx_synced_reviews_merchant_reviewed", "merchant_id", "reviewed_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    api_connection_id = Column(
        Integer, ForeignKey("api_connections.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    platform = Column(String(50), nullable=False)
    platform_review_id = Column(String(255), nullable=False)
    author_name = Column(String(255), nullable=False, default="")
    author_photo_url = Column(String(500))
    rating = Column(Numeric(2, 1, asdecimal=False))
    review_text = Column(Text, nullable=False, default="")
    review_reply = Column(Text)
    reviewed_at = Column(DateTime(timezone=True))
    synced_at = Column(DateTime(timezone=True), default=_utcnow)
    is_visible = Column(Boolean, nullable=False, default=True)
    metadata_ = Column("metadata", JSON().with_variant(JSONB, "postgresql"), default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class SyncLogRecord(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    api_connection_id = Column(
        Integer, ForeignKey("api_connections.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sync_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    reviews_fetched = Column(Integer, default=0)
    reviews_added = Column(Integer, default=0)
    reviews_updated = Column(Integer, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
