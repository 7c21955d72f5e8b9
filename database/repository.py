"""
SQLAlchemy implementation of ``SocialMediaGateway``.

Each call opens its own session from the injected factory and commits
before returning, so records handed back are detached snapshots.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.gateway import DuplicateRecordError, PersistenceError, SocialMediaGateway
from database.models import ApiConnectionRecord, SyncedReviewRecord, SyncLogRecord
from utils.schemas import (
    APIConnection,
    ReviewStats,
    SyncedReview,
    SyncLog,
    SyncLogStatus,
    SyncStatus,
)

logger = logging.getLogger(__name__)

_CONNECTION_FIELDS = (
    "merchant_id", "platform", "platform_account_id", "platform_account_name",
    "access_token", "refresh_token", "token_expires_at", "is_active",
    "last_sync_at", "sync_status", "error_message",
)
_REVIEW_FIELDS = (
    "merchant_id", "api_connection_id", "platform", "platform_review_id",
    "author_name", "author_photo_url", "rating", "review_text", "review_reply",
    "reviewed_at", "synced_at", "is_visible",
)
_LOG_FIELDS = (
    "api_connection_id", "sync_type", "status", "reviews_fetched",
    "reviews_added", "reviews_updated", "error_message", "started_at", "completed_at",
)


def _copy(model: Any, record: Any, fields) -> None:
    for name in fields:
        setattr(record, name, getattr(model, name))


def _review_from_record(record: SyncedReviewRecord) -> SyncedReview:
    data: Dict[str, Any] = {name: getattr(record, name) for name in _REVIEW_FIELDS}
    data.update(
        id=record.id,
        metadata=record.metadata_ or {},
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
    return SyncedReview(**data)


class SqlAlchemyGateway(SocialMediaGateway):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── API connections ─────────────────────────────────────────────────

    async def create_connection(self, conn: APIConnection) -> APIConnection:
        record = ApiConnectionRecord()
        _copy(conn, record, _CONNECTION_FIELDS)
        async with self._session_factory() as session:
            session.add(record)
            await self._commit(session, "create_connection")
            logger.info(
                "Created %s connection %s for merchant %s",
                record.platform, record.id, record.merchant_id,
            )
            return APIConnection.model_validate(record)

    async def get_connection(self, connection_id: int) -> Optional[APIConnection]:
        async with self._session_factory() as session:
            record = await session.get(ApiConnectionRecord, connection_id)
            return APIConnection.model_validate(record) if record else None

    async def get_connections_by_merchant(self, merchant_id: int) -> List[APIConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiConnectionRecord)
                .where(ApiConnectionRecord.merchant_id == merchant_id)
                .order_by(ApiConnectionRecord.created_at.desc())
            )
            return [APIConnection.model_validate(r) for r in result.scalars().all()]

    async def get_connection_by_platform(
        self, merchant_id: int, platform: str,
    ) -> Optional[APIConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiConnectionRecord)
                .where(
                    ApiConnectionRecord.merchant_id == merchant_id,
                    ApiConnectionRecord.platform == platform,
                )
                .order_by(ApiConnectionRecord.created_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return APIConnection.model_validate(record) if record else None

    async def get_connection_by_account(
        self, merchant_id: int, platform: str, platform_account_id: str,
    ) -> Optional[APIConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiConnectionRecord).where(
                    ApiConnectionRecord.merchant_id == merchant_id,
                    ApiConnectionRecord.platform == platform,
                    ApiConnectionRecord.platform_account_id == platform_account_id,
                )
            )
            record = result.scalar_one_or_none()
            return APIConnection.model_validate(record) if record else None

    async def update_connection(self, conn: APIConnection) -> APIConnection:
        async with self._session_factory() as session:
            record = await session.get(ApiConnectionRecord, conn.id)
            if record is None:
                raise PersistenceError(f"api connection {conn.id} does not exist")
            _copy(conn, record, _CONNECTION_FIELDS)
            record.updated_at = datetime.now(timezone.utc)
            await self._commit(session, "update_connection")
            return APIConnection.model_validate(record)

    async def delete_connection(self, connection_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ApiConnectionRecord).where(ApiConnectionRecord.id == connection_id)
            )
            await self._commit(session, "delete_connection")
            return result.rowcount > 0

    async def get_active_connections(self) -> List[APIConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiConnectionRecord)
                .where(ApiConnectionRecord.is_active.is_(True))
                .order_by(
                    ApiConnectionRecord.last_sync_at.asc().nulls_first(),
                    ApiConnectionRecord.id.asc(),
                )
            )
            return [APIConnection.model_validate(r) for r in result.scalars().all()]

    # ── Synced reviews ──────────────────────────────────────────────────

    async def create_synced_review(self, review: SyncedReview) -> SyncedReview:
        record = SyncedReviewRecord(metadata_=review.metadata or {})
        _copy(review, record, _REVIEW_FIELDS)
        async with self._session_factory() as session:
            session.add(record)
            await self._commit(session, "create_synced_review")
            return _review_from_record(record)

    async def get_synced_review(self, review_id: int) -> Optional[SyncedReview]:
        async with self._session_factory() as session:
            record = await session.get(SyncedReviewRecord, review_id)
            return _review_from_record(record) if record else None

    async def get_synced_review_by_platform_id(
        self, platform: str, platform_review_id: str,
    ) -> Optional[SyncedReview]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncedReviewRecord).where(
                    SyncedReviewRecord.platform == platform,
                    SyncedReviewRecord.platform_review_id == platform_review_id,
                )
            )
            record = result.scalar_one_or_none()
            return _review_from_record(record) if record else None

    async def get_synced_reviews_by_merchant(
        self, merchant_id: int, limit: int = 50, offset: int = 0,
    ) -> List[SyncedReview]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncedReviewRecord)
                .where(
                    SyncedReviewRecord.merchant_id == merchant_id,
                    SyncedReviewRecord.is_visible.is_(True),
                )
                .order_by(SyncedReviewRecord.reviewed_at.desc().nulls_last())
                .limit(limit)
                .offset(offset)
            )
            return [_review_from_record(r) for r in result.scalars().all()]

    async def update_synced_review(self, review: SyncedReview) -> SyncedReview:
        async with self._session_factory() as session:
            record = await session.get(SyncedReviewRecord, review.id)
            if record is None:
                raise PersistenceError(f"synced review {review.id} does not exist")
            _copy(review, record, _REVIEW_FIELDS)
            record.metadata_ = review.metadata or {}
            record.updated_at = datetime.now(timezone.utc)
            await self._commit(session, "update_synced_review")
            return _review_from_record(record)

    async def delete_synced_review(self, review_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncedReviewRecord).where(SyncedReviewRecord.id == review_id)
            )
            await self._commit(session, "delete_synced_review")
            return result.rowcount > 0

    async def get_merchant_review_stats(self, merchant_id: int) -> ReviewStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(SyncedReviewRecord.id),
                    func.count(func.distinct(SyncedReviewRecord.platform)),
                    func.avg(SyncedReviewRecord.rating),
                    func.max(SyncedReviewRecord.reviewed_at),
                ).where(
                    SyncedReviewRecord.merchant_id == merchant_id,
                    SyncedReviewRecord.is_visible.is_(True),
                )
            )
            total, platforms, avg_rating, latest = result.one()
            return ReviewStats(
                total_reviews=total or 0,
                platforms_connected=platforms or 0,
                avg_rating=round(float(avg_rating or 0.0), 1),
                latest_review_date=latest,
            )

    # ── Sync logs ───────────────────────────────────────────────────────

    async def create_sync_log(self, log: SyncLog) -> SyncLog:
        record = SyncLogRecord()
        _copy(log, record, _LOG_FIELDS)
        async with self._session_factory() as session:
            session.add(record)
            await self._commit(session, "create_sync_log")
            return SyncLog.model_validate(record)

    async def get_sync_log(self, log_id: int) -> Optional[SyncLog]:
        async with self._session_factory() as session:
            record = await session.get(SyncLogRecord, log_id)
            return SyncLog.model_validate(record) if record else None

    async def get_sync_logs_by_connection(self, connection_id: int, limit: int = 20) -> List[SyncLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncLogRecord)
                .where(SyncLogRecord.api_connection_id == connection_id)
                .order_by(SyncLogRecord.started_at.desc())
                .limit(limit)
            )
            return [SyncLog.model_validate(r) for r in result.scalars().all()]

    async def update_sync_log(self, log: SyncLog) -> SyncLog:
        async with self._session_factory() as session:
            record = await session.get(SyncLogRecord, log.id)
            if record is None:
                raise PersistenceError(f"sync log {log.id} does not exist")
            _copy(log, record, _LOG_FIELDS)
            await self._commit(session, "update_sync_log")
            return SyncLog.model_validate(record)

    # ── Maintenance ─────────────────────────────────────────────────────

    async def reset_stale_syncs(self, message: str) -> int:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                update(ApiConnectionRecord)
                .where(ApiConnectionRecord.sync_status == SyncStatus.SYNCING.value)
                .values(sync_status=SyncStatus.FAILED.value, error_message=message, updated_at=now)
            )
            await session.execute(
                update(SyncLogRecord)
                .where(SyncLogRecord.status == SyncLogStatus.STARTED.value)
                .values(status=SyncLogStatus.FAILED.value, error_message=message, completed_at=now)
            )
            await self._commit(session, "reset_stale_syncs")
            return result.rowcount

    # ── helpers ─────────────────────────────────────────────────────────

    @staticmethod
    async def _commit(session: AsyncSession, operation: str) -> None:
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise DuplicateRecordError(f"{operation}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("%s failed: %s", operation, exc)
            raise PersistenceError(f"{operation}: {exc}") from exc
