"""
SyncService — runs one connection's review sync end to end.

Lifecycle of ``sync_connection``:

    lease → resolve connection + provider → open SyncLog ("started")
    → mark connection "syncing" → token check / refresh → fetch
    → reconcile (upsert by platform_review_id) → close as "completed"

Any unrecoverable error after the SyncLog exists marks both the
connection and the SyncLog "failed" with the same message and is then
re-raised.  Per-review persistence problems never abort the batch; they
are collected into ``SyncStats.errors``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Union

from config.settings import config
from core.leases import ConnectionLeases
from database.gateway import DuplicateRecordError, SocialMediaGateway
from integrations.base import SocialMediaProvider
from integrations.encryption import TokenEncryptor
from integrations.errors import (
    ConnectionNotFoundError,
    InvalidTokenError,
    ProviderNotFoundError,
    SyncError,
    TransientNetworkError,
    classify_provider_error,
)
from integrations.registry import ProviderRegistry
from utils.schemas import (
    APIConnection,
    ItemError,
    Review,
    SyncedReview,
    SyncLog,
    SyncLogStatus,
    SyncStats,
    SyncStatus,
    SyncType,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class SyncService:
    def __init__(
        self,
        gateway: SocialMediaGateway,
        encryptor: TokenEncryptor,
        registry: Optional[ProviderRegistry] = None,
        *,
        leases: Optional[ConnectionLeases] = None,
        provider_timeout: Optional[float] = None,
    ):
        """
        Parameters
        ----------
        gateway          : persistence for connections, reviews and logs.
        encryptor        : decrypts stored tokens, encrypts refreshed ones.
        registry         : platform → provider lookup; the singleton if omitted.
        leases           : per-connection lease map, shareable with a scheduler.
        provider_timeout : deadline in seconds for each provider call;
                           ``0`` disables it.
        """
        self.gateway = gateway
        self.encryptor = encryptor
        self.registry = registry or ProviderRegistry()
        self.leases = leases or ConnectionLeases()
        self.provider_timeout = (
            config.provider_call_timeout_seconds if provider_timeout is None else provider_timeout
        )

    def register_provider(self, provider: SocialMediaProvider) -> None:
        self.registry.register(provider)

    def get_provider(self, platform: str) -> Optional[SocialMediaProvider]:
        return self.registry.get(platform)

    # ── public entry point ──────────────────────────────────────────────

    async def sync_connection(
        self,
        connection_id: int,
        sync_type: Union[SyncType, str] = SyncType.MANUAL,
    ) -> SyncStats:
        """
        Sync one connection and return its statistics.

        Raises
        ------
        SyncInProgressError    – another sync holds this connection
        ConnectionNotFoundError / ProviderNotFoundError – nothing is written
        SyncError / PersistenceError – the sync failed and was recorded
        """
        sync_type = SyncType(sync_type).value

        async with self.leases.hold(connection_id):
            conn = await self.gateway.get_connection(connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)

            provider = self.get_provider(conn.platform)
            if provider is None:
                raise ProviderNotFoundError(conn.platform)

            return await self._run(conn, provider, sync_type)

    # ── lifecycle ───────────────────────────────────────────────────────

    async def _run(
        self,
        conn: APIConnection,
        provider: SocialMediaProvider,
        sync_type: str,
    ) -> SyncStats:
        log = await self.gateway.create_sync_log(
            SyncLog(
                api_connection_id=conn.id,
                sync_type=sync_type,
                status=SyncLogStatus.STARTED.value,
                started_at=_utcnow(),
            )
        )
        logger.info(
            "[Sync] %s sync started for connection %s (%s)", sync_type, conn.id, conn.platform,
        )

        try:
            conn.sync_status = SyncStatus.SYNCING.value
            await self.gateway.update_connection(conn)

            access_token = await self._ensure_access_token(conn, provider)

            reviews = await self.call_provider(
                provider, "fetch_reviews", partial(provider.fetch_reviews, access_token, conn.last_sync_at),
            )
            stats = await self._reconcile(conn, reviews)

            conn.last_sync_at = _utcnow()
            conn.sync_status = SyncStatus.COMPLETED.value
            conn.error_message = None
            await self.gateway.update_connection(conn)
        except (Exception, asyncio.CancelledError) as exc:
            await self._record_failure(conn, log, exc)
            raise

        await self._close_log(log, SyncLogStatus.COMPLETED, stats=stats)
        logger.info(
            "[Sync] Connection %s (%s): fetched=%d added=%d updated=%d errors=%d",
            conn.id, conn.platform, stats.total_fetched, stats.total_added,
            stats.total_updated, len(stats.errors),
        )
        return stats

    async def _ensure_access_token(
        self,
        conn: APIConnection,
        provider: SocialMediaProvider,
    ) -> str:
        """
        Return a usable access token, refreshing it when validation fails.

        A refreshed credential is persisted before this returns.
        """
        access_token = self.encryptor.decrypt(conn.access_token)

        valid = False
        if access_token:
            try:
                valid = await self.call_provider(
                    provider, "validate_token", partial(provider.validate_token, access_token),
                )
            except Exception as exc:
                logger.warning(
                    "Token validation errored for connection %s (%s), treating as invalid: %s",
                    conn.id, conn.platform, exc,
                )
        if valid:
            return access_token

        if not conn.refresh_token:
            raise InvalidTokenError()

        refresh_token = self.encryptor.decrypt(conn.refresh_token)
        token = await self.call_provider(provider, "refresh_token", partial(provider.refresh_token, refresh_token))
        if not token.access_token:
            raise InvalidTokenError("token refresh returned an empty access token")

        conn.access_token = self.encryptor.encrypt(token.access_token)
        if token.refresh_token:
            conn.refresh_token = self.encryptor.encrypt(token.refresh_token)
        conn.token_expires_at = token.resolve_expiry(_utcnow())
        await self.gateway.update_connection(conn)
        logger.info("Refreshed %s token for connection %s", conn.platform, conn.id)
        return token.access_token

    async def call_provider(
        self,
        provider: SocialMediaProvider,
        operation: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Run ``call()`` under the deadline, classifying whatever it raises.

        The coroutine is built inside the guard, so an adapter failing
        before its first ``await`` is classified too.
        """
        try:
            awaitable = call()
            if self.provider_timeout:
                return await asyncio.wait_for(awaitable, self.provider_timeout)
            return await awaitable
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(
                f"{provider.platform_name} {operation} timed out after {self.provider_timeout}s",
                platform=provider.platform_name,
            ) from exc
        except SyncError:
            raise
        except Exception as exc:
            raise classify_provider_error(exc, provider.platform_name) from exc

    # ── reconciliation ──────────────────────────────────────────────────

    async def _reconcile(self, conn: APIConnection, reviews: List[Review]) -> SyncStats:
        stats = SyncStats(total_fetched=len(reviews))
        synced_at = _utcnow()

        for review in reviews:
            if not review.platform_review_id:
                stats.errors.append(
                    ItemError(platform_review_id="", message="review has no platform_review_id")
                )
                continue
            try:
                added = await self._upsert(conn, review, synced_at)
            except Exception as exc:
                logger.warning(
                    "Could not store %s review %s: %s", conn.platform, review.platform_review_id, exc,
                )
                stats.errors.append(
                    ItemError(platform_review_id=review.platform_review_id, message=_describe(exc))
                )
                continue
            if added:
                stats.total_added += 1
            else:
                stats.total_updated += 1

        return stats

    async def _upsert(self, conn: APIConnection, review: Review, synced_at: datetime) -> bool:
        """Insert or update one review; True when a new row was created."""
        existing = await self.gateway.get_synced_review_by_platform_id(
            conn.platform, review.platform_review_id,
        )
        if existing is None:
            try:
                await self.gateway.create_synced_review(
                    SyncedReview(
                        merchant_id=conn.merchant_id,
                        api_connection_id=conn.id,
                        platform=conn.platform,
                        platform_review_id=review.platform_review_id,
                        author_name=review.author_name,
                        author_photo_url=review.author_photo_url,
                        rating=review.rating,
                        review_text=review.review_text,
                        review_reply=review.review_reply,
                        reviewed_at=review.reviewed_at,
                        synced_at=synced_at,
                        is_visible=True,
                        metadata=review.metadata,
                    )
                )
                return True
            except DuplicateRecordError:
                # a concurrent writer inserted the same key first
                existing = await self.gateway.get_synced_review_by_platform_id(
                    conn.platform, review.platform_review_id,
                )
                if existing is None:
                    raise

        await self.gateway.update_synced_review(
            existing.model_copy(
                update={
                    "author_name": review.author_name,
                    "author_photo_url": review.author_photo_url,
                    "rating": review.rating,
                    "review_text": review.review_text,
                    "review_reply": review.review_reply,
                    "reviewed_at": review.reviewed_at or existing.reviewed_at,
                    "metadata": review.metadata,
                    "synced_at": synced_at,
                }
            )
        )
        return False

    # ── bookkeeping ─────────────────────────────────────────────────────

    async def _record_failure(
        self,
        conn: APIConnection,
        log: SyncLog,
        exc: BaseException,
    ) -> None:
        message = _describe(exc)
        if isinstance(exc, asyncio.CancelledError):
            message = "sync cancelled"

        conn.sync_status = SyncStatus.FAILED.value
        conn.error_message = message
        try:
            await self.gateway.update_connection(conn)
        except Exception:
            logger.exception("Could not mark connection %s as failed", conn.id)

        await self._close_log(log, SyncLogStatus.FAILED, error=message)
        logger.error(
            "[Sync] Connection %s (%s) failed [%s]: %s",
            conn.id, conn.platform, getattr(exc, "category", "unknown"), message,
        )

    async def _close_log(
        self,
        log: SyncLog,
        status: SyncLogStatus,
        *,
        stats: Optional[SyncStats] = None,
        error: Optional[str] = None,
    ) -> None:
        """Best-effort: an audit write failure never changes the sync outcome."""
        log.status = status.value
        log.error_message = error
        log.completed_at = _utcnow()
        if stats is not None:
            log.reviews_fetched = stats.total_fetched
            log.reviews_added = stats.total_added
            log.reviews_updated = stats.total_updated
        try:
            await self.gateway.update_sync_log(log)
        except Exception:
            logger.exception("Could not close sync log %s", log.id)
