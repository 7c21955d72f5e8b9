"""
SyncScheduler — periodic, batched review syncs across active connections.

Uses APScheduler's ``AsyncIOScheduler`` for the timer: one warm-up run
after a short delay, then every ``interval_hours``.  Each tick loads the
active connections (never-synced first, then oldest-synced), runs them in
fixed-size batches of concurrent tasks, waits for a batch to drain before
starting the next and pauses between batches to rate-limit outbound calls.

Manual syncs bypass the timer and go straight to ``SyncService``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import config
from core.sync_service import SyncService
from database.gateway import SocialMediaGateway
from integrations.errors import SyncInProgressError
from utils.schemas import (
    APIConnection,
    ConnectionSyncResult,
    SchedulerRunSummary,
    SyncStats,
    SyncStatus,
    SyncType,
)

logger = logging.getLogger(__name__)

_JOB_ID = "review-sync"


class SyncScheduler:
    def __init__(
        self,
        sync_service: SyncService,
        gateway: SocialMediaGateway,
        *,
        interval_hours: Optional[float] = None,
        batch_size: Optional[int] = None,
        warmup_delay_seconds: Optional[float] = None,
        batch_delay_seconds: Optional[float] = None,
    ):
        """Unset values fall back to ``config``; they are read once, here."""
        self.sync_service = sync_service
        self.gateway = gateway
        self.interval = timedelta(
            hours=config.sync_interval_hours if interval_hours is None else interval_hours
        )
        self.batch_size = config.sync_batch_size if batch_size is None else batch_size
        self.warmup_delay = (
            config.sync_warmup_delay_seconds if warmup_delay_seconds is None else warmup_delay_seconds
        )
        self.batch_delay = (
            config.sync_batch_delay_seconds if batch_delay_seconds is None else batch_delay_seconds
        )
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.interval <= timedelta(0):
            raise ValueError("interval_hours must be positive")

        self.last_run: Optional[SchedulerRunSummary] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    # ── lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Begin scheduled syncs.  Call from inside the running event loop."""
        if self._scheduler is not None:
            logger.info("[Scheduler] Already running")
            return

        self._stop_event.clear()
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_sync,
            IntervalTrigger(seconds=self.interval.total_seconds(), timezone=timezone.utc),
            id=_JOB_ID,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=self.warmup_delay),
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "[Scheduler] Starting with interval: %s, batch size: %d, first run in %.0fs",
            self.interval, self.batch_size, self.warmup_delay,
        )

    def stop(self) -> None:
        """Stop scheduling; an in-flight tick finishes its current batch.  Idempotent."""
        if self._scheduler is None:
            return
        self._stop_event.set()
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("[Scheduler] Stopped")

    # ── tick ────────────────────────────────────────────────────────────

    async def run_sync(self) -> SchedulerRunSummary:
        """
        Run one scheduled pass over all active connections.

        Also callable directly, with or without a started scheduler; a
        ``stop()`` only cuts short the pass that is already running.
        """
        self._stop_event.clear()
        summary = SchedulerRunSummary(started_at=datetime.now(timezone.utc))
        logger.info("[Scheduler] Starting scheduled sync...")

        try:
            connections = await self.gateway.get_active_connections()
        except Exception:
            logger.exception("[Scheduler] Error getting active connections")
            return self._finish(summary)

        summary.total_connections = len(connections)
        if not connections:
            logger.info("[Scheduler] No active connections to sync")
            return self._finish(summary)

        logger.info("[Scheduler] Found %d active connection(s)", len(connections))

        for start in range(0, len(connections), self.batch_size):
            if self._stop_event.is_set():
                logger.info("[Scheduler] Stop requested — abandoning remaining batches")
                break

            batch = connections[start:start + self.batch_size]
            end = start + len(batch)
            summary.batches += 1
            logger.info(
                "[Scheduler] Processing batch %d-%d of %d", start + 1, end, len(connections),
            )

            for result in await self._run_batch(batch):
                summary.results.append(result)
                if result.skipped:
                    summary.skipped += 1
                elif result.error is not None:
                    summary.failed += 1
                else:
                    summary.succeeded += 1

            if end < len(connections) and await self._pause(self.batch_delay):
                logger.info("[Scheduler] Stop requested — abandoning remaining batches")
                break

        return self._finish(summary)

    async def _run_batch(self, batch: List[APIConnection]) -> List[ConnectionSyncResult]:
        results = await asyncio.gather(
            *[self._sync_one(conn) for conn in batch],
            return_exceptions=True,
        )
        collected: List[ConnectionSyncResult] = []
        for conn, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error("[Scheduler] Task for connection %s raised: %s", conn.id, result)
                collected.append(
                    ConnectionSyncResult(connection_id=conn.id, platform=conn.platform, error=str(result))
                )
            else:
                collected.append(result)
        return collected

    async def _sync_one(self, conn: APIConnection) -> ConnectionSyncResult:
        result = ConnectionSyncResult(connection_id=conn.id, platform=conn.platform)

        if conn.sync_status == SyncStatus.SYNCING.value or self.sync_service.leases.is_held(conn.id):
            result.skipped = True
            return result

        try:
            result.stats = await self.sync_service.sync_connection(conn.id, SyncType.SCHEDULED)
        except SyncInProgressError:
            result.skipped = True
        except Exception as exc:
            result.error = str(exc) or type(exc).__name__
            logger.error(
                "[Scheduler] Error syncing connection %s (%s): %s", conn.id, conn.platform, result.error,
            )
        else:
            logger.info(
                "[Scheduler] Successfully synced connection %s (%s): fetched=%d, added=%d, updated=%d",
                conn.id, conn.platform, result.stats.total_fetched,
                result.stats.total_added, result.stats.total_updated,
            )
        return result

    async def _pause(self, seconds: float) -> bool:
        """Sleep between batches; True if a stop was requested meanwhile."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _finish(self, summary: SchedulerRunSummary) -> SchedulerRunSummary:
        summary.completed_at = datetime.now(timezone.utc)
        self.last_run = summary
        logger.info(
            "[Scheduler] Sync completed in %.1fs: %d succeeded, %d failed, %d skipped",
            summary.duration_seconds, summary.succeeded, summary.failed, summary.skipped,
        )
        return summary

    # ── manual trigger / status ─────────────────────────────────────────

    async def run_manual_sync(self, connection_id: int) -> SyncStats:
        logger.info("[Scheduler] Running manual sync for connection %s", connection_id)
        return await self.sync_service.sync_connection(connection_id, SyncType.MANUAL)

    def get_status(self) -> Dict[str, Any]:
        next_run_at = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run_at = job.next_run_time.isoformat()
        return {
            "is_running": self.is_running,
            "interval": str(self.interval),
            "batch_size": self.batch_size,
            "next_run_at": next_run_at,
            "last_run": self.last_run.model_dump(mode="json", exclude={"results"}) if self.last_run else None,
        }
