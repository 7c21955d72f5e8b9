"""
ConnectionManager — merchant-facing connection operations.

Covers the OAuth connect flow (signed state → code exchange → stored,
encrypted credential), listing and disconnecting connections, manual
sync triggers and the read side (sync history, synced reviews).

Every operation that takes a ``connection_id`` also takes the caller's
``merchant_id``; a connection owned by someone else is reported exactly
like a missing one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple

from config.settings import config
from core.sync_service import SyncService
from database.gateway import SocialMediaGateway
from integrations.base import SocialMediaProvider
from integrations.encryption import TokenEncryptor
from integrations.errors import (
    ConnectionNotFoundError,
    InvalidStateError,
    ProviderNotFoundError,
    SyncInProgressError,
)
from integrations.oauth_state import create_state, verify_state
from integrations.registry import ProviderRegistry
from utils.schemas import APIConnection, SyncLog, SyncStats, SyncStatus, SyncType

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(
        self,
        gateway: SocialMediaGateway,
        sync_service: SyncService,
        encryptor: TokenEncryptor,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.gateway = gateway
        self.sync_service = sync_service
        self.encryptor = encryptor
        self.registry = registry or sync_service.registry
        self._background: Set[asyncio.Task] = set()

    def _provider(self, platform: str) -> SocialMediaProvider:
        provider = self.registry.get(platform)
        if provider is None:
            raise ProviderNotFoundError(platform)
        return provider

    async def _owned(self, merchant_id: int, connection_id: int) -> APIConnection:
        conn = await self.gateway.get_connection(connection_id)
        if conn is None or conn.merchant_id != merchant_id:
            raise ConnectionNotFoundError(connection_id)
        return conn

    # ── OAuth connect flow ──────────────────────────────────────────────

    def authorization_url(self, merchant_id: int, platform: str) -> Tuple[str, str]:
        """Return ``(url, state)`` for redirecting the merchant to the platform."""
        provider = self._provider(platform)
        state = create_state(merchant_id, platform)
        return provider.get_authorization_url(state), state

    async def complete_authorization(
        self,
        platform: str,
        code: str,
        state: str,
        *,
        initial_sync: bool = True,
    ) -> APIConnection:
        """
        Finish the OAuth callback and store the connection.

        Reconnecting the same external account refreshes the existing row
        instead of creating a second one, once any sync running on it has
        finished.  With ``initial_sync`` a manual sync is started in the
        background; its outcome lands in the connection's status and sync log.
        """
        merchant_id, state_platform = verify_state(state)
        if state_platform != platform:
            raise InvalidStateError(
                f"OAuth state was issued for '{state_platform}', not '{platform}'"
            )
        provider = self._provider(platform)

        token = await self.sync_service.call_provider(
            provider, "exchange_code_for_token", partial(provider.exchange_code_for_token, code),
        )
        account = await self.sync_service.call_provider(
            provider, "get_account_info", partial(provider.get_account_info, token.access_token),
        )
        now = datetime.now(timezone.utc)

        existing = await self.gateway.get_connection_by_account(
            merchant_id, platform, account.account_id,
        )
        if existing is not None:
            # wait out a running sync; it writes its whole record back on exit
            async with self.sync_service.leases.hold(existing.id, wait=True):
                existing = await self.gateway.get_connection(existing.id) or existing
                existing.access_token = self.encryptor.encrypt(token.access_token)
                if token.refresh_token:
                    existing.refresh_token = self.encryptor.encrypt(token.refresh_token)
                existing.token_expires_at = token.resolve_expiry(now)
                existing.platform_account_name = account.account_name or existing.platform_account_name
                existing.is_active = True
                existing.sync_status = SyncStatus.PENDING.value
                existing.error_message = None
                conn = await self.gateway.update_connection(existing)
            logger.info("Updated %s connection %s for merchant %s", platform, conn.id, merchant_id)
        else:
            conn = await self.gateway.create_connection(
                APIConnection(
                    merchant_id=merchant_id,
                    platform=platform,
                    platform_account_id=account.account_id,
                    platform_account_name=account.account_name,
                    access_token=self.encryptor.encrypt(token.access_token),
                    refresh_token=self.encryptor.encrypt(token.refresh_token or ""),
                    token_expires_at=token.resolve_expiry(now),
                    sync_status=SyncStatus.PENDING.value,
                )
            )

        logger.info(
            "OAuth connected: merchant=%s platform=%s account=%s",
            merchant_id, platform, account.account_name or account.account_id,
        )

        if initial_sync:
            task = asyncio.create_task(self._initial_sync(conn.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return conn

    async def _initial_sync(self, connection_id: int) -> None:
        try:
            await self.sync_service.sync_connection(connection_id, SyncType.MANUAL)
        except SyncInProgressError:
            logger.info("Initial sync for connection %s skipped, already running", connection_id)
        except Exception as exc:
            logger.warning("Initial sync failed for connection %s: %s", connection_id, exc)

    # ── connection management ───────────────────────────────────────────

    async def list_connections(self, merchant_id: int) -> List[Dict[str, Any]]:
        """All of a merchant's connections, tokens stripped."""
        return [c.public_view() for c in await self.gateway.get_connections_by_merchant(merchant_id)]

    async def disconnect(self, merchant_id: int, connection_id: int) -> bool:
        """
        Delete a connection.  Returns False if not found.

        Synced reviews survive with ``api_connection_id`` cleared; the
        connection's sync logs go with it.
        """
        conn = await self.gateway.get_connection(connection_id)
        if conn is None or conn.merchant_id != merchant_id:
            return False
        if self.sync_service.leases.is_held(connection_id):
            raise SyncInProgressError(connection_id)

        deleted = await self.gateway.delete_connection(connection_id)
        if deleted:
            logger.info("Disconnected %s connection %s for merchant %s", conn.platform, conn.id, merchant_id)
        return deleted

    async def trigger_sync(self, merchant_id: int, connection_id: int) -> SyncStats:
        await self._owned(merchant_id, connection_id)
        return await self.sync_service.sync_connection(connection_id, SyncType.MANUAL)

    # ── read side ───────────────────────────────────────────────────────

    async def get_sync_logs(
        self,
        merchant_id: int,
        connection_id: int,
        limit: Optional[int] = None,
    ) -> List[SyncLog]:
        await self._owned(merchant_id, connection_id)
        return await self.gateway.get_sync_logs_by_connection(
            connection_id, limit=config.sync_log_limit if limit is None else limit,
        )

    async def get_synced_reviews(
        self,
        merchant_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        reviews = await self.gateway.get_synced_reviews_by_merchant(merchant_id, limit=limit, offset=offset)
        stats = await self.gateway.get_merchant_review_stats(merchant_id)
        return {"reviews": reviews, "stats": stats}
