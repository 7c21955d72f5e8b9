"""
Tests for ConnectionManager — OAuth connect flow and merchant operations.
"""

import asyncio

import pytest
from unittest.mock import patch

from core.connections import ConnectionManager
from core.sync_service import SyncService
from integrations import oauth_state
from integrations.errors import (
    ConnectionNotFoundError,
    InvalidStateError,
    ProviderNotFoundError,
    SyncInProgressError,
)
from integrations.registry import ProviderRegistry
from tests.conftest import make_review
from utils.schemas import APIConnection, SyncStatus


@pytest.fixture(autouse=True)
def _state_secret():
    with patch.object(oauth_state.config, "oauth_state_secret", "test-secret"):
        yield


@pytest.fixture
def manager(gateway, encryptor, provider):
    registry = ProviderRegistry()
    registry.register(provider)
    service = SyncService(gateway, encryptor, registry, provider_timeout=0)
    return ConnectionManager(gateway, service, encryptor)


async def _drain(manager):
    if manager._background:
        await asyncio.gather(*manager._background)


class TestOAuthFlow:
    def test_authorization_url_embeds_signed_state(self, manager):
        url, state = manager.authorization_url(7, "google_business")
        assert url.endswith(f"state={state}")
        assert oauth_state.verify_state(state) == (7, "google_business")

    def test_authorization_url_unknown_platform(self, manager):
        with pytest.raises(ProviderNotFoundError):
            manager.authorization_url(7, "myspace")

    @pytest.mark.asyncio
    async def test_complete_authorization_stores_encrypted_tokens(self, manager, gateway, encryptor):
        _, state = manager.authorization_url(7, "google_business")

        conn = await manager.complete_authorization("google_business", "abc", state, initial_sync=False)

        assert conn.merchant_id == 7
        assert conn.platform_account_id == "acct-1"
        assert conn.platform_account_name == "Cafe Mocha"
        assert conn.sync_status == SyncStatus.PENDING.value
        assert conn.access_token != "access-abc"
        assert encryptor.decrypt(conn.access_token) == "access-abc"
        assert encryptor.decrypt(conn.refresh_token) == "refresh-abc"
        assert conn.token_expires_at is not None

    @pytest.mark.asyncio
    async def test_reconnect_updates_existing_row(self, manager, gateway, encryptor):
        _, state = manager.authorization_url(7, "google_business")
        first = await manager.complete_authorization("google_business", "one", state, initial_sync=False)
        first.sync_status = SyncStatus.FAILED.value
        first.error_message = "invalid or expired access token"
        await gateway.update_connection(first)

        _, state = manager.authorization_url(7, "google_business")
        second = await manager.complete_authorization("google_business", "two", state, initial_sync=False)

        assert second.id == first.id
        assert len(gateway.connections) == 1
        assert second.sync_status == SyncStatus.PENDING.value
        assert second.error_message is None
        assert encryptor.decrypt(second.access_token) == "access-two"

    @pytest.mark.asyncio
    async def test_reconnect_during_running_sync_keeps_new_tokens(self, manager, gateway, encryptor, provider):
        _, state = manager.authorization_url(7, "google_business")
        conn = await manager.complete_authorization("google_business", "one", state, initial_sync=False)
        provider.valid_tokens = {"access-one"}
        release = asyncio.Event()
        provider.on_fetch = release.wait

        sync = asyncio.create_task(manager.trigger_sync(7, conn.id))
        await asyncio.sleep(0.01)
        _, state = manager.authorization_url(7, "google_business")
        reconnect = asyncio.create_task(
            manager.complete_authorization("google_business", "NEWCODE", state, initial_sync=False)
        )
        await asyncio.sleep(0.01)
        assert not reconnect.done()

        release.set()
        await sync
        await reconnect

        stored = await gateway.get_connection(conn.id)
        assert encryptor.decrypt(stored.access_token) == "access-NEWCODE"
        assert encryptor.decrypt(stored.refresh_token) == "refresh-NEWCODE"
        assert stored.sync_status == SyncStatus.PENDING.value
        assert stored.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_state_for_other_platform_rejected(self, manager):
        _, state = manager.authorization_url(7, "google_business")
        with pytest.raises(InvalidStateError):
            await manager.complete_authorization("facebook", "abc", state)

    @pytest.mark.asyncio
    async def test_forged_state_rejected(self, manager, gateway):
        with pytest.raises(InvalidStateError):
            await manager.complete_authorization("google_business", "abc", "forged.state")
        assert gateway.connections == {}

    @pytest.mark.asyncio
    async def test_initial_sync_runs_in_background(self, manager, gateway, provider):
        provider.valid_tokens = {"access-abc"}
        provider.reviews = [make_review("r1"), make_review("r2")]
        _, state = manager.authorization_url(7, "google_business")

        conn = await manager.complete_authorization("google_business", "abc", state)
        await _drain(manager)

        stored = await gateway.get_connection(conn.id)
        assert stored.sync_status == SyncStatus.COMPLETED.value
        assert len(gateway.reviews) == 2


class TestMerchantOperations:
    async def _connect(self, gateway, merchant_id=7, platform="google_business", encryptor=None):
        return await gateway.create_connection(
            APIConnection(
                merchant_id=merchant_id,
                platform=platform,
                platform_account_id=f"acct-{merchant_id}",
                access_token=encryptor.encrypt("access-ok"),
                refresh_token=encryptor.encrypt("refresh-ok"),
            )
        )

    @pytest.mark.asyncio
    async def test_list_connections_hides_tokens(self, manager, gateway, encryptor):
        await self._connect(gateway, encryptor=encryptor)

        views = await manager.list_connections(7)

        assert len(views) == 1
        assert "access_token" not in views[0]
        assert "refresh_token" not in views[0]
        assert views[0]["platform"] == "google_business"

    @pytest.mark.asyncio
    async def test_trigger_sync_checks_ownership(self, manager, gateway, encryptor, provider):
        conn = await self._connect(gateway, merchant_id=7, encryptor=encryptor)
        provider.reviews = [make_review("r1")]

        with pytest.raises(ConnectionNotFoundError):
            await manager.trigger_sync(8, conn.id)
        assert gateway.logs == {}

        stats = await manager.trigger_sync(7, conn.id)
        assert stats.total_added == 1

    @pytest.mark.asyncio
    async def test_sync_logs_newest_first(self, manager, gateway, encryptor):
        conn = await self._connect(gateway, encryptor=encryptor)
        await manager.trigger_sync(7, conn.id)
        await manager.trigger_sync(7, conn.id)

        logs = await manager.get_sync_logs(7, conn.id, limit=1)

        assert len(logs) == 1
        assert logs[0].id == 2
        with pytest.raises(ConnectionNotFoundError):
            await manager.get_sync_logs(8, conn.id)

    @pytest.mark.asyncio
    async def test_synced_reviews_with_stats(self, manager, gateway, encryptor, provider):
        conn = await self._connect(gateway, encryptor=encryptor)
        provider.reviews = [make_review("r1", rating=5.0), make_review("r2", rating=4.0)]
        await manager.trigger_sync(7, conn.id)

        result = await manager.get_synced_reviews(7)

        assert len(result["reviews"]) == 2
        assert result["stats"].total_reviews == 2
        assert result["stats"].avg_rating == 4.5

    @pytest.mark.asyncio
    async def test_disconnect_keeps_reviews(self, manager, gateway, encryptor, provider):
        conn = await self._connect(gateway, encryptor=encryptor)
        provider.reviews = [make_review("r1")]
        await manager.trigger_sync(7, conn.id)

        assert await manager.disconnect(8, conn.id) is False
        assert await manager.disconnect(7, conn.id) is True
        assert await gateway.get_connection(conn.id) is None
        review = await gateway.get_synced_review_by_platform_id("google_business", "r1")
        assert review.api_connection_id is None

    @pytest.mark.asyncio
    async def test_disconnect_refused_while_syncing(self, manager, gateway, encryptor):
        conn = await self._connect(gateway, encryptor=encryptor)

        async with manager.sync_service.leases.hold(conn.id):
            with pytest.raises(SyncInProgressError):
                await manager.disconnect(7, conn.id)
        assert await gateway.get_connection(conn.id) is not None
