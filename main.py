"""
Review Sync Engine — worker entry point.

Runs the periodic sync scheduler until SIGINT / SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from config.settings import config
from core.scheduler import SyncScheduler
from core.sync_service import SyncService
from database.repository import SqlAlchemyGateway
from database.session import async_session_factory, create_tables, engine
from integrations.encryption import get_token_encryptor
from integrations.registry import ProviderRegistry

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "apscheduler", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def run() -> None:
    encryptor = get_token_encryptor()

    if config.debug:
        await create_tables()

    gateway = SqlAlchemyGateway(async_session_factory)

    # Rows left "syncing" by a previous process can never complete.
    reset = await gateway.reset_stale_syncs("sync interrupted before completion")
    if reset:
        logger.info("Reset %d stale sync(s) from previous run", reset)

    registry = ProviderRegistry()
    registry.load(config.provider_modules)
    if not registry.list_configured():
        logger.warning("No providers configured; scheduled syncs will fail until some are loaded")

    service = SyncService(gateway, encryptor, registry)
    scheduler = SyncScheduler(service, gateway)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    logger.info("Review sync worker ready.")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down…")
        scheduler.stop()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run())
