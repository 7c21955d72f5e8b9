"""
Per-connection sync leases

In-process mutual exclusion keyed by connection id.  Check-and-claim
happens without an ``await`` in between, so it is atomic on the event loop.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set

from integrations.errors import SyncInProgressError


class ConnectionLeases:
    def __init__(self):
        self._held: Set[int] = set()
        self._released: Dict[int, asyncio.Event] = {}

    def is_held(self, connection_id: int) -> bool:
        return connection_id in self._held

    def held(self) -> Set[int]:
        return set(self._held)

    @asynccontextmanager
    async def hold(self, connection_id: int, *, wait: bool = False) -> AsyncIterator[None]:
        """
        Claim the lease for the block.

        A taken lease raises ``SyncInProgressError``, or with ``wait=True``
        blocks until the current holder releases it.
        """
        while connection_id in self._held:
            if not wait:
                raise SyncInProgressError(connection_id)
            await self._released[connection_id].wait()
        self._held.add(connection_id)
        self._released[connection_id] = asyncio.Event()
        try:
            yield
        finally:
            self._held.discard(connection_id)
            self._released.pop(connection_id).set()
