"""Per-machine exclusive locks.

Every mutation of a machine or of a session on that machine runs inside
``MachineLocks.hold(machine_id)``. Inside a process this is an
``asyncio.Lock`` per machine; across processes the services additionally
take ``SELECT ... FOR UPDATE`` on the machine row (ignored by SQLite).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class MachineLocks:
    """Registry of one asyncio.Lock per machine identifier."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, machine_id: str) -> asyncio.Lock:
        lock = self._locks.get(machine_id)
        if lock is None:
            lock = self._locks[machine_id] = asyncio.Lock()
        return lock

    def locked(self, machine_id: str) -> bool:
        lock = self._locks.get(machine_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, machine_id: str) -> AsyncIterator[None]:
        async with self._lock_for(machine_id):
            yield
