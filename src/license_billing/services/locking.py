"""In-process per-license mutual exclusion."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


class LicenseLocks:
    """Registry of asyncio locks keyed by license id.

    Serializes units of work on one license inside a process, including
    the commit. Across processes the database lock taken by
    ``database.lock_license`` is what serializes writers.

    A lock lives only while some caller holds or waits on it, so the
    registry stays the size of the licenses currently in use.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, license_id: Any) -> AsyncIterator[None]:
        key = str(license_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
