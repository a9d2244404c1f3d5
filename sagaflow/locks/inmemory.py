"""In-process lock store for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Tuple

from .base import LockStore


class InMemoryLockStore(LockStore):
    """Locks visible only to the current process."""

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._mutex = asyncio.Lock()

    def _purge(self, key: str) -> None:
        held = self._locks.get(key)
        if held is not None and held[1] <= time.monotonic():
            del self._locks[key]

    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._mutex:
            self._purge(key)
            if key in self._locks:
                return False
            self._locks[key] = (value, time.monotonic() + ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        async with self._mutex:
            self._locks.pop(key, None)

    async def get(self, key: str) -> str | None:
        async with self._mutex:
            self._purge(key)
            held = self._locks.get(key)
            return held[0] if held else None

    async def ping(self) -> bool:
        return True
