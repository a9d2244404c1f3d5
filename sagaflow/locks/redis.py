"""Redis-backed lock store (``SET key value NX PX ttl``)."""

from __future__ import annotations

import math
from typing import Any, Optional

import redis.asyncio as redis

from .base import LockStore


class RedisLockStore(LockStore):
    """Lock store shared by every process connected to the same Redis."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_seconds: float) -> bool:
        client = await self._client()
        # Millisecond precision so sub-second TTLs are not rounded to zero.
        acquired = await client.set(
            f"{self.prefix}{key}", value, nx=True, px=max(1, math.ceil(ttl_seconds * 1000))
        )
        return bool(acquired)

    async def delete(self, key: str) -> None:
        client = await self._client()
        await client.delete(f"{self.prefix}{key}")

    async def get(self, key: str) -> str | None:
        client = await self._client()
        return await client.get(f"{self.prefix}{key}")

    async def ping(self) -> bool:
        client = await self._client()
        return bool(await client.ping())
