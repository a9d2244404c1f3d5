"""Redis event sinks for cross-process delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis

from .base import BroadcastChannel, DurableSink, Envelope, encode_envelope

logger = logging.getLogger(__name__)


class _RedisClient:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
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
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class RedisDurableSink(_RedisClient, DurableSink):
    """Appends events to a Redis list per topic (``LPUSH``, consumers ``BRPOP``)."""

    async def publish(self, topic: str, partition_key: str, envelope: Envelope) -> None:
        if not self._redis:
            await self.connect()

        queue_name = f"sagaflow:{topic}"
        record = encode_envelope({"key": partition_key, "event": dict(envelope)})
        await self._redis.lpush(queue_name, record)


class RedisBroadcastChannel(_RedisClient, BroadcastChannel):
    """Broadcasts over Redis pub/sub."""

    async def broadcast(self, topic: str, envelope: Envelope) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(f"sagaflow:{topic}", encode_envelope(envelope))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[dict]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(f"sagaflow:{topic}")
        start_time = asyncio.get_running_loop().time() if lifespan else None
        try:
            while True:
                if lifespan and start_time:
                    elapsed = asyncio.get_running_loop().time() - start_time
                    if elapsed >= lifespan:
                        break

                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    yield json.loads(message["data"])
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Failed to parse broadcast message: {e}")
        finally:
            await pubsub.unsubscribe(f"sagaflow:{topic}")
            await pubsub.aclose()
