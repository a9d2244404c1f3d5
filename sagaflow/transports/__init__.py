"""Event sink factories."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .base import BroadcastChannel, DurableSink
from .inmemory import InMemoryBroadcastChannel, InMemoryDurableSink


def _backend(backend: Optional[str], config: SagaflowConfig) -> str:
    return (
        backend
        or os.getenv("SAGAFLOW_EVENTS_BACKEND")
        or config.events.backend
    ).lower()


def get_durable_sink(
    backend: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> DurableSink:
    """Factory function to get the configured durable event sink."""

    config = config or load_config()
    backend = _backend(backend, config)

    if backend == "inmemory":
        return InMemoryDurableSink()
    elif backend == "redis":
        from .redis import RedisDurableSink

        redis_conf = config.events.redis
        return RedisDurableSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "kafka":
        from .kafka import KafkaDurableSink

        kafka_conf = config.events.kafka
        return KafkaDurableSink(
            brokers=kafka_conf.bootstrap_servers.split(","),
            client_id=kafka_conf.client_id,
        )
    else:
        raise ValueError(f"Unsupported events backend: {backend}")


def get_broadcast_channel(
    backend: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> BroadcastChannel:
    """Factory function to get the configured broadcast channel.

    Kafka has no pub/sub fan-out of its own here, so the ``kafka`` backend
    broadcasts in-process.
    """

    config = config or load_config()
    backend = _backend(backend, config)

    if backend in ("inmemory", "kafka"):
        return InMemoryBroadcastChannel()
    elif backend == "redis":
        from .redis import RedisBroadcastChannel

        redis_conf = config.events.redis
        return RedisBroadcastChannel(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported events backend: {backend}")


__all__ = [
    "BroadcastChannel",
    "DurableSink",
    "InMemoryBroadcastChannel",
    "InMemoryDurableSink",
    "get_broadcast_channel",
    "get_durable_sink",
]
