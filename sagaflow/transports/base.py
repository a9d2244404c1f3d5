"""Base sink interfaces for workflow lifecycle events."""

from __future__ import annotations

import abc
import json
from typing import Any, AsyncIterator, Mapping, Optional

Envelope = Mapping[str, Any]


def encode_envelope(envelope: Envelope) -> str:
    return json.dumps(envelope, default=str)


class DurableSink(metaclass=abc.ABCMeta):
    """Append-only event log consumed by downstream services and audit."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, partition_key: str, envelope: Envelope) -> None:
        """Append ``envelope`` to ``topic``; events sharing a key stay ordered."""
        raise NotImplementedError


class BroadcastChannel(metaclass=abc.ABCMeta):
    """Fire-and-forget fan-out to live observers."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def broadcast(self, topic: str, envelope: Envelope) -> None:
        """Deliver ``envelope`` to current subscribers of ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[dict]:
        """Yield envelopes broadcast on ``topic`` after subscribing.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError
