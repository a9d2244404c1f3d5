"""In-memory event sinks for testing and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from .base import BroadcastChannel, DurableSink, Envelope


class InMemoryDurableSink(DurableSink):
    """Keeps every published envelope per topic, in publication order."""

    def __init__(self) -> None:
        self.records: Dict[str, List[Tuple[str, dict]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, partition_key: str, envelope: Envelope) -> None:
        async with self._lock:
            self.records[topic].append((partition_key, dict(envelope)))

    def envelopes(self, topic: str) -> List[dict]:
        return [envelope for _, envelope in self.records.get(topic, [])]


class InMemoryBroadcastChannel(BroadcastChannel):
    """In-process fan-out; late subscribers miss earlier messages.

    ``history`` keeps only the last ``history_size`` messages per topic.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self.history: Dict[str, Deque[dict]] = defaultdict(lambda: deque(maxlen=history_size))
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    async def broadcast(self, topic: str, envelope: Envelope) -> None:
        message = dict(envelope)
        self.history[topic].append(message)
        for queue in list(self._subscribers[topic]):
            queue.put_nowait(message)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[dict]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[topic].append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield message
        finally:
            self._subscribers[topic].remove(queue)
