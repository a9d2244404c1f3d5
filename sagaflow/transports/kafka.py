"""Kafka durable sink using aiokafka."""

from __future__ import annotations

from typing import Iterable, Optional

from aiokafka import AIOKafkaProducer

from .base import DurableSink, Envelope, encode_envelope


class KafkaDurableSink(DurableSink):
    """Publishes events keyed by execution id so each run stays on one partition."""

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        client_id: str = "sagaflow",
    ) -> None:
        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.client_id = client_id
        self._producer: Optional[AIOKafkaProducer] = None

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.brokers, client_id=self.client_id
        )
        await self._producer.start()

    async def disconnect(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, partition_key: str, envelope: Envelope) -> None:
        if not self._producer:
            await self.connect()
        await self._producer.send_and_wait(
            topic,
            key=partition_key.encode(),
            value=encode_envelope(envelope).encode(),
        )
