from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict, deque
from typing import Any

from aiokafka import AIOKafkaProducer

from infra.kafka_topics import INSPECTION_UPLOADS_TOPIC

logger = logging.getLogger(__name__)


class KafkaBus:
    """Best-effort event publisher.

    Publishing never fails the caller: when the producer is down or a send
    exceeds ``send_timeout`` the event lands in a bounded per-topic queue that
    drops its oldest entry once full.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str,
        send_timeout: float = 2.0,
        fallback_capacity: int = 1000,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.send_timeout = send_timeout
        self.fallback_capacity = fallback_capacity
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, deque[dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=self.fallback_capacity)
        )

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception as exc:
            logger.warning("Kafka unavailable, using in-process queues: %s", exc)
            self._producer = None
            try:
                await producer.stop()
            except Exception:
                pass

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(INSPECTION_UPLOADS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    def pending(self, topic: str) -> list[dict[str, Any]]:
        """Events held locally for ``topic`` (oldest first)."""
        return list(self._queues.get(topic, ()))

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await asyncio.wait_for(
                    self._producer.send_and_wait(topic, value=value, key=encoded_key),
                    timeout=self.send_timeout,
                )
                return
            except Exception as exc:
                logger.warning("Kafka publish to %s failed, queued locally: %s", topic, exc)
        self._queues[topic].append(value)
