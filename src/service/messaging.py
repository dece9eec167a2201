from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

logger = logging.getLogger(__name__)

VIO_AUDIT_TOPIC = "vio_audit_events"
VEHICLE_REBUILD_REQUESTS_TOPIC = "vehicle_rebuild_requests"
VEHICLE_AGGREGATES_TOPIC = "vehicle_aggregates"

LOCAL_QUEUE_MAXSIZE = 1_000

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _encode(value: dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


def _decode(raw: bytes) -> dict[str, Any]:
    return json.loads(raw.decode("utf-8"))


class KafkaBus:
    """aiokafka producer/consumer pair; each topic has a local queue used while Kafka is unreachable."""

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str,
        local_queue_size: int = LOCAL_QUEUE_MAXSIZE,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self._producer: AIOKafkaProducer | None = None
        self._local: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(
            lambda: asyncio.Queue(maxsize=local_queue_size)
        )

    @property
    def connected(self) -> bool:
        return self._producer is not None

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=_encode,
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
        except Exception:
            logger.warning("Kafka unreachable at %s, events stay in local queues", self.bootstrap_servers)
            return
        self._producer = producer

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if not self.connected:
            return False
        try:
            return await self._producer.partitions_for(VIO_AUDIT_TOPIC) is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self.connected:
            try:
                await self._producer.send_and_wait(
                    topic, value=value, key=None if key is None else key.encode("utf-8")
                )
                return
            except Exception:
                logger.warning("Kafka publish to %s failed, queueing locally", topic)
        queue = self._local[topic]
        if queue.full():
            queue.get_nowait()
            logger.warning("Local queue for %s is full, dropped oldest event", topic)
        queue.put_nowait(value)

    # ── Domain events ───────────────────────────────────────────────

    async def publish_audit(self, entry: dict[str, Any]) -> None:
        await self.publish(VIO_AUDIT_TOPIC, entry, key=(entry.get("meta") or {}).get("vehicleId"))

    async def publish_aggregate(self, vehicle_id: str, status: str, indexes: dict[str, Any]) -> None:
        await self.publish(
            VEHICLE_AGGREGATES_TOPIC,
            {"vehicleId": vehicle_id, "status": status, "indexes": indexes},
            key=vehicle_id,
        )

    async def request_rebuild(self, vehicle_id: str, vin: str = "", plate: str = "") -> None:
        await self.publish(
            VEHICLE_REBUILD_REQUESTS_TOPIC,
            {"vehicleId": vehicle_id, "vin": vin, "plate": plate},
            key=vehicle_id,
        )

    def pending(self, topic: str) -> int:
        return self._local[topic].qsize()

    # ── Rebuild consumer ────────────────────────────────────────────

    @staticmethod
    async def _dispatch(handler: EventHandler, event: dict[str, Any]) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("Rebuild handler failed for event %s", event.get("vehicleId"))

    async def _consume_kafka(self, handler: EventHandler, stop_event: asyncio.Event) -> None:
        consumer = AIOKafkaConsumer(
            VEHICLE_REBUILD_REQUESTS_TOPIC,
            bootstrap_servers=self.bootstrap_servers,
            group_id=f"{self.client_id}-rebuilder",
            value_deserializer=_decode,
        )
        try:
            await asyncio.wait_for(consumer.start(), timeout=1.0)
            while not stop_event.is_set():
                msg = await consumer.getone()
                await self._dispatch(handler, msg.value)
        except Exception:
            logger.warning("Rebuild consumer stopped, switching to local queue")
        finally:
            try:
                await consumer.stop()
            except Exception:
                logger.debug("Rebuild consumer did not stop cleanly")

    async def _consume_local(self, handler: EventHandler, stop_event: asyncio.Event) -> None:
        queue = self._local[VEHICLE_REBUILD_REQUESTS_TOPIC]
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            await self._dispatch(handler, event)

    async def consume_rebuild_requests_forever(self, handler: EventHandler, stop_event: asyncio.Event) -> None:
        if self.connected:
            await self._consume_kafka(handler, stop_event)
        await self._consume_local(handler, stop_event)
