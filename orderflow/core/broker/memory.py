"""
In-Memory Broker

Partitioned log with consumer groups, for tests and single-process
deployments. Nothing survives a restart.

Each topic is split into key-hashed partitions. A consumer group keeps a
committed offset per partition and has at most one message in flight per
partition, so messages sharing a key are delivered strictly in order: the
next one is only handed out after the previous one was acked or
dead-lettered. A delivery that is neither acked nor nacked within
redelivery_timeout, or a nacked one whose delay has passed, is handed out
again with a higher delivery_count.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..errors import PermanentPublishFailure, TransientPublishFailure
from .base import Delivery, MessageBroker, dead_letter_topic, partition_for

logger = logging.getLogger(__name__)


@dataclass
class _Message:
    message_id: str
    key: str
    body: bytes
    headers: Dict[str, str]


@dataclass
class _InFlight:
    offset: int
    delivery_count: int
    delivered_at: float
    retry_at: Optional[float] = None  # set by nack


@dataclass
class _GroupState:
    offsets: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    in_flight: Dict[int, _InFlight] = field(default_factory=dict)


class InMemoryBroker(MessageBroker):
    """
    Usage:
        broker = InMemoryBroker(partitions=4)
        await broker.publish("orders.events", "order-1", b"{...}")

        await broker.ensure_group("orders.events", "confirmation")
        for delivery in await broker.fetch("orders.events", "confirmation", "worker-1"):
            ...
            await broker.ack(delivery)

    Fault injection for tests:
        broker.available = False      # every publish raises TransientPublishFailure
        broker.fail_next(2)           # next 2 publishes fail transiently
        broker.fail_next(1, permanent=True)
    """

    name = "memory"

    def __init__(
        self,
        partitions: int = 8,
        redelivery_timeout: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
        history_limit: int = 10_000,
    ):
        self.partitions = partitions
        self.redelivery_timeout = redelivery_timeout
        self._clock = clock or time.monotonic
        self._topics: Dict[str, List[List[_Message]]] = {}
        self._groups: Dict[Tuple[str, str], _GroupState] = {}
        # Inspection only; the partition logs are what consumers read
        self._published: Deque[Tuple[str, _Message]] = deque(maxlen=history_limit)
        self._new_message: Optional[asyncio.Event] = None

        self.available = True
        self._failures: List[bool] = []  # queued injected failures, True = permanent

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next(self, count: int = 1, permanent: bool = False) -> None:
        self._failures.extend([permanent] * count)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _partitions_of(self, topic: str) -> List[List[_Message]]:
        if topic not in self._topics:
            self._topics[topic] = [[] for _ in range(self.partitions)]
        return self._topics[topic]

    async def ping(self) -> bool:
        return self.available

    async def publish(
        self,
        topic: str,
        key: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        if not self.available:
            raise TransientPublishFailure("In-memory broker unavailable")
        if self._failures:
            permanent = self._failures.pop(0)
            if permanent:
                raise PermanentPublishFailure(f"Broker rejected message for key {key}")
            raise TransientPublishFailure(f"Injected publish failure for key {key}")

        partition = partition_for(key, self.partitions)
        log = self._partitions_of(topic)[partition]
        message = _Message(
            message_id=f"{partition}-{len(log)}",
            key=key,
            body=bytes(body),
            headers=dict(headers or {}),
        )
        log.append(message)
        self._published.append((topic, message))

        if self._new_message is not None:
            self._new_message.set()

        return message.message_id

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def ensure_group(self, topic: str, group: str) -> None:
        self._partitions_of(topic)
        self._groups.setdefault((topic, group), _GroupState())

    def _group(self, topic: str, group: str) -> _GroupState:
        self._partitions_of(topic)
        return self._groups.setdefault((topic, group), _GroupState())

    async def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        max_messages: int = 10,
        block_ms: int = 0,
    ) -> List[Delivery]:
        deliveries = self._collect(topic, group, max_messages)
        if deliveries or block_ms <= 0:
            return deliveries

        if self._new_message is None:
            self._new_message = asyncio.Event()
        self._new_message.clear()
        try:
            await asyncio.wait_for(self._new_message.wait(), timeout=block_ms / 1000)
        except asyncio.TimeoutError:
            pass
        return self._collect(topic, group, max_messages)

    def _collect(self, topic: str, group: str, max_messages: int) -> List[Delivery]:
        state = self._group(topic, group)
        partitions = self._partitions_of(topic)
        now = self._clock()
        deliveries: List[Delivery] = []

        for partition, log in enumerate(partitions):
            if len(deliveries) >= max_messages:
                break

            in_flight = state.in_flight.get(partition)
            if in_flight is not None:
                expired = (
                    (in_flight.retry_at is not None and now >= in_flight.retry_at)
                    or now - in_flight.delivered_at >= self.redelivery_timeout
                )
                if not expired:
                    continue
                in_flight.delivery_count += 1
                in_flight.delivered_at = now
                in_flight.retry_at = None
                logger.debug(
                    "Redelivering %s/%s partition %d offset %d (delivery %d)",
                    topic, group, partition, in_flight.offset, in_flight.delivery_count
                )
            else:
                offset = state.offsets[partition]
                if offset >= len(log):
                    continue
                in_flight = _InFlight(offset=offset, delivery_count=1, delivered_at=now)
                state.in_flight[partition] = in_flight

            message = log[in_flight.offset]
            deliveries.append(Delivery(
                topic=topic,
                group=group,
                message_id=message.message_id,
                key=message.key,
                body=message.body,
                headers=dict(message.headers),
                delivery_count=in_flight.delivery_count,
                partition=partition,
            ))

        return deliveries

    def _settle(self, delivery: Delivery) -> bool:
        state = self._group(delivery.topic, delivery.group)
        in_flight = state.in_flight.get(delivery.partition)
        if in_flight is None:
            return False
        message = self._topics[delivery.topic][delivery.partition][in_flight.offset]
        if message.message_id != delivery.message_id:
            return False
        del state.in_flight[delivery.partition]
        state.offsets[delivery.partition] = in_flight.offset + 1
        return True

    async def ack(self, delivery: Delivery) -> None:
        if not self._settle(delivery):
            logger.debug("Ignoring ack for settled message %s", delivery.message_id)

    async def nack(self, delivery: Delivery, delay: float = 0.0) -> None:
        state = self._group(delivery.topic, delivery.group)
        in_flight = state.in_flight.get(delivery.partition)
        if in_flight is not None:
            in_flight.retry_at = self._clock() + delay

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        headers = dict(delivery.headers)
        headers.update({
            "dlq-reason": reason[:500],
            "dlq-group": delivery.group,
            "dlq-source-id": delivery.message_id,
            "dlq-delivery-count": str(delivery.delivery_count),
        })
        partition = partition_for(delivery.key, self.partitions)
        log = self._partitions_of(dead_letter_topic(delivery.topic))[partition]
        log.append(_Message(
            message_id=f"{partition}-{len(log)}",
            key=delivery.key,
            body=delivery.body,
            headers=headers,
        ))
        self._settle(delivery)
        logger.warning(
            "Dead-lettered message %s from %s/%s: %s",
            delivery.message_id, delivery.topic, delivery.group, reason
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def published(self, topic: str) -> List[Delivery]:
        """Recent messages published to a topic (up to history_limit), in publish order."""
        return [
            Delivery(
                topic=t,
                group="",
                message_id=m.message_id,
                key=m.key,
                body=m.body,
                headers=dict(m.headers),
                partition=int(m.message_id.split("-", 1)[0]),
            )
            for t, m in self._published
            if t == topic
        ]

    def dead_letters(self, topic: str) -> List[Delivery]:
        """Messages in the topic's dead-letter channel."""
        partitions = self._topics.get(dead_letter_topic(topic), [])
        return [
            Delivery(
                topic=dead_letter_topic(topic),
                group="",
                message_id=m.message_id,
                key=m.key,
                body=m.body,
                headers=dict(m.headers),
                partition=index,
            )
            for index, log in enumerate(partitions)
            for m in log
        ]

    def lag(self, topic: str, group: str) -> int:
        """Messages not yet acked by the group."""
        state = self._group(topic, group)
        return sum(
            len(log) - state.offsets[partition]
            for partition, log in enumerate(self._partitions_of(topic))
        )
