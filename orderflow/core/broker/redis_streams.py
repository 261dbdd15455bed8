"""
Redis Streams Broker

Durable broker backed by Redis Streams and consumer groups.

A topic is spread over one stream per partition (``<topic>:<n>``) and the
message key picks the stream. XADD returning an id is the publish
acknowledgement. Consumers read with XREADGROUP and settle with XACK.

Per-key order is kept by reading a partition only while the group has
nothing pending on it: a message that failed stays pending and blocks its
partition until it is redelivered (after the idle timeout, or once its
nack delay passes in this process) and settled.

Within a group each partition stream is read by one consumer at a time.
A consumer holds a lease key per partition, renewed on every fetch and
lapsing after redelivery_timeout, so workers sharing a group split the
partitions between them.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..errors import PermanentPublishFailure, TransientPublishFailure
from .base import Delivery, MessageBroker, dead_letter_topic, partition_for

logger = logging.getLogger(__name__)


class RedisStreamsBroker(MessageBroker):
    """
    Usage:
        broker = RedisStreamsBroker("redis://localhost:6379/0", partitions=8)
        await broker.connect()
        await broker.publish("orders.events", order_id, body, headers)

    Pass `client` to reuse an existing redis.asyncio client (tests use
    fakeredis this way).
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        partitions: int = 8,
        redelivery_timeout: float = 30.0,
        max_stream_length: int = 100_000,
        client: Optional[aioredis.Redis] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = client
        self._owns_client = client is None
        self.partitions = partitions
        self.redelivery_timeout = redelivery_timeout
        self._max_len = max_stream_length
        self._groups: Set[Tuple[str, str]] = set()
        self._clock = clock or time.monotonic
        # (topic, group, message_id) -> clock time the nacked entry may be retried
        self._nacked: Dict[Tuple[str, str, str], float] = {}
        self._leases: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("Connected to Redis broker: %s", self._redis_url)

    async def close(self) -> None:
        if self._redis is not None and self._leases:
            await self.release_leases()
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis broker")

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except RedisError:
            logger.warning("Redis broker ping failed", exc_info=True)
            return False

    @property
    def client(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisStreamsBroker not connected")
        return self._redis

    def stream_name(self, topic: str, partition: int) -> str:
        return f"{topic}:{partition}"

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        topic: str,
        key: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        stream = self.stream_name(topic, partition_for(key, self.partitions))
        fields = {
            "key": key,
            "body": body.decode("utf-8"),
            "headers": json.dumps(headers or {}),
        }
        try:
            return await self.client.xadd(stream, fields, maxlen=self._max_len, approximate=True)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientPublishFailure(f"Redis unavailable: {e}", cause=e) from e
        except ResponseError as e:
            raise PermanentPublishFailure(f"Redis rejected message: {e}", cause=e) from e
        except RedisError as e:
            raise TransientPublishFailure(f"Redis publish failed: {e}", cause=e) from e

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def ensure_group(self, topic: str, group: str) -> None:
        """Create consumer group on every partition stream, ignoring BUSYGROUP."""
        if (topic, group) in self._groups:
            return
        for partition in range(self.partitions):
            try:
                await self.client.xgroup_create(
                    self.stream_name(topic, partition), group, id="0", mkstream=True,
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
        self._groups.add((topic, group))

    async def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        max_messages: int = 10,
        block_ms: int = 0,
    ) -> List[Delivery]:
        await self.ensure_group(topic, group)

        deliveries: List[Delivery] = []
        free: Dict[str, str] = {}
        idle_ms = int(self.redelivery_timeout * 1000)
        now = self._clock()

        for partition in range(self.partitions):
            stream = self.stream_name(topic, partition)
            if not await self._hold_lease(stream, group, consumer):
                continue

            pending = await self.client.xpending_range(stream, group, min="-", max="+", count=1)
            if not pending:
                free[stream] = ">"
                continue
            if len(deliveries) >= max_messages:
                continue

            entry = pending[0]
            message_id = entry["message_id"]
            retry_at = self._nacked.get((topic, group, message_id))
            nacked = retry_at is not None and now >= retry_at
            if not nacked and entry["time_since_delivered"] < idle_ms:
                continue

            claimed = await self.client.xclaim(
                stream, group, consumer,
                min_idle_time=0 if nacked else idle_ms,
                message_ids=[message_id],
            )
            self._nacked.pop((topic, group, message_id), None)
            for claimed_id, fields in claimed:
                if fields is None:
                    continue
                deliveries.append(self._to_delivery(
                    topic, group, partition, claimed_id, fields, entry["times_delivered"] + 1
                ))

        room = max_messages - len(deliveries)
        if free and room > 0:
            block = block_ms if (block_ms > 0 and not deliveries) else None
            response = await self.client.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams=free,
                count=1,
                block=block,
            )
            for stream, messages in response or []:
                partition = int(stream.rsplit(":", 1)[1])
                for message_id, fields in messages:
                    if len(deliveries) >= max_messages:
                        # Stays pending; redelivered once idle
                        break
                    deliveries.append(self._to_delivery(topic, group, partition, message_id, fields, 1))

        return deliveries

    def lease_key(self, stream: str, group: str) -> str:
        return f"{stream}:lease:{group}"

    async def _hold_lease(self, stream: str, group: str, consumer: str) -> bool:
        """
        Take or renew this consumer's lease on a partition stream.

        Only the lease holder reads a partition, so the pending check and the
        group read below it cannot interleave with another worker's. The
        lease lapses after redelivery_timeout without a fetch, letting another
        worker take over the partition of one that died.
        """
        key = self.lease_key(stream, group)
        ttl_ms = max(1, int(self.redelivery_timeout * 1000))
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                owner = await pipe.get(key)
                if owner is not None and owner != consumer:
                    return False
                pipe.multi()
                pipe.set(key, consumer, px=ttl_ms)
                await pipe.execute()
            except WatchError:
                return False
        self._leases.add((key, consumer))
        return True

    async def release_leases(self) -> None:
        """Give up every partition lease taken through this broker."""
        for key, consumer in list(self._leases):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) == consumer:
                        pipe.multi()
                        pipe.delete(key)
                        await pipe.execute()
                except WatchError:
                    logger.debug("Lease %s changed hands while releasing", key)
            self._leases.discard((key, consumer))

    def _to_delivery(
        self,
        topic: str,
        group: str,
        partition: int,
        message_id: str,
        fields: Dict[str, Any],
        delivery_count: int,
    ) -> Delivery:
        headers = fields.get("headers") or "{}"
        return Delivery(
            topic=topic,
            group=group,
            message_id=message_id,
            key=fields.get("key", ""),
            body=fields.get("body", "").encode("utf-8"),
            headers=json.loads(headers),
            delivery_count=delivery_count,
            partition=partition,
        )

    async def ack(self, delivery: Delivery) -> None:
        await self.client.xack(
            self.stream_name(delivery.topic, delivery.partition),
            delivery.group,
            delivery.message_id,
        )

    async def nack(self, delivery: Delivery, delay: float = 0.0) -> None:
        # The entry stays pending; this process claims it again once the delay passed
        self._nacked[(delivery.topic, delivery.group, delivery.message_id)] = self._clock() + delay

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        await self.client.xadd(
            dead_letter_topic(delivery.topic),
            {
                "key": delivery.key,
                "body": delivery.body.decode("utf-8", errors="replace"),
                "headers": json.dumps(delivery.headers),
                "reason": reason[:500],
                "group": delivery.group,
                "source_id": delivery.message_id,
                "delivery_count": str(delivery.delivery_count),
            },
            maxlen=self._max_len,
            approximate=True,
        )
        await self.ack(delivery)
        logger.warning(
            "Dead-lettered message %s from %s/%s: %s",
            delivery.message_id, delivery.topic, delivery.group, reason
        )

    async def dead_letters(self, topic: str, count: int = 100) -> List[Dict[str, Any]]:
        """Entries in the topic's dead-letter stream, oldest first."""
        entries = await self.client.xrange(dead_letter_topic(topic), count=count)
        return [dict(fields, id=message_id) for message_id, fields in entries]
