"""
Tests for the Redis Streams broker against fakeredis.
"""

import asyncio

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from orderflow.core.broker.redis_streams import RedisStreamsBroker
from orderflow.core.errors import PermanentPublishFailure, TransientPublishFailure

TOPIC = "orders.events"
GROUP = "order-confirmation"


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def broker(redis_client):
    broker = RedisStreamsBroker(partitions=2, redelivery_timeout=30, client=redis_client)
    await broker.connect()
    await broker.ensure_group(TOPIC, GROUP)
    return broker


class TestPublish:
    async def test_publish_appends_to_partition_stream(self, broker, redis_client):
        message_id = await broker.publish(TOPIC, "o-1", b'{"a": 1}', {"event-id": "e-1"})
        assert message_id

        lengths = [await redis_client.xlen(broker.stream_name(TOPIC, p)) for p in range(2)]
        assert sorted(lengths) == [0, 1]

    async def test_ping(self, broker):
        assert await broker.ping()

    async def test_connection_error_is_transient(self, broker, monkeypatch):
        async def down(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(broker.client, "xadd", down)
        with pytest.raises(TransientPublishFailure):
            await broker.publish(TOPIC, "o-1", b"{}")

    async def test_rejection_is_permanent(self, broker, monkeypatch):
        async def rejected(*args, **kwargs):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

        monkeypatch.setattr(broker.client, "xadd", rejected)
        with pytest.raises(PermanentPublishFailure):
            await broker.publish(TOPIC, "o-1", b"{}")


class TestConsume:
    """Test group reads, per-key ordering and settlement."""

    async def test_fetch_and_ack(self, broker):
        await broker.publish(TOPIC, "o-1", b'{"n": 1}', {"event-id": "e-1"})

        [delivery] = await broker.fetch(TOPIC, GROUP, "w-1")
        assert delivery.key == "o-1"
        assert delivery.body == b'{"n": 1}'
        assert delivery.headers == {"event-id": "e-1"}
        assert delivery.delivery_count == 1

        await broker.ack(delivery)
        assert await broker.fetch(TOPIC, GROUP, "w-1") == []

    async def test_pending_message_blocks_its_partition(self, broker):
        await broker.publish(TOPIC, "o-1", b"1")
        await broker.publish(TOPIC, "o-1", b"2")

        [first] = await broker.fetch(TOPIC, GROUP, "w-1")
        assert first.body == b"1"
        assert await broker.fetch(TOPIC, GROUP, "w-1") == []

        await broker.ack(first)
        [second] = await broker.fetch(TOPIC, GROUP, "w-1")
        assert second.body == b"2"

    async def test_nack_redelivers(self, broker):
        await broker.publish(TOPIC, "o-1", b"1")
        [delivery] = await broker.fetch(TOPIC, GROUP, "w-1")

        await broker.nack(delivery)
        [again] = await broker.fetch(TOPIC, GROUP, "w-1")

        assert again.message_id == delivery.message_id
        assert again.delivery_count == 2

    async def test_idle_message_redelivered(self, redis_client):
        broker = RedisStreamsBroker(partitions=1, redelivery_timeout=0.05, client=redis_client)
        await broker.publish(TOPIC, "o-1", b"1")
        await broker.fetch(TOPIC, GROUP, "w-1")

        await asyncio.sleep(0.1)
        [again] = await broker.fetch(TOPIC, GROUP, "w-2")
        assert again.body == b"1"
        assert again.is_redelivery

    async def test_dead_letter(self, broker):
        await broker.publish(TOPIC, "o-1", b"1")
        [delivery] = await broker.fetch(TOPIC, GROUP, "w-1")

        await broker.dead_letter(delivery, "business: no customer")

        [dead] = await broker.dead_letters(TOPIC)
        assert dead["reason"] == "business: no customer"
        assert dead["source_id"] == delivery.message_id
        assert await broker.fetch(TOPIC, GROUP, "w-1") == []

    async def test_ensure_group_is_idempotent(self, broker, redis_client):
        other = RedisStreamsBroker(partitions=2, client=redis_client)
        await other.ensure_group(TOPIC, GROUP)
        await other.ensure_group(TOPIC, GROUP)

    async def test_nack_delay_holds_entry_back(self, redis_client):
        now = [0.0]
        broker = RedisStreamsBroker(partitions=1, redelivery_timeout=30, client=redis_client, clock=lambda: now[0])
        await broker.publish(TOPIC, "o-1", b"1")
        [delivery] = await broker.fetch(TOPIC, GROUP, "w-1")

        await broker.nack(delivery, delay=2)
        assert await broker.fetch(TOPIC, GROUP, "w-1") == []

        now[0] = 2.0
        [again] = await broker.fetch(TOPIC, GROUP, "w-1")
        assert again.message_id == delivery.message_id
        assert again.delivery_count == 2


class TestPartitionLeases:
    """Test that workers sharing a group never hold two messages of one key."""

    async def test_concurrent_workers_split_a_partition(self, redis_client, monkeypatch):
        first = RedisStreamsBroker(partitions=1, client=redis_client)
        second = RedisStreamsBroker(partitions=1, client=redis_client)
        await first.publish(TOPIC, "o-1", b"seq0")
        await first.publish(TOPIC, "o-1", b"seq1")

        xpending_range = redis_client.xpending_range

        async def slow_xpending_range(*args, **kwargs):
            # Round trip to a real server
            await asyncio.sleep(0.01)
            return await xpending_range(*args, **kwargs)

        monkeypatch.setattr(redis_client, "xpending_range", slow_xpending_range)

        a, b = await asyncio.gather(
            first.fetch(TOPIC, GROUP, "worker-a"),
            second.fetch(TOPIC, GROUP, "worker-b"),
        )

        assert len(a) + len(b) == 1
        assert (a + b)[0].body == b"seq0"

    async def test_lease_holder_keeps_the_partition(self, redis_client):
        first = RedisStreamsBroker(partitions=1, client=redis_client)
        second = RedisStreamsBroker(partitions=1, client=redis_client)
        await first.publish(TOPIC, "o-1", b"seq0")
        await first.publish(TOPIC, "o-1", b"seq1")

        [head] = await first.fetch(TOPIC, GROUP, "worker-a")
        await first.ack(head)

        assert await second.fetch(TOPIC, GROUP, "worker-b") == []
        [nxt] = await first.fetch(TOPIC, GROUP, "worker-a")
        assert nxt.body == b"seq1"

    async def test_released_lease_hands_partition_over(self, redis_client):
        first = RedisStreamsBroker(partitions=1, client=redis_client)
        second = RedisStreamsBroker(partitions=1, client=redis_client)
        await first.publish(TOPIC, "o-1", b"seq0")
        await first.publish(TOPIC, "o-1", b"seq1")

        [head] = await first.fetch(TOPIC, GROUP, "worker-a")
        await first.ack(head)
        await first.close()

        [nxt] = await second.fetch(TOPIC, GROUP, "worker-b")
        assert nxt.body == b"seq1"
        assert await redis_client.get(second.lease_key(second.stream_name(TOPIC, 0), GROUP)) == "worker-b"
