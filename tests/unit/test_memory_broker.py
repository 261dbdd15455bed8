"""
Tests for the in-memory broker.
"""

import pytest

from orderflow.core.broker.base import dead_letter_topic, partition_for
from orderflow.core.broker.memory import InMemoryBroker
from orderflow.core.errors import PermanentPublishFailure, TransientPublishFailure

TOPIC = "orders.events"


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def broker(clock):
    return InMemoryBroker(partitions=4, redelivery_timeout=10, clock=clock)


class TestPartitioning:
    def test_same_key_same_partition(self):
        assert partition_for("order-1", 8) == partition_for("order-1", 8)
        assert 0 <= partition_for("order-1", 8) < 8

    def test_dead_letter_topic(self):
        assert dead_letter_topic(TOPIC) == "orders.events.dlq"


class TestPublish:
    async def test_publish_returns_id(self, broker):
        message_id = await broker.publish(TOPIC, "k1", b"body", {"h": "v"})
        assert message_id
        [published] = broker.published(TOPIC)
        assert published.body == b"body"
        assert published.headers == {"h": "v"}

    async def test_unavailable_raises_transient(self, broker):
        broker.available = False
        with pytest.raises(TransientPublishFailure):
            await broker.publish(TOPIC, "k1", b"body")
        assert not await broker.ping()

    async def test_fail_next(self, broker):
        broker.fail_next(1)
        broker.fail_next(1, permanent=True)
        with pytest.raises(TransientPublishFailure):
            await broker.publish(TOPIC, "k1", b"a")
        with pytest.raises(PermanentPublishFailure):
            await broker.publish(TOPIC, "k1", b"b")
        await broker.publish(TOPIC, "k1", b"c")
        assert [m.body for m in broker.published(TOPIC)] == [b"c"]


class TestConsume:
    """Test consumer groups, ordering and redelivery."""

    async def test_one_in_flight_per_partition(self, broker):
        await broker.publish(TOPIC, "k1", b"1")
        await broker.publish(TOPIC, "k1", b"2")

        first = await broker.fetch(TOPIC, "g", "c1")
        assert [d.body for d in first] == [b"1"]
        # Nothing more for k1 until the first one is settled
        assert await broker.fetch(TOPIC, "g", "c1") == []

        await broker.ack(first[0])
        second = await broker.fetch(TOPIC, "g", "c1")
        assert [d.body for d in second] == [b"2"]

    async def test_groups_are_independent(self, broker):
        await broker.publish(TOPIC, "k1", b"1")
        a = await broker.fetch(TOPIC, "a", "c")
        b = await broker.fetch(TOPIC, "b", "c")
        assert len(a) == len(b) == 1

    async def test_nack_redelivers_immediately(self, broker):
        await broker.publish(TOPIC, "k1", b"1")
        [delivery] = await broker.fetch(TOPIC, "g", "c")
        await broker.nack(delivery)

        [again] = await broker.fetch(TOPIC, "g", "c")
        assert again.message_id == delivery.message_id
        assert again.delivery_count == 2
        assert again.is_redelivery

    async def test_nack_with_delay_holds_message_back(self, broker, clock):
        await broker.publish(TOPIC, "k1", b"1")
        [delivery] = await broker.fetch(TOPIC, "g", "c")
        await broker.nack(delivery, delay=2)

        clock.now += 1
        assert await broker.fetch(TOPIC, "g", "c") == []

        clock.now += 1
        [again] = await broker.fetch(TOPIC, "g", "c")
        assert again.delivery_count == 2

    async def test_publish_history_is_bounded(self, clock):
        broker = InMemoryBroker(partitions=2, clock=clock, history_limit=3)
        for n in range(5):
            await broker.publish(TOPIC, f"k{n}", str(n).encode())

        assert [d.body for d in broker.published(TOPIC)] == [b"2", b"3", b"4"]
        assert broker.lag(TOPIC, "g") == 5

    async def test_unacked_redelivered_after_timeout(self, broker, clock):
        await broker.publish(TOPIC, "k1", b"1")
        await broker.fetch(TOPIC, "g", "c")

        clock.now += 5
        assert await broker.fetch(TOPIC, "g", "c") == []

        clock.now += 6
        [again] = await broker.fetch(TOPIC, "g", "c")
        assert again.delivery_count == 2

    async def test_dead_letter_settles_and_copies(self, broker):
        await broker.publish(TOPIC, "k1", b"1")
        await broker.publish(TOPIC, "k1", b"2")
        [delivery] = await broker.fetch(TOPIC, "g", "c")

        await broker.dead_letter(delivery, "bad payload")

        [dead] = broker.dead_letters(TOPIC)
        assert dead.body == b"1"
        assert dead.headers["dlq-reason"] == "bad payload"
        assert dead.headers["dlq-group"] == "g"
        [nxt] = await broker.fetch(TOPIC, "g", "c")
        assert nxt.body == b"2"

    async def test_lag(self, broker):
        await broker.ensure_group(TOPIC, "g")
        await broker.publish(TOPIC, "k1", b"1")
        await broker.publish(TOPIC, "k2", b"2")
        assert broker.lag(TOPIC, "g") == 2

        for delivery in await broker.fetch(TOPIC, "g", "c"):
            await broker.ack(delivery)
        assert broker.lag(TOPIC, "g") == 0

    async def test_ack_of_settled_message_is_ignored(self, broker):
        await broker.publish(TOPIC, "k1", b"1")
        [delivery] = await broker.fetch(TOPIC, "g", "c")
        await broker.ack(delivery)
        await broker.ack(delivery)
        assert broker.lag(TOPIC, "g") == 0

    async def test_blocking_fetch_times_out(self, broker):
        assert await broker.fetch(TOPIC, "g", "c", block_ms=10) == []
