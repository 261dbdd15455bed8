"""
Tests for the outbox relay: ordering, retries, isolation of failing
aggregates and at-least-once delivery.
"""

import asyncio

import pytest
from opentelemetry.sdk.trace import TracerProvider

from orderflow.core.events.envelope import decode_event
from orderflow.core.outbox.lifecycle import outbox_lifespan
from orderflow.core.outbox.models import OutboxStatus
from orderflow.core.outbox.relay import OutboxRelay, get_outbox_relay
from orderflow.core.outbox.runner import OutboxRunner
from orderflow.orders.service import OrderService

TOPIC = "orders.events"


@pytest.fixture
def service(db, store):
    return OrderService(db, store)


def published_events(broker):
    return [decode_event(d.body) for d in broker.published(TOPIC)]


class TestPublishing:
    async def test_publishes_in_sequence_order(self, service, relay, broker, store):
        await service.place_order("cust-1", 1000, order_id="o-1")
        await service.pay("o-1")
        await service.cancel("o-1", "fraud")

        result = await relay.run_until_idle()

        assert result.published == 3
        events = published_events(broker)
        assert [e.sequence for e in events] == [0, 1, 2]
        assert all(d.key == "o-1" for d in broker.published(TOPIC))
        assert (await store.stats())["sent"] == 3

    async def test_headers_identify_event(self, service, relay, broker):
        order = await service.place_order("cust-1", 1000)
        await relay.run_until_idle()

        [delivery] = broker.published(TOPIC)
        assert delivery.headers["aggregate-id"] == order.id
        assert delivery.headers["event-type"] == "OrderCreated"

    async def test_idle_batch(self, relay):
        result = await relay.process_batch()
        assert result.claimed == 0

    async def test_trace_context_carried_from_writer(self, service, relay, broker):
        tracer = TracerProvider().get_tracer("test")
        with tracer.start_as_current_span("POST /api/orders") as span:
            await service.place_order("cust-1", 1000, order_id="o-1")
            trace_id = format(span.get_span_context().trace_id, "032x")

        await relay.run_until_idle()

        [delivery] = broker.published(TOPIC)
        assert trace_id in delivery.headers["traceparent"]


class TestFailures:
    """Test retry, backoff and per-aggregate isolation."""

    async def test_broker_outage_then_recovery(self, service, relay, broker, store, clock):
        await service.place_order("cust-1", 1000, order_id="o-1")
        broker.available = False

        result = await relay.process_batch()
        assert result.failed == 1
        [record] = await store.list_for_aggregate("o-1")
        assert record.status == OutboxStatus.FAILED
        assert record.attempts == 1

        broker.available = True
        assert (await relay.process_batch()).claimed == 0  # still backing off

        clock.advance(2)
        result = await relay.run_until_idle()
        assert result.published == 1
        [record] = await store.list_for_aggregate("o-1")
        assert record.status == OutboxStatus.SENT

    async def test_failing_aggregate_does_not_stall_others(self, service, relay, broker):
        await service.place_order("cust-1", 1000, order_id="a-order")
        await service.place_order("cust-2", 2000, order_id="b-order")
        broker.fail_next(1)

        result = await relay.process_batch()

        assert result.failed == 1
        assert result.published == 1
        assert [d.key for d in broker.published(TOPIC)] == ["b-order"]

    async def test_later_events_wait_for_failed_head(self, service, relay, broker, store, clock):
        await service.place_order("cust-1", 1000, order_id="o-1")
        await service.pay("o-1")
        broker.fail_next(1)

        result = await relay.process_batch()

        assert result.failed == 1
        assert result.released == 1
        assert broker.published(TOPIC) == []
        head, paid = await store.list_for_aggregate("o-1")
        assert paid.status == OutboxStatus.PENDING
        assert paid.attempts == 0
        assert paid.claim_token is None

        clock.advance(2)
        await relay.run_until_idle()
        assert [e.sequence for e in published_events(broker)] == [0, 1]

    async def test_permanent_rejection_goes_dead(self, service, relay, broker, store, clock, settings):
        await service.place_order("cust-1", 1000, order_id="o-1")
        broker.fail_next(settings.max_attempts, permanent=True)

        for _ in range(settings.max_attempts):
            await relay.process_batch()
            clock.advance(settings.backoff_max + 1)

        [record] = await store.list_for_aggregate("o-1")
        assert record.status == OutboxStatus.DEAD
        assert record.last_error.startswith("permanent:")
        assert relay.stats.totals.dead == 1

    async def test_publish_timeout_counts_as_transient(self, service, store, broker, settings):
        class SlowBroker(type(broker)):
            async def publish(self, topic, key, body, headers=None):
                await asyncio.sleep(1)
                return await super().publish(topic, key, body, headers)

        slow = SlowBroker(partitions=4)
        settings.publish_timeout = 0.05
        relay = OutboxRelay(store, slow, settings)
        await service.place_order("cust-1", 1000, order_id="o-1")

        result = await relay.process_batch()

        assert result.failed == 1
        [record] = await store.list_for_aggregate("o-1")
        assert "timed out" in record.last_error


class TestAtLeastOnce:
    async def test_crash_between_publish_and_mark_sent_republishes(
        self, service, relay, broker, store, clock, settings, monkeypatch
    ):
        await service.place_order("cust-1", 1000, order_id="o-1")

        async def crash(record_id, claim_token=None):
            raise RuntimeError("relay died")

        with monkeypatch.context() as patch:
            patch.setattr(store, "mark_sent", crash)
            with pytest.raises(RuntimeError):
                await relay.process_batch()

        assert len(broker.published(TOPIC)) == 1
        # Claim still held: nothing to do until it expires
        assert (await relay.process_batch()).claimed == 0

        clock.advance(settings.visibility_timeout + 1)
        await relay.run_until_idle()

        first, second = published_events(broker)
        assert first.event_id == second.event_id
        [record] = await store.list_for_aggregate("o-1")
        assert record.status == OutboxStatus.SENT


class TestLifecycle:
    async def test_start_and_stop(self, service, relay, broker):
        await service.place_order("cust-1", 1000, order_id="o-1")

        await relay.start()
        assert relay.is_running
        for _ in range(200):
            if broker.published(TOPIC):
                break
            await asyncio.sleep(0.01)
        await relay.stop()

        assert not relay.is_running
        assert len(broker.published(TOPIC)) == 1
        assert relay.stats.to_dict()["published"] == 1

    async def test_outbox_lifespan_runs_relay(self, db, broker, settings):
        async with outbox_lifespan(broker, db=db, settings=settings) as running:
            assert running.is_running
            assert get_outbox_relay() is running
        assert get_outbox_relay() is None

    async def test_outbox_lifespan_disabled(self, db, broker, settings):
        settings.relay_enabled = False
        async with outbox_lifespan(broker, db=db, settings=settings) as running:
            assert running is None

    async def test_runner_health_before_start(self):
        runner = OutboxRunner()
        health = runner.health_check()
        assert health["status"] == "unhealthy"
        assert health["running"] is False
