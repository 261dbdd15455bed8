"""
Tests for dead outbox record management and retention.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from orderflow.core.events.models import DomainEvent
from orderflow.core.observability import tracing
from orderflow.core.inbox.ledger import IdempotencyLedger
from orderflow.core.outbox.dlq import DLQManager
from orderflow.core.outbox.models import OutboxStatus
from orderflow.core.outbox.retention import RetentionReaper


async def append(db, store, aggregate_id, sequence):
    event = DomainEvent(aggregate_id=aggregate_id, type="OrderCreated", sequence=sequence)
    async with db.transaction() as session:
        return await store.append(session, event)


async def kill(store, clock, settings):
    """Fail the head record until it goes dead."""
    for _ in range(settings.max_attempts):
        [record, *rest] = await store.fetch_pending()
        for other in rest:
            await store.release(other.id, other.claim_token)
        await store.mark_failed(record.id, "permanent: rejected", record.claim_token)
        clock.advance(settings.backoff_max + 1)
    return record


@pytest.fixture
def manager(db, clock):
    return DLQManager(db, clock=clock)


class TestDLQManager:
    async def test_entries_and_stats(self, db, store, clock, settings, manager):
        await append(db, store, "a", 0)
        dead = await kill(store, clock, settings)

        [entry] = await manager.get_entries()
        assert entry.id == dead.id
        assert entry.attempts == settings.max_attempts
        assert entry.last_error == "permanent: rejected"
        assert entry.to_dict()["event_type"] == "OrderCreated"
        assert await manager.get_count() == 1
        assert await manager.get_count("other") == 0

        stats = await manager.get_stats()
        assert stats["total_count"] == 1
        assert stats["by_event_type"] == {"OrderCreated": 1}

    async def test_retry_resets_record(self, db, store, clock, settings, manager):
        await append(db, store, "a", 0)
        dead = await kill(store, clock, settings)

        assert await manager.retry_entry(dead.id, operator_id="ops-1")

        record = await store.get(dead.id)
        assert record.status == OutboxStatus.PENDING
        assert record.attempts == 0
        assert record.event.event_id == dead.event.event_id
        assert len(await store.fetch_pending()) == 1

    async def test_purge_unblocks_aggregate(self, db, store, clock, settings, manager):
        await append(db, store, "a", 0)
        dead = await kill(store, clock, settings)
        await append(db, store, "a", 1)
        assert await store.fetch_pending() == []

        assert await manager.purge_entry(dead.id)

        [record] = await store.fetch_pending()
        assert record.sequence == 1

    async def test_retry_all(self, db, store, clock, settings, manager):
        await append(db, store, "a", 0)
        await kill(store, clock, settings)
        await append(db, store, "b", 0)
        await kill(store, clock, settings)

        assert await manager.retry_all(aggregate_id="a") == 1
        assert await manager.retry_all() == 1
        assert await manager.get_count() == 0

    async def test_unknown_entry(self, manager):
        assert not await manager.retry_entry(uuid4())
        assert not await manager.purge_entry(uuid4())

    async def test_pending_record_is_not_retryable(self, db, store, manager):
        record = await append(db, store, "a", 0)
        assert not await manager.retry_entry(record.id)


class TestRetention:
    async def test_reaper_purges_old_rows(self, db, store, clock, settings):
        record = await append(db, store, "a", 0)
        [claimed] = await store.fetch_pending()
        await store.mark_sent(claimed.id, claimed.claim_token)
        clock.advance(settings.retention_hours * 3600 + 60)

        reaper = RetentionReaper(store, IdempotencyLedger(db))
        purged = await reaper.run_once()

        assert purged["outbox"] == 1
        assert await store.get(record.id) is None

    async def test_ledger_purge(self, db):
        ledger = IdempotencyLedger(db)
        async with db.transaction() as session:
            await ledger.record_applied(session, "c", uuid4(), "OrderPaid")

        assert await ledger.purge_older_than(datetime.now(timezone.utc) - timedelta(days=1)) == 0
        assert await ledger.purge_older_than(datetime.now(timezone.utc) + timedelta(days=1)) == 1
        assert await ledger.count() == 0

    async def test_purge_is_traced(self, db, store, clock, settings, monkeypatch):
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        monkeypatch.setattr(tracing, "_tracer", provider.get_tracer("test"))

        await append(db, store, "a", 0)
        [claimed] = await store.fetch_pending()
        await store.mark_sent(claimed.id, claimed.claim_token)
        clock.advance(settings.retention_hours * 3600 + 60)

        await RetentionReaper(store, IdempotencyLedger(db)).run_once()

        [span] = [s for s in exporter.get_finished_spans() if s.name == "outbox.retention.purge"]
        assert span.attributes["function.name"] == "run_once"
        [event] = [e for e in span.events if e.name == "outbox.retention.purged"]
        assert event.attributes["outbox"] == 1
        assert event.attributes["ledger"] == 0
