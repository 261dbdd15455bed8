"""
Shared Test Fixtures

Every test gets its own SQLite database file, an outbox store and an
in-memory broker driven by a controllable clock.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.core.broker.memory import InMemoryBroker
from orderflow.core.config import DispatcherSettings, OutboxSettings
from orderflow.core.database import DatabaseAdapter, DatabaseConfig, ensure_schema, set_database
from orderflow.core.outbox.relay import OutboxRelay
from orderflow.core.outbox.store import OutboxStore


class FakeClock:
    """Wall clock for the outbox store plus a monotonic view for the broker."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._origin = self.current

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self._origin).total_seconds()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    """SQLite database with the full schema, installed as the global adapter."""
    adapter = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "orderflow.db")))
    await adapter.connect()
    await ensure_schema(adapter)
    set_database(adapter)
    yield adapter
    set_database(None)
    await adapter.disconnect()


@pytest.fixture
def settings():
    return OutboxSettings(
        topic="orders.events",
        batch_size=100,
        poll_interval=0.01,
        visibility_timeout=30,
        publish_timeout=5,
        max_attempts=3,
        backoff_base=1.0,
        backoff_max=60,
        shutdown_grace=1,
    )


@pytest.fixture
def dispatcher_settings():
    return DispatcherSettings(max_deliveries=3, batch_size=10, block_ms=10, retry_base=0, shutdown_grace=1)


@pytest.fixture
def store(db, settings, clock):
    return OutboxStore(db, settings, clock=clock, rng=random.Random(7))


@pytest.fixture
def broker(clock):
    return InMemoryBroker(partitions=4, redelivery_timeout=30, clock=clock.monotonic)


@pytest.fixture
def relay(store, broker, settings):
    return OutboxRelay(store, broker, settings)
