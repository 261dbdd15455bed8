"""
Outbox Lifecycle Management

Integrates the outbox relay and retention reaper with the FastAPI
application lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..broker.base import MessageBroker
from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter, get_database
from ..inbox.ledger import IdempotencyLedger
from .relay import start_outbox_relay, stop_outbox_relay
from .retention import RetentionReaper
from .store import OutboxStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def outbox_lifespan(
    broker: MessageBroker,
    db: Optional[DatabaseAdapter] = None,
    settings: Optional[OutboxSettings] = None,
):
    """
    Lifespan context manager for the outbox relay.

    Usage in FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(broker):
                yield

    In multi-instance deployments every instance may run the relay; claims
    keep them from publishing the same record twice. Set
    OUTBOX_RELAY_ENABLED=false to run it in a dedicated process instead.
    """
    settings = settings or OutboxSettings()

    if settings.enabled and settings.relay_enabled:
        db = db or await get_database()
        logger.info("Starting outbox relay...")
        relay = await start_outbox_relay(broker, db=db, settings=settings)
        reaper = RetentionReaper(OutboxStore(db, settings), IdempotencyLedger(db))
        await reaper.start()
        try:
            yield relay
        finally:
            logger.info("Stopping outbox relay...")
            await reaper.stop()
            await stop_outbox_relay()
    else:
        reason = []
        if not settings.enabled:
            reason.append("OUTBOX_ENABLED=false")
        if not settings.relay_enabled:
            reason.append("OUTBOX_RELAY_ENABLED=false")
        logger.info(f"Outbox relay disabled: {', '.join(reason)}")
        yield None
