"""
Retention Reaper

Periodically deletes sent outbox records past their audit window and
idempotency ledger entries past the ledger horizon. The ledger horizon
must exceed the broker's redelivery window, otherwise a late redelivery
would be applied a second time.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from ..config import DispatcherSettings
from ..inbox.ledger import IdempotencyLedger
from ..observability.tracing import add_event_to_span, traced
from .store import OutboxStore

logger = logging.getLogger(__name__)


class RetentionReaper:
    """Purges expired outbox and ledger rows on an interval."""

    def __init__(
        self,
        store: OutboxStore,
        ledger: Optional[IdempotencyLedger] = None,
        dispatcher_settings: Optional[DispatcherSettings] = None,
        interval: float = 3600.0,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher_settings = dispatcher_settings or DispatcherSettings()
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @traced("outbox.retention.purge")
    async def run_once(self) -> Dict[str, int]:
        now = self.store.now()
        purged = {
            "outbox": await self.store.purge_sent(
                now - timedelta(hours=self.store.settings.retention_hours)
            ),
            "ledger": 0,
        }
        if self.ledger is not None:
            purged["ledger"] = await self.ledger.purge_older_than(
                now - timedelta(hours=self.dispatcher_settings.ledger_retention_hours)
            )
        add_event_to_span("outbox.retention.purged", purged)
        return purged

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="retention-reaper")
            logger.info("RetentionReaper started (interval %.0fs)", self.interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("RetentionReaper stopped")

    async def _run(self):
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"RetentionReaper error: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
