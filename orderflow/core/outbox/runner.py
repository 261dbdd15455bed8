"""
Outbox Relay Runner

Standalone process running the outbox relay as a background service,
for deployments where the API instances set OUTBOX_RELAY_ENABLED=false.

Usage:
    python -m orderflow.core.outbox.runner

Environment Variables:
    DATABASE_BACKEND / DATABASE_URL / SQLITE_PATH: outbox database
    BROKER_URL: memory:// or redis://host:port/db
    OUTBOX_POLL_INTERVAL, OUTBOX_BATCH_SIZE, OUTBOX_MAX_ATTEMPTS, ...
    LOG_LEVEL: Logging level (default: INFO)
    OTEL_EXPORTER_OTLP_ENDPOINT: enables trace and metric export
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from ..broker.factory import create_broker, warn_if_process_local
from ..config import BrokerSettings, OutboxSettings
from ..database.adapter import DatabaseAdapter, set_database
from ..inbox.ledger import IdempotencyLedger
from ..observability import configure_logging, init_metrics, init_tracing
from .relay import OutboxRelay
from .retention import RetentionReaper
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the outbox relay lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        settings: Optional[OutboxSettings] = None,
        broker_settings: Optional[BrokerSettings] = None,
    ):
        self.settings = settings or OutboxSettings()
        self.broker_settings = broker_settings or BrokerSettings()
        self.relay: Optional[OutboxRelay] = None
        warn_if_process_local(self.broker_settings, "Outbox relay runner")
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the relay until shutdown is requested."""
        logger.info("Starting Outbox Relay Runner")
        logger.info(f"  Topic: {self.settings.topic}")
        logger.info(f"  Poll interval: {self.settings.poll_interval}s")
        logger.info(f"  Batch size: {self.settings.batch_size}")
        logger.info(f"  Max attempts: {self.settings.max_attempts}")

        self._setup_signal_handlers()

        db = DatabaseAdapter()
        await db.connect()
        set_database(db)
        broker = create_broker(self.broker_settings)
        await broker.connect()

        store = OutboxStore(db, self.settings)
        self.relay = OutboxRelay(store, broker, self.settings)
        reaper = RetentionReaper(store, IdempotencyLedger(db))

        try:
            await self.relay.start()
            await reaper.start()
            logger.info("Outbox Relay is running")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox Relay error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping Outbox Relay")
            await reaper.stop()
            await self.relay.stop()
            await broker.close()
            await db.disconnect()
            set_database(None)
            logger.info("Outbox Relay stopped")

    def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = self.relay.is_running if self.relay else False
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "shutdown_requested": self._shutdown_requested,
            "stats": self.relay.stats.to_dict() if self.relay else {},
        }


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name="orderflow-relay",
    )
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        init_tracing("orderflow-relay", otlp_endpoint=endpoint)
        init_metrics("orderflow-relay", otlp_endpoint=endpoint)

    runner = OutboxRunner()
    await runner.run()


def cli():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
