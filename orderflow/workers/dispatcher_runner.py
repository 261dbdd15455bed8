#!/usr/bin/env python3
"""
Dispatcher Runner

Runs one order consumer against the events topic until SIGTERM/SIGINT.
Run one process per consumer; several processes of the same consumer
share its consumer group, and each partition is read by one of them at a
time. Separate processes need a shared broker (BROKER_URL=redis://...).

Usage:
    python -m orderflow.workers.dispatcher_runner --consumer confirmation
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from ..core.broker.factory import create_broker, warn_if_process_local
from ..core.config import BrokerSettings, DispatcherSettings, OutboxSettings
from ..core.database.adapter import DatabaseAdapter, set_database
from ..core.inbox.consumer import EventConsumer
from ..core.inbox.dispatcher import Dispatcher
from ..core.observability import configure_logging, init_metrics, init_tracing
from ..orders.handlers import CONSUMERS

logger = logging.getLogger(__name__)


class DispatcherRunner:
    """Manages one dispatcher with graceful shutdown."""

    def __init__(
        self,
        consumer: EventConsumer,
        worker_name: Optional[str] = None,
        settings: Optional[DispatcherSettings] = None,
        broker_settings: Optional[BrokerSettings] = None,
    ):
        self.consumer = consumer
        self.worker_name = worker_name
        self.settings = settings or DispatcherSettings()
        self.broker_settings = broker_settings or BrokerSettings()
        self.dispatcher: Optional[Dispatcher] = None
        warn_if_process_local(self.broker_settings, f"Dispatcher {consumer.name}")
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, finishing in-flight delivery")
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        self._setup_signal_handlers()

        db = DatabaseAdapter()
        await db.connect()
        set_database(db)
        broker = create_broker(self.broker_settings)
        await broker.connect()

        self.dispatcher = Dispatcher(
            db,
            broker,
            self.consumer,
            topic=OutboxSettings().topic,
            settings=self.settings,
            worker_name=self.worker_name,
        )
        try:
            await self.dispatcher.start()
            await self._shutdown_event.wait()
        finally:
            await self.dispatcher.stop()
            await broker.close()
            await db.disconnect()
            set_database(None)


def main() -> int:
    parser = argparse.ArgumentParser(description="Orderflow event dispatcher")
    parser.add_argument("--consumer", required=True, choices=sorted(CONSUMERS))
    parser.add_argument("--worker-name", default=os.getenv("DISPATCH_WORKER_NAME", ""))
    args = parser.parse_args()

    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name=f"orderflow-{args.consumer}",
    )
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        init_tracing(f"orderflow-{args.consumer}", otlp_endpoint=endpoint)
        init_metrics(f"orderflow-{args.consumer}", otlp_endpoint=endpoint)

    runner = DispatcherRunner(CONSUMERS[args.consumer], worker_name=args.worker_name or None)
    asyncio.run(runner.run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
