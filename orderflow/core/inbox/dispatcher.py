"""
Dispatcher

Consumer runtime: pulls deliveries from the broker and applies each event
to one consumer at most once, despite at-least-once delivery.

For every delivery:

    decode -> ledger lookup -> already applied: ack
                            -> new: BEGIN
                                      record (consumer, event_id) in the ledger
                                      run the handler with the session
                                    COMMIT
                                    ack

The broker is only acked after the commit. A crash in between redelivers
the message and the ledger absorbs it.
"""

import asyncio
import logging
import socket
import time
from collections import Counter
from enum import Enum
from typing import Dict, List, Optional

from opentelemetry import trace

from ..broker.base import Delivery, MessageBroker
from ..config import DispatcherSettings, OutboxSettings
from ..database.adapter import DatabaseAdapter
from ..errors import DuplicateDeliveryDetected, HandlerBusinessFailure, MalformedMessage
from ..events.envelope import decode_event
from ..events.models import DomainEvent
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import add_event_to_span, create_span, extract_trace_context
from ..outbox.backoff import compute_backoff
from .consumer import EventConsumer
from .ledger import IdempotencyLedger

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """How a delivery was settled."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # Already in the ledger, acked without side effects
    IGNORED = "ignored"  # Consumer has no handler for the event type
    RETRY = "retry"  # Handler failed, left for redelivery
    DEAD_LETTERED = "dead_lettered"
    MALFORMED = "malformed"  # Undecodable, dead-lettered


class Dispatcher:
    """
    Runs one consumer against one topic.

    Usage:
        dispatcher = Dispatcher(db, broker, confirmation_consumer)
        await dispatcher.start()
        ...
        await dispatcher.stop()

    Tests drive it directly with poll_once() or handle(delivery).
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        broker: MessageBroker,
        consumer: EventConsumer,
        topic: Optional[str] = None,
        settings: Optional[DispatcherSettings] = None,
        worker_name: Optional[str] = None,
    ):
        self.db = db
        self.broker = broker
        self.consumer = consumer
        self.topic = topic or OutboxSettings().topic
        self.settings = settings or DispatcherSettings()
        self.worker_name = worker_name or f"{consumer.name}-{socket.gethostname()}"
        self.ledger = IdempotencyLedger(db)
        self.stats: Counter = Counter()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the dispatch loop."""
        if self._running:
            return

        await self.broker.ensure_group(self.topic, self.consumer.name)
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"dispatcher-{self.consumer.name}")
        logger.info(
            "Dispatcher started: consumer=%s topic=%s worker=%s",
            self.consumer.name, self.topic, self.worker_name
        )

    async def stop(self):
        """Stop the loop, letting the in-flight delivery finish within the grace period."""
        if not self._running:
            return
        self._running = False

        if self._task:
            done, _ = await asyncio.wait({self._task}, timeout=self.settings.shutdown_grace)
            if not done:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("Dispatcher stopped: consumer=%s stats=%s", self.consumer.name, dict(self.stats))

    async def _run(self):
        """Main dispatch loop."""
        while self._running:
            try:
                await self.poll_once(block_ms=self.settings.block_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Dispatcher {self.consumer.name} error: {e}", exc_info=True)
                await asyncio.sleep(self.settings.block_ms / 1000)

    # ------------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------------

    async def poll_once(self, block_ms: int = 0) -> List[DispatchOutcome]:
        """Fetch one batch of deliveries and settle each of them."""
        deliveries = await self.broker.fetch(
            self.topic,
            self.consumer.name,
            self.worker_name,
            max_messages=self.settings.batch_size,
            block_ms=block_ms,
        )
        outcomes = []
        for delivery in deliveries:
            try:
                outcomes.append(await self.handle(delivery))
            except Exception as e:
                # Not acked, so the broker redelivers it
                self.stats["errors"] += 1
                logger.error(
                    f"Dispatcher {self.consumer.name} failed to settle message {delivery.message_id}: {e}",
                    exc_info=True
                )
        return outcomes

    async def run_until_idle(self, max_rounds: int = 100) -> List[DispatchOutcome]:
        """Poll until the broker has nothing to deliver (tests and tooling)."""
        outcomes: List[DispatchOutcome] = []
        for _ in range(max_rounds):
            batch = await self.poll_once()
            if not batch:
                break
            outcomes.extend(batch)
        return outcomes

    async def handle(self, delivery: Delivery) -> DispatchOutcome:
        """Apply one delivery and settle it with the broker."""
        try:
            event = decode_event(delivery.body)
        except MalformedMessage as e:
            logger.error(
                f"Dispatcher {self.consumer.name}: malformed message {delivery.message_id}: {e}"
            )
            await self.broker.dead_letter(delivery, str(e))
            return self._count(DispatchOutcome.MALFORMED, None)

        attributes = {
            "messaging.system": self.broker.name,
            "messaging.destination.name": self.topic,
            "messaging.consumer.group.name": self.consumer.name,
            "messaging.message.id": str(event.event_id),
            "messaging.message.delivery_count": delivery.delivery_count,
            "orderflow.event_type": event.type,
            "orderflow.aggregate_id": event.aggregate_id,
        }
        with create_span(
            f"{self.topic} process",
            attributes,
            kind=trace.SpanKind.CONSUMER,
            context=extract_trace_context(delivery.headers),
        ) as span:
            outcome = await self._apply(delivery, event)
            span.set_attribute("orderflow.outcome", outcome.value)
        return self._count(outcome, event)

    async def _apply(self, delivery: Delivery, event: DomainEvent) -> DispatchOutcome:
        name = self.consumer.name
        log_extra = {"consumer": name, "event_id": str(event.event_id), "aggregate_id": event.aggregate_id}

        if await self.ledger.has_applied(name, event.event_id):
            logger.info(
                f"Event {event.event_id} already applied by {name}, acknowledging redelivery",
                extra=log_extra
            )
            add_event_to_span("orderflow.duplicate_absorbed", {"stage": "ledger_lookup"})
            await self.broker.ack(delivery)
            return DispatchOutcome.DUPLICATE

        handler = self.consumer.handler_for(event.type)
        if handler is None:
            await self.broker.ack(delivery)
            return DispatchOutcome.IGNORED

        started = time.monotonic()
        try:
            async with self.db.transaction() as session:
                await self.ledger.record_applied(session, name, event.event_id, event.type)
                await handler(event, session)
        except DuplicateDeliveryDetected:
            logger.info(f"Concurrent delivery of {event.event_id} won for {name}", extra=log_extra)
            add_event_to_span("orderflow.duplicate_absorbed", {"stage": "ledger_insert"})
            await self.broker.ack(delivery)
            return DispatchOutcome.DUPLICATE
        except HandlerBusinessFailure as e:
            logger.error(f"{name} rejected {event.type} {event.event_id}: {e}", extra=log_extra)
            await self.broker.dead_letter(delivery, f"business: {e}")
            return DispatchOutcome.DEAD_LETTERED
        except Exception as e:
            if delivery.delivery_count >= self.settings.max_deliveries:
                logger.error(
                    f"{name} failed {event.type} {event.event_id} on delivery "
                    f"{delivery.delivery_count}, dead-lettering: {e}",
                    extra=log_extra, exc_info=True
                )
                await self.broker.dead_letter(delivery, f"max deliveries exceeded: {e}")
                return DispatchOutcome.DEAD_LETTERED
            delay = self.retry_delay(delivery.delivery_count)
            logger.warning(
                f"{name} failed {event.type} {event.event_id} "
                f"(delivery {delivery.delivery_count}), will retry in {delay:.2f}s: {e}",
                extra=log_extra
            )
            await self.broker.nack(delivery, delay=delay)
            return DispatchOutcome.RETRY
        finally:
            record_histogram(
                "dispatch_handler_duration_seconds",
                time.monotonic() - started,
                {"consumer": name, "event_type": event.type}
            )

        await self.broker.ack(delivery)
        logger.debug(f"{name} applied {event.type} {event.event_id}", extra=log_extra)
        return DispatchOutcome.APPLIED

    def retry_delay(self, delivery_count: int) -> float:
        """Seconds to hold a failed delivery back, growing with each delivery."""
        if self.settings.retry_base <= 0:
            return 0.0
        return compute_backoff(
            delivery_count,
            base_seconds=self.settings.retry_base,
            max_seconds=self.settings.retry_max,
        )

    def _count(self, outcome: DispatchOutcome, event: Optional[DomainEvent]) -> DispatchOutcome:
        self.stats[outcome.value] += 1
        attributes: Dict[str, str] = {"consumer": self.consumer.name}
        if event is not None:
            attributes["event_type"] = event.type

        metric = {
            DispatchOutcome.APPLIED: "dispatch_applied_total",
            DispatchOutcome.DUPLICATE: "dispatch_duplicates_total",
            DispatchOutcome.RETRY: "dispatch_retries_total",
            DispatchOutcome.DEAD_LETTERED: "dispatch_dead_lettered_total",
            DispatchOutcome.MALFORMED: "dispatch_dead_lettered_total",
        }.get(outcome)
        if metric:
            record_counter(metric, 1, attributes)
        return outcome
