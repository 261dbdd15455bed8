"""
Outbox Relay

Background worker that claims outbox records and publishes them to the
broker with retry, backoff and per-aggregate ordering.

Delivery is at-least-once: a record is marked sent only after the broker
acknowledged it, so a crash between the two republishes the record once its
claim expires. Consumers absorb the duplicate through their idempotency
ledger.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from opentelemetry import trace

from ..broker.base import MessageBroker
from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter, get_database
from ..errors import ClaimExpired, PermanentPublishFailure, TransientPublishFailure
from ..events.envelope import encode_event
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span, extract_trace_context, inject_trace_context
from .models import OutboxRecord, OutboxStatus
from .store import OutboxStore

logger = logging.getLogger(__name__)


@dataclass
class RelayBatchResult:
    """What happened to the records claimed in one batch."""

    claimed: int = 0
    published: int = 0
    failed: int = 0
    dead: int = 0
    released: int = 0
    unreached: int = 0  # left claimed when the batch deadline passed
    duration: float = 0.0

    def merge(self, other: "RelayBatchResult") -> None:
        self.claimed += other.claimed
        self.published += other.published
        self.failed += other.failed
        self.dead += other.dead
        self.released += other.released
        self.unreached += other.unreached
        self.duration += other.duration


@dataclass
class RelayStats:
    batches: int = 0
    totals: RelayBatchResult = field(default_factory=RelayBatchResult)
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "batches": self.batches,
            "claimed": self.totals.claimed,
            "published": self.totals.published,
            "failed": self.totals.failed,
            "dead": self.totals.dead,
            "released": self.totals.released,
            "unreached": self.totals.unreached,
            "last_error": self.last_error,
        }


class OutboxRelay:
    """
    Publishes outbox records to the broker.

    Features:
    - Claims batches with a visibility timeout, so several relays can run
    - Publishes in (aggregate, sequence) order and stops an aggregate at its
      first failure; other aggregates in the batch carry on
    - Retries failed records with jittered exponential backoff
    - Moves records that exhaust their attempts to the dead status
    """

    def __init__(
        self,
        store: OutboxStore,
        broker: MessageBroker,
        settings: Optional[OutboxSettings] = None,
    ):
        self.store = store
        self.broker = broker
        self.settings = settings or store.settings
        self.stats = RelayStats()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self):
        """Start the relay loop."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="outbox-relay")
        logger.info(
            "OutboxRelay started: topic=%s batch_size=%d poll_interval=%.2fs",
            self.settings.topic, self.settings.batch_size, self.settings.poll_interval
        )

    async def stop(self):
        """Stop the relay, letting an in-flight batch finish within the grace period."""
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

        if self._task:
            done, _ = await asyncio.wait({self._task}, timeout=self.settings.shutdown_grace)
            if not done:
                logger.warning(
                    "OutboxRelay batch still running after %.1fs grace, cancelling",
                    self.settings.shutdown_grace
                )
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        logger.info("OutboxRelay stopped")

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                result = await self.process_batch()
                if result.claimed > 0:
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.last_error = str(e)
                logger.error(f"OutboxRelay error: {e}", exc_info=True)

            # No work (or an error), wait before polling again
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def process_batch(self) -> RelayBatchResult:
        """Claim one batch and try to publish every record in it."""
        started = time.monotonic()
        records = await self.store.fetch_pending(
            limit=self.settings.batch_size,
            visibility_timeout=self.settings.visibility_timeout,
        )
        result = RelayBatchResult(claimed=len(records))
        if not records:
            return result

        deadline = started + self.settings.publish_timeout
        blocked: Set[str] = set()

        for record in records:
            if record.aggregate_id in blocked:
                # An earlier event of this aggregate failed; keep order
                if await self.store.release(record.id, record.claim_token):
                    result.released += 1
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                result.unreached += 1
                continue

            status = await self._deliver(record, remaining)
            if status == OutboxStatus.SENT:
                result.published += 1
                continue

            blocked.add(record.aggregate_id)
            if status == OutboxStatus.DEAD:
                result.dead += 1
            elif status == OutboxStatus.FAILED:
                result.failed += 1

        if result.unreached:
            logger.warning(
                "Outbox batch deadline of %.1fs passed, %d record(s) left to expire",
                self.settings.publish_timeout, result.unreached
            )

        result.duration = time.monotonic() - started
        record_histogram("outbox_batch_duration_seconds", result.duration)
        self.stats.batches += 1
        self.stats.totals.merge(result)
        return result

    async def _deliver(self, record: OutboxRecord, timeout: float) -> Optional[OutboxStatus]:
        """
        Publish a single record and settle it in the store.

        Returns the record's new status, or None if our claim had expired
        and someone else owns the record now.
        """
        event = record.event
        attributes = {
            "messaging.system": self.broker.name,
            "messaging.destination.name": self.settings.topic,
            "messaging.message.id": str(event.event_id),
            "orderflow.aggregate_id": event.aggregate_id,
            "orderflow.sequence": event.sequence,
            "orderflow.event_type": event.type,
        }

        with create_span(
            f"{self.settings.topic} publish",
            attributes,
            kind=trace.SpanKind.PRODUCER,
            context=extract_trace_context(record.headers),
        ) as span:
            headers = dict(record.headers)
            inject_trace_context(headers)
            try:
                await asyncio.wait_for(
                    self.broker.publish(self.settings.topic, event.key, encode_event(event), headers),
                    timeout=timeout,
                )
            except PermanentPublishFailure as e:
                logger.error(
                    "Broker rejected outbox record %s (%s): %s",
                    record.id, event.type, e
                )
                return await self._fail(record, f"permanent: {e}", "permanent", span)
            except TransientPublishFailure as e:
                return await self._fail(record, f"transient: {e}", "transient", span)
            except asyncio.TimeoutError:
                return await self._fail(record, "transient: publish timed out", "timeout", span)
            except Exception as e:
                logger.error(f"Unexpected error publishing outbox record {record.id}: {e}", exc_info=True)
                return await self._fail(record, f"transient: {e}", "unexpected", span)

        await self.store.mark_sent(record.id, record.claim_token)
        record_counter("outbox_published_total", 1, {"event_type": event.type})
        logger.debug(f"Published outbox record {record.id} ({event.type} #{event.sequence})")
        return OutboxStatus.SENT

    async def _fail(self, record: OutboxRecord, reason: str, kind: str, span) -> Optional[OutboxStatus]:
        span.set_attribute("orderflow.publish_failure", kind)
        record_counter("outbox_publish_failed_total", 1, {"event_type": record.event.type, "reason": kind})
        try:
            updated = await self.store.mark_failed(record.id, reason, record.claim_token)
        except ClaimExpired as e:
            logger.info("%s, leaving it to its new owner", e)
            return None
        return updated.status

    async def run_until_idle(self, max_batches: int = 1000) -> RelayBatchResult:
        """Process batches until nothing is claimable (tests and tooling)."""
        totals = RelayBatchResult()
        for _ in range(max_batches):
            result = await self.process_batch()
            totals.merge(result)
            if result.claimed == 0:
                break
        return totals


# Global relay instance
_relay: Optional[OutboxRelay] = None


async def start_outbox_relay(
    broker: MessageBroker,
    db: Optional[DatabaseAdapter] = None,
    settings: Optional[OutboxSettings] = None,
) -> OutboxRelay:
    """Start the global outbox relay."""
    global _relay

    if _relay is None:
        db = db or await get_database()
        settings = settings or OutboxSettings()
        _relay = OutboxRelay(OutboxStore(db, settings), broker, settings)

    await _relay.start()
    return _relay


async def stop_outbox_relay():
    """Stop the global outbox relay."""
    global _relay
    if _relay:
        await _relay.stop()
        _relay = None


def get_outbox_relay() -> Optional[OutboxRelay]:
    """Get the global outbox relay instance."""
    return _relay
