"""
Outbox Store

Durable log of events waiting to be relayed, colocated with the business
tables so one transaction writes both.

Claiming works without any lock outside the database: a single
conditional UPDATE stamps a fresh claim token on records whose status and
claim columns still show them as free, and only rows carrying that token
are returned. Two relays running the claim concurrently can therefore
never get overlapping records. A claim that is not resolved within the
visibility timeout simply lapses and the record becomes claimable again.
"""

import json
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID, uuid4

from ..config import OutboxSettings
from ..database.adapter import DatabaseAdapter, DatabaseBackend, DatabaseSession, affected_rows
from ..errors import ClaimExpired, OutboxError
from ..events.envelope import encode_headers, event_headers
from ..events.models import DomainEvent
from ..observability.metrics import record_counter
from ..observability.tracing import inject_trace_context
from .backoff import next_eligible_at
from .models import OutboxRecord, OutboxStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CLAIMABLE = "('pending', 'failed')"

_CLAIM_LOCK_NAME = "orderflow.outbox.claim"
_CLAIM_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtext($1))"

_CLAIM_SQL = """
UPDATE outbox
SET claim_token = $1, claimed_until = $2
WHERE id IN (
    SELECT o.id FROM outbox o
    WHERE o.status IN {claimable}
      AND o.next_eligible_at <= $3
      AND (o.claimed_until IS NULL OR o.claimed_until <= $3)
      AND NOT EXISTS (
          SELECT 1 FROM outbox e
          WHERE e.aggregate_id = o.aggregate_id
            AND e.sequence < o.sequence
            AND e.status <> 'sent'
            AND (
                e.status = 'dead'
                OR e.next_eligible_at > $3
                OR (e.claimed_until IS NOT NULL AND e.claimed_until > $3)
            )
      )
    ORDER BY o.created_at, o.sequence
    LIMIT $4{lock}
)
AND status IN {claimable}
AND (claimed_until IS NULL OR claimed_until <= $3)
"""


class OutboxStore:
    """
    Reads and writes the outbox table.

    Usage:
        store = OutboxStore(db)

        # Inside the business transaction
        async with db.transaction() as session:
            await session.execute("UPDATE orders ...")
            await store.append(session, event)

        # In the relay
        records = await store.fetch_pending(limit=100, visibility_timeout=30)
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        settings: Optional[OutboxSettings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.settings = settings or OutboxSettings()
        self._clock = clock or _utcnow
        self._rng = rng

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Writing (inside the aggregate's transaction)
    # ------------------------------------------------------------------

    async def append(
        self,
        session: DatabaseSession,
        event: DomainEvent,
        headers: Optional[Dict[str, str]] = None,
    ) -> OutboxRecord:
        """
        Append an event to the outbox.

        Must be given the session of the transaction that persists the
        aggregate's state change, so both commit or roll back together.
        """
        if not isinstance(session, DatabaseSession) or not session.in_transaction:
            raise OutboxError("Outbox append requires the open transaction of the aggregate write")

        now = self.now()
        record_headers = event_headers(event)
        inject_trace_context(record_headers)
        if headers:
            record_headers.update(headers)

        record = OutboxRecord(
            event=event,
            headers=record_headers,
            next_eligible_at=now,
            created_at=now,
        )

        await session.execute(
            """
            INSERT INTO outbox (
                id, event_id, aggregate_type, aggregate_id, sequence,
                event_type, schema_version, payload, headers, occurred_at,
                status, attempts, next_eligible_at, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """,
            record.id,
            event.event_id,
            event.aggregate_type,
            event.aggregate_id,
            event.sequence,
            event.type,
            event.schema_version,
            json.dumps(event.model_dump(mode="json")["payload"]),
            encode_headers(record.headers),
            event.occurred_at,
            OutboxStatus.PENDING.value,
            0,
            record.next_eligible_at,
            record.created_at,
        )

        record_counter("outbox_appended_total", 1, {"event_type": event.type})
        logger.debug(
            "Wrote event to outbox: id=%s type=%s aggregate=%s sequence=%s",
            record.id, event.type, event.aggregate_id, event.sequence
        )
        return record

    async def append_many(
        self,
        session: DatabaseSession,
        events: Iterable[DomainEvent],
    ) -> List[OutboxRecord]:
        """Append several events in the same transaction."""
        results = []
        for event in events:
            results.append(await self.append(session, event))
        return results

    # ------------------------------------------------------------------
    # Claiming and delivery state
    # ------------------------------------------------------------------

    async def fetch_pending(
        self,
        limit: Optional[int] = None,
        visibility_timeout: Optional[float] = None,
    ) -> List[OutboxRecord]:
        """
        Claim up to `limit` deliverable records for `visibility_timeout` seconds.

        A record is deliverable when it is pending (or failed and its backoff
        elapsed), nobody holds a live claim on it, and no earlier record of
        the same aggregate is dead, backing off or claimed elsewhere. The
        result is ordered by (aggregate_id, sequence).

        Claims are serialized: SQLite through BEGIN IMMEDIATE, PostgreSQL
        through a transaction-scoped advisory lock. Each claim therefore sees
        every earlier claim committed, and the head-of-line check cannot be
        passed by a record whose predecessor another relay is claiming.
        """
        limit = limit or self.settings.batch_size
        visibility_timeout = (
            visibility_timeout if visibility_timeout is not None
            else self.settings.visibility_timeout
        )
        now = self.now()
        token = uuid4()
        claimed_until = now + timedelta(seconds=visibility_timeout)
        postgres = self.db.backend == DatabaseBackend.POSTGRESQL
        lock = " FOR UPDATE OF o SKIP LOCKED" if postgres else ""

        async with self.db.transaction() as session:
            if postgres:
                await session.execute(_CLAIM_LOCK_SQL, _CLAIM_LOCK_NAME)

            lapsed = await session.fetch(
                f"""
                SELECT id FROM outbox
                WHERE status IN {_CLAIMABLE}
                  AND claimed_until IS NOT NULL AND claimed_until <= $1
                """,
                now
            )
            status = await session.execute(
                _CLAIM_SQL.format(claimable=_CLAIMABLE, lock=lock),
                token,
                claimed_until,
                now,
                limit,
            )
            if affected_rows(status) == 0:
                return []

            rows = await session.fetch(
                "SELECT * FROM outbox WHERE claim_token = $1 ORDER BY aggregate_id, sequence",
                token
            )

        records = [OutboxRecord.from_row(row) for row in rows]

        lapsed_ids = {str(row["id"]) for row in lapsed}
        reclaimed = sum(1 for record in records if str(record.id) in lapsed_ids)
        if reclaimed:
            # ClaimExpired: informational, another relay's claim lapsed
            logger.info("Reclaimed %d outbox record(s) whose claim expired", reclaimed)
            record_counter("outbox_claims_expired_total", reclaimed)

        logger.debug("Claimed %d outbox record(s) with token %s", len(records), token)
        return records

    async def mark_sent(self, record_id: UUID, claim_token: Optional[UUID] = None) -> bool:
        """
        Mark a record as delivered after the broker acknowledged it.

        Returns False if the record was already marked sent (another relay
        published it after our claim lapsed).
        """
        status = await self.db.execute(
            """
            UPDATE outbox
            SET status = $1, sent_at = $2, claim_token = NULL,
                claimed_until = NULL, last_error = NULL
            WHERE id = $3 AND status <> $1
            """,
            OutboxStatus.SENT.value,
            self.now(),
            record_id
        )
        updated = affected_rows(status) > 0
        if not updated:
            logger.info(
                "Outbox record %s was already marked sent (claim %s had expired)",
                record_id, claim_token
            )
        return updated

    async def mark_failed(
        self,
        record_id: UUID,
        reason: str,
        claim_token: Optional[UUID] = None,
    ) -> OutboxRecord:
        """
        Record a failed delivery attempt.

        Increments attempts and schedules the next attempt with jittered
        exponential backoff. After max_attempts the record turns dead and
        stays in the table for an operator.

        Without a claim_token the attempt is settled against whatever claim
        is on the record, as mark_sent does.

        Raises:
            ClaimExpired: claim_token no longer owns the record, or another
                caller settled this attempt first
        """
        row = await self.db.fetchrow("SELECT * FROM outbox WHERE id = $1", record_id)
        if row is None:
            raise OutboxError(f"Outbox record {record_id} not found")
        record = OutboxRecord.from_row(row)

        if claim_token is not None and record.claim_token != claim_token:
            raise ClaimExpired(str(record_id))
        if record.status not in (OutboxStatus.PENDING, OutboxStatus.FAILED):
            raise ClaimExpired(str(record_id))

        now = self.now()
        attempts = record.attempts + 1
        if attempts >= self.settings.max_attempts:
            new_status = OutboxStatus.DEAD
            eligible = record.next_eligible_at
        else:
            new_status = OutboxStatus.FAILED
            eligible = next_eligible_at(
                now,
                attempts,
                base_seconds=self.settings.backoff_base,
                max_seconds=self.settings.backoff_max,
                rng=self._rng,
            )

        # Without a token any live or lapsed claim may settle the attempt; the
        # attempts check still stops two callers from counting it twice
        guard = "AND claim_token = $8" if claim_token is not None else ""
        args = [
            record_id,
            new_status.value,
            attempts,
            now,
            eligible,
            reason[:1000],
            record.attempts,
        ]
        if claim_token is not None:
            args.append(claim_token)

        status = await self.db.execute(
            f"""
            UPDATE outbox
            SET status = $2, attempts = $3, last_attempt_at = $4,
                next_eligible_at = $5, last_error = $6,
                claim_token = NULL, claimed_until = NULL
            WHERE id = $1 AND attempts = $7 {guard}
              AND status IN {_CLAIMABLE}
            """,
            *args
        )
        if affected_rows(status) == 0:
            raise ClaimExpired(str(record_id))

        if new_status == OutboxStatus.DEAD:
            record_counter("outbox_dead_total", 1, {"event_type": record.event.type})
            logger.error(
                "Outbox record %s moved to dead letter after %d attempts, operator action required: %s",
                record_id, attempts, reason,
                extra={"event_id": str(record.event_id), "aggregate_id": record.aggregate_id}
            )
        else:
            logger.warning(
                "Outbox record %s failed (attempt %d), retry at %s: %s",
                record_id, attempts, eligible.isoformat(), reason
            )

        return record.model_copy(update={
            "status": new_status,
            "attempts": attempts,
            "last_attempt_at": now,
            "next_eligible_at": eligible,
            "last_error": reason[:1000],
            "claim_token": None,
            "claimed_until": None,
        })

    async def release(self, record_id: UUID, claim_token: UUID) -> bool:
        """Give a claimed record back without counting an attempt."""
        status = await self.db.execute(
            """
            UPDATE outbox
            SET claim_token = NULL, claimed_until = NULL
            WHERE id = $1 AND claim_token = $2
            """,
            record_id,
            claim_token
        )
        return affected_rows(status) > 0

    # ------------------------------------------------------------------
    # Queries and retention
    # ------------------------------------------------------------------

    async def get(self, record_id: UUID) -> Optional[OutboxRecord]:
        row = await self.db.fetchrow("SELECT * FROM outbox WHERE id = $1", record_id)
        return OutboxRecord.from_row(row) if row else None

    async def list_for_aggregate(self, aggregate_id: str) -> List[OutboxRecord]:
        rows = await self.db.fetch(
            "SELECT * FROM outbox WHERE aggregate_id = $1 ORDER BY sequence",
            aggregate_id
        )
        return [OutboxRecord.from_row(row) for row in rows]

    async def stats(self) -> Dict[str, int]:
        """Get outbox statistics (record count per status)."""
        rows = await self.db.fetch(
            """
            SELECT status, COUNT(*) AS count
            FROM outbox
            GROUP BY status
            """
        )
        stats = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            stats[row["status"]] = row["count"]
        return stats

    async def purge_sent(self, older_than: datetime) -> int:
        """Delete sent records whose audit window has passed."""
        status = await self.db.execute(
            "DELETE FROM outbox WHERE status = $1 AND sent_at < $2",
            OutboxStatus.SENT.value,
            older_than
        )
        purged = affected_rows(status)
        if purged:
            logger.info("Purged %d sent outbox record(s) older than %s", purged, older_than.isoformat())
        return purged
