"""
Idempotency Ledger

Records which events each consumer has applied, keyed by
(consumer_name, event_id). The entry is written in the same transaction
as the handler's side effects, so "applied" and "recorded as applied"
can never disagree.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from ..database.adapter import DatabaseAdapter, DatabaseSession, affected_rows
from ..errors import DuplicateDeliveryDetected, OutboxError

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """
    Guards against duplicate event processing.

    Usage:
        async with db.transaction() as session:
            await ledger.record_applied(session, "order-confirmation", event.event_id)
            await apply_side_effects(session, event)
        # Ledger entry and side effects commit together

    A concurrent transaction that already recorded the same pair makes
    record_applied raise DuplicateDeliveryDetected; the caller rolls back.
    """

    def __init__(self, db: DatabaseAdapter):
        self.db = db

    async def has_applied(
        self,
        consumer_name: str,
        event_id: Union[UUID, str],
        session: Optional[DatabaseSession] = None,
    ) -> bool:
        """Check if an event has been applied by a consumer."""
        source = session or self.db
        result = await source.fetchrow(
            """
            SELECT 1 FROM idempotency_ledger
            WHERE consumer_name = $1 AND event_id = $2
            """,
            consumer_name,
            _as_uuid(event_id)
        )
        return result is not None

    async def record_applied(
        self,
        session: DatabaseSession,
        consumer_name: str,
        event_id: Union[UUID, str],
        event_type: Optional[str] = None,
    ) -> None:
        """
        Mark an event as applied inside the handler's transaction.

        Raises:
            DuplicateDeliveryDetected: the pair is already recorded
        """
        if not isinstance(session, DatabaseSession) or not session.in_transaction:
            raise OutboxError("Ledger entries must be written inside the handler transaction")

        status = await session.execute(
            """
            INSERT INTO idempotency_ledger (consumer_name, event_id, event_type, applied_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (consumer_name, event_id) DO NOTHING
            """,
            consumer_name,
            _as_uuid(event_id),
            event_type,
            datetime.now(timezone.utc)
        )
        if affected_rows(status) == 0:
            raise DuplicateDeliveryDetected(consumer_name, str(event_id))

        logger.debug(f"Ledger: event {event_id} recorded for {consumer_name}")

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete ledger entries applied before cutoff."""
        status = await self.db.execute(
            "DELETE FROM idempotency_ledger WHERE applied_at < $1",
            cutoff
        )
        purged = affected_rows(status)
        if purged:
            logger.info(f"Ledger: purged {purged} entries older than {cutoff.isoformat()}")
        return purged

    async def count(self, consumer_name: Optional[str] = None) -> int:
        if consumer_name:
            return await self.db.fetchval(
                "SELECT COUNT(*) FROM idempotency_ledger WHERE consumer_name = $1",
                consumer_name
            )
        return await self.db.fetchval("SELECT COUNT(*) FROM idempotency_ledger")


def _as_uuid(value: Union[UUID, str]) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
