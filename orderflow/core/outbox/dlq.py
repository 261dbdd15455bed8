"""
Dead Letter Queue (DLQ) Management

Outbox records that exhausted their publish attempts stay in the outbox
with status `dead`. They block later events of their aggregate until an
operator retries or purges them.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from ..database.adapter import DatabaseAdapter, affected_rows, get_database
from .models import OutboxStatus

logger = logging.getLogger(__name__)


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    RETRY = "retry"
    PURGE = "purge"


@dataclass
class DLQEntry:
    """A dead outbox record."""
    id: UUID
    event_id: str
    aggregate_id: str
    sequence: int
    event_type: str
    payload: Dict[str, Any]
    attempts: int
    last_error: Optional[str]
    created_at: Any
    failed_at: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "payload": self.payload,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "failed_at": _iso(self.failed_at),
        }


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class DLQManager:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Query dead records
    - Retry them (back to pending with attempts reset)
    - Purge them
    - Generate DLQ reports
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        aggregate_id: Optional[str] = None
    ) -> List[DLQEntry]:
        """Get DLQ entries, newest first."""
        db = await self._get_db()

        if aggregate_id:
            rows = await db.fetch(
                """
                SELECT id, event_id, aggregate_id, sequence, event_type, payload,
                       attempts, last_error, created_at,
                       COALESCE(last_attempt_at, created_at) AS failed_at
                FROM outbox
                WHERE status = $1 AND aggregate_id = $2
                ORDER BY created_at DESC
                LIMIT $3 OFFSET $4
                """,
                OutboxStatus.DEAD.value, aggregate_id, limit, offset
            )
        else:
            rows = await db.fetch(
                """
                SELECT id, event_id, aggregate_id, sequence, event_type, payload,
                       attempts, last_error, created_at,
                       COALESCE(last_attempt_at, created_at) AS failed_at
                FROM outbox
                WHERE status = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                OutboxStatus.DEAD.value, limit, offset
            )

        return [
            DLQEntry(
                id=row["id"] if isinstance(row["id"], UUID) else UUID(str(row["id"])),
                event_id=str(row["event_id"]),
                aggregate_id=row["aggregate_id"],
                sequence=row["sequence"],
                event_type=row["event_type"],
                payload=json.loads(row["payload"]) if isinstance(row["payload"], str) else row["payload"],
                attempts=row["attempts"],
                last_error=row.get("last_error"),
                created_at=row["created_at"],
                failed_at=row["failed_at"]
            )
            for row in rows
        ]

    async def get_count(self, aggregate_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        db = await self._get_db()

        if aggregate_id:
            result = await db.fetchrow(
                "SELECT COUNT(*) AS count FROM outbox WHERE status = $1 AND aggregate_id = $2",
                OutboxStatus.DEAD.value, aggregate_id
            )
        else:
            result = await db.fetchrow(
                "SELECT COUNT(*) AS count FROM outbox WHERE status = $1",
                OutboxStatus.DEAD.value
            )

        return result["count"] if result else 0

    async def retry_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> bool:
        """
        Retry a DLQ entry by resetting it to pending.

        The record keeps its event_id and sequence, so consumers that did
        receive an earlier attempt still deduplicate it.

        Returns:
            True if the entry was reset for retry
        """
        db = await self._get_db()

        result = await db.execute(
            """
            UPDATE outbox
            SET status = $1, attempts = 0, last_error = NULL,
                next_eligible_at = $2, claim_token = NULL, claimed_until = NULL
            WHERE id = $3 AND status = $4
            """,
            OutboxStatus.PENDING.value, self._clock(), entry_id, OutboxStatus.DEAD.value
        )

        success = affected_rows(result) > 0
        if success:
            logger.info(f"DLQ entry {entry_id} reset for retry by {operator_id}")
            self._log_action(entry_id, DLQAction.RETRY, operator_id)

        return success

    async def retry_all(
        self,
        aggregate_id: Optional[str] = None,
        operator_id: Optional[str] = None
    ) -> int:
        """Retry all DLQ entries (optionally for one aggregate)."""
        db = await self._get_db()
        now = self._clock()

        if aggregate_id:
            result = await db.execute(
                """
                UPDATE outbox
                SET status = $1, attempts = 0, last_error = NULL,
                    next_eligible_at = $2, claim_token = NULL, claimed_until = NULL
                WHERE status = $3 AND aggregate_id = $4
                """,
                OutboxStatus.PENDING.value, now, OutboxStatus.DEAD.value, aggregate_id
            )
        else:
            result = await db.execute(
                """
                UPDATE outbox
                SET status = $1, attempts = 0, last_error = NULL,
                    next_eligible_at = $2, claim_token = NULL, claimed_until = NULL
                WHERE status = $3
                """,
                OutboxStatus.PENDING.value, now, OutboxStatus.DEAD.value
            )

        count = affected_rows(result)
        logger.info(f"DLQ retry all: reset {count} entries by {operator_id}")
        return count

    async def purge_entry(self, entry_id: UUID, operator_id: Optional[str] = None) -> bool:
        """
        Permanently delete a DLQ entry.

        Later events of the same aggregate become deliverable again.
        """
        db = await self._get_db()

        result = await db.execute(
            "DELETE FROM outbox WHERE id = $1 AND status = $2",
            entry_id, OutboxStatus.DEAD.value
        )

        success = affected_rows(result) > 0
        if success:
            logger.warning(f"DLQ entry {entry_id} purged by {operator_id}")
            self._log_action(entry_id, DLQAction.PURGE, operator_id)

        return success

    async def get_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        db = await self._get_db()

        total = await self.get_count()

        by_type = await db.fetch(
            """
            SELECT event_type, COUNT(*) AS count
            FROM outbox
            WHERE status = $1
            GROUP BY event_type
            ORDER BY count DESC
            """,
            OutboxStatus.DEAD.value
        )

        oldest = await db.fetchval(
            "SELECT MIN(created_at) AS oldest FROM outbox WHERE status = $1",
            OutboxStatus.DEAD.value
        )

        return {
            "total_count": total,
            "by_event_type": {row["event_type"]: row["count"] for row in by_type},
            "oldest_entry": _iso(oldest),
        }

    def _log_action(self, entry_id: UUID, action: DLQAction, operator_id: Optional[str]):
        """Log DLQ action for audit."""
        logger.info(
            f"DLQ action: {action.value} on {entry_id} by {operator_id}",
            extra={"dlq_action": action.value, "entry_id": str(entry_id), "operator_id": operator_id}
        )
