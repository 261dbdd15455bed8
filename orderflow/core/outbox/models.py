"""
Outbox Models

An outbox record wraps one domain event plus its delivery state.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..events.models import DomainEvent


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox record."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # Waiting out a backoff before the next attempt
    DEAD = "dead"  # Exceeded max attempts, needs an operator


class OutboxRecord(BaseModel):
    """A row in the outbox table."""

    id: UUID = Field(default_factory=uuid4)
    event: DomainEvent
    headers: Dict[str, str] = Field(default_factory=dict)

    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0

    last_attempt_at: Optional[datetime] = None
    next_eligible_at: datetime = Field(default_factory=_utcnow)
    claim_token: Optional[UUID] = None
    claimed_until: Optional[datetime] = None
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None

    @property
    def event_id(self) -> UUID:
        return self.event.event_id

    @property
    def aggregate_id(self) -> str:
        return self.event.aggregate_id

    @property
    def sequence(self) -> int:
        return self.event.sequence

    def is_claimed(self, now: datetime) -> bool:
        return self.claimed_until is not None and self.claimed_until > now

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxRecord":
        """Build a record from an outbox table row (either backend)."""
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        headers = row.get("headers") or {}
        if isinstance(headers, str):
            headers = json.loads(headers)

        event = DomainEvent(
            event_id=row["event_id"],
            aggregate_id=row["aggregate_id"],
            aggregate_type=row["aggregate_type"],
            type=row["event_type"],
            payload=payload,
            occurred_at=row["occurred_at"],
            sequence=row["sequence"],
            schema_version=row.get("schema_version", 1),
        )
        return cls(
            id=row["id"],
            event=event,
            headers=headers,
            status=OutboxStatus(row["status"]),
            attempts=row["attempts"],
            last_attempt_at=row.get("last_attempt_at"),
            next_eligible_at=row["next_eligible_at"],
            claim_token=row.get("claim_token"),
            claimed_until=row.get("claimed_until"),
            last_error=row.get("last_error"),
            created_at=row["created_at"],
            sent_at=row.get("sent_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "event_id": str(self.event_id),
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.event.aggregate_type,
            "event_type": self.event.type,
            "sequence": self.sequence,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_eligible_at": self.next_eligible_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
