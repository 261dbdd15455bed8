"""
Event Models

Pydantic models for domain events with schema versioning.
"""

from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """
    An immutable fact produced by an aggregate.

    event_id is generated once when the aggregate records the event and is
    carried unchanged through the outbox, every relay attempt and every
    broker redelivery, so consumers can deduplicate on it.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    aggregate_id: str
    aggregate_type: str = "order"
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)
    sequence: int = Field(ge=0)
    schema_version: int = 1

    @property
    def key(self) -> str:
        """Partitioning key: events of one aggregate share a partition."""
        return self.aggregate_id
