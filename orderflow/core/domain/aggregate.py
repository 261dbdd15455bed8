"""
Aggregate Root

Base class for business entities that announce their state changes as
domain events. Business methods mutate state and buffer events purely in
memory; the unit of work persists both in one transaction.
"""

from typing import Any, Dict, List, Optional

from ..events.models import DomainEvent


class AggregateRoot:
    """
    Holds aggregate identity, version and a buffer of unpersisted events.

    version counts every event the aggregate has ever recorded, so the next
    event's sequence is always the current version. The version stored in
    the database is the version minus whatever is still buffered.
    """

    aggregate_type: str = "aggregate"

    def __init__(self, id: str, version: int = 0):
        self.id = id
        self.version = version
        self._pending_events: List[DomainEvent] = []

    def record_event(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> DomainEvent:
        """Buffer a new event with the next per-aggregate sequence number."""
        event = DomainEvent(
            aggregate_id=self.id,
            aggregate_type=self.aggregate_type,
            type=event_type,
            payload=payload or {},
            sequence=self.version,
        )
        self.version += 1
        self._pending_events.append(event)
        return event

    @property
    def pending_events(self) -> List[DomainEvent]:
        return list(self._pending_events)

    @property
    def persisted_version(self) -> int:
        """Version as of the last load or save."""
        return self.version - len(self._pending_events)

    def pull_events(self) -> List[DomainEvent]:
        """Return buffered events and clear the buffer."""
        events, self._pending_events = self._pending_events, []
        return events
