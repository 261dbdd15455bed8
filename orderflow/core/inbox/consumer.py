"""
Event Consumers

A consumer is a named set of handlers, one per event type. The name is
the consumer group on the broker and the key in the idempotency ledger,
so it must stay stable across deployments.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..database.adapter import DatabaseSession
from ..events.models import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent, DatabaseSession], Awaitable[Any]]


class EventConsumer:
    """
    Usage:
        confirmations = EventConsumer("order-confirmation")

        @confirmations.on("OrderPaid")
        async def send_confirmation(event, session):
            await session.execute("INSERT INTO order_confirmations ...")

    Handlers run inside the dispatcher's transaction and must do all their
    writes through the given session. Raise HandlerBusinessFailure to
    reject an event permanently; any other exception is retried.
    """

    def __init__(self, name: str):
        if not name:
            raise ValueError("Consumer name is required")
        self.name = name
        self._handlers: Dict[str, EventHandler] = {}

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        def decorator(handler: EventHandler) -> EventHandler:
            self.register(event_type, handler)
            return handler
        return decorator

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"{self.name} already handles {event_type}")
        self._handlers[event_type] = handler
        logger.debug(f"Consumer {self.name}: registered handler for {event_type}")

    def handler_for(self, event_type: str) -> Optional[EventHandler]:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def __repr__(self) -> str:
        return f"EventConsumer(name={self.name}, event_types={self.event_types})"
