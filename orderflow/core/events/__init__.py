"""
Orderflow Event System

Domain event model, wire envelope and event type taxonomy.

Usage:
    from orderflow.core.events import DomainEvent, OrderEventType, encode_event

    event = DomainEvent(
        aggregate_id=order.id,
        type=OrderEventType.PAID.value,
        payload={"amount_cents": 1250},
        sequence=1,
    )
    body = encode_event(event)
"""

from .taxonomy import (
    EventDomain,
    OrderEventType,
    validate_event_type,
    get_domain,
    ALL_EVENT_TYPES,
)

from .models import DomainEvent

from .envelope import (
    encode_event,
    decode_event,
    event_headers,
    encode_headers,
    decode_headers,
)


__all__ = [
    # Taxonomy
    "EventDomain",
    "OrderEventType",
    "validate_event_type",
    "get_domain",
    "ALL_EVENT_TYPES",
    # Models
    "DomainEvent",
    # Envelope
    "encode_event",
    "decode_event",
    "event_headers",
    "encode_headers",
    "decode_headers",
]
