"""
Orderflow Event Taxonomy

Defines the domain event types carried through the outbox.

Event naming convention: {Aggregate}{PastTenseVerb}
- aggregate: Order
- verb: past tense (Created, Paid, Shipped, Cancelled)
"""

from enum import Enum
from typing import Dict


class EventDomain(str, Enum):
    """Aggregate types that emit events."""
    ORDER = "order"


class OrderEventType(str, Enum):
    """Order lifecycle events."""
    CREATED = "OrderCreated"
    PAID = "OrderPaid"
    FULFILLMENT_STARTED = "OrderFulfillmentStarted"
    SHIPPED = "OrderShipped"
    CANCELLED = "OrderCancelled"


# Combined lookup: event type -> owning domain
ALL_EVENT_TYPES: Dict[str, str] = {
    **{e.value: EventDomain.ORDER.value for e in OrderEventType},
}


def validate_event_type(event_type: str) -> bool:
    """Check if event type is known."""
    return event_type in ALL_EVENT_TYPES


def get_domain(event_type: str) -> str:
    """Look up the aggregate domain that emits an event type."""
    return ALL_EVENT_TYPES.get(event_type, "unknown")
