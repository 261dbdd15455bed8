"""
Outbox Failure Taxonomy

Typed failures raised by the outbox store, relay, broker adapters and
dispatcher. Callers above the persistence boundary only ever see these,
never raw driver or transport errors.
"""

from typing import Optional


class OutboxError(Exception):
    """Base class for all orderflow failures."""

    code = "OUTBOX_ERROR"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class TransientPublishFailure(OutboxError):
    """Broker unreachable or timed out. Retried with backoff."""

    code = "TRANSIENT_PUBLISH_FAILURE"


class PermanentPublishFailure(OutboxError):
    """Broker rejected the message (e.g. malformed). Dead-lettered once retries run out."""

    code = "PERMANENT_PUBLISH_FAILURE"


class DuplicateDeliveryDetected(OutboxError):
    """
    The consumer already applied this event.

    Not an error condition: raised by the idempotency ledger when a concurrent
    delivery won the race, and absorbed by the dispatcher.
    """

    code = "DUPLICATE_DELIVERY"

    def __init__(self, consumer_name: str, event_id: str):
        self.consumer_name = consumer_name
        self.event_id = event_id
        super().__init__(f"Event {event_id} already applied by {consumer_name}")


class HandlerBusinessFailure(OutboxError):
    """A consumer handler rejected the event on business rules. Never retried."""

    code = "HANDLER_BUSINESS_FAILURE"


class MalformedMessage(OutboxError):
    """A delivered message could not be decoded into a domain event."""

    code = "MALFORMED_MESSAGE"


class ClaimExpired(OutboxError):
    """
    The relay's claim on an outbox record lapsed before it finished.

    Informational: the record has already returned to the pending pool.
    """

    code = "CLAIM_EXPIRED"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Claim on outbox record {record_id} expired")


class ConcurrencyConflict(OutboxError):
    """The aggregate was modified by another transaction since it was loaded."""

    code = "CONCURRENCY_CONFLICT"


class InvalidStateTransition(OutboxError):
    """A business method was called in a state that does not allow it."""

    code = "INVALID_STATE_TRANSITION"


class OrderNotFound(OutboxError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order '{order_id}' not found")
