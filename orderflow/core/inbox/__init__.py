"""
Inbox Pattern Implementation

Exactly-once application of events on top of at-least-once delivery.
"""

from .ledger import IdempotencyLedger
from .consumer import EventConsumer, EventHandler
from .dispatcher import Dispatcher, DispatchOutcome

__all__ = [
    "IdempotencyLedger",
    "EventConsumer",
    "EventHandler",
    "Dispatcher",
    "DispatchOutcome",
]
