"""
Orderflow Core Package

Database access, events, the outbox, brokers and the consumer runtime.
"""

from . import database
from . import events

__all__ = ["database", "events"]
