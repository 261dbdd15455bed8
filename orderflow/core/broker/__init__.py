"""
Message Brokers

Transport between the outbox relay and the consumer runtime.
"""

from .base import Delivery, MessageBroker, dead_letter_topic, partition_for
from .memory import InMemoryBroker
from .redis_streams import RedisStreamsBroker
from .factory import create_broker

__all__ = [
    "Delivery",
    "MessageBroker",
    "dead_letter_topic",
    "partition_for",
    "InMemoryBroker",
    "RedisStreamsBroker",
    "create_broker",
]
