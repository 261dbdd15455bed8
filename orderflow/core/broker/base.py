"""
Message Broker Interface

The relay publishes through this interface and the dispatcher consumes
through it. Implementations must deliver at least once and keep messages
with the same key in publish order within a consumer group.
"""

import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


DLQ_SUFFIX = ".dlq"


def partition_for(key: str, partitions: int) -> int:
    """Stable partition index for a message key."""
    return zlib.crc32(key.encode("utf-8")) % partitions


def dead_letter_topic(topic: str) -> str:
    return f"{topic}{DLQ_SUFFIX}"


@dataclass
class Delivery:
    """One delivery of a message to a consumer group."""

    topic: str
    group: str
    message_id: str
    key: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    delivery_count: int = 1
    partition: int = 0

    @property
    def is_redelivery(self) -> bool:
        return self.delivery_count > 1


class MessageBroker(ABC):
    """
    Publish/subscribe transport with consumer groups.

    publish() returns only once the broker has durably accepted the
    message; it raises TransientPublishFailure or PermanentPublishFailure
    otherwise. Consumers receive Delivery objects and must settle each one
    with ack(), nack() or dead_letter().
    """

    name = "broker"

    async def connect(self) -> None:
        """Open connections. Default: nothing to do."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def publish(
        self,
        topic: str,
        key: str,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """Publish a message and return its broker message id."""

    @abstractmethod
    async def ensure_group(self, topic: str, group: str) -> None:
        """Create the consumer group if missing, starting from the oldest message."""

    @abstractmethod
    async def fetch(
        self,
        topic: str,
        group: str,
        consumer: str,
        max_messages: int = 10,
        block_ms: int = 0,
    ) -> List[Delivery]:
        """Receive up to max_messages deliveries for the group."""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Settle a delivery; it will not be redelivered to the group."""

    @abstractmethod
    async def nack(self, delivery: Delivery, delay: float = 0.0) -> None:
        """Give a delivery back for redelivery, no sooner than `delay` seconds from now."""

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        """Move a delivery to the topic's dead-letter channel and settle it."""
