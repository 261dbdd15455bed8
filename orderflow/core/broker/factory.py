"""
Broker Factory

Builds the configured MessageBroker from BROKER_URL.
"""

import logging
from typing import Optional

from ..config import BrokerSettings
from .base import MessageBroker
from .memory import InMemoryBroker
from .redis_streams import RedisStreamsBroker

logger = logging.getLogger(__name__)


def create_broker(settings: Optional[BrokerSettings] = None) -> MessageBroker:
    """
    Create a broker for the configured URL.

    Supported schemes:
        memory://            in-process broker
        redis:// rediss://   Redis Streams
    """
    settings = settings or BrokerSettings()
    scheme = settings.scheme

    if scheme == "memory":
        broker: MessageBroker = InMemoryBroker(
            partitions=settings.partitions,
            redelivery_timeout=settings.redelivery_timeout,
        )
    elif scheme in ("redis", "rediss", "unix"):
        broker = RedisStreamsBroker(
            settings.url,
            partitions=settings.partitions,
            redelivery_timeout=settings.redelivery_timeout,
            max_stream_length=settings.max_stream_length,
        )
    else:
        raise ValueError(f"Unsupported broker URL scheme: {scheme}")

    logger.info("Using %s broker (%d partitions)", broker.name, settings.partitions)
    return broker


def is_process_local(settings: BrokerSettings) -> bool:
    """True when the broker cannot carry messages to another process."""
    return settings.scheme == "memory"


def warn_if_process_local(settings: BrokerSettings, process: str) -> bool:
    """
    Log a warning when a standalone process is configured with memory://.

    A relay and its dispatchers in separate processes would each get their
    own in-memory broker and never see each other's messages.
    """
    if not is_process_local(settings):
        return False
    logger.warning(
        "%s is using the in-process memory:// broker; messages will not reach "
        "other processes. Set BROKER_URL to a redis:// URL for separate workers.",
        process
    )
    return True
