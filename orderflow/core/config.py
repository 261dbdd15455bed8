"""
Orderflow Configuration

Centralized settings for the outbox relay, dispatcher and broker.
Values come from environment variables (optionally loaded from a .env file).
"""

import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class OutboxSettings:
    """Settings for the outbox store and relay."""

    def __init__(self, **overrides):
        self.topic: str = os.getenv("OUTBOX_TOPIC", "orders.events")
        self.batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
        self.poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "1.0"))
        self.visibility_timeout: float = float(os.getenv("OUTBOX_VISIBILITY_TIMEOUT", "30"))
        self.publish_timeout: float = float(os.getenv("OUTBOX_PUBLISH_TIMEOUT", "10"))
        self.max_attempts: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))
        self.backoff_base: float = float(os.getenv("OUTBOX_BACKOFF_BASE", "1.0"))
        self.backoff_max: float = float(os.getenv("OUTBOX_BACKOFF_MAX", "300"))
        self.retention_hours: float = float(os.getenv("OUTBOX_RETENTION_HOURS", "168"))
        self.shutdown_grace: float = float(os.getenv("OUTBOX_SHUTDOWN_GRACE", "5"))
        self.enabled: bool = _env_bool("OUTBOX_ENABLED", "true")
        self.relay_enabled: bool = _env_bool("OUTBOX_RELAY_ENABLED", "true")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown outbox setting: {key}")
            setattr(self, key, value)

    def __repr__(self) -> str:
        return (
            f"OutboxSettings(topic={self.topic}, batch_size={self.batch_size}, "
            f"max_attempts={self.max_attempts}, visibility_timeout={self.visibility_timeout})"
        )


class DispatcherSettings:
    """Settings for the consumer runtime and idempotency ledger."""

    def __init__(self, **overrides):
        self.max_deliveries: int = int(os.getenv("DISPATCH_MAX_DELIVERIES", "5"))
        self.batch_size: int = int(os.getenv("DISPATCH_BATCH_SIZE", "10"))
        self.block_ms: int = int(os.getenv("DISPATCH_BLOCK_MS", "1000"))
        self.retry_base: float = float(os.getenv("DISPATCH_RETRY_BASE", "0.5"))
        self.retry_max: float = float(os.getenv("DISPATCH_RETRY_MAX", "15"))
        self.ledger_retention_hours: float = float(os.getenv("LEDGER_RETENTION_HOURS", "336"))
        self.shutdown_grace: float = float(os.getenv("DISPATCH_SHUTDOWN_GRACE", "5"))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown dispatcher setting: {key}")
            setattr(self, key, value)


class BrokerSettings:
    """Settings for the message broker connection."""

    def __init__(self, url: Optional[str] = None, **overrides):
        self.url: str = url or os.getenv("BROKER_URL", "memory://")
        self.partitions: int = int(os.getenv("BROKER_PARTITIONS", "8"))
        self.redelivery_timeout: float = float(os.getenv("BROKER_REDELIVERY_TIMEOUT", "30"))
        self.max_stream_length: int = int(os.getenv("BROKER_MAX_STREAM_LENGTH", "100000"))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown broker setting: {key}")
            setattr(self, key, value)

    @property
    def scheme(self) -> str:
        return self.url.split("://", 1)[0].lower()
