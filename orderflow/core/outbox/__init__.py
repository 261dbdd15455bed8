"""
Outbox Pattern Implementation

Provides transactional event publishing with guaranteed delivery.

Usage:
    from orderflow.core.outbox import UnitOfWork

    async with UnitOfWork(db) as uow:
        # State change and outbox record commit atomically
        order.pay()
        uow.collect(order)
"""

from .models import OutboxRecord, OutboxStatus
from .backoff import compute_backoff, next_eligible_at
from .store import OutboxStore
from .unit_of_work import Repository, UnitOfWork
from .relay import (
    OutboxRelay,
    RelayBatchResult,
    start_outbox_relay,
    stop_outbox_relay,
    get_outbox_relay,
)
from .dlq import DLQManager, DLQEntry, DLQAction
from .retention import RetentionReaper
from .lifecycle import outbox_lifespan

__all__ = [
    "OutboxRecord",
    "OutboxStatus",
    "compute_backoff",
    "next_eligible_at",
    "OutboxStore",
    "Repository",
    "UnitOfWork",
    "OutboxRelay",
    "RelayBatchResult",
    "start_outbox_relay",
    "stop_outbox_relay",
    "get_outbox_relay",
    "DLQManager",
    "DLQEntry",
    "DLQAction",
    "RetentionReaper",
    "outbox_lifespan",
]
