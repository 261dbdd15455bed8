"""
Database Schema

DDL for the order state, outbox, idempotency ledger and confirmation
tables. The aggregate tables and the outbox live in the same database so
one transaction covers both.
"""

import logging

from .adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    status TEXT NOT NULL,
    total_cents INTEGER NOT NULL,
    currency TEXT NOT NULL,
    cancel_reason TEXT,
    version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL UNIQUE,
    aggregate_type TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    schema_version INTEGER NOT NULL DEFAULT 1,
    payload TEXT NOT NULL,
    headers TEXT NOT NULL DEFAULT '{}',
    occurred_at TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TEXT,
    next_eligible_at TEXT NOT NULL,
    claim_token TEXT,
    claimed_until TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT,
    UNIQUE (aggregate_id, sequence)
);

CREATE INDEX IF NOT EXISTS idx_outbox_status_eligible
    ON outbox (status, next_eligible_at);
CREATE INDEX IF NOT EXISTS idx_outbox_aggregate_sequence
    ON outbox (aggregate_id, sequence);

CREATE TABLE IF NOT EXISTS idempotency_ledger (
    consumer_name TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT,
    applied_at TEXT NOT NULL,
    PRIMARY KEY (consumer_name, event_id)
);

CREATE INDEX IF NOT EXISTS idx_ledger_applied_at
    ON idempotency_ledger (applied_at);

CREATE TABLE IF NOT EXISTS order_confirmations (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    sent_at TEXT NOT NULL
);
"""


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    status TEXT NOT NULL,
    total_cents BIGINT NOT NULL,
    currency TEXT NOT NULL,
    cancel_reason TEXT,
    version INTEGER NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox (
    id UUID PRIMARY KEY,
    event_id UUID NOT NULL UNIQUE,
    aggregate_type TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    schema_version INTEGER NOT NULL DEFAULT 1,
    payload JSONB NOT NULL,
    headers JSONB NOT NULL DEFAULT '{}'::jsonb,
    occurred_at TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'sent', 'failed', 'dead')),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at TIMESTAMPTZ,
    next_eligible_at TIMESTAMPTZ NOT NULL,
    claim_token UUID,
    claimed_until TIMESTAMPTZ,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    sent_at TIMESTAMPTZ,
    UNIQUE (aggregate_id, sequence)
);

CREATE INDEX IF NOT EXISTS idx_outbox_status_eligible
    ON outbox (status, next_eligible_at);
CREATE INDEX IF NOT EXISTS idx_outbox_aggregate_sequence
    ON outbox (aggregate_id, sequence);

CREATE TABLE IF NOT EXISTS idempotency_ledger (
    consumer_name TEXT NOT NULL,
    event_id UUID NOT NULL,
    event_type TEXT,
    applied_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (consumer_name, event_id)
);

CREATE INDEX IF NOT EXISTS idx_ledger_applied_at
    ON idempotency_ledger (applied_at);

CREATE TABLE IF NOT EXISTS order_confirmations (
    id UUID PRIMARY KEY,
    order_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    event_id UUID NOT NULL,
    sent_at TIMESTAMPTZ NOT NULL
);
"""


def schema_for(backend: DatabaseBackend) -> str:
    if backend == DatabaseBackend.POSTGRESQL:
        return POSTGRES_SCHEMA
    return SQLITE_SCHEMA


async def ensure_schema(db: DatabaseAdapter) -> None:
    """Create all tables and indexes if they do not exist yet."""
    await db.execute_script(schema_for(db.backend))
    logger.info("Schema ensured for backend=%s", db.backend.value)
