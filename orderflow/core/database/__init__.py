"""
Database abstraction layer supporting SQLite and PostgreSQL.

This module provides a unified async interface for database operations
that works with both SQLite (development, tests) and PostgreSQL
(production) backends.

Usage:
    from orderflow.core.database import get_database

    db = await get_database()

    # Single statements
    rows = await db.fetch("SELECT * FROM orders WHERE id = $1", order_id)

    # One atomic unit spanning several statements
    async with db.transaction() as session:
        await session.execute("UPDATE orders SET status = $1 WHERE id = $2", status, order_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    DatabaseSession,
    affected_rows,
    is_unique_violation,
    get_database,
    set_database,
    close_database,
)
from .schema import ensure_schema

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "DatabaseSession",
    "affected_rows",
    "is_unique_violation",
    "get_database",
    "set_database",
    "close_database",
    "ensure_schema",
]
