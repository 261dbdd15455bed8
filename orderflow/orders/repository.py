"""
Order Repository

Maps the Order aggregate to the orders table. Writes are guarded by the
stored version so two transactions that loaded the same order cannot both
commit a change.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.database.adapter import DatabaseAdapter, affected_rows, is_unique_violation
from ..core.domain.order import Order
from ..core.errors import ConcurrencyConflict, OrderNotFound
from ..core.outbox.unit_of_work import Repository

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def row_to_order(row: Dict[str, Any]) -> Order:
    return Order(
        id=row["id"],
        customer_id=row["customer_id"],
        total_cents=row["total_cents"],
        currency=row["currency"],
        status=row["status"],
        version=row["version"],
        cancel_reason=row.get("cancel_reason"),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


class OrderRepository(Repository):
    """Orders inside a unit of work."""

    async def get_or_raise(self, order_id: str) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _load(self, order_id: str) -> Optional[Order]:
        row = await self.session.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return row_to_order(row) if row else None

    async def _insert(self, order: Order) -> None:
        try:
            await self.session.execute(
                """
                INSERT INTO orders (
                    id, customer_id, status, total_cents, currency,
                    cancel_reason, version, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                order.id,
                order.customer_id,
                order.status.value,
                order.total_cents,
                order.currency,
                order.cancel_reason,
                order.version,
                order.created_at,
                order.updated_at,
            )
        except Exception as e:
            if is_unique_violation(e):
                raise ConcurrencyConflict(f"Order {order.id} already exists", cause=e) from e
            raise

    async def _update(self, order: Order, expected_version: int) -> None:
        status = await self.session.execute(
            """
            UPDATE orders
            SET status = $2, cancel_reason = $3, version = $4, updated_at = $5
            WHERE id = $1 AND version = $6
            """,
            order.id,
            order.status.value,
            order.cancel_reason,
            order.version,
            order.updated_at,
            expected_version,
        )
        if affected_rows(status) != 1:
            raise ConcurrencyConflict(
                f"Order {order.id} was modified concurrently (expected version {expected_version})"
            )


async def find_order(db: DatabaseAdapter, order_id: str) -> Optional[Order]:
    """Read an order outside any unit of work."""
    row = await db.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
    return row_to_order(row) if row else None
