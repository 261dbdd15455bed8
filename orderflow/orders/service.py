"""
Order Service

Application operations on orders. Each runs in its own unit of work, so
the order row and the events it produced commit together; publishing
happens later in the relay and never fails the caller.
"""

import logging
from typing import Optional

from ..core.database.adapter import DatabaseAdapter
from ..core.domain.order import Order
from ..core.errors import OrderNotFound
from ..core.outbox.store import OutboxStore
from .repository import find_order
from .unit_of_work import unit_of_work

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, db: DatabaseAdapter, store: Optional[OutboxStore] = None):
        self.db = db
        self.store = store

    async def place_order(
        self,
        customer_id: str,
        total_cents: int,
        currency: str = "USD",
        order_id: Optional[str] = None,
    ) -> Order:
        async with unit_of_work(self.db, self.store) as uow:
            order = Order.create(customer_id, total_cents, currency, order_id=order_id)
            uow.orders.add(order)
        logger.info(f"Order {order.id} placed for customer {customer_id}")
        return order

    async def pay(self, order_id: str, payment_reference: Optional[str] = None) -> Order:
        async with unit_of_work(self.db, self.store) as uow:
            order = await uow.orders.get_or_raise(order_id)
            order.pay(payment_reference)
        logger.info(f"Order {order_id} paid")
        return order

    async def ship(self, order_id: str, tracking_number: Optional[str] = None) -> Order:
        async with unit_of_work(self.db, self.store) as uow:
            order = await uow.orders.get_or_raise(order_id)
            order.ship(tracking_number)
        logger.info(f"Order {order_id} shipped")
        return order

    async def cancel(self, order_id: str, reason: str) -> Order:
        async with unit_of_work(self.db, self.store) as uow:
            order = await uow.orders.get_or_raise(order_id)
            order.cancel(reason)
        logger.info(f"Order {order_id} cancelled: {reason}")
        return order

    async def get(self, order_id: str) -> Order:
        order = await find_order(self.db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order
