"""
Order Unit of Work

A UnitOfWork with an order repository attached.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from ..core.database.adapter import DatabaseAdapter, DatabaseSession
from ..core.outbox.store import OutboxStore
from ..core.outbox.unit_of_work import UnitOfWork
from .repository import OrderRepository


class OrderUnitOfWork(UnitOfWork):
    """
    Usage:
        async with unit_of_work(db) as uow:
            order = await uow.orders.get_or_raise(order_id)
            order.pay(payment_reference="pi_123")
        # orders row and OrderPaid outbox record are committed together
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        store: Optional[OutboxStore] = None,
        session: Optional[DatabaseSession] = None,
    ):
        super().__init__(db=db, store=store, session=session)
        self.orders = OrderRepository(self)


@asynccontextmanager
async def unit_of_work(
    db: Optional[DatabaseAdapter] = None,
    store: Optional[OutboxStore] = None,
) -> AsyncIterator[OrderUnitOfWork]:
    async with OrderUnitOfWork(db=db, store=store) as uow:
        yield uow
