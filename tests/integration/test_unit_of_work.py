"""
Tests for atomic aggregate writes: the order row and its outbox records
commit or roll back together.
"""

import pytest

from orderflow.core.domain.order import Order, OrderStatus
from orderflow.core.errors import ConcurrencyConflict, InvalidStateTransition, OrderNotFound, OutboxError
from orderflow.orders.repository import find_order
from orderflow.orders.service import OrderService
from orderflow.orders.unit_of_work import OrderUnitOfWork, unit_of_work


@pytest.fixture
def service(db, store):
    return OrderService(db, store)


class TestOrderService:
    """Test order operations end to end against the database."""

    async def test_place_order_writes_row_and_event(self, db, store, service):
        order = await service.place_order("cust-1", 1500, order_id="o-1")

        stored = await find_order(db, "o-1")
        assert stored.status == OrderStatus.CREATED
        assert stored.version == 1
        [record] = await store.list_for_aggregate(order.id)
        assert record.event.type == "OrderCreated"
        assert record.sequence == 0

    async def test_lifecycle_sequences(self, db, store, service):
        await service.place_order("cust-1", 1500, order_id="o-1")
        await service.pay("o-1", "pi_1")
        await service.cancel("o-1", "fraud")

        records = await store.list_for_aggregate("o-1")
        assert [(r.sequence, r.event.type) for r in records] == [
            (0, "OrderCreated"), (1, "OrderPaid"), (2, "OrderCancelled"),
        ]
        assert (await find_order(db, "o-1")).version == 3

    async def test_invalid_transition_writes_nothing(self, db, store, service):
        await service.place_order("cust-1", 1500, order_id="o-1")

        with pytest.raises(InvalidStateTransition):
            await service.ship("o-1")

        assert (await find_order(db, "o-1")).status == OrderStatus.CREATED
        assert len(await store.list_for_aggregate("o-1")) == 1

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFound):
            await service.pay("missing")
        with pytest.raises(OrderNotFound):
            await service.get("missing")


class TestAtomicity:
    """Test that state and events never diverge."""

    async def test_outbox_failure_rolls_back_order(self, db, store, service, monkeypatch):
        async def broken_append(session, event, headers=None):
            raise OutboxError("disk full")

        monkeypatch.setattr(store, "append", broken_append)

        with pytest.raises(OutboxError):
            await service.place_order("cust-1", 1500, order_id="o-1")

        assert await find_order(db, "o-1") is None

    async def test_business_error_in_block_rolls_back(self, db, store):
        with pytest.raises(RuntimeError):
            async with unit_of_work(db, store) as uow:
                uow.orders.add(Order.create("cust-1", 100, order_id="o-1"))
                raise RuntimeError("abort")

        assert await find_order(db, "o-1") is None
        assert (await store.stats())["pending"] == 0

    async def test_emitted_events(self, db, store):
        async with unit_of_work(db, store) as uow:
            uow.orders.add(Order.create("cust-1", 100, order_id="o-1"))

        assert uow.committed
        assert [r.event.type for r in uow.emitted_events] == ["OrderCreated"]

    async def test_save_writes_early(self, db, store):
        async with unit_of_work(db, store) as uow:
            order = Order.create("cust-1", 100, order_id="o-1")
            uow.orders.add(order)
            await uow.orders.save(order)
            order.pay()

        records = await store.list_for_aggregate("o-1")
        assert [r.sequence for r in records] == [0, 1]
        assert (await find_order(db, "o-1")).status == OrderStatus.PAID

    async def test_joined_transaction_rolls_back_with_owner(self, db, store):
        with pytest.raises(RuntimeError):
            async with db.transaction() as session:
                async with OrderUnitOfWork.for_session(session, store) as uow:
                    uow.orders.add(Order.create("cust-1", 100, order_id="o-1"))
                assert not uow.committed
                raise RuntimeError("owner failed")

        assert await find_order(db, "o-1") is None
        assert (await store.stats())["pending"] == 0

    async def test_standalone_append(self, db, store):
        async with unit_of_work(db, store) as uow:
            order = Order.create("cust-1", 100, order_id="o-1")
            uow.collect(order)
            await uow.orders.session.execute(
                """
                INSERT INTO orders (id, customer_id, status, total_cents, currency, version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                order.id, order.customer_id, order.status.value, order.total_cents,
                order.currency, order.version, order.created_at, order.updated_at,
            )

        assert (await find_order(db, "o-1")).version == 1
        assert len(await store.list_for_aggregate("o-1")) == 1


class TestOptimisticConcurrency:
    async def test_stale_write_rejected(self, db, store, service):
        await service.place_order("cust-1", 1500, order_id="o-1")
        stale = await find_order(db, "o-1")
        await service.pay("o-1")

        with pytest.raises(ConcurrencyConflict):
            async with unit_of_work(db, store) as uow:
                stale.cancel("too late")
                await uow.orders.save(stale)

        assert (await find_order(db, "o-1")).status == OrderStatus.PAID
        assert len(await store.list_for_aggregate("o-1")) == 2

    async def test_duplicate_order_id(self, service):
        await service.place_order("cust-1", 1500, order_id="o-1")
        with pytest.raises(ConcurrencyConflict):
            await service.place_order("cust-2", 900, order_id="o-1")
