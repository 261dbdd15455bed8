"""
Order Consumers

Downstream reactions to order events. Each consumer has its own ledger
namespace and consumer group, so both see every OrderPaid exactly once.
"""

import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import uuid4

from ..core.database.adapter import DatabaseSession
from ..core.errors import HandlerBusinessFailure, InvalidStateTransition
from ..core.events.models import DomainEvent
from ..core.events.taxonomy import OrderEventType
from ..core.inbox.consumer import EventConsumer
from .unit_of_work import OrderUnitOfWork

logger = logging.getLogger(__name__)

confirmation_consumer = EventConsumer("order-confirmation")
fulfillment_consumer = EventConsumer("order-fulfillment")


@confirmation_consumer.on(OrderEventType.PAID.value)
async def send_payment_confirmation(event: DomainEvent, session: DatabaseSession) -> None:
    """Record the confirmation for the customer (the "send" side effect)."""
    customer_id = event.payload.get("customer_id")
    if not customer_id:
        raise HandlerBusinessFailure(f"OrderPaid {event.event_id} has no customer_id")

    await session.execute(
        """
        INSERT INTO order_confirmations (id, order_id, customer_id, event_id, sent_at)
        VALUES ($1, $2, $3, $4, $5)
        """,
        uuid4(),
        event.aggregate_id,
        customer_id,
        event.event_id,
        datetime.now(timezone.utc),
    )
    logger.info(
        f"Payment confirmation sent for order {event.aggregate_id}",
        extra={"event_id": str(event.event_id), "customer_id": customer_id}
    )


@fulfillment_consumer.on(OrderEventType.PAID.value)
async def begin_fulfillment(event: DomainEvent, session: DatabaseSession) -> None:
    """Move the paid order into fulfillment; its event joins this transaction."""
    async with OrderUnitOfWork.for_session(session) as uow:
        order = await uow.orders.get(event.aggregate_id)
        if order is None:
            raise HandlerBusinessFailure(f"Order {event.aggregate_id} not found")
        try:
            order.start_fulfillment()
        except InvalidStateTransition as e:
            raise HandlerBusinessFailure(str(e), cause=e) from e


CONSUMERS: Dict[str, EventConsumer] = {
    "confirmation": confirmation_consumer,
    "fulfillment": fulfillment_consumer,
}
