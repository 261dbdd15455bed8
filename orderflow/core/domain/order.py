"""
Order Aggregate

Order lifecycle with validated status transitions. Every transition
records a domain event; an illegal transition raises and records nothing.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..errors import InvalidStateTransition
from ..events.taxonomy import OrderEventType
from .aggregate import AggregateRoot


class OrderStatus(str, Enum):
    """Valid order statuses."""
    CREATED = "CREATED"
    PAID = "PAID"
    FULFILLING = "FULFILLING"
    SHIPPED = "SHIPPED"
    CANCELLED = "CANCELLED"


# Valid status transitions
ORDER_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.CREATED: [OrderStatus.PAID, OrderStatus.CANCELLED],
    OrderStatus.PAID: [OrderStatus.FULFILLING, OrderStatus.CANCELLED],
    OrderStatus.FULFILLING: [OrderStatus.SHIPPED],
    OrderStatus.SHIPPED: [],  # Terminal state
    OrderStatus.CANCELLED: [],  # Terminal state
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(AggregateRoot):
    """An order placed by a customer."""

    aggregate_type = "order"

    def __init__(
        self,
        id: str,
        customer_id: str,
        total_cents: int,
        currency: str = "USD",
        status: OrderStatus = OrderStatus.CREATED,
        version: int = 0,
        cancel_reason: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        super().__init__(id, version)
        self.customer_id = customer_id
        self.total_cents = total_cents
        self.currency = currency
        self.status = OrderStatus(status)
        self.cancel_reason = cancel_reason
        self.created_at = created_at or _utcnow()
        self.updated_at = updated_at or self.created_at

    @classmethod
    def create(
        cls,
        customer_id: str,
        total_cents: int,
        currency: str = "USD",
        order_id: Optional[str] = None,
    ) -> "Order":
        """Place a new order. Records OrderCreated as sequence 0."""
        if total_cents <= 0:
            raise ValueError("Order total must be positive")
        if not customer_id:
            raise ValueError("customer_id is required")

        order = cls(
            id=order_id or str(uuid4()),
            customer_id=customer_id,
            total_cents=total_cents,
            currency=currency.upper(),
        )
        order.record_event(OrderEventType.CREATED.value, {
            "order_id": order.id,
            "customer_id": customer_id,
            "total_cents": total_cents,
            "currency": order.currency,
        })
        return order

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in ORDER_TRANSITIONS.get(self.status, [])

    def pay(self, payment_reference: Optional[str] = None) -> None:
        self._transition(OrderStatus.PAID, OrderEventType.PAID, {
            "order_id": self.id,
            "customer_id": self.customer_id,
            "amount_cents": self.total_cents,
            "currency": self.currency,
            "payment_reference": payment_reference,
        })

    def start_fulfillment(self) -> None:
        self._transition(OrderStatus.FULFILLING, OrderEventType.FULFILLMENT_STARTED, {
            "order_id": self.id,
        })

    def ship(self, tracking_number: Optional[str] = None) -> None:
        self._transition(OrderStatus.SHIPPED, OrderEventType.SHIPPED, {
            "order_id": self.id,
            "tracking_number": tracking_number,
        })

    def cancel(self, reason: str) -> None:
        self._transition(OrderStatus.CANCELLED, OrderEventType.CANCELLED, {
            "order_id": self.id,
            "reason": reason,
        })
        self.cancel_reason = reason

    def _transition(self, target: OrderStatus, event_type: OrderEventType, payload: Dict[str, Any]) -> None:
        if not self.can_transition_to(target):
            raise InvalidStateTransition(
                f"Order {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.updated_at = _utcnow()
        self.record_event(event_type.value, payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "cancel_reason": self.cancel_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
