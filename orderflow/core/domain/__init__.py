"""
Domain Aggregates

Business entities that buffer domain events alongside their state changes.
"""

from .aggregate import AggregateRoot
from .order import Order, OrderStatus, ORDER_TRANSITIONS

__all__ = [
    "AggregateRoot",
    "Order",
    "OrderStatus",
    "ORDER_TRANSITIONS",
]
