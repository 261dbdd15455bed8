"""
Orders

Order persistence, application service and event consumers.
"""

from .repository import OrderRepository, find_order
from .unit_of_work import OrderUnitOfWork, unit_of_work
from .service import OrderService
from .handlers import CONSUMERS, confirmation_consumer, fulfillment_consumer

__all__ = [
    "OrderRepository",
    "find_order",
    "OrderUnitOfWork",
    "unit_of_work",
    "OrderService",
    "CONSUMERS",
    "confirmation_consumer",
    "fulfillment_consumer",
]
