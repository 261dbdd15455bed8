"""
Order Endpoints

Every mutating endpoint commits the order and its events in one
transaction and returns as soon as that commit succeeds. Publishing is
the relay's job and never fails the request.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...core.database.adapter import get_database
from ...orders.service import OrderService
from ..shared.exceptions import ValidationError

router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderCreate(BaseModel):
    customer_id: str = Field(..., min_length=1)
    total_cents: int = Field(..., gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    order_id: Optional[str] = None


class PayRequest(BaseModel):
    payment_reference: Optional[str] = None


class ShipRequest(BaseModel):
    tracking_number: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


async def get_order_service() -> OrderService:
    return OrderService(await get_database())


@router.post("", status_code=201)
async def create_order(
    body: OrderCreate,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Place an order. Emits OrderCreated."""
    try:
        order = await service.place_order(
            body.customer_id, body.total_cents, body.currency, order_id=body.order_id
        )
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return order.to_dict()


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    order = await service.get(order_id)
    return order.to_dict()


@router.post("/{order_id}/pay")
async def pay_order(
    order_id: str,
    body: Optional[PayRequest] = None,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Mark an order paid. Emits OrderPaid."""
    order = await service.pay(order_id, body.payment_reference if body else None)
    return order.to_dict()


@router.post("/{order_id}/ship")
async def ship_order(
    order_id: str,
    body: Optional[ShipRequest] = None,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Mark a fulfilling order shipped. Emits OrderShipped."""
    order = await service.ship(order_id, body.tracking_number if body else None)
    return order.to_dict()


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelRequest,
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    """Cancel an order that has not entered fulfillment. Emits OrderCancelled."""
    order = await service.cancel(order_id, body.reason)
    return order.to_dict()
