"""Identifier resolution: map a normalized event to the record it concerns."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Order
from app.models.returns import Return
from app.services.errors import ResolutionError
from app.services.normalizer import RefundEvent, ShipmentEvent


async def _first(session: AsyncSession, model, column, value: Optional[str]):
    if not value:
        return None
    result = await session.execute(select(model).where(column == value).limit(1))
    return result.scalar_one_or_none()


async def resolve_order(session: AsyncSession, event: ShipmentEvent) -> Order:
    """Find the order by shipment id, AWB, carrier order id, then order number.

    First match wins. A later identifier is never consulted once an earlier
    one matched, even if it would point elsewhere.
    """
    lookups = (
        (Order.shipment_id, event.shipment_id),
        (Order.awb_code, event.awb),
        (Order.carrier_order_id, event.carrier_order_id),
        (Order.order_number, event.order_number),
    )
    for column, value in lookups:
        order = await _first(session, Order, column, value)
        if order is not None:
            return order
    raise ResolutionError(
        f"No order for shipment={event.shipment_id} awb={event.awb} "
        f"sr_order={event.carrier_order_id} order={event.order_number_hint}"
    )


async def resolve_return(session: AsyncSession, event: ShipmentEvent) -> Return:
    """Find the return by return shipment id, return AWB, then via its order."""
    ret = await _first(session, Return, Return.return_shipment_id, event.shipment_id)
    if ret is None:
        ret = await _first(session, Return, Return.return_awb, event.awb)
    if ret is not None:
        return ret

    order = await _first(session, Order, Order.carrier_order_id, event.carrier_order_id)
    if order is None:
        order = await _first(session, Order, Order.order_number, event.order_number)
    if order is not None:
        ret = await _first(session, Return, Return.order_id, order.id)
        if ret is not None:
            return ret
    raise ResolutionError(
        f"No return for shipment={event.shipment_id} awb={event.awb} order={event.order_number_hint}"
    )


async def resolve_refund(session: AsyncSession, event: RefundEvent) -> Return:
    """Find the return a gateway refund belongs to: refund id, then our receipt."""
    for value in (event.refund_id, event.receipt):
        ret = await _first(session, Return, Return.refund_transaction_id, value)
        if ret is not None:
            return ret
    raise ResolutionError(f"No return for refund={event.refund_id} receipt={event.receipt}")


async def get_order_by_number(session: AsyncSession, order_number: str) -> Order:
    order = await _first(session, Order, Order.order_number, order_number)
    if order is None:
        raise ResolutionError(f"Order {order_number} not found")
    return order


async def get_return_by_number(session: AsyncSession, return_number: str) -> Return:
    ret = await _first(session, Return, Return.return_number, return_number)
    if ret is None:
        raise ResolutionError(f"Return {return_number} not found")
    return ret
