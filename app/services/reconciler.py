"""Webhook and resync units of work.

Each inbound event is normalized, resolved, translated and applied inside its
own session; the audit log is written only once the commit succeeded.
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import Order
from app.models.enums import OrderStatus, PaymentStatus
from app.services.carrier import CarrierClient
from app.services.errors import ExternalCallFailure, NormalizationError, ReconciliationError, ResolutionError
from app.services.normalizer import EventSource, ShipmentEvent, normalize_refund, normalize_shipment
from app.services.persistence import commit_with_retry
from app.services.refunds import RefundOrchestrator
from app.services.resolver import get_order_by_number, resolve_order, resolve_return
from app.services.transaction_log import TransactionLogger
from app.services.transitions import (
    ADVANCED, CONFLICT, UNMAPPED, TransitionResult, apply_return_event, apply_shipment_event,
)

logger = logging.getLogger(__name__)

RESYNC_STATUSES = (OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value)


class Reconciler:
    """Entry point for carrier pushes, gateway pushes and manual re-sync."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        carrier: CarrierClient,
        refunds: RefundOrchestrator,
        tx_log: TransactionLogger,
    ):
        self.session_factory = session_factory
        self.carrier = carrier
        self.refunds = refunds
        self.tx_log = tx_log

    # ── Carrier pushes ──────────────────────────────────

    async def handle_shipment(self, body: Any, source: EventSource = EventSource.CARRIER_SHIPMENT) -> dict:
        event = normalize_shipment(body, source)
        if event.is_return:
            return await self.apply_return(event)
        return await self.apply_order(event)

    async def handle_return(self, body: Any) -> dict:
        event = normalize_shipment(body, EventSource.CARRIER_RETURN)
        return await self.apply_return(event)

    async def apply_order(self, event: ShipmentEvent, order_number: Optional[str] = None) -> dict:
        """Apply a forward-shipment event; order_number bypasses identifier resolution."""

        async def work(session: AsyncSession):
            if order_number:
                order = await get_order_by_number(session, order_number)
            else:
                order = await resolve_order(session, event)
            result = apply_shipment_event(order, event)
            return order.order_number, order.payment_status, result, len(order.tracking_history or [])

        number, payment_status, result, history_len = await commit_with_retry(self.session_factory, work)
        self._audit(number, "order", result, event)
        if result.outcome == ADVANCED and result.status == OrderStatus.CANCELLED.value:
            self.tx_log.order_cancelled(
                number, f"Carrier status {event.status_label or event.status_code}",
                refunded=payment_status == PaymentStatus.REFUNDED.value,
            )
        return {
            "entity": "order",
            "order_number": number,
            "status": result.status,
            "previous_status": result.previous_status,
            "outcome": result.outcome,
            "updated": result.updated,
            "tracking_events": history_len,
        }

    async def apply_return(self, event: ShipmentEvent) -> dict:
        async def work(session: AsyncSession):
            ret = await resolve_return(session, event)
            order = await session.get(Order, ret.order_id)
            result = apply_return_event(ret, event)
            return ret.id, ret.return_number, order.order_number, result

        return_id, return_number, order_number, result = await commit_with_retry(self.session_factory, work)
        self._audit(order_number, "return", result, event, return_number=return_number)
        response = {
            "entity": "return",
            "return_number": return_number,
            "order_number": order_number,
            "status": result.status,
            "previous_status": result.previous_status,
            "outcome": result.outcome,
            "updated": result.updated,
        }
        if result.triggers_inspection:
            try:
                refund = await self.refunds.inspect_received(return_id)
            except ReconciliationError as e:
                logger.error("Auto-refund for return %s did not run: %s", return_number, e)
                self.tx_log.manual_intervention(order_number, "Auto-refund did not run", {
                    "return_number": return_number, "error": str(e),
                })
                response["refund"] = {"success": False, "error": str(e)}
            else:
                response["refund"] = refund.to_dict() if refund else None
        return response

    def _audit(self, order_number: str, entity: str, result: TransitionResult, event: ShipmentEvent, **extra) -> None:
        if result.outcome == ADVANCED:
            self.tx_log.status_updated(
                order_number, entity, result.previous_status, result.status,
                status_code=event.status_code, **extra,
            )
        elif result.outcome == UNMAPPED:
            logger.warning("Unmapped carrier status %s (%s) for %s %s",
                           event.status_code, event.status_label, entity, order_number)
            self.tx_log.unmapped_status(order_number, event.status_code, event.status_label)
        elif result.outcome == CONFLICT:
            logger.info("Ignored out-of-order %s event for %s: %s stays %s (carrier %s)",
                        entity, order_number, entity, result.status, event.status_code)

    # ── Gateway pushes ──────────────────────────────────

    async def handle_refund(self, body: Any) -> dict:
        event = normalize_refund(body)
        return await self.refunds.handle_gateway_event(event)

    # ── Manual re-sync ──────────────────────────────────

    async def resync_order(self, order_number: str) -> dict:
        """Pull tracking from the carrier and apply it like a webhook.

        Queries by shipment id, then carrier order id, then AWB. History is
        merged, never replaced.
        """
        async with self.session_factory() as session:
            order = await get_order_by_number(session, order_number)
        shipment_id, carrier_order_id, awb = order.shipment_id, order.carrier_order_id, order.awb_code

        if shipment_id:
            raw = await self.carrier.track_shipment(shipment_id)
        elif carrier_order_id:
            raw = await self.carrier.track_order(carrier_order_id)
        elif awb:
            raw = await self.carrier.track_awb(awb)
        else:
            raise ResolutionError(f"Order {order_number} has no carrier identifiers to track")

        try:
            event = normalize_shipment(raw, shipment_id=shipment_id, order_id=carrier_order_id, awb=awb)
        except NormalizationError as e:
            raise ExternalCallFailure(f"Carrier returned no usable tracking data for {order_number}: {e}") from e
        return await self.apply_order(event, order_number=order_number)

    async def resync_active(self, limit: int = 50) -> dict:
        """Re-sync in-flight orders that carry a carrier identifier."""
        async with self.session_factory() as session:
            stmt = (
                select(Order.order_number)
                .where(Order.status.in_(RESYNC_STATUSES))
                .where((Order.shipment_id.is_not(None)) | (Order.carrier_order_id.is_not(None))
                       | (Order.awb_code.is_not(None)))
                .order_by(Order.last_update_at.asc())
                .limit(limit)
            )
            numbers = list((await session.execute(stmt)).scalars().all())

        synced, failed = [], []
        for number in numbers:
            try:
                synced.append(await self.resync_order(number))
            except ReconciliationError as e:
                logger.warning("Resync of %s failed: %s", number, e)
                failed.append({"order_number": number, "error": str(e)})
        return {"total": len(numbers), "synced": synced, "failed": failed}
