"""Stuck-entity detection.

Read-only scan for orders and returns whose automation stalled. Never writes.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.models import Order
from app.models.enums import OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ReturnStatus
from app.models.returns import Return
from app.services.transitions import ORDER_TERMINAL, as_utc

ATTENTION_MARKER = re.compile(r"URGENT|CRITICAL|MANUAL.*REQUIRED", re.IGNORECASE)
FAILED_REFUND_MARKER = re.compile(r"URGENT.*refund failed", re.IGNORECASE)

CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"

ORDER_CATEGORIES = ("urgent_refunds", "no_shipment", "cancelled_needs_refund", "pending_verification", "other")
RETURN_CATEGORIES = ("refund_failed", "refund_unconfirmed", "awaiting_inspection", "pickup_failed")


@dataclass
class StuckFinding:
    entity: str
    number: str
    category: str
    priority: str
    issue: str
    action: str
    amount: float
    status: str
    age_minutes: int
    details: dict = field(default_factory=dict)


def _age_minutes(created: Optional[datetime], now: datetime) -> int:
    created = as_utc(created)
    if created is None:
        return 0
    return max(int((now - created).total_seconds() // 60), 0)


def _has_shipment(order: Order) -> bool:
    return bool(order.shipment_id or order.carrier_order_id or order.awb_code)


class StuckDetector:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.order_age = timedelta(minutes=settings.stuck_order_age_minutes)
        self.cancelled_window = timedelta(hours=settings.cancelled_refund_window_hours)
        self.refund_timeout = timedelta(minutes=settings.refund_confirmation_timeout_minutes)

    # ── Orders ──────────────────────────────────────────

    def classify_order(self, order: Order, now: datetime) -> Optional[StuckFinding]:
        notes = order.notes or ""
        created = as_utc(order.created_at)
        updated = as_utc(order.updated_at) or created
        old_enough = created is not None and created < now - self.order_age
        paid = order.payment_status == PaymentStatus.PAID.value
        open_order = order.status not in ORDER_TERMINAL

        if open_order and FAILED_REFUND_MARKER.search(notes):
            verdict = ("urgent_refunds", CRITICAL,
                       "Automatic refund failed - manual refund required immediately",
                       "Process manual refund from the admin refund endpoint")
        elif old_enough and paid and order.payment_method == PaymentMethod.ONLINE.value and not _has_shipment(order):
            verdict = ("no_shipment", HIGH,
                       "Payment received but shipment not created",
                       "Create the carrier shipment manually or refund the order")
        elif (order.status == OrderStatus.CANCELLED.value and paid
              and updated is not None and updated > now - self.cancelled_window):
            verdict = ("cancelled_needs_refund", HIGH,
                       "Order cancelled but payment not refunded",
                       "Verify refund status and refund if needed")
        elif old_enough and paid and order.status == OrderStatus.PENDING.value:
            verdict = ("pending_verification", MEDIUM,
                       "Order stuck in pending with payment received",
                       "Verify the order and proceed with fulfilment or refund")
        elif open_order and ATTENTION_MARKER.search(notes):
            verdict = ("other", MEDIUM, "Requires manual review", "Review order notes and take action")
        else:
            return None

        category, priority, issue, action = verdict
        return StuckFinding(
            entity="order",
            number=order.order_number,
            category=category,
            priority=priority,
            issue=issue,
            action=action,
            amount=float(order.total_amount or 0),
            status=order.status,
            age_minutes=_age_minutes(created, now),
            details={
                "customer_name": order.customer_name,
                "customer_email": order.customer_email,
                "payment_method": order.payment_method,
                "payment_status": order.payment_status,
                "payment_id": order.payment_id,
                "carrier_order_id": order.carrier_order_id,
                "notes": notes,
            },
        )

    async def _candidate_orders(self, session: AsyncSession, now: datetime) -> list[Order]:
        cutoff = now - self.order_age
        paid = Order.payment_status == PaymentStatus.PAID.value
        stmt = select(Order).where(or_(
            and_(paid, Order.created_at < cutoff),
            and_(paid, Order.status == OrderStatus.CANCELLED.value, Order.updated_at > now - self.cancelled_window),
            and_(Order.notes.is_not(None), Order.notes != "", Order.status.not_in(sorted(ORDER_TERMINAL))),
        )).order_by(Order.created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── Returns ─────────────────────────────────────────

    def classify_return(self, ret: Return, now: datetime) -> Optional[StuckFinding]:
        updated = as_utc(ret.updated_at) or as_utc(ret.created_at)
        if ret.status == ReturnStatus.APPROVED_REFUND.value and ret.refund_status == RefundStatus.FAILED.value:
            verdict = ("refund_failed", CRITICAL, "Refund failed at the gateway", "Retry the refund or pay out manually")
        elif (ret.refund_status == RefundStatus.PROCESSING.value
              and updated is not None and updated < now - self.refund_timeout):
            verdict = ("refund_unconfirmed", HIGH, "Refund not confirmed by gateway",
                       "Check refund status with the gateway")
        elif ret.status == ReturnStatus.INSPECTED.value:
            verdict = ("awaiting_inspection", MEDIUM, "Return awaiting manual inspection",
                       "Inspect items and approve or reject the refund")
        elif ret.status == ReturnStatus.PICKUP_FAILED.value:
            verdict = ("pickup_failed", HIGH, "Reverse pickup failed", "Contact customer and reschedule pickup")
        else:
            return None

        category, priority, issue, action = verdict
        return StuckFinding(
            entity="return",
            number=ret.return_number,
            category=category,
            priority=priority,
            issue=issue,
            action=action,
            amount=float(ret.refund_amount or 0),
            status=ret.status,
            age_minutes=_age_minutes(ret.created_at, now),
            details={
                "refund_status": ret.refund_status,
                "refund_transaction_id": ret.refund_transaction_id,
                "return_awb": ret.return_awb,
            },
        )

    async def _candidate_returns(self, session: AsyncSession) -> list[Return]:
        stmt = select(Return).where(or_(
            and_(Return.status == ReturnStatus.APPROVED_REFUND.value,
                 Return.refund_status == RefundStatus.FAILED.value),
            Return.refund_status == RefundStatus.PROCESSING.value,
            Return.status.in_([ReturnStatus.INSPECTED.value, ReturnStatus.PICKUP_FAILED.value]),
        )).order_by(Return.created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── Report ──────────────────────────────────────────

    async def scan(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as session:
            orders = await self._candidate_orders(session, now)
            returns = await self._candidate_returns(session)

        order_findings = [f for f in (self.classify_order(o, now) for o in orders) if f]
        return_findings = [f for f in (self.classify_return(r, now) for r in returns) if f]
        findings = order_findings + return_findings

        order_categories: dict[str, list] = {name: [] for name in ORDER_CATEGORIES}
        for f in order_findings:
            order_categories[f.category].append(asdict(f))
        return_categories: dict[str, list] = {name: [] for name in RETURN_CATEGORIES}
        for f in return_findings:
            return_categories[f.category].append(asdict(f))

        total = len(findings)
        summary = {
            "total_stuck": total,
            "stuck_orders": len(order_findings),
            "stuck_returns": len(return_findings),
            "total_amount_at_risk": round(sum(f.amount for f in findings), 2),
            "critical": sum(1 for f in findings if f.priority == CRITICAL),
            "high": sum(1 for f in findings if f.priority == HIGH),
            "medium": sum(1 for f in findings if f.priority == MEDIUM),
        }
        return {
            "summary": summary,
            "orders": order_categories,
            "returns": return_categories,
            "message": f"Found {total} entities requiring manual intervention" if total else "No stuck orders found",
        }
