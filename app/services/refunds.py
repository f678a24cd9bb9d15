"""Refund orchestration for returns and manual order refunds.

A return refund is a three-step saga: claim the attempt (commit a receipt and
refund_status=processing), call the gateway with no transaction open, then
re-load the return and record the outcome only if the receipt is still ours.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import Order
from app.models.enums import (
    SYSTEM_ACTOR, ItemCondition, OrderStatus, PaymentMethod, PaymentStatus,
    RefundStatus, ReturnStatus,
)
from app.models.returns import Return
from app.services.errors import (
    ExternalCallFailure, RefundIneligible, ResolutionError, TransitionConflict,
)
from app.services.gateway import RefundGateway
from app.services.normalizer import RefundEvent
from app.services.persistence import commit_with_retry
from app.services.resolver import get_order_by_number, get_return_by_number, resolve_refund
from app.services.transaction_log import TransactionLogger
from app.services.transitions import can_advance_order, transition_return

logger = logging.getLogger(__name__)

AUTO_APPROVE_CONDITIONS = {ItemCondition.UNUSED.value, ItemCondition.LIGHTLY_USED.value}

REFUND_REASONS = [
    "Customer requested cancellation",
    "Shipment could not be created",
    "Product out of stock",
    "Unable to fulfill order",
    "Duplicate order",
    "Customer dispute",
    "Other",
]


@dataclass
class RefundOutcome:
    success: bool
    return_number: Optional[str] = None
    order_number: Optional[str] = None
    refund_id: Optional[str] = None
    refund_status: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None
    superseded: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "return_number": self.return_number,
            "order_number": self.order_number,
            "refund_id": self.refund_id,
            "refund_status": self.refund_status,
            "status": self.status,
            "amount": float(self.amount) if self.amount is not None else None,
            "error": self.error,
        }


@dataclass
class _Claim:
    return_id: uuid.UUID
    return_number: str
    order_number: str
    payment_id: Optional[str]
    amount: Decimal
    receipt: str


@dataclass
class _GatewayOutcome:
    kind: str
    return_number: str = ""
    order_number: str = ""
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None
    notes: list = field(default_factory=list)


def items_auto_approvable(items: Optional[list]) -> bool:
    """Every item must report an unused or lightly-used condition."""
    if not items:
        return False
    return all((item or {}).get("item_condition") in AUTO_APPROVE_CONDITIONS for item in items)


def new_receipt(prefix: str = "attempt") -> str:
    # gateway receipts are capped at 40 characters
    return f"{prefix}_{uuid.uuid4().hex}"[:40]


class RefundOrchestrator:
    """Drives inspection, refund issuance and gateway confirmation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: RefundGateway,
        tx_log: TransactionLogger,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.tx_log = tx_log

    # ── Inspection ──────────────────────────────────────

    async def inspect_received(self, return_id: uuid.UUID) -> Optional[RefundOutcome]:
        """Run auto-inspection on a return that has just been received.

        Eligible returns are approved and refunded straight away; anything
        else stops at inspected for a human.
        """

        async def work(session: AsyncSession):
            ret = await session.get(Return, return_id)
            if ret is None or ret.status != ReturnStatus.RECEIVED.value:
                return None
            order = await session.get(Order, ret.order_id)
            if items_auto_approvable(ret.items):
                transition_return(ret, ReturnStatus.INSPECTED, note="Auto-inspection passed: items unused or lightly used")
                transition_return(ret, ReturnStatus.APPROVED_REFUND, note="Refund auto-approved")
                return "approved", ret.return_number, order.order_number
            transition_return(ret, ReturnStatus.INSPECTED, note="Awaiting manual inspection")
            ret.add_admin_note(
                "MANUAL INSPECTION REQUIRED: damaged, defective or unreported item condition",
                SYSTEM_ACTOR,
            )
            return "manual", ret.return_number, order.order_number

        decided = await commit_with_retry(self.session_factory, work)
        if decided is None:
            return None
        kind, return_number, order_number = decided
        if kind == "manual":
            self.tx_log.manual_intervention(order_number, "Return requires manual inspection", {
                "return_number": return_number,
            })
            return None
        return await self.issue_refund(return_id)

    # ── Issuance ────────────────────────────────────────

    async def _claim(self, return_id: uuid.UUID, actor: str) -> _Claim:
        async def work(session: AsyncSession) -> _Claim:
            ret = await session.get(Return, return_id)
            if ret is None:
                raise ResolutionError(f"Return {return_id} not found")
            if ret.status != ReturnStatus.APPROVED_REFUND.value:
                raise TransitionConflict(ret.status, ReturnStatus.REFUND_PROCESSED.value, "refund requires approved_refund")
            if ret.refund_status not in (RefundStatus.NOT_STARTED.value, RefundStatus.FAILED.value):
                raise TransitionConflict(ret.status, ReturnStatus.REFUND_PROCESSED.value, f"refund already {ret.refund_status}")
            order = await session.get(Order, ret.order_id)
            amount = Decimal(str(ret.refund_amount or 0)) or Decimal(str(order.total_amount or 0))
            receipt = new_receipt()
            ret.refund_status = RefundStatus.PROCESSING.value
            ret.refund_transaction_id = receipt
            ret.refund_gateway_data = {**(ret.refund_gateway_data or {}), "receipt": receipt, "requested_by": actor}
            return _Claim(ret.id, ret.return_number, order.order_number, order.payment_id, amount, receipt)

        return await commit_with_retry(self.session_factory, work)

    async def issue_refund(self, return_id: uuid.UUID, actor: str = SYSTEM_ACTOR) -> RefundOutcome:
        """Claim, call the gateway, then record. Gateway failures are contained."""
        claim = await self._claim(return_id, actor)
        self.tx_log.refund_initiated(claim.order_number, claim.payment_id, claim.amount, f"Return {claim.return_number}")

        refund: Optional[dict] = None
        error: Optional[str] = None
        if not claim.payment_id:
            error = "No gateway payment id on order (COD or unpaid); bank transfer required"
        else:
            try:
                refund = await self.gateway.create_refund(
                    claim.payment_id, claim.amount, claim.receipt,
                    notes={"return_number": claim.return_number, "order_number": claim.order_number},
                )
            except ExternalCallFailure as e:
                error = str(e)

        async def work(session: AsyncSession) -> RefundOutcome:
            ret = await session.get(Return, return_id)
            if ret is None or ret.refund_transaction_id != claim.receipt:
                return RefundOutcome(False, claim.return_number, claim.order_number, superseded=True,
                                     error="Refund attempt superseded by a newer one")
            order = await session.get(Order, ret.order_id)
            data = dict(ret.refund_gateway_data or {})
            if refund is not None:
                gateway_status = refund.get("status")
                ret.refund_transaction_id = refund["id"]
                ret.refund_gateway_data = {
                    **data,
                    "refund_id": refund["id"],
                    "status": gateway_status,
                    "speed_processed": refund.get("speed_processed"),
                    "amount": refund.get("amount"),
                }
                confirmed = gateway_status == "processed"
                # refund_status stays processing until refund.processed arrives
                ret.refund_status = RefundStatus.PROCESSED.value if confirmed else RefundStatus.PROCESSING.value
                transition_return(ret, ReturnStatus.REFUND_PROCESSED, actor, f"Refund {refund['id']} issued")
                transition_return(ret, ReturnStatus.COMPLETED, actor, "Refund issued to customer")
                ret.add_admin_note(f"Refund issued - Refund ID: {refund['id']}, amount {claim.amount}", actor)
                order.payment_status = PaymentStatus.REFUNDED.value
                return RefundOutcome(True, ret.return_number, order.order_number, refund["id"],
                                     ret.refund_status, ret.status, claim.amount)

            ret.refund_status = RefundStatus.FAILED.value
            ret.refund_gateway_data = {**data, "status": "failed", "error": error}
            ret.add_admin_note(f"Automatic refund failed: {error}. Manual refund required.", SYSTEM_ACTOR)
            order.add_note(f"URGENT: refund failed for return {ret.return_number}: {error}")
            return RefundOutcome(False, ret.return_number, order.order_number, None,
                                 ret.refund_status, ret.status, claim.amount, error)

        outcome = await commit_with_retry(self.session_factory, work)
        if outcome.superseded:
            logger.warning("Refund attempt %s for return %s superseded", claim.receipt, claim.return_number)
        elif outcome.success:
            self.tx_log.refund_success(outcome.order_number, outcome.refund_id, claim.amount)
        else:
            self.tx_log.refund_failed(outcome.order_number, claim.payment_id, claim.amount, outcome.error or "")
            self.tx_log.manual_intervention(outcome.order_number, "Automatic return refund failed", {
                "return_number": outcome.return_number, "error": outcome.error,
            })
        return outcome

    async def retry_return_refund(self, return_number: str, actor: str) -> RefundOutcome:
        async with self.session_factory() as session:
            ret = await get_return_by_number(session, return_number)
            return_id = ret.id
        return await self.issue_refund(return_id, actor)

    async def return_refund_status(self, return_number: str) -> dict:
        """Read-only view of a return's refund state."""
        async with self.session_factory() as session:
            ret = await get_return_by_number(session, return_number)
            order = await session.get(Order, ret.order_id)
            return {
                "return_number": ret.return_number,
                "order_number": order.order_number if order else None,
                "status": ret.status,
                "refund_status": ret.refund_status,
                "refund_transaction_id": ret.refund_transaction_id,
                "refund_amount": float(ret.refund_amount or 0),
                "gateway": ret.refund_gateway_data or {},
                "admin_notes": ret.admin_notes or [],
                "needs_attention": ret.refund_status == RefundStatus.FAILED.value,
            }

    # ── Gateway confirmation ────────────────────────────

    async def handle_gateway_event(self, event: RefundEvent) -> dict:
        """Apply refund.processed / refund.failed / refund.speed_changed."""

        async def work(session: AsyncSession) -> _GatewayOutcome:
            ret = await resolve_refund(session, event)
            order = await session.get(Order, ret.order_id)
            out = _GatewayOutcome("noop", ret.return_number, order.order_number, event.refund_id)
            data = dict(ret.refund_gateway_data or {})
            data.update({k: v for k, v in {"status": event.gateway_status, "speed_processed": event.speed}.items() if v})

            if event.event == "refund.processed":
                if ret.refund_status == RefundStatus.PROCESSED.value and ret.status == ReturnStatus.COMPLETED.value:
                    return out
                if event.refund_id:
                    ret.refund_transaction_id = event.refund_id
                ret.refund_status = RefundStatus.PROCESSED.value
                ret.refund_gateway_data = data
                ret.add_admin_note(f"Refund processed by gateway - Refund ID: {event.refund_id}", SYSTEM_ACTOR)
                if ret.status == ReturnStatus.APPROVED_REFUND.value:
                    transition_return(ret, ReturnStatus.REFUND_PROCESSED, note="Refund confirmed by gateway after failed call")
                if ret.status == ReturnStatus.REFUND_PROCESSED.value:
                    transition_return(ret, ReturnStatus.COMPLETED, note="Refund completed and confirmed by gateway")
                order.payment_status = PaymentStatus.REFUNDED.value
                out.kind = "processed"
                out.amount = ret.refund_amount
                return out

            if event.event == "refund.failed":
                if ret.refund_status == RefundStatus.FAILED.value and ret.status == ReturnStatus.APPROVED_REFUND.value:
                    return out
                reason = event.error_description or "Unknown"
                ret.refund_status = RefundStatus.FAILED.value
                ret.refund_gateway_data = data
                ret.add_admin_note(f"Refund failed - Refund ID: {event.refund_id}. Reason: {reason}", SYSTEM_ACTOR)
                if ret.status in (ReturnStatus.REFUND_PROCESSED.value, ReturnStatus.COMPLETED.value):
                    transition_return(
                        ret, ReturnStatus.APPROVED_REFUND,
                        note=f"Refund failed and needs reprocessing: {reason}", refund_retry=True,
                    )
                if order.payment_status == PaymentStatus.REFUNDED.value:
                    order.payment_status = PaymentStatus.PAID.value
                out.kind = "failed"
                out.error = reason
                out.amount = ret.refund_amount
                return out

            if event.event == "refund.speed_changed":
                if data == (ret.refund_gateway_data or {}):
                    return out
                ret.refund_gateway_data = data
                ret.add_admin_note(f"Refund speed changed to: {event.speed}", SYSTEM_ACTOR)
                out.kind = "speed_changed"
                return out

            out.kind = "ignored"
            return out

        out = await commit_with_retry(self.session_factory, work)
        if out.kind == "processed":
            self.tx_log.refund_success(out.order_number, out.refund_id, out.amount)
        elif out.kind == "failed":
            self.tx_log.refund_failed(out.order_number, event.payment_id, out.amount, out.error or "")
            self.tx_log.manual_intervention(out.order_number, "Gateway reported refund failure", {
                "return_number": out.return_number, "refund_id": out.refund_id,
            })
        elif out.kind == "ignored":
            logger.info("Ignoring gateway event %s", event.event)
        return {"event": event.event, "outcome": out.kind, "return_number": out.return_number}

    # ── Manual order refunds ────────────────────────────

    @staticmethod
    def eligibility_problems(order: Order, amount: Optional[Decimal] = None) -> list[str]:
        problems = []
        if order.payment_method != PaymentMethod.ONLINE.value:
            problems.append("COD orders require manual bank transfer")
        if not order.payment_id:
            problems.append("Order has no gateway payment id")
        if order.payment_status == PaymentStatus.REFUNDED.value:
            problems.append("Order already refunded")
        elif order.payment_status != PaymentStatus.PAID.value:
            problems.append(f"Payment status is {order.payment_status}")
        if amount is not None:
            total = Decimal(str(order.total_amount or 0))
            if amount <= 0:
                problems.append("Refund amount must be positive")
            elif amount > total:
                problems.append(f"Refund amount {amount} exceeds order total {total}")
        return problems

    async def order_refund_eligibility(self, order_number: str) -> dict:
        async with self.session_factory() as session:
            order = await get_order_by_number(session, order_number)
        problems = self.eligibility_problems(order)
        eligible = not problems
        return {
            "eligible": eligible,
            "order": {
                "order_number": order.order_number,
                "total_amount": float(order.total_amount or 0),
                "payment_method": order.payment_method,
                "payment_status": order.payment_status,
                "payment_id": order.payment_id,
                "status": order.status,
            },
            "reasons": REFUND_REASONS if eligible else [],
            "problems": problems,
        }

    async def refund_order(
        self,
        order_number: str,
        actor: str,
        amount: Optional[Decimal] = None,
        reason: str = "",
        notes: str = "",
    ) -> RefundOutcome:
        """Admin-initiated refund of an online-paid order."""
        async with self.session_factory() as session:
            order = await get_order_by_number(session, order_number)
        refund_amount = Decimal(str(amount)) if amount is not None else Decimal(str(order.total_amount or 0))
        problems = self.eligibility_problems(order, refund_amount)
        if problems:
            raise RefundIneligible("; ".join(problems))

        self.tx_log.refund_initiated(order_number, order.payment_id, refund_amount, reason or "Manual admin refund")
        error: Optional[str] = None
        refund: Optional[dict] = None
        try:
            refund = await self.gateway.create_refund(
                order.payment_id, refund_amount, new_receipt(f"order_{order_number}"),
                notes={"order_number": order_number, "reason": reason},
            )
        except ExternalCallFailure as e:
            error = str(e)

        async def work(session: AsyncSession) -> Order:
            current = await get_order_by_number(session, order_number)
            if refund is not None:
                current.payment_status = PaymentStatus.REFUNDED.value
                if can_advance_order(current.status, OrderStatus.CANCELLED.value):
                    current.status = OrderStatus.CANCELLED.value
                current.add_note(
                    f"[ADMIN REFUND] Amount: {refund_amount}. Refund ID: {refund['id']}. "
                    f"Reason: {reason or 'Manual admin refund'}. By: {actor}." + (f" Notes: {notes}" if notes else "")
                )
            else:
                current.add_note(
                    f"[REFUND FAILED] URGENT: manual refund failed for {refund_amount}: {error}. "
                    f"Payment ID: {current.payment_id}"
                )
            return current

        updated = await commit_with_retry(self.session_factory, work)
        if refund is None:
            self.tx_log.refund_failed(order_number, order.payment_id, refund_amount, error or "")
            raise ExternalCallFailure(error or "Refund failed")

        self.tx_log.refund_success(order_number, refund["id"], refund_amount)
        if updated.status == OrderStatus.CANCELLED.value and order.status != OrderStatus.CANCELLED.value:
            self.tx_log.order_cancelled(order_number, reason or "Manual admin refund", refunded=True)
        return RefundOutcome(
            True, None, order_number, refund["id"], refund.get("status"), updated.status, refund_amount,
        )

    async def add_return_note(self, return_number: str, note: str, actor: str) -> dict:
        async def work(session: AsyncSession) -> dict:
            ret = await get_return_by_number(session, return_number)
            ret.add_admin_note(note, actor)
            return {"return_number": ret.return_number, "admin_notes": ret.admin_notes}

        return await commit_with_retry(self.session_factory, work)
