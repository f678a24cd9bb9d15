"""Admin reconciliation routes: tracking re-sync, refunds, stuck entities."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_reconciler, get_refund_orchestrator, get_stuck_detector
from app.database import get_session_factory
from app.schemas import OrderRefundRequest, OrderTrackingOut, ReturnNoteCreate
from app.services.auth import actor_id, require_admin
from app.services.errors import (
    ExternalCallFailure, NormalizationError, PersistenceFailure, ReconciliationError,
    RefundIneligible, ResolutionError, TransitionConflict, TranslationGap,
)
from app.services.reconciler import Reconciler
from app.services.refunds import RefundOrchestrator
from app.services.resolver import get_order_by_number
from app.services.stuck import StuckDetector
from app.services.transaction_log import TransactionLogger, get_transaction_logger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

_STATUS_BY_ERROR = (
    (ResolutionError, 404),
    (TransitionConflict, 400),
    (RefundIneligible, 400),
    (NormalizationError, 400),
    (TranslationGap, 400),
    (ExternalCallFailure, 502),
    (PersistenceFailure, 503),
)


def to_http(e: ReconciliationError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_cls):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ── Orders ───────────────────────────────────────────────

@router.get("/orders/stuck")
async def stuck_orders(detector: StuckDetector = Depends(get_stuck_detector)):
    report = await detector.scan()
    return {"success": True, **report}


@router.post("/orders/{order_number}/sync-tracking")
async def sync_tracking(
    order_number: str,
    reconciler: Reconciler = Depends(get_reconciler),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    try:
        result = await reconciler.resync_order(order_number)
        async with session_factory() as session:
            order = await get_order_by_number(session, order_number)
    except ReconciliationError as e:
        logger.warning("Tracking sync for %s failed: %s", order_number, e)
        raise to_http(e)
    return {
        "success": True,
        "result": result,
        "order": OrderTrackingOut.model_validate(order).model_dump(mode="json"),
    }


@router.get("/orders/{order_number}/refund")
async def order_refund_eligibility(
    order_number: str,
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    try:
        return await refunds.order_refund_eligibility(order_number)
    except ReconciliationError as e:
        raise to_http(e)


@router.post("/orders/{order_number}/refund")
async def refund_order(
    order_number: str,
    body: OrderRefundRequest,
    user: dict = Depends(require_admin),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    try:
        outcome = await refunds.refund_order(
            order_number, actor_id(user), amount=body.amount, reason=body.reason, notes=body.notes,
        )
    except ReconciliationError as e:
        raise to_http(e)
    return {"success": True, "message": "Refund processed successfully", "refund": outcome.to_dict()}


@router.get("/transactions")
async def transactions(
    order_number: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
):
    entries = tx_log.for_order(order_number)[-limit:] if order_number else tx_log.recent(limit)
    return {"total": len(entries), "entries": entries}


# ── Returns ──────────────────────────────────────────────

@router.get("/returns/{return_number}/refund-status")
async def return_refund_status(
    return_number: str,
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    try:
        return {"success": True, "data": await refunds.return_refund_status(return_number)}
    except ReconciliationError as e:
        raise to_http(e)


@router.post("/returns/{return_number}/refund")
async def retry_return_refund(
    return_number: str,
    user: dict = Depends(require_admin),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    try:
        outcome = await refunds.retry_return_refund(return_number, actor_id(user))
    except ReconciliationError as e:
        raise to_http(e)
    return {"success": outcome.success, "refund": outcome.to_dict()}


@router.post("/returns/{return_number}/notes", status_code=201)
async def add_return_note(
    return_number: str,
    body: ReturnNoteCreate,
    user: dict = Depends(require_admin),
    refunds: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    try:
        result = await refunds.add_return_note(return_number, body.note, actor_id(user))
    except ReconciliationError as e:
        raise to_http(e)
    return {"success": True, "message": "Admin note added successfully", **result}
