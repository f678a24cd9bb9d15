"""Carrier and payment-gateway webhook receivers.

Carrier endpoints always answer 200 and report problems in the body. The
gateway endpoint answers 400 only for a bad signature.
"""

import json
import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_reconciler
from app.config import WebhookConfig, get_webhook_config
from app.services.errors import NormalizationError, ReconciliationError, ResolutionError
from app.services.normalizer import EventSource
from app.services.reconciler import Reconciler
from app.services.signatures import carrier_signature_valid, gateway_signature_valid
from app.services.transaction_log import LogLevel, TransactionLogger, TransactionType, get_transaction_logger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _decode(raw: bytes):
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise NormalizationError(f"Body is not valid JSON: {e}") from e


async def _process(
    name: str,
    raw: bytes,
    handler: Callable[[object], Awaitable[dict]],
    tx_log: TransactionLogger,
) -> dict:
    """Run a handler and turn every error into a success-shaped reply."""
    try:
        result = await handler(_decode(raw))
    except ResolutionError as e:
        logger.info("%s webhook for unknown entity: %s", name, e)
        return {"success": True, "message": "No matching record", "ignored": True}
    except NormalizationError as e:
        logger.warning("%s webhook could not be normalized: %s", name, e)
        return {"success": False, "message": f"Malformed payload: {e}"}
    except ReconciliationError as e:
        logger.error("%s webhook failed: %s", name, e)
        tx_log.log(LogLevel.ERROR, TransactionType.MANUAL_INTERVENTION, f"{name} webhook processing failed", {
            "error": str(e), "error_type": type(e).__name__,
        })
        return {"success": False, "message": "Webhook processing failed"}
    except Exception as e:
        logger.exception("%s webhook crashed", name)
        tx_log.log(LogLevel.ERROR, TransactionType.MANUAL_INTERVENTION, f"{name} webhook processing failed", {
            "error": str(e), "error_type": type(e).__name__,
        })
        return {"success": False, "message": "Webhook processing failed"}
    return {"success": True, "message": "Webhook processed", "result": result}


def _active(endpoint: str) -> dict:
    return {
        "status": "active",
        "endpoint": endpoint,
        "message": "Webhook endpoint is ready to receive POST requests",
    }


# ── Carrier ──────────────────────────────────────────────

@router.get("/shipment")
async def shipment_webhook_status():
    return _active("carrier-shipment-webhook")


@router.post("/shipment")
async def shipment_webhook(
    request: Request,
    config: WebhookConfig = Depends(get_webhook_config),
    reconciler: Reconciler = Depends(get_reconciler),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
):
    raw = await request.body()
    if not carrier_signature_valid(config.carrier_secret, raw, request.headers):
        logger.warning("Rejected shipment webhook with bad signature")
        return {"success": False, "message": "Invalid signature"}
    return await _process("shipment", raw, reconciler.handle_shipment, tx_log)


@router.get("/return")
async def return_webhook_status():
    return _active("carrier-return-webhook")


@router.post("/return")
async def return_webhook(
    request: Request,
    config: WebhookConfig = Depends(get_webhook_config),
    reconciler: Reconciler = Depends(get_reconciler),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
):
    raw = await request.body()
    if not carrier_signature_valid(config.carrier_secret, raw, request.headers):
        logger.warning("Rejected return webhook with bad signature")
        return {"success": False, "message": "Invalid signature"}
    return await _process("return", raw, reconciler.handle_return, tx_log)


# ── Gateway ──────────────────────────────────────────────

@router.get("/refund")
async def refund_webhook_status():
    return _active(f"{EventSource.GATEWAY_REFUND.value}-webhook")


@router.post("/refund")
async def refund_webhook(
    request: Request,
    config: WebhookConfig = Depends(get_webhook_config),
    reconciler: Reconciler = Depends(get_reconciler),
    tx_log: TransactionLogger = Depends(get_transaction_logger),
):
    raw = await request.body()
    if not gateway_signature_valid(config.gateway_secret, raw, request.headers):
        logger.warning("Rejected refund webhook with bad or missing signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=400)
    return await _process("refund", raw, reconciler.handle_refund, tx_log)
