"""Transaction audit log.

Append-only JSON-lines record of every money- or fulfilment-relevant event.
Writing never raises: a broken log file must not fail a webhook.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from app.config import get_settings

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"
    SUCCESS = "SUCCESS"


class TransactionType(str, Enum):
    STATUS_UPDATED = "STATUS_UPDATED"
    UNMAPPED_STATUS = "UNMAPPED_STATUS"
    REFUND_INITIATED = "REFUND_INITIATED"
    REFUND_SUCCESS = "REFUND_SUCCESS"
    REFUND_FAILED = "REFUND_FAILED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


class DecimalEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class TransactionLogger:
    """JSON-lines audit logger. With no path, entries only go to `logging`."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None

    def log(self, level: LogLevel, type_: TransactionType, message: str, data: Optional[dict] = None) -> dict:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": LogLevel(level).value,
            "type": TransactionType(type_).value,
            "message": message,
            "data": data or {},
        }
        logger.log(_PY_LEVELS[LogLevel(level)], "[%s] %s", entry["type"], message)
        self._write(entry)
        return entry

    def _write(self, entry: dict) -> None:
        if self.path is None:
            return
        try:
            line = json.dumps(entry, cls=DecimalEncoder, ensure_ascii=False)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to write transaction log %s: %s", self.path, e)
            print(f"[TRANSACTION_LOG] {entry.get('type')} {entry.get('message')}", file=sys.stderr)

    # ── Readers ─────────────────────────────────────────

    def _entries(self) -> list[dict]:
        if self.path is None or not self.path.exists():
            return []
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.error("Failed to read transaction log %s: %s", self.path, e)
            return []
        entries = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries

    def recent(self, limit: int = 100) -> list[dict]:
        entries = self._entries()
        return entries[-limit:] if limit > 0 else []

    def for_order(self, order_number: str) -> list[dict]:
        return [e for e in self._entries() if (e.get("data") or {}).get("order_number") == order_number]

    # ── Typed helpers ───────────────────────────────────

    def status_updated(self, order_number: str, entity: str, previous: str, current: str, **extra) -> dict:
        return self.log(
            LogLevel.INFO, TransactionType.STATUS_UPDATED,
            f"{entity.capitalize()} for order {order_number}: {previous} -> {current}",
            {"order_number": order_number, "entity": entity, "previous": previous, "current": current, **extra},
        )

    def unmapped_status(self, order_number: str, code: Any, label: Optional[str]) -> dict:
        return self.log(LogLevel.WARNING, TransactionType.UNMAPPED_STATUS, f"Unmapped carrier status {code} for order {order_number}", {
            "order_number": order_number, "status_code": code, "status_label": label,
        })

    def refund_initiated(self, order_number: str, payment_id: Optional[str], amount: Any, reason: str) -> dict:
        return self.log(LogLevel.WARNING, TransactionType.REFUND_INITIATED, f"Refund initiated for order {order_number}", {
            "order_number": order_number, "payment_id": payment_id, "amount": amount, "reason": reason,
        })

    def refund_success(self, order_number: str, refund_id: str, amount: Any) -> dict:
        return self.log(LogLevel.SUCCESS, TransactionType.REFUND_SUCCESS, f"Refund successful for order {order_number}", {
            "order_number": order_number, "refund_id": refund_id, "amount": amount,
        })

    def refund_failed(self, order_number: str, payment_id: Optional[str], amount: Any, error: str) -> dict:
        return self.log(
            LogLevel.CRITICAL, TransactionType.REFUND_FAILED,
            f"Refund FAILED for order {order_number} - MANUAL INTERVENTION REQUIRED",
            {"order_number": order_number, "payment_id": payment_id, "amount": amount, "error": error},
        )

    def order_cancelled(self, order_number: str, reason: str, refunded: bool = False) -> dict:
        return self.log(LogLevel.INFO, TransactionType.ORDER_CANCELLED, f"Order {order_number} cancelled", {
            "order_number": order_number, "reason": reason, "refunded": refunded,
        })

    def manual_intervention(self, order_number: str, issue: str, details: Optional[dict] = None) -> dict:
        return self.log(
            LogLevel.CRITICAL, TransactionType.MANUAL_INTERVENTION,
            f"MANUAL INTERVENTION REQUIRED for order {order_number}",
            {"order_number": order_number, "issue": issue, "details": details or {}},
        )


@lru_cache
def get_transaction_logger() -> TransactionLogger:
    return TransactionLogger(get_settings().transaction_log_path or None)
