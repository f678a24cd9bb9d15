"""Order-Reconciler CLI operations tool.

Usage:
    python -m cli translate order 7
    python -m cli translate return 6
    python -m cli translate table
    python -m cli normalize payload.json --source carrier-return
    python -m cli stuck
    python -m cli sync ORD123
    python -m cli sync --all --limit 20
    python -m cli logs recent --limit 20
    python -m cli logs order ORD123
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

from app.config import get_settings
from app.database import async_session
from app.services.carrier import get_carrier_client
from app.services.errors import NormalizationError, ReconciliationError
from app.services.gateway import get_refund_gateway
from app.services.normalizer import EventSource, normalize_refund, normalize_shipment
from app.services.reconciler import Reconciler
from app.services.refunds import RefundOrchestrator
from app.services.stuck import StuckDetector
from app.services.transaction_log import DecimalEncoder, get_transaction_logger
from app.services.translator import (
    ORDER_CODE_TABLE, RETURN_CODE_TABLE, describe_order_code, describe_return_code,
)

PRIORITY_ICONS = {"critical": "🚨", "high": "⚠️ ", "medium": "ℹ️ "}


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="reconciler-cli",
        description="Order-Reconciler CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Translate ────────────────────────────────────────
    tr_parser = sub.add_parser("translate", help="Carrier status code lookup")
    tr_sub = tr_parser.add_subparsers(dest="action")

    tr_order = tr_sub.add_parser("order", help="Translate a forward-shipment code")
    tr_order.add_argument("code", type=int, help="Carrier status code")

    tr_return = tr_sub.add_parser("return", help="Translate a reverse-pickup code")
    tr_return.add_argument("code", type=int, help="Carrier status code")

    tr_sub.add_parser("table", help="Print both code tables")

    # ── Normalize ────────────────────────────────────────
    norm = sub.add_parser("normalize", help="Normalize a saved webhook body")
    norm.add_argument("file", help="JSON file with the raw webhook body")
    norm.add_argument(
        "--source",
        choices=[s.value for s in EventSource],
        default=EventSource.CARRIER_SHIPMENT.value,
        help="Which webhook the body came from",
    )

    # ── Stuck ────────────────────────────────────────────
    stuck = sub.add_parser("stuck", help="List stuck orders and returns")
    stuck.add_argument("--json", action="store_true", help="Print the full report as JSON")

    # ── Sync ─────────────────────────────────────────────
    sync = sub.add_parser("sync", help="Re-sync tracking from the carrier")
    sync.add_argument("order_number", nargs="?", help="Order to re-sync")
    sync.add_argument("--all", action="store_true", help="Re-sync all in-flight orders")
    sync.add_argument("--limit", type=int, default=50, help="Max orders with --all")

    # ── Logs ─────────────────────────────────────────────
    logs_parser = sub.add_parser("logs", help="Transaction audit log")
    logs_sub = logs_parser.add_subparsers(dest="action")

    recent = logs_sub.add_parser("recent", help="Most recent entries")
    recent.add_argument("--limit", type=int, default=20, help="How many entries")

    by_order = logs_sub.add_parser("order", help="Entries for one order")
    by_order.add_argument("order_number", help="Order number")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    handlers = {
        "translate": handle_translate,
        "normalize": handle_normalize,
        "stuck": handle_stuck,
        "sync": handle_sync,
        "logs": handle_logs,
    }
    handler = handlers.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


# ── Command Handlers ────────────────────────────────────


def handle_translate(args):
    if args.action == "order":
        row = describe_order_code(args.code)
        if row is None:
            print(f"❌ Unmapped order code {args.code}")
            sys.exit(1)
        print(json.dumps(row, indent=2))
    elif args.action == "return":
        row = describe_return_code(args.code)
        if row is None:
            print(f"❌ Unmapped return code {args.code}")
            sys.exit(1)
        print(json.dumps(row, indent=2))
    elif args.action == "table":
        print(f"{'Code':<6} {'Shipping':<12} {'Order'}")
        print("-" * 32)
        for code in sorted(ORDER_CODE_TABLE):
            row = ORDER_CODE_TABLE[code]
            print(f"{code:<6} {row.shipping.value:<12} {row.order.value}")
        print()
        print(f"{'Code':<6} {'Return':<18} {'Pickup'}")
        print("-" * 36)
        for code in sorted(RETURN_CODE_TABLE):
            row = RETURN_CODE_TABLE[code]
            print(f"{code:<6} {row.status.value:<18} {row.pickup.value if row.pickup else '-'}")
    else:
        print("Usage: reconciler-cli translate {order|return|table}")


def handle_normalize(args):
    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {args.file}")
        sys.exit(1)
    body = json.loads(path.read_text(encoding="utf-8-sig"))
    source = EventSource(args.source)
    try:
        if source == EventSource.GATEWAY_REFUND:
            event = normalize_refund(body)
        else:
            event = normalize_shipment(body, source)
    except NormalizationError as e:
        print(f"❌ {e}")
        sys.exit(1)
    print(json.dumps(asdict(event), cls=DecimalEncoder, indent=2, ensure_ascii=False))


def handle_stuck(args):
    detector = StuckDetector(async_session, get_settings())
    report = asyncio.run(detector.scan())
    if args.json:
        print(json.dumps(report, cls=DecimalEncoder, indent=2, ensure_ascii=False))
        return

    summary = report["summary"]
    print(report["message"])
    print(f"  Critical: {summary['critical']}  High: {summary['high']}  Medium: {summary['medium']}")
    print(f"  Amount at risk: ₹{summary['total_amount_at_risk']}")
    for entity in ("orders", "returns"):
        for category, findings in report[entity].items():
            for f in findings:
                icon = PRIORITY_ICONS.get(f["priority"], "")
                print(f"{icon} [{entity[:-1]}/{category}] {f['number']}: {f['issue']} -> {f['action']}")


def _reconciler() -> Reconciler:
    tx_log = get_transaction_logger()
    refunds = RefundOrchestrator(async_session, get_refund_gateway(), tx_log)
    return Reconciler(async_session, get_carrier_client(), refunds, tx_log)


def handle_sync(args):
    reconciler = _reconciler()
    if args.all:
        result = asyncio.run(reconciler.resync_active(limit=args.limit))
        print(f"Synced {len(result['synced'])}/{result['total']} orders")
        for failure in result["failed"]:
            print(f"  ❌ {failure['order_number']}: {failure['error']}")
        return
    if not args.order_number:
        print("Usage: reconciler-cli sync ORDER_NUMBER | --all")
        sys.exit(1)
    try:
        result = asyncio.run(reconciler.resync_order(args.order_number))
    except ReconciliationError as e:
        print(f"❌ {e}")
        sys.exit(1)
    print(f"✅ {result['order_number']}: {result['previous_status']} -> {result['status']} ({result['outcome']})")


def handle_logs(args):
    tx_log = get_transaction_logger()
    if args.action == "recent":
        entries = tx_log.recent(args.limit)
    elif args.action == "order":
        entries = tx_log.for_order(args.order_number)
    else:
        print("Usage: reconciler-cli logs {recent|order}")
        return
    if not entries:
        print("No transaction log entries.")
        return
    for e in entries:
        print(f"{e.get('timestamp', '')} {e.get('level', ''):<8} [{e.get('type', '')}] {e.get('message', '')}")


if __name__ == "__main__":
    main()
