"""Order and return state machines.

Everything here mutates in-memory ORM objects only; the caller owns the unit
of work and commits.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.models import Order, utcnow
from app.models.enums import (
    SYSTEM_ACTOR, OrderStatus, PaymentMethod, PaymentStatus, ReturnStatus,
)
from app.models.returns import Return
from app.services.errors import TransitionConflict, TranslationGap
from app.services.normalizer import ShipmentEvent
from app.services.translator import translate_order_status, translate_return_status

# Outcomes reported on TransitionResult
ADVANCED = "advanced"
UNCHANGED = "unchanged"
CONFLICT = "conflict"
UNMAPPED = "unmapped"

ORDER_RANK = {
    OrderStatus.PENDING.value: 0,
    OrderStatus.PROCESSING.value: 1,
    OrderStatus.SHIPPED.value: 2,
    OrderStatus.DELIVERED.value: 3,
}
ORDER_TERMINAL = {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value, OrderStatus.RETURNED.value}

RETURN_RANK = {
    ReturnStatus.REQUESTED.value: 0,
    ReturnStatus.PICKUP_SCHEDULED.value: 1,
    ReturnStatus.PICKED_UP.value: 2,
    ReturnStatus.IN_TRANSIT.value: 3,
    ReturnStatus.RECEIVED.value: 4,
    ReturnStatus.INSPECTED.value: 5,
    ReturnStatus.APPROVED_REFUND.value: 6,
    ReturnStatus.REFUND_PROCESSED.value: 7,
    ReturnStatus.COMPLETED.value: 8,
}
RETURN_TERMINAL = {ReturnStatus.COMPLETED.value, ReturnStatus.CANCELLED.value, ReturnStatus.PICKUP_FAILED.value}
RETURN_SIDE_EXITS = {ReturnStatus.CANCELLED.value, ReturnStatus.PICKUP_FAILED.value}

# Carrier pushes never move a return past warehouse receipt
_CARRIER_RETURN_CEILING = RETURN_RANK[ReturnStatus.RECEIVED.value]


@dataclass
class TransitionResult:
    updated: bool
    status: str
    previous_status: str
    outcome: str
    triggers_inspection: bool = False
    gap: Optional[TranslationGap] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from databases without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _status_value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


# ── Order rules ─────────────────────────────────────────

def can_advance_order(current: str, target: str) -> bool:
    """Whether an order may move from current to target."""
    current, target = _status_value(current), _status_value(target)
    if target == OrderStatus.RETURNED.value:
        return current == OrderStatus.DELIVERED.value
    if current == target or current in ORDER_TERMINAL:
        return False
    if target == OrderStatus.CANCELLED.value:
        return True
    return ORDER_RANK[target] > ORDER_RANK.get(current, -1)


# ── Return rules ────────────────────────────────────────

def can_transition_return(current: str, target: str, refund_retry: bool = False) -> bool:
    current, target = _status_value(current), _status_value(target)
    if current == target:
        return False
    if refund_retry:
        return target == ReturnStatus.APPROVED_REFUND.value and current in (
            ReturnStatus.REFUND_PROCESSED.value, ReturnStatus.COMPLETED.value,
        )
    if current in RETURN_TERMINAL:
        return False
    if target in RETURN_SIDE_EXITS:
        return True
    return RETURN_RANK[target] > RETURN_RANK[current]


def transition_return(
    ret: Return,
    target: ReturnStatus,
    actor: str = SYSTEM_ACTOR,
    note: Optional[str] = None,
    refund_retry: bool = False,
) -> str:
    """Move a return to target and record it in status_history.

    Returns the previous status. Raises TransitionConflict on an illegal move.
    """
    previous = ret.status
    target_value = _status_value(target)
    if not can_transition_return(previous, target_value, refund_retry=refund_retry):
        raise TransitionConflict(previous, target_value)
    ret.status = target_value
    ret.status_history = [
        *(ret.status_history or []),
        {"status": target_value, "actor": actor, "note": note, "at": utcnow().isoformat()},
    ]
    return previous


# ── Tracking history ────────────────────────────────────

def _entry(timestamp, activity, location, status_code, status_label) -> dict:
    return {
        "activity": activity,
        "location": location,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "status_code": str(status_code) if status_code is not None else None,
        "status_label": status_label,
    }


def _event_entries(event: ShipmentEvent) -> list[dict]:
    """Scans when the event carries them, else one entry for the event itself.

    The latest scan inherits the event's status when it has none of its own.
    """
    if not event.scans:
        return [_entry(event.timestamp, event.status_label, event.location, event.status_code, event.status_label)]

    timed = [i for i, s in enumerate(event.scans) if s.timestamp is not None]
    latest = max(timed, key=lambda i: event.scans[i].timestamp) if timed else len(event.scans) - 1
    entries = []
    for i, s in enumerate(event.scans):
        code, label = s.status_code, s.status_label
        if i == latest and code is None:
            code, label = event.status_code, label or event.status_label
        entries.append(_entry(s.timestamp, s.activity, s.location, code, label))
    return entries


def merge_tracking_history(existing: Optional[list], new_entries: list[dict]) -> tuple[list, int]:
    """Append entries whose (timestamp, status_code) is not yet recorded.

    Returns the merged list and the number of entries added.
    """
    history = list(existing or [])
    seen = {(e.get("timestamp"), e.get("status_code")) for e in history}
    added = []
    for entry in new_entries:
        key = (entry["timestamp"], entry["status_code"])
        if key in seen:
            continue
        seen.add(key)
        added.append(entry)
    added.sort(key=lambda e: e["timestamp"] or "")
    return history + added, len(added)


def _apply_common(record, event: ShipmentEvent) -> bool:
    """History merge plus courier/location/last-update. Returns True if anything changed."""
    changed = False
    history, added = merge_tracking_history(record.tracking_history, _event_entries(event))
    if added:
        record.tracking_history = history
        changed = True

    if event.courier_name and record.courier_name != event.courier_name:
        record.courier_name = event.courier_name
        changed = True
    if event.location and record.current_location != event.location:
        record.current_location = event.location
        changed = True

    latest = event.timestamp or max((s.timestamp for s in event.scans if s.timestamp), default=None)
    if latest is not None:
        current = as_utc(record.last_update_at)
        if current is None or latest > current:
            record.last_update_at = latest
            changed = True
    return changed


def _fill(record, attr: str, value: Optional[str]) -> bool:
    if value and not getattr(record, attr):
        setattr(record, attr, value)
        return True
    return False


# ── Appliers ────────────────────────────────────────────

def apply_shipment_event(order: Order, event: ShipmentEvent) -> TransitionResult:
    """Apply a forward-shipment event to an order.

    Re-applying the same event is a no-op. Regressions are recorded in
    tracking history but leave status alone.
    """
    previous = order.status
    changed = _apply_common(order, event)
    changed |= _fill(order, "shipment_id", event.shipment_id)
    changed |= _fill(order, "carrier_order_id", event.carrier_order_id)
    changed |= _fill(order, "awb_code", event.awb)

    if event.etd is not None and as_utc(order.estimated_delivery) != event.etd:
        order.estimated_delivery = event.etd
        changed = True

    try:
        translated = translate_order_status(event.status_code, event.status_label)
    except TranslationGap as gap:
        return TransitionResult(changed, order.status, previous, UNMAPPED, gap=gap)

    target = translated.order.value
    if target == order.status:
        outcome = UNCHANGED
    elif can_advance_order(order.status, target):
        order.status = target
        if target == OrderStatus.DELIVERED.value and order.delivered_at is None:
            order.delivered_at = event.timestamp or utcnow()
        outcome = ADVANCED
        changed = True
    else:
        return TransitionResult(changed, order.status, previous, CONFLICT)

    if order.shipping_status != translated.shipping.value:
        order.shipping_status = translated.shipping.value
        changed = True

    if (
        order.status == OrderStatus.DELIVERED.value
        and order.payment_method == PaymentMethod.COD.value
        and order.payment_status != PaymentStatus.PAID.value
    ):
        order.payment_status = PaymentStatus.PAID.value
        changed = True

    return TransitionResult(changed, order.status, previous, outcome)


def apply_return_event(ret: Return, event: ShipmentEvent) -> TransitionResult:
    """Apply a reverse-pickup event to a return.

    triggers_inspection is set when this event moved the return into received.
    """
    previous = ret.status
    changed = _apply_common(ret, event)
    changed |= _fill(ret, "return_shipment_id", event.shipment_id)
    changed |= _fill(ret, "return_awb", event.awb)

    try:
        translated = translate_return_status(event.status_code, event.status_label)
    except TranslationGap as gap:
        return TransitionResult(changed, ret.status, previous, UNMAPPED, gap=gap)

    target = translated.status.value
    if target == ret.status:
        outcome = UNCHANGED
    elif (
        can_transition_return(ret.status, target)
        and (target in RETURN_SIDE_EXITS or RETURN_RANK[target] <= _CARRIER_RETURN_CEILING)
    ):
        transition_return(ret, translated.status, SYSTEM_ACTOR, f"Carrier: {event.status_label or event.status_code}")
        outcome = ADVANCED
        changed = True
    else:
        return TransitionResult(changed, ret.status, previous, CONFLICT)

    if translated.pickup is not None and ret.pickup_status != translated.pickup.value:
        ret.pickup_status = translated.pickup.value
        changed = True

    return TransitionResult(
        changed, ret.status, previous, outcome,
        triggers_inspection=outcome == ADVANCED and target == ReturnStatus.RECEIVED.value,
    )

