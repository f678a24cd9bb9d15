"""Webhook payload normalization.

Carrier and gateway pushes arrive in several shapes. Everything downstream
works on ShipmentEvent / RefundEvent only.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from app.services.errors import NormalizationError

# Carrier timestamps are local to the carrier (IST)
CARRIER_TZ = timezone(timedelta(hours=5, minutes=30), "IST")

_DATE_FORMATS = (
    "%d %m %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d",
)

_CODE_FIELDS = ("shipment_status_id", "current_status_id", "current_status_code", "status_code")
_LABEL_FIELDS = ("shipment_status", "current_status", "status")


class EventSource(str, Enum):
    CARRIER_SHIPMENT = "carrier-shipment"
    CARRIER_RETURN = "carrier-return"
    GATEWAY_REFUND = "gateway-refund"


class PayloadShape(str, Enum):
    """Where the status container was found, tried in this order."""
    DIRECT = "direct"
    TRACKING_DATA = "tracking_data"
    KEYED_SHIPMENT = "keyed_shipment"
    KEYED_ORDER = "keyed_order"
    KEYED_AWB = "keyed_awb"
    SCANNED = "scanned"


@dataclass
class Scan:
    timestamp: Optional[datetime] = None
    activity: Optional[str] = None
    location: Optional[str] = None
    status_code: Optional[str] = None
    status_label: Optional[str] = None


@dataclass
class ShipmentEvent:
    shape: PayloadShape
    shipment_id: Optional[str] = None
    carrier_order_id: Optional[str] = None
    awb: Optional[str] = None
    order_number_hint: Optional[str] = None
    status_code: Optional[int] = None
    status_label: Optional[str] = None
    timestamp: Optional[datetime] = None
    location: Optional[str] = None
    courier_name: Optional[str] = None
    etd: Optional[datetime] = None
    is_return: bool = False
    scans: list[Scan] = field(default_factory=list)

    @property
    def order_number(self) -> Optional[str]:
        """Storefront order number: the part of the hint before the first '_'."""
        if not self.order_number_hint:
            return None
        return self.order_number_hint.split("_", 1)[0] or None


@dataclass
class RefundEvent:
    event: str
    refund_id: Optional[str] = None
    gateway_status: Optional[str] = None
    speed: Optional[str] = None
    payment_id: Optional[str] = None
    receipt: Optional[str] = None
    amount: Optional[int] = None  # smallest currency unit
    error_description: Optional[str] = None


def parse_carrier_datetime(value: Any) -> Optional[datetime]:
    """Parse a carrier date as IST and return it in UTC. None when unparseable."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=CARRIER_TZ)
    return parsed.astimezone(timezone.utc)


def _text(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value)


def _has_status(container: Any) -> bool:
    if not isinstance(container, dict):
        return False
    if any(container.get(k) not in (None, "") for k in _CODE_FIELDS + _LABEL_FIELDS):
        return True
    track = container.get("shipment_track")
    return isinstance(track, list) and bool(track) and _has_status(track[0])


def _unwrap(body: Any) -> dict:
    if isinstance(body, list):
        if len(body) != 1:
            raise NormalizationError(f"Expected a single event, got a list of {len(body)}")
        body = body[0]
    if not isinstance(body, dict):
        raise NormalizationError(f"Webhook body must be an object, got {type(body).__name__}")
    return body


def _locate(body: dict, keys: dict[PayloadShape, Optional[str]]) -> tuple[PayloadShape, dict]:
    if _has_status(body):
        return PayloadShape.DIRECT, body

    tracking = body.get("tracking_data")
    if _has_status(tracking):
        return PayloadShape.TRACKING_DATA, tracking

    for shape in (PayloadShape.KEYED_SHIPMENT, PayloadShape.KEYED_ORDER, PayloadShape.KEYED_AWB):
        key = keys.get(shape)
        if not key:
            continue
        keyed = body.get(str(key))
        if isinstance(keyed, dict):
            inner = keyed.get("tracking_data", keyed)
            if _has_status(inner):
                return shape, inner

    for value in body.values():
        if isinstance(value, dict) and _has_status(value.get("tracking_data")):
            return PayloadShape.SCANNED, value["tracking_data"]

    raise NormalizationError("No recognizable status field in webhook body")


def _status_fields(container: dict) -> tuple[Optional[int], Optional[str]]:
    code = None
    for name in _CODE_FIELDS:
        raw = container.get(name)
        if raw in (None, ""):
            continue
        try:
            code = int(raw)
            break
        except (TypeError, ValueError):
            continue

    label = None
    for name in _LABEL_FIELDS:
        raw = container.get(name)
        if raw in (None, ""):
            continue
        if isinstance(raw, int) or (isinstance(raw, str) and raw.strip().isdecimal()):
            # Some payloads put the numeric code in the label field
            if code is None:
                code = int(raw)
            continue
        label = str(raw)
        break
    return code, label


def _scan(raw: dict) -> Scan:
    return Scan(
        timestamp=parse_carrier_datetime(raw.get("date")),
        activity=_text(raw.get("activity")),
        location=_text(raw.get("location")),
        status_code=_text(raw.get("sr-status")),
        status_label=_text(raw.get("sr-status-label")),
    )


def normalize_shipment(
    body: Any,
    source: EventSource = EventSource.CARRIER_SHIPMENT,
    *,
    shipment_id: Optional[str] = None,
    order_id: Optional[str] = None,
    awb: Optional[str] = None,
) -> ShipmentEvent:
    """Normalize a carrier push or tracking-API response into a ShipmentEvent.

    The keyword identifiers are the keys the caller already knows (resync
    path); the keyed shapes are only tried for those.
    """
    data = _unwrap(body)
    shape, container = _locate(data, {
        PayloadShape.KEYED_SHIPMENT: shipment_id,
        PayloadShape.KEYED_ORDER: order_id,
        PayloadShape.KEYED_AWB: awb,
    })

    track = container.get("shipment_track")
    flat = dict(track[0]) if isinstance(track, list) and track and isinstance(track[0], dict) else {}
    flat.update({k: v for k, v in container.items() if v not in (None, "")})

    code, label = _status_fields(flat)
    if code is None and label is None:
        raise NormalizationError("No recognizable status field in webhook body")

    raw_scans = flat.get("scans") or container.get("shipment_track_activities") or []
    if not isinstance(raw_scans, list):
        raise NormalizationError(f"scans must be a list, got {type(raw_scans).__name__}")
    scans = [_scan(s) for s in raw_scans if isinstance(s, dict)]

    is_return = flat.get("is_return")
    return ShipmentEvent(
        shape=shape,
        shipment_id=_text(flat.get("shipment_id")) or _text(shipment_id),
        carrier_order_id=_text(flat.get("sr_order_id")) or _text(order_id),
        awb=_text(flat.get("awb") or flat.get("awb_code")) or _text(awb),
        order_number_hint=_text(flat.get("order_id")),
        status_code=code,
        status_label=label,
        timestamp=parse_carrier_datetime(
            flat.get("current_timestamp") or flat.get("updated_time_stamp") or flat.get("scan_date")
        ),
        location=_text(flat.get("current_location") or flat.get("location")),
        courier_name=_text(flat.get("courier_name")),
        etd=parse_carrier_datetime(flat.get("etd") or flat.get("edd")),
        is_return=source == EventSource.CARRIER_RETURN or str(is_return) in ("1", "true", "True"),
        scans=scans,
    )


def normalize_refund(body: Any) -> RefundEvent:
    """Normalize a gateway `{event, payload.refund.entity}` push."""
    data = _unwrap(body)
    event = data.get("event")
    entity = (((data.get("payload") or {}).get("refund") or {}).get("entity"))
    if not event or not isinstance(entity, dict):
        raise NormalizationError("Gateway body carries no refund entity")

    amount = entity.get("amount")
    return RefundEvent(
        event=str(event),
        refund_id=_text(entity.get("id")),
        gateway_status=_text(entity.get("status")),
        speed=_text(entity.get("speed_processed") or entity.get("speed_requested")),
        payment_id=_text(entity.get("payment_id")),
        receipt=_text(entity.get("receipt")),
        amount=int(amount) if isinstance(amount, (int, float)) else None,
        error_description=_text(entity.get("error_description")),
    )
