"""Carrier status translation.

Single source of truth for carrier code → canonical status. Both the webhook
handlers and the manual tracking re-sync translate through this module.
"""

from dataclasses import dataclass
from typing import Optional, Union

from app.models.enums import OrderStatus, PickupStatus, ReturnStatus, ShippingStatus
from app.services.errors import TranslationGap


@dataclass(frozen=True)
class OrderTranslation:
    shipping: ShippingStatus
    order: OrderStatus


@dataclass(frozen=True)
class ReturnTranslation:
    status: ReturnStatus
    pickup: Optional[PickupStatus] = None


def _order(shipping: ShippingStatus, order: OrderStatus) -> OrderTranslation:
    return OrderTranslation(shipping=shipping, order=order)


_PROCESSING = _order(ShippingStatus.PROCESSING, OrderStatus.PROCESSING)
_SHIPPED = _order(ShippingStatus.SHIPPED, OrderStatus.SHIPPED)
_DELIVERED = _order(ShippingStatus.DELIVERED, OrderStatus.DELIVERED)
_CANCELLED = _order(ShippingStatus.CANCELLED, OrderStatus.CANCELLED)
_PENDING = _order(ShippingStatus.PENDING, OrderStatus.PENDING)


# ── Forward shipment codes ──────────────────────────────

ORDER_CODE_TABLE: dict[int, OrderTranslation] = {
    1: _PROCESSING,    # New
    2: _PROCESSING,    # Pickup Scheduled
    3: _PROCESSING,    # AWB Assigned
    4: _PROCESSING,    # Pickup Generated
    5: _PROCESSING,    # Manifest Generated
    6: _SHIPPED,       # Shipped
    7: _DELIVERED,     # Delivered
    8: _CANCELLED,     # Cancelled
    9: _CANCELLED,     # RTO Initiated
    10: _CANCELLED,    # RTO Delivered
    11: _CANCELLED,    # Lost
    12: _CANCELLED,    # Damaged
    13: _SHIPPED,      # Out For Pickup
    14: _SHIPPED,      # Pickup Exception
    15: _SHIPPED,      # Undelivered
    16: _PENDING,      # Pending
    17: _SHIPPED,      # Connected
    18: _SHIPPED,      # In Transit
    19: _SHIPPED,      # Out For Delivery
    20: _SHIPPED,      # Delivery Scheduled
    21: _CANCELLED,    # Unsuccessfully Delivered
    38: _SHIPPED,      # Reached Destination Hub
    42: _SHIPPED,      # Picked Up
    43: _CANCELLED,    # Shipment Delayed
    44: _CANCELLED,    # Contact Customer Care
    45: _CANCELLED,    # RTO-OFD
    46: _CANCELLED,    # RTO In Transit
}

# Used only when the payload carries a label but no numeric code.
ORDER_LABEL_TABLE: dict[str, OrderTranslation] = {
    "NEW": _PROCESSING,
    "MANIFEST GENERATED": _PROCESSING,
    "PENDING PICKUP": _PROCESSING,
    "PICKED UP": _SHIPPED,
    "SHIPPED": _SHIPPED,
    "IN TRANSIT": _SHIPPED,
    "OUT FOR DELIVERY": _SHIPPED,
    "DELIVERED": _DELIVERED,
    "CANCELED": _CANCELLED,
    "CANCELLED": _CANCELLED,
    "RTO": _CANCELLED,
    "RTO DELIVERED": _CANCELLED,
    "LOST": _CANCELLED,
    "DAMAGED": _CANCELLED,
    "RETURNED": _order(ShippingStatus.DELIVERED, OrderStatus.RETURNED),
}


# ── Reverse-pickup (return) codes ───────────────────────

RETURN_CODE_TABLE: dict[int, ReturnTranslation] = {
    2: ReturnTranslation(ReturnStatus.PICKUP_SCHEDULED, PickupStatus.SCHEDULED),   # Pickup Scheduled
    13: ReturnTranslation(ReturnStatus.PICKUP_SCHEDULED, PickupStatus.SCHEDULED),  # Pickup Rescheduled
    3: ReturnTranslation(ReturnStatus.PICKED_UP, PickupStatus.COMPLETED),          # Picked Up
    4: ReturnTranslation(ReturnStatus.IN_TRANSIT, PickupStatus.COMPLETED),         # In Transit
    25: ReturnTranslation(ReturnStatus.IN_TRANSIT, PickupStatus.COMPLETED),        # Reached Origin Hub
    38: ReturnTranslation(ReturnStatus.IN_TRANSIT, PickupStatus.COMPLETED),        # Reached Destination Hub
    6: ReturnTranslation(ReturnStatus.RECEIVED, PickupStatus.COMPLETED),           # Delivered to warehouse
    7: ReturnTranslation(ReturnStatus.PICKUP_FAILED, PickupStatus.FAILED),         # RTO Initiated
    9: ReturnTranslation(ReturnStatus.PICKUP_FAILED, PickupStatus.FAILED),         # Lost
    10: ReturnTranslation(ReturnStatus.PICKUP_FAILED, PickupStatus.FAILED),        # Damaged in transit
}

RETURN_LABEL_TABLE: dict[str, ReturnStatus] = {
    "RETURN REQUESTED": ReturnStatus.REQUESTED,
    "RETURN INITIATED": ReturnStatus.REQUESTED,
    "MANIFEST GENERATED": ReturnStatus.PICKUP_SCHEDULED,
    "PENDING PICKUP": ReturnStatus.PICKUP_SCHEDULED,
    "RETURN PICKUP SCHEDULED": ReturnStatus.PICKUP_SCHEDULED,
    "PICKED UP": ReturnStatus.PICKED_UP,
    "RETURN PICKED UP": ReturnStatus.PICKED_UP,
    "SHIPPED": ReturnStatus.IN_TRANSIT,
    "IN TRANSIT": ReturnStatus.IN_TRANSIT,
    "RETURN IN TRANSIT": ReturnStatus.IN_TRANSIT,
    "OUT FOR DELIVERY": ReturnStatus.IN_TRANSIT,
    "RETURN OUT FOR DELIVERY": ReturnStatus.IN_TRANSIT,
    "DELIVERED": ReturnStatus.RECEIVED,
    "RETURN DELIVERED": ReturnStatus.RECEIVED,
    "RETURN RECEIVED": ReturnStatus.RECEIVED,
    "RETURNED TO SELLER": ReturnStatus.RECEIVED,
    "CANCELED": ReturnStatus.CANCELLED,
    "CANCELLED": ReturnStatus.CANCELLED,
    "RETURN CANCELED": ReturnStatus.CANCELLED,
    "RETURN CANCELLED": ReturnStatus.CANCELLED,
    "RTO": ReturnStatus.PICKUP_FAILED,
    "RTO DELIVERED": ReturnStatus.PICKUP_FAILED,
    "LOST": ReturnStatus.PICKUP_FAILED,
    "DAMAGED": ReturnStatus.PICKUP_FAILED,
}

_RETURN_PICKUP_BY_STATUS = {
    ReturnStatus.PICKUP_SCHEDULED: PickupStatus.SCHEDULED,
    ReturnStatus.PICKED_UP: PickupStatus.COMPLETED,
    ReturnStatus.IN_TRANSIT: PickupStatus.COMPLETED,
    ReturnStatus.RECEIVED: PickupStatus.COMPLETED,
    ReturnStatus.PICKUP_FAILED: PickupStatus.FAILED,
}


def normalize_label(label: Optional[str]) -> str:
    """Upper-case a carrier label and fold underscores into spaces."""
    if not label:
        return ""
    return " ".join(str(label).replace("_", " ").upper().split())


def translate_order_status(
    code: Optional[Union[int, str]],
    label: Optional[str] = None,
) -> OrderTranslation:
    """Map a forward-shipment status to canonical shipping/order status.

    The numeric code wins when present; the label is consulted only without
    one. Raises TranslationGap rather than guessing.
    """
    if code is not None:
        try:
            return ORDER_CODE_TABLE[int(code)]
        except (KeyError, TypeError, ValueError):
            raise TranslationGap(code, label)
    key = normalize_label(label)
    if key in ORDER_LABEL_TABLE:
        return ORDER_LABEL_TABLE[key]
    raise TranslationGap(code, label)


def translate_return_status(
    code: Optional[Union[int, str]],
    label: Optional[str] = None,
) -> ReturnTranslation:
    """Map a reverse-pickup status to a canonical return status."""
    if code is not None:
        try:
            return RETURN_CODE_TABLE[int(code)]
        except (KeyError, TypeError, ValueError):
            pass
    key = normalize_label(label)
    if key in RETURN_LABEL_TABLE:
        status = RETURN_LABEL_TABLE[key]
        return ReturnTranslation(status, _RETURN_PICKUP_BY_STATUS.get(status))
    raise TranslationGap(code, label)


def describe_order_code(code: int) -> Optional[dict]:
    """Human-readable table row, used by the CLI."""
    row = ORDER_CODE_TABLE.get(code)
    if row is None:
        return None
    return {"code": code, "shipping_status": row.shipping.value, "order_status": row.order.value}


def describe_return_code(code: int) -> Optional[dict]:
    row = RETURN_CODE_TABLE.get(code)
    if row is None:
        return None
    return {
        "code": code,
        "return_status": row.status.value,
        "pickup_status": row.pickup.value if row.pickup else None,
    }
