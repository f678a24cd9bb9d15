"""Canonical order/return vocabularies."""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class ShippingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cod"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    INSPECTED = "inspected"
    APPROVED_REFUND = "approved_refund"
    REFUND_PROCESSED = "refund_processed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PICKUP_FAILED = "pickup_failed"


class PickupStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class ItemCondition(str, Enum):
    UNUSED = "unused"
    LIGHTLY_USED = "lightly_used"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"


SYSTEM_ACTOR = "system_automation"


def values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]
