"""Reconciliation data models."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, JSON, Numeric, String, Text, Uuid

from app.database import Base
from app.models.enums import (
    OrderStatus, PaymentMethod, PaymentStatus, ShippingStatus, values,
)


def utcnow():
    return datetime.now(timezone.utc)


class Order(Base):
    """Customer purchase, reconciled against carrier and gateway state."""
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number = Column(String(100), unique=True, nullable=False, index=True)
    status = Column(Enum(*values(OrderStatus), name="order_status"), default=OrderStatus.PENDING.value)

    customer_name = Column(String(300), default="")
    customer_email = Column(String(320), default="")
    total_amount = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), default="INR")

    payment_method = Column(Enum(*values(PaymentMethod), name="payment_method"), default=PaymentMethod.ONLINE.value)
    payment_status = Column(Enum(*values(PaymentStatus), name="payment_status"), default=PaymentStatus.PENDING.value)
    payment_id = Column(String(100), nullable=True, index=True)  # gateway payment id

    # Carrier-side identifiers, any subset may be known
    shipment_id = Column(String(100), nullable=True, index=True)
    carrier_order_id = Column(String(100), nullable=True, index=True)
    awb_code = Column(String(100), nullable=True, index=True)

    shipping_status = Column(
        Enum(*values(ShippingStatus), name="shipping_status"), default=ShippingStatus.PENDING.value,
    )
    courier_name = Column(String(200), nullable=True)
    current_location = Column(String(300), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    last_update_at = Column(DateTime(timezone=True), nullable=True)
    tracking_history = Column(JSON, default=list)

    notes = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def add_note(self, note: str) -> None:
        """Append a line to the operator notes."""
        self.notes = f"{self.notes}\n{note}" if self.notes else note
