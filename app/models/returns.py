"""Returns & refunds models."""

import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, JSON, Numeric, String, Uuid

from app.database import Base
from app.models import utcnow
from app.models.enums import PickupStatus, RefundStatus, ReturnStatus, values


class Return(Base):
    """Post-delivery return / refund request, 1:1 with an order."""
    __tablename__ = "returns"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    return_number = Column(String(100), unique=True, nullable=False, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True)
    status = Column(Enum(*values(ReturnStatus), name="return_status"), default=ReturnStatus.REQUESTED.value)
    status_history = Column(JSON, default=list)  # [{status, actor, note, at}]

    items = Column(JSON, default=list)  # [{product_id, quantity, reason, item_condition}]
    refund_amount = Column(Numeric(10, 2), default=0)
    refund_details = Column(JSON, default=dict)  # bank particulars for payout
    refund_status = Column(Enum(*values(RefundStatus), name="refund_status"), default=RefundStatus.NOT_STARTED.value)
    refund_transaction_id = Column(String(100), nullable=True, index=True)
    refund_gateway_data = Column(JSON, default=dict)

    admin_notes = Column(JSON, default=list)  # [{note, actor, at}]

    # Reverse-pickup tracking
    return_shipment_id = Column(String(100), nullable=True, index=True)
    return_awb = Column(String(100), nullable=True, index=True)
    pickup_status = Column(Enum(*values(PickupStatus), name="pickup_status"), default=PickupStatus.PENDING.value)
    courier_name = Column(String(200), nullable=True)
    current_location = Column(String(300), nullable=True)
    last_update_at = Column(DateTime(timezone=True), nullable=True)
    tracking_history = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def add_admin_note(self, note: str, actor: str) -> None:
        self.admin_notes = [
            *(self.admin_notes or []),
            {"note": note, "actor": actor, "at": utcnow().isoformat()},
        ]
