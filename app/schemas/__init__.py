"""Pydantic schemas for the reconciliation API."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ── Admin: refunds ───────────────────────────────────────
class OrderRefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: str = ""
    notes: str = ""


class ReturnNoteCreate(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


# ── Read models ──────────────────────────────────────────
class TrackingEntry(BaseModel):
    activity: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[datetime] = None
    status_code: Optional[str] = None
    status_label: Optional[str] = None


class OrderTrackingOut(BaseModel):
    order_number: str
    status: str
    shipping_status: str
    payment_status: str
    courier_name: Optional[str] = None
    current_location: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    last_update_at: Optional[datetime] = None
    tracking_history: list[TrackingEntry] = Field(default_factory=list)

    model_config = {"from_attributes": True}
