"""State machine tests (in-memory, no database)."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from app.models import Order
from app.models.enums import SYSTEM_ACTOR
from app.models.returns import Return
from app.services.errors import TransitionConflict
from app.services.normalizer import PayloadShape, Scan, ShipmentEvent, normalize_shipment
from app.services.transitions import (
    ADVANCED,
    CONFLICT,
    ORDER_RANK,
    ORDER_TERMINAL,
    UNCHANGED,
    UNMAPPED,
    apply_return_event,
    apply_shipment_event,
    can_advance_order,
    can_transition_return,
    merge_tracking_history,
    transition_return,
)
from app.services.translator import ORDER_CODE_TABLE

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_order(**fields) -> Order:
    values = dict(
        order_number="S1",
        status="pending",
        shipping_status="pending",
        payment_method="online",
        payment_status="paid",
        tracking_history=[],
        notes="",
    )
    values.update(fields)
    return Order(**values)


def make_return(**fields) -> Return:
    values = dict(
        return_number="R1",
        status="requested",
        status_history=[],
        pickup_status="pending",
        tracking_history=[],
        admin_notes=[],
        items=[],
    )
    values.update(fields)
    return Return(**values)


def event(code=None, label=None, at=T0, **fields) -> ShipmentEvent:
    return ShipmentEvent(shape=PayloadShape.DIRECT, status_code=code, status_label=label, timestamp=at, **fields)


class TestOrderRules:
    def test_forward_moves(self):
        assert can_advance_order("pending", "processing")
        assert can_advance_order("processing", "delivered")

    def test_no_regression(self):
        assert not can_advance_order("shipped", "processing")

    def test_cancel_from_non_terminal(self):
        assert can_advance_order("shipped", "cancelled")
        assert not can_advance_order("delivered", "cancelled")

    def test_returned_only_from_delivered(self):
        assert can_advance_order("delivered", "returned")
        for current in ("pending", "processing", "shipped", "cancelled", "returned"):
            assert not can_advance_order(current, "returned"), current

    def test_returned_is_final(self):
        for target in ("delivered", "cancelled", "shipped"):
            assert not can_advance_order("returned", target)

    def test_terminal_is_final(self):
        for terminal in ORDER_TERMINAL:
            assert not can_advance_order(terminal, "shipped")


class TestApplyShipmentEvent:
    def test_delivered_scenario(self):
        order = make_order(status="shipped", shipping_status="shipped", payment_method="cod", payment_status="pending")
        result = apply_shipment_event(order, event(7, "DELIVERED", shipment_id="S1"))
        assert result.outcome == ADVANCED
        assert result.updated is True
        assert order.status == "delivered"
        assert order.shipping_status == "delivered"
        assert order.payment_status == "paid"
        assert order.delivered_at == T0
        assert order.tracking_history[-1]["status_code"] == "7"

    def test_online_delivery_keeps_payment_status(self):
        order = make_order(status="shipped", payment_status="paid")
        apply_shipment_event(order, event(7))
        assert order.payment_status == "paid"

    def test_idempotent_replay(self):
        order = make_order()
        e = event(6, "SHIPPED", courier_name="Delhivery", location="Mumbai")
        first = apply_shipment_event(order, e)
        history = list(order.tracking_history)
        second = apply_shipment_event(order, e)
        assert first.updated is True
        assert second.updated is False
        assert second.outcome == UNCHANGED
        assert order.tracking_history == history

    def test_regression_is_recorded_not_applied(self):
        order = make_order(status="shipped", shipping_status="shipped")
        result = apply_shipment_event(order, event(3, "AWB ASSIGNED", at=T0 - timedelta(days=1)))
        assert result.outcome == CONFLICT
        assert order.status == "shipped"
        assert order.shipping_status == "shipped"
        assert any(e["status_code"] == "3" for e in order.tracking_history)

    def test_unmapped_code_records_history_only(self):
        order = make_order(status="processing", shipping_status="processing")
        result = apply_shipment_event(order, event(99, "MYSTERY"))
        assert result.outcome == UNMAPPED
        assert result.gap.code == 99
        assert order.status == "processing"
        assert order.tracking_history[-1]["status_code"] == "99"

    def test_status_unchanged_still_updates_courier(self):
        order = make_order(status="shipped", shipping_status="shipped")
        result = apply_shipment_event(order, event(18, courier_name="Bluedart", location="Nagpur"))
        assert result.outcome == UNCHANGED
        assert result.updated is True
        assert order.courier_name == "Bluedart"
        assert order.current_location == "Nagpur"

    def test_foreign_ids_filled_only_when_unset(self):
        order = make_order(awb_code="AWB-OLD")
        apply_shipment_event(order, event(6, shipment_id="SHP1", awb="AWB-NEW", carrier_order_id="555"))
        assert order.shipment_id == "SHP1"
        assert order.carrier_order_id == "555"
        assert order.awb_code == "AWB-OLD"

    def test_last_update_only_moves_forward(self):
        order = make_order()
        apply_shipment_event(order, event(6, at=T0))
        apply_shipment_event(order, event(3, at=T0 - timedelta(hours=2)))
        assert order.last_update_at == T0

    def test_etd_recorded(self):
        order = make_order()
        etd = T0 + timedelta(days=2)
        apply_shipment_event(order, event(6, etd=etd))
        assert order.estimated_delivery == etd

    def test_scans_merged_and_deduped(self):
        order = make_order()
        scans = [
            Scan(timestamp=T0 - timedelta(hours=3), activity="Picked", status_code="42"),
            Scan(timestamp=T0 - timedelta(hours=1), activity="Transit", status_code="18"),
        ]
        apply_shipment_event(order, event(18, scans=scans))
        count = len(order.tracking_history)
        apply_shipment_event(order, event(18, scans=scans))
        assert len(order.tracking_history) == count == 2
        keys = {(e["timestamp"], e["status_code"]) for e in order.tracking_history}
        assert len(keys) == len(order.tracking_history)

    def test_single_scan_push_adds_one_entry(self):
        order = make_order(status="shipped", shipping_status="shipped", payment_method="cod", payment_status="pending")
        pushed = normalize_shipment({
            "shipment_id": "S1",
            "shipment_status_id": 7,
            "scans": [{"date": "14 10 2025 10:00:00", "location": "Mumbai"}],
        })
        result = apply_shipment_event(order, pushed)

        assert result.outcome == ADVANCED
        assert order.status == "delivered"
        assert order.payment_status == "paid"
        assert len(order.tracking_history) == 1
        entry = order.tracking_history[0]
        assert entry["timestamp"] == "2025-10-14T04:30:00+00:00"
        assert entry["status_code"] == "7"
        assert entry["location"] == "Mumbai"

        apply_shipment_event(order, pushed)
        assert len(order.tracking_history) == 1

    def test_scan_status_not_overwritten(self):
        order = make_order()
        scans = [Scan(timestamp=T0, activity="Transit", status_code="18")]
        apply_shipment_event(order, event(6, scans=scans))
        assert [e["status_code"] for e in order.tracking_history] == ["18"]

    def test_cancelled_from_shipped(self):
        order = make_order(status="shipped")
        result = apply_shipment_event(order, event(8, "CANCELED"))
        assert result.outcome == ADVANCED
        assert order.status == "cancelled"

    def test_returned_label_after_delivery(self):
        order = make_order(status="delivered", shipping_status="delivered")
        result = apply_shipment_event(order, event(None, "RETURNED"))
        assert result.outcome == ADVANCED
        assert order.status == "returned"

    def test_returned_label_before_delivery_is_conflict(self):
        order = make_order(status="shipped", shipping_status="shipped")
        result = apply_shipment_event(order, event(None, "RETURNED"))
        assert result.outcome == CONFLICT
        assert order.status == "shipped"

    def test_no_regression_for_any_code_pair(self):
        codes = sorted(ORDER_CODE_TABLE)
        for first, second in itertools.product(codes, repeat=2):
            order = make_order()
            apply_shipment_event(order, event(first, at=T0))
            after_first = order.status
            apply_shipment_event(order, event(second, at=T0 + timedelta(minutes=5)))
            if after_first in ORDER_TERMINAL:
                assert order.status == after_first, (first, second)
            elif order.status != "cancelled":
                assert ORDER_RANK[order.status] >= ORDER_RANK[after_first], (first, second)


class TestReturnRules:
    def test_forward_skip_allowed(self):
        assert can_transition_return("requested", "received")

    def test_regression_rejected(self):
        assert not can_transition_return("in_transit", "picked_up")

    def test_side_exits(self):
        assert can_transition_return("picked_up", "cancelled")
        assert can_transition_return("requested", "pickup_failed")
        assert not can_transition_return("completed", "cancelled")

    def test_refund_retry(self):
        assert can_transition_return("refund_processed", "approved_refund", refund_retry=True)
        assert can_transition_return("completed", "approved_refund", refund_retry=True)
        assert not can_transition_return("completed", "approved_refund")
        assert not can_transition_return("inspected", "approved_refund", refund_retry=True)

    def test_transition_records_history(self):
        ret = make_return()
        previous = transition_return(ret, "pickup_scheduled", "admin-7", "booked")
        assert previous == "requested"
        assert ret.status == "pickup_scheduled"
        entry = ret.status_history[-1]
        assert entry["actor"] == "admin-7"
        assert entry["note"] == "booked"

    def test_illegal_transition_raises(self):
        ret = make_return(status="completed")
        with pytest.raises(TransitionConflict):
            transition_return(ret, "requested")
        assert ret.status == "completed"


class TestApplyReturnEvent:
    def test_received_triggers_inspection(self):
        ret = make_return(status="in_transit")
        result = apply_return_event(ret, event(6, "DELIVERED", shipment_id="RS1", awb="RAWB1"))
        assert result.triggers_inspection is True
        assert ret.status == "received"
        assert ret.pickup_status == "completed"
        assert ret.return_shipment_id == "RS1"
        assert ret.status_history[-1]["actor"] == SYSTEM_ACTOR

    def test_replayed_received_does_not_retrigger(self):
        ret = make_return(status="in_transit")
        e = event(6)
        apply_return_event(ret, e)
        again = apply_return_event(ret, e)
        assert again.triggers_inspection is False
        assert again.updated is False

    def test_carrier_cannot_regress_past_received(self):
        ret = make_return(status="approved_refund")
        result = apply_return_event(ret, event(3, "PICKED UP"))
        assert result.outcome == CONFLICT
        assert ret.status == "approved_refund"

    def test_pickup_failure(self):
        ret = make_return(status="pickup_scheduled")
        result = apply_return_event(ret, event(9, "LOST"))
        assert result.outcome == ADVANCED
        assert ret.status == "pickup_failed"
        assert ret.pickup_status == "failed"

    def test_unmapped(self):
        ret = make_return()
        result = apply_return_event(ret, event(55, "ODD"))
        assert result.outcome == UNMAPPED
        assert ret.status == "requested"
        assert len(ret.tracking_history) == 1


def test_merge_tracking_history_counts_new():
    existing = [{"timestamp": "2024-01-01T00:00:00+00:00", "status_code": "6"}]
    merged, added = merge_tracking_history(existing, [
        {"timestamp": "2024-01-01T00:00:00+00:00", "status_code": "6", "activity": None, "location": None,
         "status_label": None},
        {"timestamp": "2024-01-02T00:00:00+00:00", "status_code": "7", "activity": None, "location": None,
         "status_label": None},
    ])
    assert added == 1
    assert merged[0] is existing[0]
    assert merged[-1]["status_code"] == "7"
