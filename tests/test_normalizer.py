"""Webhook normalization tests."""

from datetime import datetime, timezone

import pytest

from app.services.errors import NormalizationError
from app.services.normalizer import (
    EventSource,
    PayloadShape,
    normalize_refund,
    normalize_shipment,
    parse_carrier_datetime,
)


def carrier_push(**overrides) -> dict:
    body = {
        "awb": "19041424751540",
        "courier_name": "Delhivery Surface",
        "current_status": "DELIVERED",
        "current_status_id": 7,
        "shipment_status": "DELIVERED",
        "shipment_status_id": 7,
        "current_timestamp": "23 05 2023 11:43:52",
        "order_id": "S1_1684826400",
        "sr_order_id": 348456385,
        "shipment_id": "S1",
        "etd": "2023-05-23 15:40:19",
        "is_return": 0,
        "scans": [
            {
                "date": "2023-05-21 10:00:00",
                "activity": "Picked up",
                "location": "Mumbai Hub",
                "sr-status": "42",
                "sr-status-label": "PICKED UP",
            },
            {
                "date": "2023-05-23 11:43:52",
                "activity": "Delivered",
                "location": "Pune",
                "sr-status": "7",
                "sr-status-label": "DELIVERED",
            },
        ],
    }
    body.update(overrides)
    return body


class TestDates:
    def test_day_first_format_is_ist(self):
        parsed = parse_carrier_datetime("23 05 2023 11:43:52")
        assert parsed == datetime(2023, 5, 23, 6, 13, 52, tzinfo=timezone.utc)

    def test_iso_date_time(self):
        parsed = parse_carrier_datetime("2023-05-23 05:30:00")
        assert parsed == datetime(2023, 5, 23, 0, 0, tzinfo=timezone.utc)

    def test_iso_with_offset_kept(self):
        parsed = parse_carrier_datetime("2023-05-23T10:00:00+00:00")
        assert parsed == datetime(2023, 5, 23, 10, 0, tzinfo=timezone.utc)

    def test_unparseable_is_none(self):
        assert parse_carrier_datetime("yesterday-ish") is None
        assert parse_carrier_datetime("") is None
        assert parse_carrier_datetime(None) is None


class TestShipmentShapes:
    def test_direct(self):
        event = normalize_shipment(carrier_push())
        assert event.shape == PayloadShape.DIRECT
        assert event.shipment_id == "S1"
        assert event.awb == "19041424751540"
        assert event.carrier_order_id == "348456385"
        assert event.status_code == 7
        assert event.status_label == "DELIVERED"
        assert event.courier_name == "Delhivery Surface"
        assert event.is_return is False
        assert event.order_number == "S1"

    def test_single_element_list_unwrapped(self):
        event = normalize_shipment([carrier_push()])
        assert event.status_code == 7

    def test_multi_element_list_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_shipment([carrier_push(), carrier_push()])

    def test_empty_list_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_shipment([])

    def test_non_object_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_shipment("hello")

    def test_no_status_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_shipment({"awb": "123", "courier_name": "X"})

    def test_tracking_data(self):
        body = {
            "tracking_data": {
                "track_status": 1,
                "shipment_status": 18,
                "shipment_track": [{
                    "shipment_id": 16104408,
                    "awb_code": "AWB99",
                    "current_status": "IN TRANSIT",
                    "courier_name": "Bluedart",
                    "edd": "2023-05-25 18:00:00",
                }],
                "shipment_track_activities": [
                    {"date": "2023-05-22 09:00:00", "activity": "In transit", "location": "Nagpur", "sr-status": "18"},
                ],
            }
        }
        event = normalize_shipment(body)
        assert event.shape == PayloadShape.TRACKING_DATA
        assert event.status_code == 18
        assert event.status_label == "IN TRANSIT"
        assert event.shipment_id == "16104408"
        assert event.awb == "AWB99"
        assert event.etd is not None
        assert len(event.scans) == 1
        assert event.scans[0].location == "Nagpur"

    def test_keyed_by_shipment(self):
        body = {"16104408": {"tracking_data": {"shipment_status": 6, "shipment_track": [{"current_status": "SHIPPED"}]}}}
        event = normalize_shipment(body, shipment_id="16104408")
        assert event.shape == PayloadShape.KEYED_SHIPMENT
        assert event.status_code == 6
        assert event.shipment_id == "16104408"

    def test_keyed_by_order_sets_carrier_order_id(self):
        body = {"348456385": {"tracking_data": {"shipment_status": 7}}}
        event = normalize_shipment(body, order_id="348456385")
        assert event.shape == PayloadShape.KEYED_ORDER
        assert event.carrier_order_id == "348456385"

    def test_keyed_by_awb(self):
        body = {"AWB1": {"tracking_data": {"shipment_status": 19}}}
        event = normalize_shipment(body, awb="AWB1")
        assert event.shape == PayloadShape.KEYED_AWB
        assert event.awb == "AWB1"

    def test_scanned_fallback(self):
        body = {"unrelated": 1, "998877": {"tracking_data": {"shipment_status": 42}}}
        event = normalize_shipment(body)
        assert event.shape == PayloadShape.SCANNED
        assert event.status_code == 42

    def test_numeric_label_becomes_code(self):
        event = normalize_shipment({"awb": "A1", "current_status": "7"})
        assert event.status_code == 7
        assert event.status_label is None

    def test_label_only(self):
        event = normalize_shipment({"awb": "A1", "current_status": "OUT FOR DELIVERY"})
        assert event.status_code is None
        assert event.status_label == "OUT FOR DELIVERY"

    def test_superscript_digit_label_kept_as_label(self):
        event = normalize_shipment({"awb": "A1", "current_status": "\u00b2"})
        assert event.status_code is None
        assert event.status_label == "\u00b2"


class TestShipmentFields:
    def test_scans_mapped(self):
        event = normalize_shipment(carrier_push())
        assert [s.status_code for s in event.scans] == ["42", "7"]
        assert event.scans[0].activity == "Picked up"
        assert event.scans[0].status_label == "PICKED UP"
        assert event.scans[0].timestamp.tzinfo is not None

    def test_missing_scan_fields_stay_none(self):
        event = normalize_shipment(carrier_push(scans=[{"date": "garbage"}]))
        scan = event.scans[0]
        assert scan.timestamp is None
        assert scan.location is None
        assert scan.status_code is None

    def test_non_list_scans_rejected(self):
        with pytest.raises(NormalizationError, match="scans must be a list"):
            normalize_shipment(carrier_push(scans=5))

    def test_timestamp_parsed(self):
        event = normalize_shipment(carrier_push())
        assert event.timestamp == datetime(2023, 5, 23, 6, 13, 52, tzinfo=timezone.utc)

    def test_is_return_flag(self):
        assert normalize_shipment(carrier_push(is_return=1)).is_return is True
        assert normalize_shipment(carrier_push(is_return="0")).is_return is False

    def test_return_source_forces_return(self):
        event = normalize_shipment(carrier_push(), EventSource.CARRIER_RETURN)
        assert event.is_return is True

    def test_order_number_without_suffix(self):
        event = normalize_shipment(carrier_push(order_id="ORD42"))
        assert event.order_number == "ORD42"

    def test_order_number_absent(self):
        body = carrier_push()
        del body["order_id"]
        assert normalize_shipment(body).order_number is None


class TestRefundEvents:
    def test_refund_processed(self):
        body = {
            "event": "refund.processed",
            "payload": {"refund": {"entity": {
                "id": "rfnd_1",
                "status": "processed",
                "speed_processed": "instant",
                "payment_id": "pay_1",
                "receipt": "attempt_abc",
                "amount": 249900,
            }}},
        }
        event = normalize_refund(body)
        assert event.event == "refund.processed"
        assert event.refund_id == "rfnd_1"
        assert event.speed == "instant"
        assert event.receipt == "attempt_abc"
        assert event.amount == 249900
        assert event.error_description is None

    def test_refund_failed_carries_reason(self):
        body = {"event": "refund.failed", "payload": {"refund": {"entity": {
            "id": "rfnd_2", "status": "failed", "error_description": "Bank rejected",
        }}}}
        event = normalize_refund(body)
        assert event.error_description == "Bank rejected"

    def test_missing_entity_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_refund({"event": "refund.processed", "payload": {}})
