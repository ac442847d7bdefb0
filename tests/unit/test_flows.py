"""Unit tests for the Prefect flow tasks."""

import pytest

from flows.ndr_tracking_flow import parse_tracking_updates


@pytest.mark.unit
class TestTrackingParsing:
    """Test validation of raw tracking payloads."""

    def test_malformed_updates_are_rejected(self, mocker):
        """Test valid payloads are normalized and bad ones kept with their errors."""
        mocker.patch("flows.ndr_tracking_flow.get_run_logger")
        raw = [
            {"shipment_id": "shp-1001", "status": "UNDELIVERED", "timestamp": "2025-08-17T10:00:00",
             "remark": "Door locked", "attempt_number": 1},
            {"shipment_id": "shp-1002", "status": "UNDELIVERED"},
            {"shipment_id": "shp-1003", "status": "UNDELIVERED", "timestamp": "2025-08-17T11:00:00",
             "attempt_number": 0},
        ]

        result = parse_tracking_updates.fn(raw)

        assert [payload["shipment_id"] for payload in result["valid"]] == ["shp-1001"]
        assert result["valid"][0]["timestamp"] == "2025-08-17T10:00:00"
        assert [item["payload"]["shipment_id"] for item in result["rejected"]] == ["shp-1002", "shp-1003"]
        assert result["rejected"][0]["errors"][0]["loc"] == ("timestamp",)
