from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from tracker.schemas import CommandCreate, GeofenceCreate, LocationReport, SystemLogOut


def test_coordinates_accept_strings_and_numbers():
    from_str = LocationReport.model_validate({"latitude": "45.4642", "longitude": "9.19"})
    from_num = LocationReport.model_validate({"latitude": 45.4642, "longitude": 9.19})

    assert from_str.latitude == Decimal("45.4642")
    assert from_num.latitude == Decimal("45.4642")
    assert from_str.longitude == from_num.longitude == Decimal("9.19")


@pytest.mark.parametrize("latitude", ["north", "91", -90.5, True, "NaN"])
def test_bad_latitude_rejected(latitude):
    with pytest.raises(ValidationError):
        LocationReport.model_validate({"latitude": latitude, "longitude": 0})


def test_camel_case_fields():
    report = LocationReport.model_validate(
        {"latitude": 1, "longitude": 2, "batteryLevel": "55.5", "signalQuality": 12}
    )

    assert report.battery_level == Decimal("55.5")
    assert report.signal_quality == 12


def test_timestamp_normalized_to_naive_utc():
    report = LocationReport.model_validate(
        {"latitude": 1, "longitude": 2, "timestamp": "2024-05-01T12:00:00+02:00"}
    )

    assert report.timestamp == datetime(2024, 5, 1, 10, 0, 0)


def test_unknown_command_type_rejected():
    with pytest.raises(ValidationError):
        CommandCreate.model_validate({"commandType": "self_destruct"})


def test_geofence_radius_must_be_positive():
    with pytest.raises(ValidationError):
        GeofenceCreate.model_validate(
            {"name": "x", "centerLatitude": 0, "centerLongitude": 0, "radius": 0}
        )


def test_system_log_metadata_serialized_under_metadata_key():
    out = SystemLogOut(
        id=1, level="info", category="command", message="m", meta={"a": 1}, timestamp=datetime(2024, 1, 1)
    )

    dumped = out.model_dump(by_alias=True)
    assert dumped["metadata"] == {"a": 1}
    assert SystemLogOut.model_validate(dumped).meta == {"a": 1}


@pytest.mark.parametrize(
    "field, value",
    [
        ("speed", 10000),
        ("hdop", "100"),
        ("altitude", 1000000),
        ("accuracy", "1000000"),
        ("satellites", 256),
        ("signalQuality", 1000),
        ("batteryLevel", 101),
    ],
)
def test_out_of_range_report_fields_rejected(field, value):
    with pytest.raises(ValidationError):
        LocationReport.model_validate({"latitude": 1, "longitude": 2, field: value})


def test_report_fields_accept_column_maximums():
    report = LocationReport.model_validate(
        {"latitude": 1, "longitude": 2, "speed": "9999.99", "hdop": "99.99", "altitude": "-999999.99"}
    )

    assert report.speed == Decimal("9999.99")
    assert report.hdop == Decimal("99.99")
