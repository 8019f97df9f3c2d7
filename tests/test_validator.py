import datetime as dt

import pytest

from conftest import NOW, fix
from errors import InputRejected
from validator import TelemetryValidator, to_dt


def test_valid_fix():
    v = TelemetryValidator()
    gps = v.validate("dev-1", fix())
    assert gps.device_id == "dev-1"
    assert gps.timestamp == NOW
    assert gps.speed_kmh == 60
    assert v.accepted == 0  # only check() counts


def test_traccar_field_names():
    gps = TelemetryValidator().validate(7, {
        "latitude": 38.7,
        "longitude": -9.1,
        "speed": 42.0,
        "course": 180,
        "fixTime": "2025-03-10T12:00:00Z",
    })
    assert gps.device_id == "7"
    assert gps.heading_deg == 180
    assert gps.timestamp.tzinfo is not None


def test_heading_is_optional():
    raw = fix()
    del raw["heading_deg"]
    assert TelemetryValidator().validate("dev-1", raw).heading_deg is None


@pytest.mark.parametrize("overrides, reason", [
    ({"latitude": 91}, "latitude_out_of_range"),
    ({"longitude": -180.5}, "longitude_out_of_range"),
    ({"speed_kmh": -1}, "negative_speed"),
    ({"speed_kmh": "fast"}, "non_numeric_speed_kmh"),
    ({"latitude": True}, "non_numeric_latitude"),
    ({"latitude": float("nan")}, "non_numeric_latitude"),
    ({"heading_deg": 360}, "invalid_heading_deg"),
    ({"timestamp": "yesterday"}, "bad_timestamp"),
    ({"timestamp": None}, "missing_timestamp"),
    ({"satellites": "9"}, "non_numeric_satellites"),
])
def test_rejections(overrides, reason):
    with pytest.raises(InputRejected) as e:
        TelemetryValidator().validate("dev-1", fix(**overrides))
    assert e.value.reason == reason


def test_missing_position():
    raw = fix()
    del raw["longitude"]
    with pytest.raises(InputRejected) as e:
        TelemetryValidator().validate("dev-1", raw)
    assert e.value.reason == "missing_longitude"


def test_not_an_object():
    with pytest.raises(InputRejected) as e:
        TelemetryValidator().validate("dev-1", ["38.7", "-9.1"])
    assert e.value.reason == "malformed"


def test_check_counts_and_never_raises():
    v = TelemetryValidator()
    assert v.check("dev-1", fix(latitude=120)) == (None, "latitude_out_of_range")
    gps, reason = v.check("dev-1", fix())
    assert gps is not None and reason is None
    assert v.rejected["latitude_out_of_range"] == 1
    assert v.accepted == 1


def test_to_dt_formats():
    assert to_dt("2025-03-10T12:00:00Z") == NOW
    assert to_dt("2025-03-10T12:00:00") == NOW
    assert to_dt(1741608000) == NOW
    assert to_dt(1741608000000) == NOW
    assert to_dt(dt.datetime(2025, 3, 10, 12)) == NOW
    assert to_dt(float("inf")) is None
    assert to_dt(True) is None
