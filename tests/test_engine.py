import pytest

from conftest import at, fix
from engine import in_memory_guardian
from schemas import AlertType, LatLng, Severity
from validator import TelemetryValidator


@pytest.fixture
async def guardian(fleet, geofences, store, clock):
    clock.advance(hours=5)  # 17:00 on Monday 10th
    g = in_memory_guardian(clock=clock, fleet=fleet, geofences=geofences, store=store)
    yield g
    await g.close()


async def test_break_required_near_the_continuous_limit(guardian, store):
    await guardian.record_activity("D1", "driving", at(10, 7), at(10, 11), vehicle_id="V1")
    await guardian.drain()

    (alert,) = store.alerts
    assert alert.type == AlertType.REST_REQUIRED
    assert alert.severity == Severity.CRITICAL
    assert alert.driver_id == "D1"
    assert alert.vehicle_id == "V1"
    assert alert.location is None
    assert len(guardian.notifier.events) == 2


async def test_daily_driving_warning(guardian, store):
    await guardian.record_activity("D1", "driving", at(10, 4), at(10, 7))
    await guardian.record_activity("D1", "break", at(10, 7), at(10, 8))
    await guardian.record_activity("D1", "driving", at(10, 8), at(10, 11))
    await guardian.record_activity("D1", "break", at(10, 11), at(10, 12))
    await guardian.record_activity("D1", "driving", at(10, 12), at(10, 14, 15))
    await guardian.drain()

    assert [a.type for a in store.alerts] == [AlertType.DRIVING_LIMIT_WARNING]
    assert store.alerts[0].severity == Severity.HIGH
    assert store.alerts[0].vehicle_id is None


async def test_warnings_are_deduplicated_per_driver(guardian, store):
    await guardian.record_activity("D1", "driving", at(10, 7), at(10, 11))
    await guardian.record_activity("D1", "other_work", at(10, 11), at(10, 11, 15))
    await guardian.record_activity("D2", "driving", at(10, 7), at(10, 11))
    await guardian.drain()

    assert sorted(a.driver_id for a in store.alerts) == ["D1", "D2"]


async def test_no_warnings_for_finalized_days(guardian, store):
    await guardian.record_activity("D1", "driving", at(9, 7), at(9, 11, 30))
    await guardian.drain()
    assert store.alerts == []


async def test_warning_carries_the_vehicle_position(guardian, store):
    gps = TelemetryValidator().validate("dev-1", fix())
    await guardian.positions.put("V1", gps)

    await guardian.record_activity("D1", "driving", at(10, 7), at(10, 11, 15), vehicle_id="V1")
    await guardian.drain()

    (alert,) = store.alerts
    assert alert.location == LatLng(lat=38.70, lng=-8.87)
