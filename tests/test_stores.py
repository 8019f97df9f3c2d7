import json

from conftest import RESTRICTED, FakeRedis, fix
from geozones import GeofenceRegistry, InMemoryGeofenceRegistry
from schemas import DailyRecord
from stores import InMemoryPositionStore, InMemoryRecordStore, RedisPositionStore
from validator import TelemetryValidator


def gps(**overrides):
    return TelemetryValidator().validate("dev-1", fix(**overrides))


async def test_position_ttl(clock):
    positions = InMemoryPositionStore(ttl_s=300, clock=clock)
    await positions.put("V1", gps())

    clock.advance(seconds=299)
    latest = await positions.latest("V1")
    assert latest["lat"] == 38.70
    assert latest["lng"] == -8.87
    assert latest["speed"] == 60
    assert latest["heading"] == 90

    clock.advance(seconds=1)
    assert await positions.latest("V1") is None


async def test_position_overwritten_by_newer_fix(clock):
    positions = InMemoryPositionStore(clock=clock)
    await positions.put("V1", gps(speed_kmh=10))
    await positions.put("V1", gps(speed_kmh=20))
    assert (await positions.latest("V1"))["speed"] == 20
    assert await positions.latest("V2") is None


async def test_redis_position_store():
    r = FakeRedis()
    positions = RedisPositionStore(r, ttl_s=300)
    await positions.put("V1", gps())

    assert r.ttl["position:V1"] == 300
    assert json.loads(r.kv["position:V1"])["lat"] == 38.70
    assert (await positions.latest("V1"))["timestamp"].startswith("2025-03-10T12:00:00")
    assert await positions.latest("V9") is None


async def test_record_store_keeps_snapshots():
    store = InMemoryRecordStore()
    record = DailyRecord(driver_id="D1", date="2025-03-10")
    await store.save_daily_record(record)
    record.driver_id = "changed"
    assert store.daily_records[0].driver_id == "D1"


class BrokenRegistry(GeofenceRegistry):
    async def load(self):
        raise ConnectionError("db down")


async def test_geofence_refresh_keeps_previous_snapshot():
    registry = BrokenRegistry([RESTRICTED])
    assert await registry.refresh() == 1
    assert registry.active() == [RESTRICTED]


async def test_geofence_refresh():
    registry = InMemoryGeofenceRegistry([RESTRICTED])
    assert await registry.refresh() == 1
    assert registry.restricted() == [RESTRICTED]
