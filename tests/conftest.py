import datetime as dt

import pytest

from geozones import InMemoryGeofenceRegistry
from schemas import Geofence, GeofenceKind, LatLng, Trip, TripStatus, Vehicle
from stores import InMemoryFleetRegistry, InMemoryRecordStore

UTC = dt.timezone.utc

# Monday
NOW = dt.datetime(2025, 3, 10, 12, 0, tzinfo=UTC)

# two waypoints ~47 km apart along the 38.70 parallel
ROUTE = [LatLng(lat=38.70, lng=-9.14), LatLng(lat=38.70, lng=-8.60)]

RESTRICTED = Geofence(
    id="z1",
    name="Port area",
    kind=GeofenceKind.RESTRICTED,
    polygon=[
        LatLng(lat=38.79, lng=-9.01),
        LatLng(lat=38.79, lng=-8.99),
        LatLng(lat=38.81, lng=-8.99),
        LatLng(lat=38.81, lng=-9.01),
    ],
)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += dt.timedelta(**kwargs)


class FakeRedis:
    """Just the blocking redis-py calls the code uses."""

    def __init__(self):
        self.kv = {}
        self.ttl = {}
        self.streams = {}
        self.acked = []
        self.deleted = []

    def setex(self, key, ttl, value):
        self.kv[key] = value.encode() if isinstance(value, str) else value
        self.ttl[key] = ttl

    def get(self, key):
        return self.kv.get(key)

    def xadd(self, stream, fields):
        self.streams.setdefault(stream, []).append(fields)
        return f"{len(self.streams[stream])}-0"

    def xack(self, stream, group, _id):
        self.acked.append(_id)

    def xdel(self, stream, _id):
        self.deleted.append(_id)


def fix(**overrides):
    raw = {
        "latitude": 38.70,
        "longitude": -8.87,
        "speed_kmh": 60,
        "heading_deg": 90,
        "timestamp": NOW.isoformat(),
    }
    raw.update(overrides)
    return raw


def at(day, hour, minute=0):
    """Aware UTC datetime on 2025-03-<day>."""
    return dt.datetime(2025, 3, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vehicle():
    return Vehicle(id="V1", company_id="C1")


@pytest.fixture
def trip():
    return Trip(
        id="T1",
        vehicle_id="V1",
        status=TripStatus.IN_PROGRESS,
        planned_route=ROUTE,
        actual_departure=NOW - dt.timedelta(hours=2),
    )


@pytest.fixture
def fleet(vehicle, trip):
    registry = InMemoryFleetRegistry()
    registry.add_vehicle(vehicle, "dev-1")
    registry.add_trip(trip)
    return registry


@pytest.fixture
def geofences():
    return InMemoryGeofenceRegistry([RESTRICTED])


@pytest.fixture
def store():
    return InMemoryRecordStore()
