# app/stores.py
"""
Storage seams of the engine.

Every collaborator the engine reads or writes sits behind one of the small
base classes below. The in-memory versions back the tests and local runs;
`RedisPositionStore` here and the SQL versions in `crud.py` back production.
"""
import asyncio
import datetime as dt
import json
from typing import Callable, Dict, List, Optional

from schemas import Alert, DailyRecord, GPSFix, Trip, TripStatus, Vehicle, utcnow


# =====================================================================
# Fleet registry (vehicles, device bindings, trips)
# =====================================================================
class FleetRegistry:
    async def vehicle_for_device(self, device_id: str) -> Optional[Vehicle]:
        raise NotImplementedError

    async def in_progress_trips(self, vehicle_id: str) -> List[Trip]:
        raise NotImplementedError


class InMemoryFleetRegistry(FleetRegistry):
    def __init__(self):
        self.vehicles: Dict[str, Vehicle] = {}
        self.devices: Dict[str, str] = {}
        self.trips: Dict[str, Trip] = {}

    def add_vehicle(self, vehicle: Vehicle, *device_ids: str) -> None:
        self.vehicles[vehicle.id] = vehicle
        for d in device_ids:
            self.devices[str(d)] = vehicle.id

    def add_trip(self, trip: Trip) -> None:
        self.trips[trip.id] = trip

    async def vehicle_for_device(self, device_id: str) -> Optional[Vehicle]:
        vehicle_id = self.devices.get(str(device_id))
        return self.vehicles.get(vehicle_id) if vehicle_id else None

    async def in_progress_trips(self, vehicle_id: str) -> List[Trip]:
        return [
            t for t in self.trips.values()
            if t.vehicle_id == vehicle_id and t.status == TripStatus.IN_PROGRESS
        ]


# =====================================================================
# Record store (append-only alerts, finalized compliance windows)
# =====================================================================
class RecordStore:
    async def append_alert(self, alert: Alert) -> None:
        raise NotImplementedError

    async def save_daily_record(self, record: DailyRecord) -> None:
        raise NotImplementedError


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self.alerts: List[Alert] = []
        self.daily_records: List[DailyRecord] = []

    async def append_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)

    async def save_daily_record(self, record: DailyRecord) -> None:
        self.daily_records.append(record.model_copy(deep=True))


# =====================================================================
# Position store (latest fix per vehicle, short TTL)
# =====================================================================
def position_payload(fix: GPSFix) -> dict:
    return {
        "lat": fix.latitude,
        "lng": fix.longitude,
        "speed": fix.speed_kmh,
        "heading": fix.heading_deg,
        "timestamp": fix.timestamp.isoformat(),
    }


class PositionStore:
    async def put(self, vehicle_id: str, fix: GPSFix) -> None:
        raise NotImplementedError

    async def latest(self, vehicle_id: str) -> Optional[dict]:
        raise NotImplementedError


class InMemoryPositionStore(PositionStore):
    """Entries expire lazily: a read past the TTL drops the entry."""

    def __init__(self, ttl_s: int = 300, clock: Callable[[], dt.datetime] = utcnow):
        self.ttl = dt.timedelta(seconds=ttl_s)
        self.clock = clock
        self._entries: Dict[str, tuple] = {}

    async def put(self, vehicle_id: str, fix: GPSFix) -> None:
        self._entries[vehicle_id] = (self.clock() + self.ttl, position_payload(fix))

    async def latest(self, vehicle_id: str) -> Optional[dict]:
        entry = self._entries.get(vehicle_id)
        if entry is None:
            return None
        expires_at, payload = entry
        if self.clock() >= expires_at:
            del self._entries[vehicle_id]
            return None
        return dict(payload)


class RedisPositionStore(PositionStore):
    """
    SETEX position:<vehicle_id>. Redis expires silent vehicles itself; a
    missing key means stale/offline to downstream consumers.
    The client is the blocking redis-py one, so calls go through the executor.
    """

    KEY = "position:{}"

    def __init__(self, client, ttl_s: int = 300):
        self.r = client
        self.ttl_s = ttl_s

    async def put(self, vehicle_id: str, fix: GPSFix) -> None:
        payload = json.dumps(position_payload(fix))
        await asyncio.get_running_loop().run_in_executor(
            None, self.r.setex, self.KEY.format(vehicle_id), self.ttl_s, payload
        )

    async def latest(self, vehicle_id: str) -> Optional[dict]:
        raw = await asyncio.get_running_loop().run_in_executor(
            None, self.r.get, self.KEY.format(vehicle_id)
        )
        if raw is None:
            return None
        return json.loads(raw)
