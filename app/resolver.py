# app/resolver.py
import datetime as dt
from collections import Counter
from typing import Optional

from errors import ResolutionMiss
from logging_config import get_logger, log_anomaly
from schemas import Trip, TripStatus, Vehicle
from stores import FleetRegistry
from validator import to_dt

logger = get_logger("resolver", "resolver.log")

_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


class VehicleTripResolver:
    """
    device -> vehicle -> current in_progress trip.

    Misses are anomalies, not errors: they are logged, counted in `misses`
    and the caller carries on with whatever context is available.
    """

    def __init__(self, registry: FleetRegistry):
        self.registry = registry
        self.misses: Counter = Counter()

    async def vehicle_for(self, device_id) -> Optional[Vehicle]:
        vehicle = await self.registry.vehicle_for_device(str(device_id))
        if vehicle is None:
            self.misses["unknown_device"] += 1
            logger.warning(f"[resolver] {ResolutionMiss('unknown_device', device_id)}, dropping fix")
            log_anomaly("unknown_device", f"device={device_id}")
        return vehicle

    async def active_trip(self, vehicle: Vehicle) -> Optional[Trip]:
        trips = [
            t for t in await self.registry.in_progress_trips(vehicle.id)
            if t.status == TripStatus.IN_PROGRESS
        ]
        if not trips:
            return None

        # most recent departure wins; trips without a departure sort last
        trips.sort(key=lambda t: to_dt(t.actual_departure) or _EPOCH, reverse=True)

        if len(trips) > 1:
            self.misses["ambiguous_trip"] += 1
            logger.warning(
                f"[resolver] {ResolutionMiss('ambiguous_trip', vehicle.id)}, {len(trips)} in_progress trips, "
                f"using {trips[0].id}"
            )
            log_anomaly(
                "ambiguous_trip",
                f"vehicle={vehicle.id}",
                chosen=trips[0].id,
                others=",".join(t.id for t in trips[1:]),
            )
        return trips[0]
