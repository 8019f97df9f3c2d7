import datetime as dt

from conftest import NOW
from resolver import VehicleTripResolver
from schemas import Trip, TripStatus


async def test_vehicle_for_device(fleet):
    resolver = VehicleTripResolver(fleet)
    assert (await resolver.vehicle_for("dev-1")).id == "V1"
    assert resolver.misses == {}


async def test_unknown_device(fleet):
    resolver = VehicleTripResolver(fleet)
    assert await resolver.vehicle_for("dev-404") is None
    assert resolver.misses["unknown_device"] == 1


async def test_active_trip(fleet, vehicle):
    assert (await VehicleTripResolver(fleet).active_trip(vehicle)).id == "T1"


async def test_finished_trips_are_ignored(fleet, vehicle, trip):
    fleet.trips["T1"] = trip.model_copy(update={"status": TripStatus.COMPLETED})
    assert await VehicleTripResolver(fleet).active_trip(vehicle) is None


async def test_ambiguous_trip_picks_latest_departure(fleet, vehicle):
    fleet.add_trip(Trip(id="T2", vehicle_id="V1", status=TripStatus.IN_PROGRESS,
                        actual_departure=NOW - dt.timedelta(minutes=30)))
    fleet.add_trip(Trip(id="T3", vehicle_id="V1", status=TripStatus.IN_PROGRESS))
    resolver = VehicleTripResolver(fleet)

    assert (await resolver.active_trip(vehicle)).id == "T2"
    assert resolver.misses["ambiguous_trip"] == 1
