import monitor
from conftest import RESTRICTED, fix
from geozones import InMemoryGeofenceRegistry
from monitor import RuleSettings, evaluate, speed_rule
from schemas import AlertType, Geofence, GeofenceKind, LatLng, Severity
from validator import TelemetryValidator

INSIDE_ZONE = {"latitude": 38.80, "longitude": -9.00}


def gps(**overrides):
    return TelemetryValidator().validate("dev-1", fix(**overrides))


def types(matches):
    return [m.type for m in matches]


def test_speed_within_tolerance(vehicle, trip):
    assert evaluate(gps(speed_kmh=95), vehicle, trip, []) == []


def test_speed_severity(vehicle, trip):
    medium = evaluate(gps(speed_kmh=105), vehicle, trip, [])
    high = evaluate(gps(speed_kmh=130), vehicle, trip, [])

    assert types(medium) == [AlertType.SPEED_VIOLATION]
    assert medium[0].severity == Severity.MEDIUM
    assert high[0].severity == Severity.HIGH
    assert high[0].trip_id == "T1"


def test_speed_limit_from_settings(vehicle, trip):
    settings = RuleSettings(speed_limit_kmh=50, speed_tolerance_kmh=0)
    assert types(evaluate(gps(speed_kmh=60), vehicle, trip, [], settings)) == [AlertType.SPEED_VIOLATION]


def test_on_route_between_sparse_waypoints(vehicle, trip):
    assert evaluate(gps(), vehicle, trip, []) == []


def test_route_deviation(vehicle, trip):
    matches = evaluate(gps(latitude=39.00), vehicle, trip, [])
    assert types(matches) == [AlertType.ROUTE_DEVIATION]
    assert matches[0].location == LatLng(lat=39.00, lng=-8.87)


def test_route_deviation_needs_a_route(vehicle, trip):
    no_route = trip.model_copy(update={"planned_route": []})
    assert evaluate(gps(latitude=39.00), vehicle, no_route, []) == []


def test_geofence_violation(vehicle, trip):
    matches = evaluate(gps(**INSIDE_ZONE), vehicle, trip, [RESTRICTED])
    zone = [m for m in matches if m.type == AlertType.GEOFENCE_VIOLATION]
    assert len(zone) == 1
    assert zone[0].severity == Severity.HIGH
    assert "Port area" in zone[0].description


def test_authorized_zone_never_alerts(vehicle, trip):
    depot = RESTRICTED.model_copy(update={"kind": GeofenceKind.AUTHORIZED})
    matches = evaluate(gps(**INSIDE_ZONE), vehicle, trip, [depot])
    assert AlertType.GEOFENCE_VIOLATION not in types(matches)


def test_bad_geofence_is_skipped(vehicle, trip):
    broken = Geofence(id="z2", name="broken", polygon=[LatLng(lat=0, lng=0)])
    before = monitor.failures["geofence_violation"]

    matches = evaluate(gps(speed_kmh=130, **INSIDE_ZONE), vehicle, trip, [broken, RESTRICTED])

    assert AlertType.GEOFENCE_VIOLATION in types(matches)
    assert AlertType.SPEED_VIOLATION in types(matches)
    assert monitor.failures["geofence_violation"] == before + 1


def test_unauthorized_movement_without_trip(vehicle):
    matches = evaluate(gps(speed_kmh=30), vehicle, None, [])
    assert types(matches) == [AlertType.UNAUTHORIZED_MOVEMENT]
    assert matches[0].trip_id is None
    assert matches[0].severity == Severity.HIGH


def test_parked_without_trip(vehicle):
    assert evaluate(gps(speed_kmh=3), vehicle, None, []) == []


def test_trip_rules_need_a_trip(vehicle):
    # speeding inside a restricted zone with no trip: only the movement itself is reported
    matches = evaluate(gps(speed_kmh=130, **INSIDE_ZONE), vehicle, None, [RESTRICTED])
    assert types(matches) == [AlertType.UNAUTHORIZED_MOVEMENT]


def test_no_unauthorized_movement_with_trip(vehicle, trip):
    assert evaluate(gps(speed_kmh=30), vehicle, trip, []) == []


def test_failing_rule_does_not_stop_the_others(vehicle, trip, monkeypatch):
    def broken_rule(*args):
        raise ZeroDivisionError("boom")

    monkeypatch.setattr(monitor, "TRIP_RULES", [broken_rule, speed_rule])
    before = monitor.failures["broken_rule"]

    matches = evaluate(gps(speed_kmh=130), vehicle, trip, [])

    assert types(matches) == [AlertType.SPEED_VIOLATION]
    assert monitor.failures["broken_rule"] == before + 1


def test_registry_snapshot_feeds_rules(vehicle, trip):
    registry = InMemoryGeofenceRegistry()
    assert AlertType.GEOFENCE_VIOLATION not in types(evaluate(gps(**INSIDE_ZONE), vehicle, trip, registry.active()))
    registry.replace([RESTRICTED])
    assert AlertType.GEOFENCE_VIOLATION in types(evaluate(gps(**INSIDE_ZONE), vehicle, trip, registry.active()))
