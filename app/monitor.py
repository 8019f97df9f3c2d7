# app/monitor.py
from collections import Counter
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

import config
from errors import EvaluationFailure
from geo import point_in_polygon, point_to_route_m
from logging_config import get_logger, log_anomaly
from schemas import (AlertType, Geofence, GeofenceKind, GPSFix, RuleMatch,
                     Severity, Trip, Vehicle)

logger = get_logger("monitor", "monitor.log")

# per-rule failures, across all vehicle workers
failures: Counter = Counter()


class RuleSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    speed_limit_kmh: float = config.SPEED_LIMIT
    speed_tolerance_kmh: float = config.SPEED_TOLERANCE
    high_speed_kmh: float = config.HIGH_SPEED
    route_deviation_m: float = config.ROUTE_DEVIATION
    unauthorized_speed_kmh: float = config.UNAUTHORIZED_SPEED


# =====================================================================
# Rules. Each returns zero or more matches for one fix.
# =====================================================================
def speed_rule(fix: GPSFix, vehicle: Vehicle, trip: Optional[Trip],
               geofences: Iterable[Geofence], settings: RuleSettings) -> List[RuleMatch]:
    threshold = settings.speed_limit_kmh + settings.speed_tolerance_kmh
    if fix.speed_kmh <= threshold:
        return []

    severity = Severity.HIGH if fix.speed_kmh > settings.high_speed_kmh else Severity.MEDIUM
    return [RuleMatch(
        type=AlertType.SPEED_VIOLATION,
        severity=severity,
        vehicle_id=vehicle.id,
        trip_id=trip.id if trip else None,
        title="Speed limit exceeded",
        description=(
            f"Vehicle {vehicle.id} at {fix.speed_kmh:.0f} km/h "
            f"(limit {settings.speed_limit_kmh:.0f} km/h)"
        ),
        location=fix.point,
    )]


def route_deviation_rule(fix: GPSFix, vehicle: Vehicle, trip: Optional[Trip],
                         geofences: Iterable[Geofence], settings: RuleSettings) -> List[RuleMatch]:
    if trip is None or not trip.planned_route:
        return []

    distance = point_to_route_m(fix.point, trip.planned_route)
    if distance <= settings.route_deviation_m:
        return []

    return [RuleMatch(
        type=AlertType.ROUTE_DEVIATION,
        severity=Severity.MEDIUM,
        vehicle_id=vehicle.id,
        trip_id=trip.id,
        title="Route deviation",
        description=f"Vehicle {vehicle.id} is {distance / 1000:.1f} km off the planned route of trip {trip.id}",
        location=fix.point,
    )]


def geofence_rule(fix: GPSFix, vehicle: Vehicle, trip: Optional[Trip],
                  geofences: Iterable[Geofence], settings: RuleSettings) -> List[RuleMatch]:
    matches = []
    for zone in geofences:
        # authorized zones gate trip assignment, not alerts
        if zone.kind != GeofenceKind.RESTRICTED:
            continue
        try:
            inside = point_in_polygon(fix.point, zone.polygon)
        except EvaluationFailure as e:
            failures["geofence_violation"] += 1
            logger.warning(f"[monitor] Skipping geofence {zone.id}: {e}")
            log_anomaly("bad_geofence", f"geofence={zone.id}", detail=e.detail)
            continue
        if inside:
            matches.append(RuleMatch(
                type=AlertType.GEOFENCE_VIOLATION,
                severity=Severity.HIGH,
                vehicle_id=vehicle.id,
                trip_id=trip.id if trip else None,
                title="Restricted zone entered",
                description=f"Vehicle {vehicle.id} is inside restricted zone {zone.name}",
                location=fix.point,
            ))
    return matches


def unauthorized_movement_rule(fix: GPSFix, vehicle: Vehicle, trip: Optional[Trip],
                               geofences: Iterable[Geofence], settings: RuleSettings) -> List[RuleMatch]:
    if trip is not None or fix.speed_kmh <= settings.unauthorized_speed_kmh:
        return []

    return [RuleMatch(
        type=AlertType.UNAUTHORIZED_MOVEMENT,
        severity=Severity.HIGH,
        vehicle_id=vehicle.id,
        title="Unauthorized movement",
        description=f"Vehicle {vehicle.id} moving at {fix.speed_kmh:.0f} km/h without an active trip",
        location=fix.point,
    )]


Rule = Callable[..., List[RuleMatch]]

# route and geofence context is trip-scoped
TRIP_RULES: List[Rule] = [speed_rule, route_deviation_rule, geofence_rule]
NO_TRIP_RULES: List[Rule] = [unauthorized_movement_rule]


# =====================================================================
# MAIN EVALUATOR
# =====================================================================
def evaluate(fix: GPSFix, vehicle: Vehicle, trip: Optional[Trip],
             geofences: Iterable[Geofence], settings: Optional[RuleSettings] = None) -> List[RuleMatch]:
    """
    Run every applicable rule for one fix. Rules are independent: each match
    becomes its own alert, and a rule that fails is skipped for this fix
    while the others still run.
    """
    settings = settings or RuleSettings()
    geofences = list(geofences)
    rules = TRIP_RULES if trip is not None else NO_TRIP_RULES

    matches: List[RuleMatch] = []
    for rule in rules:
        try:
            matches.extend(rule(fix, vehicle, trip, geofences, settings))
        except Exception as e:
            failures[rule.__name__] += 1
            logger.exception(
                f"[evaluator] {rule.__name__} failed for vehicle {vehicle.id} "
                f"device {fix.device_id}: {e}"
            )
            log_anomaly("rule_failed", f"vehicle={vehicle.id}", rule=rule.__name__)

    if matches:
        logger.info(
            f"[evaluator] Vehicle {vehicle.id} trip={trip.id if trip else None} "
            f"matches={[m.type.value for m in matches]}"
        )
    return matches
