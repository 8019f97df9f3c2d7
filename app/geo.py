# app/geo.py
import math
from typing import Sequence

from errors import EvaluationFailure
from schemas import LatLng
from variables import EARTH_RADIUS_M


def haversine_m(a: LatLng, b: LatLng) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlmb = math.radians(b.lng - a.lng)

    h = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    # rounding can push h past 1 for antipodal points
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _project(origin: LatLng, p: LatLng):
    """Equirectangular projection around origin -> (x, y) in metres."""
    k = math.cos(math.radians(origin.lat))
    dlng = p.lng - origin.lng
    # shortest way round the antimeridian
    if dlng > 180:
        dlng -= 360
    elif dlng < -180:
        dlng += 360
    x = math.radians(dlng) * EARTH_RADIUS_M * k
    y = math.radians(p.lat - origin.lat) * EARTH_RADIUS_M
    return x, y


def _unproject(origin: LatLng, x: float, y: float) -> LatLng:
    k = math.cos(math.radians(origin.lat)) or 1e-12
    lat = origin.lat + math.degrees(y / EARTH_RADIUS_M)
    lng = origin.lng + math.degrees(x / (EARTH_RADIUS_M * k))
    lat = max(-90.0, min(90.0, lat))
    lng = ((lng + 180.0) % 360.0) - 180.0
    return LatLng(lat=lat, lng=lng)


def point_to_segment_m(p: LatLng, a: LatLng, b: LatLng) -> float:
    """
    Distance from p to the segment a-b.

    The closest point on the segment is found in a local planar projection
    centred on p; the distance to it is then measured with haversine.
    """
    ax, ay = _project(p, a)
    bx, by = _project(p, b)
    dx, dy = bx - ax, by - ay
    seg_len2 = dx * dx + dy * dy

    if seg_len2 == 0:
        return haversine_m(p, a)

    # p is the origin, so the projection of p onto a-b is -a . d / |d|^2
    t = -(ax * dx + ay * dy) / seg_len2
    t = max(0.0, min(1.0, t))
    closest = _unproject(p, ax + t * dx, ay + t * dy)
    return haversine_m(p, closest)


def point_to_route_m(p: LatLng, route: Sequence[LatLng]) -> float:
    """
    Minimum distance from p to a polyline, over every consecutive segment
    (not only the vertices). A single-waypoint route is a point.
    """
    if not route:
        raise EvaluationFailure("route_deviation", "empty route")
    if len(route) == 1:
        return haversine_m(p, route[0])

    return min(
        point_to_segment_m(p, a, b) for a, b in zip(route, route[1:])
    )


def point_in_polygon(p: LatLng, polygon: Sequence[LatLng]) -> bool:
    """
    Even-odd ray casting over the vertex list, (lng, lat) as the plane.
    The polygon may or may not repeat its first vertex at the end.
    """
    if len(polygon) < 3:
        raise EvaluationFailure(
            "geofence_violation", f"polygon needs 3 vertices, got {len(polygon)}"
        )

    x, y = p.lng, p.lat
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i].lng, polygon[i].lat
        xj, yj = polygon[j].lng, polygon[j].lat
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def centroid(polygon: Sequence[LatLng]) -> LatLng:
    """Vertex average; inside any convex polygon."""
    pts = list(polygon)
    if len(pts) > 1 and pts[0] == pts[-1]:
        pts = pts[:-1]
    if not pts:
        raise EvaluationFailure("geofence_violation", "empty polygon")
    return LatLng(
        lat=sum(p.lat for p in pts) / len(pts),
        lng=sum(p.lng for p in pts) / len(pts),
    )
