import asyncio
from typing import Iterable, List

from geoalchemy2.shape import to_shape
from sqlalchemy import select

from logging_config import get_logger
from schemas import Geofence, GeofenceKind, LatLng

logger = get_logger("geozones", "geozones.log")


class GeofenceRegistry:
    """
    Read-only snapshot of the active geofences. `active()` and
    `restricted()` never do I/O so the rule engine can call them from any
    vehicle worker; `refresh()` swaps the snapshot in one assignment.
    """

    def __init__(self, geofences: Iterable[Geofence] = ()):
        self._geofences: List[Geofence] = list(geofences)

    def active(self) -> List[Geofence]:
        return self._geofences

    def restricted(self) -> List[Geofence]:
        return [g for g in self._geofences if g.kind == GeofenceKind.RESTRICTED]

    async def load(self) -> List[Geofence]:
        return list(self._geofences)

    async def refresh(self) -> int:
        try:
            fresh = await self.load()
        except Exception:
            # keep serving the previous snapshot
            logger.exception("[geozones] Refresh failed, keeping previous snapshot")
            return len(self._geofences)

        self._geofences = fresh
        logger.info(f"[geozones] Loaded {len(fresh)} geofences")
        return len(fresh)

    async def refresh_forever(self, every_s: float) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(every_s)


class InMemoryGeofenceRegistry(GeofenceRegistry):
    def replace(self, geofences: Iterable[Geofence]) -> None:
        self._geofences = list(geofences)


class SqlGeofenceRegistry(GeofenceRegistry):
    """Loads polygons from the `geofences` table (PostGIS geography)."""

    def __init__(self, session_factory):
        super().__init__()
        self._session_factory = session_factory

    async def load(self) -> List[Geofence]:
        from models import GeofenceRow

        async with self._session_factory() as db:
            rows = (await db.execute(select(GeofenceRow))).scalars().all()

        out = []
        for row in rows:
            shape = to_shape(row.geom)
            out.append(
                Geofence(
                    id=str(row.id),
                    name=row.name,
                    kind=GeofenceKind(row.kind),
                    polygon=[LatLng(lat=y, lng=x) for x, y in shape.exterior.coords],
                )
            )
        return out

