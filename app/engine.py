# app/engine.py
import datetime as dt
from typing import Callable, Iterable, Optional

import config
from alerts import AlertEmitter, AlertRule, InMemoryNotifier, Notifier
from compliance import RegulationThresholds, load_thresholds, working_time_matches
from geozones import GeofenceRegistry, InMemoryGeofenceRegistry
from ledger import WorkingTimeLedger
from logging_config import get_logger
from monitor import RuleSettings
from resolver import VehicleTripResolver
from schemas import DailyRecord, LatLng, WeeklySummary, utcnow
from stores import (FleetRegistry, InMemoryFleetRegistry, InMemoryPositionStore,
                    InMemoryRecordStore, PositionStore, RecordStore)
from validator import TelemetryValidator
from worker import TelemetryPipeline

logger = get_logger("engine", "engine.log")


class Guardian:
    """
    Wires the telemetry path (validate -> resolve -> evaluate -> emit ->
    position) and the working-time ledger behind one object. Recording an
    activity also raises the working-time alerts of the day in progress.
    """

    def __init__(self, fleet: FleetRegistry, geofences: GeofenceRegistry,
                 positions: PositionStore, store: RecordStore, notifier: Notifier,
                 thresholds: Optional[RegulationThresholds] = None,
                 settings: Optional[RuleSettings] = None,
                 alert_rules: Iterable[AlertRule] = (),
                 clock: Callable[[], dt.datetime] = utcnow,
                 queue_size: int = config.VEHICLE_QUEUE_SIZE,
                 idle_s: float = config.VEHICLE_IDLE_S,
                 tz: str = config.LEDGER_TZ):
        self.fleet = fleet
        self.geofences = geofences
        self.positions = positions
        self.store = store
        self.notifier = notifier

        self.validator = TelemetryValidator()
        self.resolver = VehicleTripResolver(fleet)
        self.emitter = AlertEmitter(store, notifier, rules=alert_rules, clock=clock)
        self.ledger = WorkingTimeLedger(store, thresholds=thresholds, tz=tz, clock=clock)
        self.pipeline = TelemetryPipeline(
            self.validator, self.resolver, geofences, self.emitter, positions,
            settings=settings, queue_size=queue_size, idle_s=idle_s,
        )

    # ---------------- telemetry ----------------
    async def submit_fix(self, device_id, raw: dict) -> Optional[str]:
        return await self.pipeline.submit(device_id, raw)

    async def latest_position(self, vehicle_id: str) -> Optional[dict]:
        return await self.positions.latest(str(vehicle_id))

    # ---------------- working time ----------------
    async def record_activity(self, driver_id, activity_type, start_time: dt.datetime,
                              end_time: Optional[dt.datetime] = None,
                              vehicle_id: Optional[str] = None) -> DailyRecord:
        record = await self.ledger.record(driver_id, activity_type, start_time, end_time, vehicle_id)
        await self._working_time_alerts(record, vehicle_id)
        return record

    async def _working_time_alerts(self, record: DailyRecord, vehicle_id: Optional[str]) -> None:
        location = None
        if vehicle_id is not None:
            try:
                position = await self.positions.latest(str(vehicle_id))
            except Exception:
                logger.exception(f"Could not read position of vehicle {vehicle_id}")
                position = None
            if position is not None:
                location = LatLng(lat=position["lat"], lng=position["lng"])

        for match in working_time_matches(record, self.ledger.thresholds, vehicle_id, location):
            try:
                await self.emitter.emit(match)
            except Exception:
                # the emitter has logged it; the activity stays recorded
                logger.warning(f"Working-time alert {match.type.value} for driver {record.driver_id} not stored")

    async def daily_summary(self, driver_id, day: dt.date) -> Optional[DailyRecord]:
        return await self.ledger.daily(driver_id, day)

    async def weekly_summary(self, driver_id, week_start: dt.date) -> Optional[WeeklySummary]:
        return await self.ledger.weekly(driver_id, week_start)

    # ---------------- lifecycle ----------------
    async def drain(self) -> None:
        """Process everything queued and wait for in-flight deliveries."""
        await self.pipeline.drain()
        await self.emitter.flush()

    async def close(self) -> None:
        await self.drain()
        await self.pipeline.close()
        logger.info(
            f"Guardian closed | pipeline={dict(self.pipeline.stats)} "
            f"emitter={dict(self.emitter.stats)} rejected={dict(self.validator.rejected)}"
        )


def in_memory_guardian(clock: Callable[[], dt.datetime] = utcnow, **kwargs) -> Guardian:
    """Everything in process memory; local runs and tests."""
    return Guardian(
        fleet=kwargs.pop("fleet", None) or InMemoryFleetRegistry(),
        geofences=kwargs.pop("geofences", None) or InMemoryGeofenceRegistry(),
        positions=kwargs.pop("positions", None) or InMemoryPositionStore(config.POSITION_TTL_S, clock=clock),
        store=kwargs.pop("store", None) or InMemoryRecordStore(),
        notifier=kwargs.pop("notifier", None) or InMemoryNotifier(),
        clock=clock,
        **kwargs,
    )


def production_guardian() -> Guardian:
    """PostgreSQL for reference data and records, Redis for positions and events."""
    import redis

    from alerts import RedisStreamNotifier
    from crud import SqlFleetRegistry, SqlRecordStore
    from database import AsyncSessionLocal
    from geozones import SqlGeofenceRegistry
    from stores import RedisPositionStore

    r = redis.from_url(config.REDIS_URL, decode_responses=False)
    return Guardian(
        fleet=SqlFleetRegistry(AsyncSessionLocal),
        geofences=SqlGeofenceRegistry(AsyncSessionLocal),
        positions=RedisPositionStore(r, ttl_s=config.POSITION_TTL_S),
        store=SqlRecordStore(AsyncSessionLocal),
        notifier=RedisStreamNotifier(r),
        thresholds=load_thresholds(config.REGULATIONS_FILE),
    )
