# worker.py
import asyncio
import json
from collections import Counter
from typing import Dict, List, Optional

import redis

import config
from alerts import AlertEmitter
from geozones import GeofenceRegistry
from logging_config import get_logger
from monitor import RuleSettings, evaluate
from resolver import VehicleTripResolver
from schemas import Alert, GPSFix, Vehicle
from stores import PositionStore
from validator import TelemetryValidator

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

STREAM = config.TELEMETRY_STREAM
GROUP = config.WORKER_GROUP
CONSUMER = config.WORKER_CONSUMER


# =====================================================================
# Per-vehicle pipeline
# =====================================================================
class TelemetryPipeline:
    """
    One queue and one task per vehicle id.

    Fixes of different vehicles are processed concurrently; fixes of the
    same vehicle strictly one after the other. Queues are bounded: when a
    vehicle bursts past `queue_size`, the oldest queued fix is dropped. A
    vehicle that sends nothing for `idle_s` seconds gives its queue and task
    back; its next fix starts a fresh one.
    """

    def __init__(self, validator: TelemetryValidator, resolver: VehicleTripResolver,
                 geofences: GeofenceRegistry, emitter: AlertEmitter,
                 positions: PositionStore, settings: Optional[RuleSettings] = None,
                 queue_size: int = config.VEHICLE_QUEUE_SIZE,
                 idle_s: float = config.VEHICLE_IDLE_S):
        self.validator = validator
        self.resolver = resolver
        self.geofences = geofences
        self.emitter = emitter
        self.positions = positions
        self.settings = settings or RuleSettings()
        self.queue_size = queue_size
        self.idle_s = idle_s

        self._queues: Dict[str, asyncio.Queue] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.stats: Counter = Counter()

    async def submit(self, device_id, raw: dict) -> Optional[str]:
        """Returns the rejection reason, or None once the fix is queued."""
        fix, reason = self.validator.check(device_id, raw)
        if fix is None:
            self.stats["rejected"] += 1
            return reason

        vehicle = await self.resolver.vehicle_for(device_id)
        if vehicle is None:
            self.stats["unresolved"] += 1
            return "unknown_device"

        self._enqueue(vehicle, fix.model_copy(update={"vehicle_id": vehicle.id}))
        return None

    def _enqueue(self, vehicle: Vehicle, fix: GPSFix) -> None:
        q = self._queues.get(vehicle.id)
        if q is None:
            q = self._queues[vehicle.id] = asyncio.Queue(maxsize=self.queue_size)
            self._tasks[vehicle.id] = asyncio.create_task(
                self._vehicle_loop(vehicle.id, q), name=f"vehicle-{vehicle.id}"
            )

        if q.full():
            _, dropped = q.get_nowait()
            q.task_done()
            self.stats["dropped_oldest"] += 1
            logger.warning(
                f"[pipeline] Queue full for vehicle {vehicle.id}, dropped fix at {dropped.timestamp}"
            )
        q.put_nowait((vehicle, fix))

    async def _vehicle_loop(self, vehicle_id: str, q: asyncio.Queue) -> None:
        while True:
            try:
                vehicle, fix = await asyncio.wait_for(q.get(), timeout=self.idle_s)
            except asyncio.TimeoutError:
                if q.empty():
                    self._queues.pop(vehicle_id, None)
                    self._tasks.pop(vehicle_id, None)
                    self.stats["idle_reaped"] += 1
                    logger.info(f"[pipeline] Vehicle {vehicle_id} idle for {self.idle_s}s, worker stopped")
                    return
                continue
            try:
                await self.process(vehicle, fix)
            except Exception as e:
                # a bad fix must not kill the vehicle's worker
                self.stats["process_failed"] += 1
                logger.exception(f"[pipeline] Error processing fix for vehicle {vehicle_id}: {e}")
            finally:
                q.task_done()

    async def process(self, vehicle: Vehicle, fix: GPSFix) -> List[Alert]:
        trip = await self.resolver.active_trip(vehicle)
        matches = evaluate(fix, vehicle, trip, self.geofences.restricted(), self.settings)

        alerts = []
        for match in matches:
            try:
                alert = await self.emitter.emit(match)
            except Exception:
                self.stats["emit_failed"] += 1
                continue
            if alert is not None:
                alerts.append(alert)

        await self.positions.put(vehicle.id, fix)
        self.stats["processed"] += 1
        return alerts

    async def drain(self) -> None:
        """Wait until every queued fix has been processed."""
        await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    async def close(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._queues.clear()


# =====================================================================
# Redis stream consumer
# =====================================================================
def init_group(r) -> None:
    try:
        # Start reading only NEW messages from now → id="$", create stream if missing
        r.xgroup_create(STREAM, GROUP, id="$", mkstream=True)
        logger.info("Consumer group created.")
    except redis.exceptions.ResponseError as e:
        if "BUSYGROUP" in str(e):
            logger.info("Consumer group already exists.")
        else:
            raise


async def handle_record(guardian, r, _id, fields) -> None:
    try:
        payload = json.loads(fields[b"data"])
        p = payload["position"]
        device_id = p["deviceId"]
    except (KeyError, TypeError, ValueError) as je:
        # malformed message: ack & delete to avoid poison-pill
        logger.warning(f"Dropping malformed record {_id}: {je!r}")
    else:
        reason = await guardian.submit_fix(device_id, p)
        if reason:
            logger.info(f"Fix from device {device_id} rejected: {reason}")

    r.xack(STREAM, GROUP, _id)
    r.xdel(STREAM, _id)


async def consume_stream(guardian, r) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, init_group, r)
    logger.info("Worker listening for Redis Stream messages...")

    while True:
        try:
            # Blocking read via executor (call will block the threadpool, not the event loop)
            msgs = await loop.run_in_executor(
                None,
                r.xreadgroup,
                GROUP,
                CONSUMER,
                {STREAM: ">"},
                100,
                5000  # block 5 seconds
            )

            if msgs:
                total = sum(len(rec[1]) for rec in msgs)
                logger.info(f"Fetched {total} records from stream")

            for _, records in msgs or []:
                for _id, fields in records:
                    try:
                        await handle_record(guardian, r, _id, fields)
                    except Exception as e:
                        # not acked: the record is redelivered
                        logger.exception(f"Error processing record ID {_id}: {e}")

        except Exception as e:
            logger.exception(f"Worker loop encountered an error: {e}")

        # small sleep to avoid tight loop in case of unexpected fast failures
        await asyncio.sleep(0.1)


async def worker() -> None:
    from database import init_models
    from engine import production_guardian

    await init_models()
    guardian = production_guardian()
    r = redis.from_url(config.REDIS_URL, decode_responses=False)

    logger.info("Worker starting, loading reference data...")
    await guardian.geofences.refresh()

    refresher = asyncio.create_task(guardian.geofences.refresh_forever(config.GEOFENCE_REFRESH_S))
    try:
        await consume_stream(guardian, r)
    finally:
        refresher.cancel()
        await guardian.close()


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(worker())
