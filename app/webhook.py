import redis, json, time, asyncio
import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from config import ALLOWED_DEVICES, REDIS_URL, TELEMETRY_STREAM
from errors import InputRejected
from logging_config import get_logger
from schemas import ActivityType
from variables import KNOTS_TO_KMH

# Redis connection (binary mode)
r = redis.from_url(REDIS_URL, decode_responses=False)

router = APIRouter()
logger = get_logger("webhook", "webhook.log")

_guardian = None


def get_engine():
    """The process-wide Guardian; tests override this dependency."""
    global _guardian
    if _guardian is None:
        from engine import production_guardian
        _guardian = production_guardian()
    return _guardian


def normalize_position(p: dict) -> dict:
    """Traccar speed is in knots; the engine works in km/h."""
    p = dict(p)
    speed = p.get("speed")
    if "speed_kmh" not in p and isinstance(speed, (int, float)) and not isinstance(speed, bool):
        p["speed_kmh"] = speed * KNOTS_TO_KMH
    return p


# ---------------------------------------------------
#                TRACCAR WEBHOOK
# ---------------------------------------------------
@router.post("/webhook")
async def traccar_hook(payload: dict):

    # Extract position block
    p = payload.get("position")
    if not p:
        raise HTTPException(status_code=400, detail="no position")

    device_id = p.get("deviceId")
    if device_id is None:
        raise HTTPException(status_code=400, detail="missing deviceId")

    # Normalize allow-list lookup (handles int vs string mismatch)
    if ALLOWED_DEVICES and str(device_id) not in {str(x) for x in ALLOWED_DEVICES}:
        logger.info(f"Ignored device {device_id} (not in ALLOWED_DEVICES)")
        return {"ok": False, "reason": "ignored"}

    payload = dict(payload, position=normalize_position(p))

    # Convert payload to string for Redis
    json_str = json.dumps(payload, ensure_ascii=False)

    # Push to Redis inside executor (non-blocking)
    await asyncio.get_running_loop().run_in_executor(
        None,
        r.xadd,
        TELEMETRY_STREAM,
        {"ts": time.time(), "data": json_str},
    )

    logger.info(f"Payload stored for device {device_id}")
    return {"ok": True}


# ---------------------------------------------------
#                DRIVER ACTIVITIES
# ---------------------------------------------------
class ActivityIn(BaseModel):
    driver_id: str
    type: ActivityType
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    vehicle_id: Optional[str] = None


@router.post("/activities")
async def record_activity(body: ActivityIn, guardian=Depends(get_engine)):
    try:
        record = await guardian.record_activity(
            body.driver_id, body.type, body.start_time, body.end_time, body.vehicle_id
        )
    except InputRejected as e:
        raise HTTPException(status_code=422, detail=e.reason)
    return {"ok": True, "day": record.model_dump(mode="json")}


# ---------------------------------------------------
#                     QUERIES
# ---------------------------------------------------
@router.get("/vehicles/{vehicle_id}/position")
async def vehicle_position(vehicle_id: str, guardian=Depends(get_engine)):
    position = await guardian.latest_position(vehicle_id)
    if position is None:
        return {"ok": False, "reason": "no_data"}
    return {"ok": True, "position": position}


@router.get("/drivers/{driver_id}/daily/{day}")
async def driver_daily(driver_id: str, day: dt.date, guardian=Depends(get_engine)):
    record = await guardian.daily_summary(driver_id, day)
    if record is None:
        return {"ok": False, "reason": "no_data"}
    return {"ok": True, "day": record.model_dump(mode="json")}


@router.get("/drivers/{driver_id}/weekly/{week_start}")
async def driver_weekly(driver_id: str, week_start: dt.date, guardian=Depends(get_engine)):
    summary = await guardian.weekly_summary(driver_id, week_start)
    if summary is None:
        return {"ok": False, "reason": "no_data"}
    return {"ok": True, "week": summary.model_dump(mode="json")}
