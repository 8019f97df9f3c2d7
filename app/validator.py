# app/validator.py
import datetime as dt
import math
from collections import Counter
from typing import Optional, Tuple

from pydantic import ValidationError

from errors import InputRejected
from logging_config import get_logger, log_anomaly
from schemas import GPSFix

logger = get_logger("validator", "validator.log")

UTC = dt.timezone.utc


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, str):
        try:
            dt_obj = dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v):
        # epoch seconds, or milliseconds from firmware that sends them
        seconds = v / 1000 if v > 1e11 else v
        try:
            return dt.datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _number(raw: dict, *keys) -> Tuple[bool, Optional[float]]:
    """(present, value) for the first key present; value None if not numeric."""
    for k in keys:
        if k in raw and raw[k] is not None:
            v = raw[k]
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                return True, None
            if not math.isfinite(v):
                return True, None
            return True, float(v)
    return False, None


class TelemetryValidator:
    """
    Gatekeeper between device firmware and the engine.

    Accepts the device's raw dict (either our field names or Traccar's
    `latitude`/`longitude`/`speed`/`fixTime`), rejects anything out of
    range, and counts every rejection by reason.
    """

    def __init__(self):
        self.accepted = 0
        self.rejected: Counter = Counter()

    def validate(self, device_id, raw: dict) -> GPSFix:
        if not isinstance(raw, dict):
            raise InputRejected("malformed", f"expected object, got {type(raw).__name__}")

        ts_raw = raw.get("timestamp", raw.get("fixTime"))
        if ts_raw is None:
            raise InputRejected("missing_timestamp")
        ts = to_dt(ts_raw)
        if ts is None:
            raise InputRejected("bad_timestamp", repr(ts_raw))

        values = {}
        for name, keys, required in (
            ("latitude", ("latitude", "lat"), True),
            ("longitude", ("longitude", "lon", "lng"), True),
            ("speed_kmh", ("speed_kmh", "speed"), True),
            ("heading_deg", ("heading_deg", "heading", "course"), False),
            ("altitude_m", ("altitude_m", "altitude"), False),
            ("hdop", ("hdop",), False),
        ):
            present, value = _number(raw, *keys)
            if not present:
                if required:
                    raise InputRejected(f"missing_{name}")
                continue
            if value is None:
                raise InputRejected(f"non_numeric_{name}", repr(raw.get(keys[0])))
            values[name] = value

        if not -90 <= values["latitude"] <= 90:
            raise InputRejected("latitude_out_of_range", str(values["latitude"]))
        if not -180 <= values["longitude"] <= 180:
            raise InputRejected("longitude_out_of_range", str(values["longitude"]))
        if values["speed_kmh"] < 0:
            raise InputRejected("negative_speed", str(values["speed_kmh"]))

        sats = raw.get("satellites")
        if sats is not None and (isinstance(sats, bool) or not isinstance(sats, int)):
            raise InputRejected("non_numeric_satellites", repr(sats))

        try:
            return GPSFix(
                device_id=str(device_id),
                vehicle_id=raw.get("vehicle_id"),
                timestamp=ts,
                satellites=sats,
                **values,
            )
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(x) for x in first.get("loc", ())) or "fix"
            raise InputRejected(f"invalid_{field}", first.get("msg", "")) from e

    def check(self, device_id, raw: dict) -> Tuple[Optional[GPSFix], Optional[str]]:
        """Never raises: (fix, None) when valid, (None, reason) when rejected."""
        try:
            fix = self.validate(device_id, raw)
        except InputRejected as e:
            self.rejected[e.reason] += 1
            logger.info(f"[validator] Rejected fix from device {device_id}: {e}")
            log_anomaly("input_rejected", f"device={device_id}", reason=e.reason)
            return None, e.reason

        self.accepted += 1
        return fix, None
