# app/alerts.py
import asyncio
import datetime as dt
import json
import uuid
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import redis
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

import config
from errors import DeliveryFailure
from logging_config import get_logger
from schemas import (Alert, AlertCreated, AlertType, DeliveryIntent, RuleMatch,
                     Severity, utcnow)
from stores import RecordStore
from variables import DELIVERY_CHANNELS

logger = get_logger("alerts", "alerts.log")

DEFAULT_SEVERITY = {
    AlertType.SPEED_VIOLATION: Severity.MEDIUM,
    AlertType.ROUTE_DEVIATION: Severity.MEDIUM,
    AlertType.GEOFENCE_VIOLATION: Severity.HIGH,
    AlertType.UNAUTHORIZED_MOVEMENT: Severity.HIGH,
    AlertType.DRIVING_LIMIT_WARNING: Severity.HIGH,
    AlertType.REST_REQUIRED: Severity.CRITICAL,
}


class AlertRule(BaseModel):
    type: AlertType
    cooldown_minutes: int = config.ALERT_COOLDOWN_MIN
    enabled: bool = True


def derive_severity(match: RuleMatch) -> Severity:
    return match.severity or DEFAULT_SEVERITY.get(match.type, Severity.MEDIUM)


def channels_for(severity: Severity) -> List[str]:
    return list(DELIVERY_CHANNELS.get(severity.value, ["push"]))


# =====================================================================
# Outbound notifiers
# =====================================================================
class Notifier:
    async def publish(self, event: BaseModel) -> None:
        raise NotImplementedError


class InMemoryNotifier(Notifier):
    def __init__(self):
        self.events: List[BaseModel] = []

    async def publish(self, event: BaseModel) -> None:
        self.events.append(event)


class RedisStreamNotifier(Notifier):
    """XADD each event on the alert stream; the delivery service consumes it."""

    def __init__(self, client=None, stream: str = config.ALERT_STREAM):
        self.r = client or redis.from_url(config.REDIS_URL, decode_responses=False)
        self.stream = stream

    @retry(
        wait=wait_exponential_jitter(initial=1, max=10),
        stop=stop_after_attempt(5),
        retry=retry_if_exception_type((redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError)),
        reraise=True,
    )
    async def publish(self, event: BaseModel) -> None:
        body = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
        await asyncio.get_running_loop().run_in_executor(
            None,
            self.r.xadd,
            self.stream,
            {"event": getattr(event, "event", type(event).__name__), "data": body},
        )


# =====================================================================
# Emitter
# =====================================================================
class AlertEmitter:
    """
    RuleMatch -> persisted Alert -> fire-and-forget AlertCreated/DeliveryIntent.

    `_last_emitted` is the only state shared between vehicle workers; it is
    read and written under `_lock` so the cooldown check-and-set is atomic.
    """

    def __init__(self, store: RecordStore, notifier: Notifier,
                 rules: Iterable[AlertRule] = (),
                 clock: Callable[[], dt.datetime] = utcnow,
                 publish_timeout_s: float = config.PUBLISH_TIMEOUT_S,
                 default_cooldown_minutes: int = config.ALERT_COOLDOWN_MIN):
        self.store = store
        self.notifier = notifier
        self.rules: Dict[AlertType, AlertRule] = {r.type: r for r in rules}
        self.clock = clock
        self.publish_timeout_s = publish_timeout_s
        self.default_cooldown_minutes = default_cooldown_minutes

        self._last_emitted: Dict[Tuple[Optional[str], Optional[str], AlertType], dt.datetime] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self.stats: Counter = Counter()

    def rule_for(self, alert_type: AlertType) -> AlertRule:
        return self.rules.get(
            alert_type,
            AlertRule(type=alert_type, cooldown_minutes=self.default_cooldown_minutes),
        )

    async def emit(self, match: RuleMatch) -> Optional[Alert]:
        rule = self.rule_for(match.type)
        if not rule.enabled:
            self.stats["disabled"] += 1
            return None

        key = (match.vehicle_id, match.driver_id, match.type)
        async with self._lock:
            now = self.clock()
            last = self._last_emitted.get(key)
            if last is not None and now - last < dt.timedelta(minutes=rule.cooldown_minutes):
                self.stats["suppressed"] += 1
                logger.info(
                    f"[emitter] Cooldown active: {match.type.value} for vehicle {match.vehicle_id} "
                    f"driver {match.driver_id}, "
                    f"last emitted {(now - last).total_seconds() / 60:.1f} minutes ago"
                )
                return None

            alert = Alert(
                id=uuid.uuid4().hex,
                type=match.type,
                severity=derive_severity(match),
                vehicle_id=match.vehicle_id,
                driver_id=match.driver_id,
                trip_id=match.trip_id,
                title=match.title,
                description=match.description,
                location=match.location,
                created_at=now,
            )
            self._last_emitted[key] = now

        try:
            await self.store.append_alert(alert)
        except Exception:
            # disarm the window so the next match for this pair can retry
            async with self._lock:
                if self._last_emitted.get(key) == now:
                    if last is None:
                        del self._last_emitted[key]
                    else:
                        self._last_emitted[key] = last
            self.stats["store_failed"] += 1
            logger.exception(f"[emitter] Could not store alert {alert.id} for vehicle {alert.vehicle_id}")
            raise

        self.stats["emitted"] += 1
        logger.info(
            f"[emitter] Alert {alert.id} {alert.type.value}/{alert.severity.value} "
            f"vehicle={alert.vehicle_id} driver={alert.driver_id} trip={alert.trip_id}"
        )

        task = asyncio.create_task(self._deliver(alert))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return alert

    async def _deliver(self, alert: Alert) -> None:
        events = [
            AlertCreated(alert=alert),
            DeliveryIntent(alert_id=alert.id, channels=channels_for(alert.severity)),
        ]
        for event in events:
            try:
                await asyncio.wait_for(self.notifier.publish(event), timeout=self.publish_timeout_s)
            except Exception as e:
                self.stats["delivery_failed"] += 1
                err = DeliveryFailure(f"{event.event} for alert {alert.id}: {e!r}")
                logger.error(f"[emitter] {err}")

    async def flush(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
