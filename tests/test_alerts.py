import asyncio

import pytest

from alerts import AlertEmitter, AlertRule, InMemoryNotifier, RedisStreamNotifier, channels_for, derive_severity
from conftest import FakeRedis
from schemas import AlertCreated, AlertType, DeliveryIntent, LatLng, RuleMatch, Severity


def match(vehicle_id="V1", type=AlertType.SPEED_VIOLATION, severity=Severity.HIGH):
    return RuleMatch(
        type=type,
        severity=severity,
        vehicle_id=vehicle_id,
        trip_id="T1",
        title="Speed limit exceeded",
        description="Vehicle V1 at 130 km/h",
        location=LatLng(lat=38.7, lng=-8.87),
    )


class FailingNotifier(InMemoryNotifier):
    async def publish(self, event):
        raise ConnectionError("broker down")


class SlowNotifier(InMemoryNotifier):
    async def publish(self, event):
        await asyncio.sleep(1)


class FlakyStore:
    def __init__(self):
        self.alerts = []
        self.fail = True

    async def append_alert(self, alert):
        if self.fail:
            self.fail = False
            raise OSError("db gone")
        self.alerts.append(alert)


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def emitter(store, notifier, clock):
    return AlertEmitter(store, notifier, clock=clock)


async def test_cooldown(emitter, store, clock):
    first = await emitter.emit(match())
    clock.advance(minutes=10)
    second = await emitter.emit(match())

    assert first is not None
    assert second is None
    assert len(store.alerts) == 1
    assert emitter.stats["suppressed"] == 1

    clock.advance(minutes=51)
    assert await emitter.emit(match()) is not None
    assert len(store.alerts) == 2


async def test_cooldown_is_per_vehicle_and_type(emitter, store):
    await emitter.emit(match())
    await emitter.emit(match(vehicle_id="V2"))
    await emitter.emit(match(type=AlertType.ROUTE_DEVIATION))
    assert len(store.alerts) == 3


async def test_custom_cooldown(store, notifier, clock):
    emitter = AlertEmitter(store, notifier, rules=[AlertRule(type=AlertType.SPEED_VIOLATION, cooldown_minutes=5)], clock=clock)
    await emitter.emit(match())
    clock.advance(minutes=5)
    assert await emitter.emit(match()) is not None


async def test_disabled_rule(store, notifier, clock):
    emitter = AlertEmitter(store, notifier, rules=[AlertRule(type=AlertType.SPEED_VIOLATION, enabled=False)], clock=clock)
    assert await emitter.emit(match()) is None
    assert store.alerts == []


async def test_concurrent_matches_emit_once(emitter, store):
    results = await asyncio.gather(*(emitter.emit(match()) for _ in range(10)))
    assert len([a for a in results if a is not None]) == 1
    assert len(store.alerts) == 1


async def test_alert_fields(emitter, clock):
    alert = await emitter.emit(match())
    assert alert.created_at == clock.now
    assert alert.trip_id == "T1"
    assert alert.severity == Severity.HIGH
    assert len(alert.id) == 32


async def test_delivery_events(emitter, notifier):
    alert = await emitter.emit(match())
    await emitter.flush()

    created, intent = notifier.events
    assert isinstance(created, AlertCreated)
    assert created.alert == alert
    assert isinstance(intent, DeliveryIntent)
    assert intent.alert_id == alert.id
    assert intent.channels == ["push", "email", "whatsapp"]


async def test_delivery_failure_keeps_the_alert(store, clock):
    emitter = AlertEmitter(store, FailingNotifier(), clock=clock)
    alert = await emitter.emit(match())
    await emitter.flush()

    assert store.alerts == [alert]
    assert emitter.stats["delivery_failed"] == 2


async def test_delivery_timeout(store, clock):
    emitter = AlertEmitter(store, SlowNotifier(), clock=clock, publish_timeout_s=0.01)
    await emitter.emit(match())
    await emitter.flush()
    assert emitter.stats["delivery_failed"] == 2
    assert len(store.alerts) == 1


async def test_store_failure_rearms_cooldown(notifier, clock):
    store = FlakyStore()
    emitter = AlertEmitter(store, notifier, clock=clock)

    with pytest.raises(OSError):
        await emitter.emit(match())
    assert await emitter.emit(match()) is not None
    assert len(store.alerts) == 1
    assert emitter.stats["store_failed"] == 1


async def test_redis_stream_notifier(emitter):
    r = FakeRedis()
    notifier = RedisStreamNotifier(r, stream="alerts")
    alert = await emitter.emit(match())

    await notifier.publish(AlertCreated(alert=alert))

    (fields,) = r.streams["alerts"]
    assert fields["event"] == "AlertCreated"
    assert alert.id in fields["data"]


def test_severity_and_channels():
    assert derive_severity(match(severity=None)) == Severity.MEDIUM
    assert derive_severity(match(type=AlertType.GEOFENCE_VIOLATION, severity=None)) == Severity.HIGH
    assert channels_for(Severity.LOW) == ["push"]
    assert channels_for(Severity.CRITICAL) == ["push", "email", "whatsapp"]
