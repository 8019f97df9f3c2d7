# app/ledger.py
import asyncio
import datetime as dt
import uuid
from collections import Counter
from typing import Callable, Dict, List, Optional

import pytz

import config
from compliance import RegulationThresholds, build_compliance, classify_day, classify_week
from errors import InputRejected
from logging_config import get_logger, log_anomaly
from schemas import (ActivityType, DailyRecord, DayState, DriverActivity,
                     Violation, WeeklySummary, utcnow)
from stores import RecordStore

logger = get_logger("ledger", "ledger.log")

ZERO = dt.timedelta(0)


def _figures(record: DailyRecord) -> tuple:
    return (
        record.total_driving, record.total_work, record.total_break, record.total_rest,
        record.max_continuous_driving, tuple(record.short_breaks), len(record.activities),
    )


class _DriverState:
    def __init__(self):
        self.open: Optional[DriverActivity] = None
        self.days: Dict[dt.date, DailyRecord] = {}
        # violations of finalized days; only ever grows
        self.frozen: Dict[dt.date, List[Violation]] = {}
        # finalized days changed by a late closing activity
        self.dirty: set = set()


class WorkingTimeLedger:
    """
    Per-driver activity log with per-day running totals.

    A day is no_data until its first activity, in_progress while its date is
    current, finalized once the date has fully elapsed (in the ledger's time
    zone). Finalized days are handed to the record store and their
    violations can only be added to, never removed.
    """

    def __init__(self, store: RecordStore,
                 thresholds: Optional[RegulationThresholds] = None,
                 tz: str = config.LEDGER_TZ,
                 clock: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.thresholds = thresholds or RegulationThresholds()
        self.tz = pytz.timezone(tz)
        self.clock = clock

        self._drivers: Dict[str, _DriverState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.rejected: Counter = Counter()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _lock(self, driver_id: str) -> asyncio.Lock:
        lock = self._locks.get(driver_id)
        if lock is None:
            lock = self._locks[driver_id] = asyncio.Lock()
        return lock

    def _state(self, driver_id: str) -> _DriverState:
        state = self._drivers.get(driver_id)
        if state is None:
            state = self._drivers[driver_id] = _DriverState()
        return state

    def local_date(self, ts: dt.datetime) -> dt.date:
        return ts.astimezone(self.tz).date()

    def today(self) -> dt.date:
        return self.local_date(self.clock())

    def is_elapsed(self, day: dt.date) -> bool:
        return day < self.today()

    def _day(self, state: _DriverState, driver_id: str, day: dt.date) -> DailyRecord:
        record = state.days.get(day)
        if record is None:
            record = state.days[day] = DailyRecord(
                driver_id=driver_id, date=day, state=DayState.IN_PROGRESS
            )
        return record

    def _reject(self, driver_id: str, reason: str, detail: str = ""):
        self.rejected[reason] += 1
        logger.info(f"[ledger] Rejected activity for driver {driver_id}: {reason} {detail}".rstrip())
        log_anomaly("activity_rejected", f"driver={driver_id}", reason=reason)
        return InputRejected(reason, detail)

    # ------------------------------------------------------------------
    # recording
    # ------------------------------------------------------------------
    async def record(self, driver_id: str, activity_type, start_time: dt.datetime,
                     end_time: Optional[dt.datetime] = None,
                     vehicle_id: Optional[str] = None) -> DailyRecord:
        """
        Open (no end_time) or close an activity and return the updated
        summary of the day the activity belongs to (the day it started).

        Re-sending an activity already recorded is a no-op. An activity that
        overlaps one already recorded for the driver is rejected.
        """
        driver_id = str(driver_id)
        try:
            kind = ActivityType(activity_type)
        except ValueError:
            raise self._reject(driver_id, "unknown_activity_type", repr(activity_type))
        if not isinstance(start_time, dt.datetime) or start_time.tzinfo is None:
            raise self._reject(driver_id, "naive_start_time")
        if end_time is not None:
            if not isinstance(end_time, dt.datetime) or end_time.tzinfo is None:
                raise self._reject(driver_id, "naive_end_time")
            if end_time <= start_time:
                raise self._reject(driver_id, "end_before_start", f"{start_time} -> {end_time}")

        day = self.local_date(start_time)
        async with self._lock(driver_id):
            state = self._state(driver_id)
            opened = state.open

            if end_time is None:
                if opened is not None:
                    if opened.type == kind and opened.start_time == start_time:
                        return await self._summary(state, driver_id, day)
                    if start_time <= opened.start_time:
                        raise self._reject(
                            driver_id, "overlapping_activity",
                            f"open {opened.type.value} since {opened.start_time}",
                        )
                clash = self._overlapping(state, start_time, None)
                if clash is not None:
                    raise self._reject(
                        driver_id, "overlapping_activity",
                        f"{clash.type.value} {clash.start_time} -> {clash.end_time}",
                    )
                if opened is not None:
                    # a driver does one thing at a time: the new activity ends the old one
                    logger.info(
                        f"[ledger] Driver {driver_id}: closing open {opened.type.value} "
                        f"at {start_time} to start {kind.value}"
                    )
                    self._close(state, opened, start_time)

                activity = DriverActivity(
                    id=uuid.uuid4().hex, driver_id=driver_id, type=kind,
                    start_time=start_time, vehicle_id=vehicle_id,
                )
                state.open = activity
                record = self._day(state, driver_id, day)
                record.activities.append(activity)
                record.activities.sort(key=lambda a: a.start_time)
                self._rebuild(state)
                logger.info(f"[ledger] Driver {driver_id}: opened {kind.value} at {start_time}")
            elif opened is not None and opened.type == kind and opened.start_time == start_time:
                self._close(state, opened, end_time)
            else:
                if self._recorded(state, kind, start_time, end_time):
                    logger.info(
                        f"[ledger] Driver {driver_id}: {kind.value} {start_time} -> {end_time} "
                        f"already recorded"
                    )
                    return await self._summary(state, driver_id, day)
                clash = self._overlapping(state, start_time, end_time)
                if clash is None and opened is not None and end_time > opened.start_time:
                    clash = opened
                if clash is not None:
                    raise self._reject(
                        driver_id, "overlapping_activity",
                        f"{clash.type.value} {clash.start_time} -> {clash.end_time}",
                    )
                activity = DriverActivity(
                    id=uuid.uuid4().hex, driver_id=driver_id, type=kind,
                    start_time=start_time, end_time=end_time, vehicle_id=vehicle_id,
                )
                record = self._day(state, driver_id, day)
                record.activities.append(activity)
                record.activities.sort(key=lambda a: a.start_time)
                self._rebuild(state)
                self._log_closed(record, activity)

            return await self._summary(state, driver_id, day)

    def _close(self, state: _DriverState, activity: DriverActivity, end_time: dt.datetime) -> None:
        activity.end_time = end_time
        state.open = None
        self._rebuild(state)
        self._log_closed(state.days[self.local_date(activity.start_time)], activity)

    @staticmethod
    def _closed(state: _DriverState):
        for record in state.days.values():
            for activity in record.activities:
                if activity.end_time is not None:
                    yield activity

    def _recorded(self, state: _DriverState, kind: ActivityType,
                  start_time: dt.datetime, end_time: dt.datetime) -> bool:
        return any(
            a.type == kind and a.start_time == start_time and a.end_time == end_time
            for a in self._closed(state)
        )

    def _overlapping(self, state: _DriverState, start_time: dt.datetime,
                     end_time: Optional[dt.datetime]) -> Optional[DriverActivity]:
        """First closed activity sharing time with [start_time, end_time); None is open-ended."""
        for a in self._closed(state):
            if a.end_time > start_time and (end_time is None or a.start_time < end_time):
                return a
        return None

    def _rebuild(self, state: _DriverState) -> None:
        """
        Recompute every day's totals by replaying the driver's closed
        activities in start order.

        Continuous driving is a single counter across days, so an activity
        closed late for an earlier day moves the streaks of every day after
        it. Finalized days whose figures change are marked dirty and handed
        over again on their next refresh.
        """
        t = self.thresholds
        limit = dt.timedelta(hours=t.max_continuous_driving)
        min_break = dt.timedelta(hours=t.min_break)
        before = {day: _figures(record) for day, record in state.days.items()}

        continuous = ZERO
        for day in sorted(state.days):
            record = state.days[day]
            record.total_driving = record.total_work = ZERO
            record.total_break = record.total_rest = ZERO
            record.max_continuous_driving = ZERO
            record.short_breaks = []

            # a day's activities all start on that day, so day order is start order
            for activity in record.activities:
                if activity.end_time is None:
                    continue
                duration = activity.duration
                if activity.type == ActivityType.DRIVING:
                    record.total_driving += duration
                    record.total_work += duration
                    continuous += duration
                    record.max_continuous_driving = max(record.max_continuous_driving, continuous)
                elif activity.type == ActivityType.OTHER_WORK:
                    record.total_work += duration
                elif activity.type == ActivityType.BREAK:
                    if continuous >= limit and duration < min_break:
                        record.short_breaks.append(duration)
                    record.total_break += duration
                    continuous = ZERO
                elif activity.type == ActivityType.DAILY_REST:
                    record.total_rest += duration
                    continuous = ZERO
            record.continuous_driving = continuous

        for day, record in state.days.items():
            if day in state.frozen and before.get(day) != _figures(record):
                state.dirty.add(day)

    def _log_closed(self, record: DailyRecord, activity: DriverActivity) -> None:
        logger.info(
            f"[ledger] Driver {record.driver_id} {record.date}: closed {activity.type.value} "
            f"{activity.duration} | driving={record.total_driving} work={record.total_work} "
            f"continuous={record.continuous_driving}"
        )

    # ------------------------------------------------------------------
    # compliance refresh / finalization
    # ------------------------------------------------------------------
    async def _refresh(self, state: _DriverState, driver_id: str, day: dt.date) -> Optional[DailyRecord]:
        record = state.days.get(day)
        if record is None:
            return None

        t = self.thresholds
        if not self.is_elapsed(day):
            record.state = DayState.IN_PROGRESS
            record.compliance = classify_day(record, t, finalized=False)
            record.time_until_break = max(
                ZERO, dt.timedelta(hours=t.max_continuous_driving) - record.continuous_driving
            )
            record.remaining_daily_driving = max(
                ZERO, dt.timedelta(hours=t.max_daily_driving) - record.total_driving
            )
            return record

        fresh = classify_day(record, t, finalized=True).violations
        frozen = state.frozen.get(day)
        first_time = frozen is None
        frozen = list(frozen or [])
        seen = {x.type for x in frozen}
        added = [x for x in fresh if x.type not in seen]
        if not first_time and not added and day not in state.dirty:
            return record
        state.dirty.discard(day)

        frozen.extend(added)
        state.frozen[day] = frozen
        record.state = DayState.FINALIZED
        record.compliance = build_compliance(frozen)
        record.time_until_break = None
        record.remaining_daily_driving = None

        logger.info(
            f"[ledger] Driver {driver_id} {day} finalized status={record.compliance.status.value} "
            f"violations={[x.type.value for x in frozen]}"
        )
        await self.store.save_daily_record(record)
        return record

    async def _summary(self, state: _DriverState, driver_id: str, day: dt.date) -> DailyRecord:
        record = await self._refresh(state, driver_id, day)
        return record.model_copy(deep=True)

    async def finalize_elapsed(self) -> int:
        """Sweep every driver for elapsed days not yet handed over."""
        done = 0
        for driver_id in list(self._drivers):
            async with self._lock(driver_id):
                state = self._drivers[driver_id]
                for day in sorted(state.days):
                    if self.is_elapsed(day) and day not in state.frozen:
                        await self._refresh(state, driver_id, day)
                        done += 1
        if done:
            logger.info(f"[ledger] Finalized {done} driver-days")
        return done

    async def finalize_forever(self, every_s: float = config.FINALIZE_EVERY_S) -> None:
        while True:
            await asyncio.sleep(every_s)
            try:
                await self.finalize_elapsed()
            except Exception:
                logger.exception("[ledger] Finalizing elapsed days failed")

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    async def daily(self, driver_id: str, day: dt.date) -> Optional[DailyRecord]:
        driver_id = str(driver_id)
        state = self._drivers.get(driver_id)
        if state is None or day not in state.days:
            return None
        async with self._lock(driver_id):
            return await self._summary(state, driver_id, day)

    async def weekly(self, driver_id: str, week_start: dt.date) -> Optional[WeeklySummary]:
        """Seven days from week_start; the week before feeds the biweekly total."""
        driver_id = str(driver_id)
        state = self._drivers.get(driver_id)
        if state is None:
            return None

        week = [week_start + dt.timedelta(days=i) for i in range(7)]
        previous = [week_start - dt.timedelta(days=i) for i in range(1, 8)]
        if not any(d in state.days for d in week):
            return None

        async with self._lock(driver_id):
            days = []
            for d in week:
                record = await self._refresh(state, driver_id, d)
                if record is not None:
                    days.append(record.model_copy(deep=True))
            previous_driving = sum(
                (state.days[d].total_driving for d in previous if d in state.days), ZERO
            )

        summary = WeeklySummary(
            driver_id=driver_id,
            week_start=week_start,
            days=days,
            total_driving=sum((d.total_driving for d in days), ZERO),
            total_work=sum((d.total_work for d in days), ZERO),
            total_rest=sum((d.total_rest for d in days), ZERO),
            total_break=sum((d.total_break for d in days), ZERO),
        )
        summary.biweekly_driving = summary.total_driving + previous_driving
        summary.compliance = classify_week(
            days,
            self.thresholds,
            previous_week_driving_h=previous_driving.total_seconds() / 3600,
            finalized=self.is_elapsed(week[-1]),
        )
        return summary
