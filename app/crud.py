from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from logging_config import get_logger
from models import AlertRecord, DailyRecordRow, DeviceBinding, TripRow, VehicleRow
from schemas import Alert, DailyRecord, LatLng, Trip, TripStatus, Vehicle
from stores import FleetRegistry, RecordStore
from validator import to_dt

logger = get_logger("crud", "crud.log")

db_retry = retry(
    wait=wait_exponential_jitter(initial=2, max=30),
    stop=stop_after_attempt(7),
    retry=retry_if_exception_type((DBAPIError, OperationalError, OSError)),
    reraise=True,
)


def trip_from_row(row: TripRow) -> Trip:
    return Trip(
        id=row.id,
        vehicle_id=row.vehicle_id,
        status=TripStatus(row.status),
        planned_route=[LatLng(**p) for p in (row.planned_route or [])],
        actual_departure=to_dt(row.actual_departure),
    )


class SqlFleetRegistry(FleetRegistry):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @db_retry
    async def vehicle_for_device(self, device_id: str) -> Optional[Vehicle]:
        async with self._session_factory() as db:
            row = await db.execute(
                select(VehicleRow)
                .join(DeviceBinding, DeviceBinding.vehicle_id == VehicleRow.id)
                .where(DeviceBinding.device_id == str(device_id))
            )
            v = row.scalar_one_or_none()
        return Vehicle.model_validate(v) if v else None

    @db_retry
    async def in_progress_trips(self, vehicle_id: str) -> List[Trip]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(TripRow)
                .where(
                    TripRow.vehicle_id == vehicle_id,
                    TripRow.status == TripStatus.IN_PROGRESS.value,
                )
                .order_by(TripRow.actual_departure.desc().nulls_last())
            )
            return [trip_from_row(t) for t in rows.scalars().all()]


class SqlRecordStore(RecordStore):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @db_retry
    async def append_alert(self, alert: Alert) -> None:
        # insert-only; a retried insert of the same alert id is a no-op
        stmt = pg_insert(AlertRecord).values(
            id=alert.id,
            type=alert.type.value,
            severity=alert.severity.value,
            vehicle_id=alert.vehicle_id,
            driver_id=alert.driver_id,
            trip_id=alert.trip_id,
            title=alert.title,
            description=alert.description,
            lat=alert.location.lat if alert.location else None,
            lon=alert.location.lng if alert.location else None,
            created_at=alert.created_at,
        ).on_conflict_do_nothing(index_elements=["id"])

        async with self._session_factory() as db:
            await db.execute(stmt)
            await db.commit()
        logger.info(f"[crud] Stored alert {alert.id} type={alert.type.value} vehicle={alert.vehicle_id}")

    @db_retry
    async def save_daily_record(self, record: DailyRecord) -> None:
        async with self._session_factory() as db:
            db.add(DailyRecordRow(
                driver_id=record.driver_id,
                day=record.date,
                status=record.compliance.status.value,
                payload=record.model_dump(mode="json"),
            ))
            await db.commit()
        logger.info(
            f"[crud] Stored finalized day driver={record.driver_id} date={record.date} "
            f"status={record.compliance.status.value}"
        )
