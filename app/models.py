from sqlalchemy import (BigInteger, Column, Date, DateTime, Double, ForeignKey, Integer, JSON, Text)
from database import Base
from sqlalchemy.sql import func
from geoalchemy2 import Geography


class VehicleRow(Base):
    __tablename__ = "vehicles"
    id         = Column(Text, primary_key=True, index=True)
    company_id = Column(Text, index=True)
    status     = Column(Text, nullable=False, default="active")


class DeviceBinding(Base):
    __tablename__ = "devices"
    device_id  = Column(Text, primary_key=True)
    vehicle_id = Column(Text, ForeignKey("vehicles.id"), index=True)


class TripRow(Base):
    __tablename__ = "trips"
    id               = Column(Text, primary_key=True, index=True)
    vehicle_id       = Column(Text, ForeignKey("vehicles.id"), index=True, nullable=False)
    status           = Column(Text, nullable=False)   # scheduled / in_progress / completed / cancelled
    planned_route    = Column(JSON, default=list)     # [{"lat": .., "lng": ..}, ...]
    actual_departure = Column(DateTime(timezone=True))


class GeofenceRow(Base):
    __tablename__ = "geofences"
    id         = Column(Integer, primary_key=True, index=True)
    name       = Column(Text, nullable=False)
    kind       = Column(Text, nullable=False)   # restricted / authorized
    geom       = Column(Geography('POLYGON', 4326), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AlertRecord(Base):
    """Append-only: rows are inserted, never updated by the engine."""
    __tablename__ = "alerts"
    id          = Column(Text, primary_key=True)
    type        = Column(Text, index=True, nullable=False)
    severity    = Column(Text, nullable=False)
    vehicle_id  = Column(Text, index=True)
    driver_id   = Column(Text, index=True)
    trip_id     = Column(Text)
    title       = Column(Text, nullable=False)
    description = Column(Text)
    # working-time alerts carry no position when the vehicle has none cached
    lat         = Column(Double)
    lon         = Column(Double)
    created_at  = Column(DateTime(timezone=True), nullable=False, index=True)


class DailyRecordRow(Base):
    """Completed (finalized) compliance windows handed over by the ledger."""
    __tablename__ = "daily_records"
    id          = Column(BigInteger, primary_key=True, autoincrement=True)
    driver_id   = Column(Text, index=True, nullable=False)
    day         = Column(Date, index=True, nullable=False)
    status      = Column(Text, nullable=False)
    payload     = Column(JSON, nullable=False)
    finalized_at = Column(DateTime(timezone=True), server_default=func.now())
