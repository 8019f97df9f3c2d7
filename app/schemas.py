import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =====================================================================
# Enumerations
# =====================================================================
class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    SPEED_VIOLATION = "speed_violation"
    ROUTE_DEVIATION = "route_deviation"
    GEOFENCE_VIOLATION = "geofence_violation"
    UNAUTHORIZED_MOVEMENT = "unauthorized_movement"
    # raised from the working-time ledger
    DRIVING_LIMIT_WARNING = "driving_limit_warning"
    REST_REQUIRED = "rest_required"


class TripStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GeofenceKind(str, Enum):
    RESTRICTED = "restricted"
    AUTHORIZED = "authorized"


class ActivityType(str, Enum):
    DRIVING = "driving"
    OTHER_WORK = "other_work"
    BREAK = "break"
    DAILY_REST = "daily_rest"


class DayState(str, Enum):
    NO_DATA = "no_data"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    VIOLATION = "violation"


class ViolationType(str, Enum):
    EXCEEDED_DAILY_DRIVING = "EXCEEDED_DAILY_DRIVING"
    EXCEEDED_CONTINUOUS_DRIVING = "EXCEEDED_CONTINUOUS_DRIVING"
    EXCEEDED_DAILY_WORK = "EXCEEDED_DAILY_WORK"
    INSUFFICIENT_DAILY_REST = "INSUFFICIENT_DAILY_REST"
    INSUFFICIENT_BREAK = "INSUFFICIENT_BREAK"
    EXCEEDED_WEEKLY_DRIVING = "EXCEEDED_WEEKLY_DRIVING"
    EXCEEDED_BIWEEKLY_DRIVING = "EXCEEDED_BIWEEKLY_DRIVING"
    EXCEEDED_WEEKLY_WORK = "EXCEEDED_WEEKLY_WORK"
    EXTENDED_DRIVING_DAYS_EXCEEDED = "EXTENDED_DRIVING_DAYS_EXCEEDED"
    REDUCED_REST_DAYS_EXCEEDED = "REDUCED_REST_DAYS_EXCEEDED"
    INSUFFICIENT_WEEKLY_REST = "INSUFFICIENT_WEEKLY_REST"


# =====================================================================
# Telemetry & reference data
# =====================================================================
class LatLng(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class GPSFix(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    vehicle_id: Optional[str] = None
    timestamp: dt.datetime
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed_kmh: float = Field(..., ge=0)
    heading_deg: Optional[float] = Field(None, ge=0, lt=360)
    altitude_m: Optional[float] = None
    satellites: Optional[int] = Field(None, ge=0)
    hdop: Optional[float] = Field(None, ge=0)

    @property
    def point(self) -> LatLng:
        return LatLng(lat=self.latitude, lng=self.longitude)


class Vehicle(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    company_id: Optional[str] = None
    status: str = "active"


class Trip(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vehicle_id: str
    status: TripStatus
    planned_route: List[LatLng] = Field(default_factory=list)
    actual_departure: Optional[dt.datetime] = None


class Geofence(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    polygon: List[LatLng]
    kind: GeofenceKind = GeofenceKind.RESTRICTED


# =====================================================================
# Rule output, alerts and outbound events
# =====================================================================
class RuleMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: AlertType
    severity: Optional[Severity] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    trip_id: Optional[str] = None
    title: str
    description: str
    location: Optional[LatLng] = None


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: AlertType
    severity: Severity
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    trip_id: Optional[str] = None
    title: str
    description: str
    location: Optional[LatLng] = None
    created_at: dt.datetime


class AlertCreated(BaseModel):
    event: str = "AlertCreated"
    alert: Alert


class DeliveryIntent(BaseModel):
    event: str = "DeliveryIntent"
    alert_id: str
    channels: List[str]


# =====================================================================
# Working time
# =====================================================================
class DriverActivity(BaseModel):
    id: str
    driver_id: str
    type: ActivityType
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    vehicle_id: Optional[str] = None

    @property
    def duration(self) -> Optional[dt.timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ViolationType
    severity: Severity
    message: str
    actual: Optional[float] = None
    limit: Optional[float] = None


class Compliance(BaseModel):
    status: ComplianceStatus = ComplianceStatus.COMPLIANT
    violations: List[Violation] = Field(default_factory=list)
    score: int = 100


class DailyRecord(BaseModel):
    driver_id: str
    date: dt.date
    state: DayState = DayState.NO_DATA
    total_driving: dt.timedelta = dt.timedelta(0)
    total_work: dt.timedelta = dt.timedelta(0)
    total_rest: dt.timedelta = dt.timedelta(0)
    total_break: dt.timedelta = dt.timedelta(0)
    continuous_driving: dt.timedelta = dt.timedelta(0)
    max_continuous_driving: dt.timedelta = dt.timedelta(0)
    # breaks shorter than the minimum taken after a streak that reached the limit
    short_breaks: List[dt.timedelta] = Field(default_factory=list)
    time_until_break: Optional[dt.timedelta] = None
    remaining_daily_driving: Optional[dt.timedelta] = None
    activities: List[DriverActivity] = Field(default_factory=list)
    compliance: Compliance = Field(default_factory=Compliance)


class WeeklySummary(BaseModel):
    driver_id: str
    week_start: dt.date
    days: List[DailyRecord] = Field(default_factory=list)
    total_driving: dt.timedelta = dt.timedelta(0)
    total_work: dt.timedelta = dt.timedelta(0)
    total_rest: dt.timedelta = dt.timedelta(0)
    total_break: dt.timedelta = dt.timedelta(0)
    biweekly_driving: dt.timedelta = dt.timedelta(0)
    compliance: Compliance = Field(default_factory=Compliance)


def hours(td: dt.timedelta) -> float:
    return td.total_seconds() / 3600


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)
