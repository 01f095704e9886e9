from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Optional
import math

from dateutil import parser as dtparser
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import CommandType, DeviceStatus


def _to_decimal(value: Any) -> Any:
    # coordinates arrive as JSON numbers or decimal strings
    if value is None or isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("must be a number or a decimal string")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("must be a finite number")
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError("must be a number or a decimal string") from None
        if not parsed.is_finite():
            raise ValueError("must be a finite number")
        return parsed
    raise ValueError("must be a number or a decimal string")


def _to_utc_naive(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = dtparser.isoparse(value)
        except (ValueError, OverflowError):
            raise ValueError("must be an ISO-8601 timestamp") from None
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(_to_decimal)]
Latitude = Annotated[Decimal, BeforeValidator(_to_decimal), Field(ge=-90, le=90)]
Longitude = Annotated[Decimal, BeforeValidator(_to_decimal), Field(ge=-180, le=180)]
Timestamp = Annotated[datetime, BeforeValidator(_to_utc_naive)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------- requests ----------------

class DeviceRegister(CamelModel):
    device_id: str = Field(min_length=1, max_length=100)
    device_name: Optional[str] = Field(default=None, max_length=255)
    device_type: str = Field(default="GPS_TRACKER", max_length=50)
    firmware_version: Optional[str] = Field(default=None, max_length=50)
    hardware_version: Optional[str] = Field(default=None, max_length=50)
    user_id: Optional[str] = None
    config: Optional[dict[str, Any]] = None


class DeviceUpdate(CamelModel):
    device_name: Optional[str] = Field(default=None, max_length=255)
    device_type: Optional[str] = Field(default=None, max_length=50)
    firmware_version: Optional[str] = Field(default=None, max_length=50)
    hardware_version: Optional[str] = Field(default=None, max_length=50)
    status: Optional[DeviceStatus] = None
    is_active: Optional[bool] = None
    config: Optional[dict[str, Any]] = None


class LocationReport(CamelModel):
    latitude: Latitude
    longitude: Longitude
    altitude: Optional[DecimalValue] = Field(default=None, ge=Decimal("-999999.99"), le=Decimal("999999.99"))
    speed: Optional[DecimalValue] = Field(default=None, ge=0, le=Decimal("9999.99"))
    heading: Optional[DecimalValue] = Field(default=None, ge=0, le=360)
    accuracy: Optional[DecimalValue] = Field(default=None, ge=0, le=Decimal("999999.99"))
    hdop: Optional[DecimalValue] = Field(default=None, ge=0, le=Decimal("99.99"))
    satellites: Optional[int] = Field(default=None, ge=0, le=255)
    battery_level: Optional[DecimalValue] = Field(default=None, ge=0, le=100)
    signal_quality: Optional[int] = Field(default=None, ge=-255, le=255)
    network_operator: Optional[str] = Field(default=None, max_length=100)
    timestamp: Optional[Timestamp] = None


class HeartbeatReport(CamelModel):
    status: Optional[DeviceStatus] = None
    battery_level: Optional[DecimalValue] = Field(default=None, ge=0, le=100)
    signal_quality: Optional[int] = Field(default=None, ge=-255, le=255)
    network_operator: Optional[str] = Field(default=None, max_length=100)


class CommandCreate(CamelModel):
    command_type: CommandType
    command_data: Optional[dict[str, Any]] = None
    expires_at: Optional[Timestamp] = None


class CommandAck(CamelModel):
    status: Optional[str] = None


class LostModeRequest(CamelModel):
    lost_mode: bool


class GeofenceCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    center_latitude: Latitude
    center_longitude: Longitude
    radius: DecimalValue = Field(gt=0, le=Decimal("999999.99"))
    is_active: bool = True
    alert_on_enter: bool = True
    alert_on_exit: bool = True
    user_id: Optional[str] = None


# ---------------- responses ----------------

class DeviceOut(CamelModel):
    id: str
    device_id: str
    user_id: Optional[str] = None
    device_name: Optional[str] = None
    device_type: str
    firmware_version: Optional[str] = None
    hardware_version: Optional[str] = None
    config: dict[str, Any]
    status: str
    last_seen: Optional[datetime] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class LocationOut(CamelModel):
    id: int
    device_id: str
    latitude: Decimal
    longitude: Decimal
    altitude: Optional[Decimal] = None
    speed: Optional[Decimal] = None
    heading: Optional[Decimal] = None
    accuracy: Optional[Decimal] = None
    hdop: Optional[Decimal] = None
    satellites: Optional[int] = None
    battery_level: Optional[Decimal] = None
    signal_quality: Optional[int] = Field(default=None, ge=-255, le=255)
    network_operator: Optional[str] = None
    timestamp: datetime
    created_at: datetime


class CommandOut(CamelModel):
    id: str
    device_id: str
    kind: str
    command_type: str
    command_data: Optional[dict[str, Any]] = None
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class GeofenceOut(CamelModel):
    id: str
    device_id: str
    name: str
    description: Optional[str] = None
    center_latitude: Decimal
    center_longitude: Decimal
    radius: Decimal
    is_active: bool
    alert_on_enter: bool
    alert_on_exit: bool
    created_at: datetime
    updated_at: datetime


class GeofenceAlertOut(CamelModel):
    id: str
    device_id: str
    geofence_id: Optional[str] = None
    geofence_name: Optional[str] = None
    alert_type: str
    latitude: Decimal
    longitude: Decimal
    is_read: bool
    triggered_at: datetime
    read_at: Optional[datetime] = None


class SystemLogOut(CamelModel):
    id: int
    device_id: Optional[str] = None
    user_id: Optional[str] = None
    level: str
    category: str
    message: str
    meta: Optional[dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("meta", "metadata"), serialization_alias="metadata"
    )
    timestamp: datetime


class SystemLogPage(CamelModel):
    logs: list[SystemLogOut]
    total_count: int
    has_more: bool


class HeartbeatResponse(CamelModel):
    success: bool = True
    timestamp: datetime
    config: dict[str, Any]
    commands: list[CommandOut]


class AckResponse(CamelModel):
    success: bool = True
    command: CommandOut
    config: dict[str, Any]
    timestamp: datetime


class LostModeResponse(CamelModel):
    success: bool = True
    message: str
    command_id: str
    status: str


class DeviceStatusOut(CamelModel):
    device: DeviceOut
    latest_location: Optional[LocationOut] = None
    unread_alerts_count: int
    pending_commands: list[CommandOut]
    lost_mode_command: Optional[CommandOut] = None
    has_lost_mode_command: bool


class CountOut(CamelModel):
    count: int


class ExistsOut(CamelModel):
    exists: bool
