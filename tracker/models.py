from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    # naive UTC everywhere; sqlite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    LOST_MODE = "lost_mode"
    LOW_BATTERY = "low_battery"
    ERROR = "error"


class CommandType(str, Enum):
    ENABLE_LOST_MODE = "enable_lost_mode"
    DISABLE_LOST_MODE = "disable_lost_mode"
    GET_LOCATION = "get_location"
    UPDATE_CONFIG = "update_config"
    REBOOT = "reboot"
    ENABLE_GEOFENCE_MONITORING = "enable_geofence_monitoring"
    DISABLE_GEOFENCE_MONITORING = "disable_geofence_monitoring"


class CommandStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ConfigurationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    APPLIED = "applied"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class QueueKind(str, Enum):
    COMMAND = "command"
    CONFIGURATION = "configuration"


class AlertType(str, Enum):
    ENTER = "enter"
    EXIT = "exit"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"


class LogCategory(str, Enum):
    SYSTEM = "system"
    GPS = "gps"
    NETWORK = "network"
    COMMAND = "command"
    GEOFENCE = "geofence"


DEFAULT_DEVICE_CONFIG = {
    "heartbeat_interval": 300000,
    "gps_interval": 10000,
    "lost_mode_interval": 15000,
    "command_check_interval": 30000,
    "low_battery_threshold": 15.0,
    "gps_accuracy_threshold": 10.0,
}


class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: str = Field(default_factory=new_id, primary_key=True)
    device_id: str = Field(index=True, unique=True, max_length=100)  # hardware id (MAC)
    user_id: Optional[str] = Field(default=None, index=True)
    device_name: Optional[str] = Field(default=None, max_length=255)
    device_type: str = Field(default="GPS_TRACKER", max_length=50)
    firmware_version: Optional[str] = Field(default=None, max_length=50)
    hardware_version: Optional[str] = Field(default=None, max_length=50)
    config: dict = Field(default_factory=lambda: dict(DEFAULT_DEVICE_CONFIG), sa_column=Column(JSON, nullable=False))
    status: str = Field(default=DeviceStatus.OFFLINE.value, max_length=20)
    last_seen: Optional[datetime] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeviceLocation(SQLModel, table=True):
    __tablename__ = "device_locations"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.id")
    latitude: Decimal = Field(max_digits=10, decimal_places=8)
    longitude: Decimal = Field(max_digits=11, decimal_places=8)
    altitude: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    speed: Optional[Decimal] = Field(default=None, max_digits=6, decimal_places=2)
    heading: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)
    accuracy: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    satellites: Optional[int] = None
    hdop: Optional[Decimal] = Field(default=None, max_digits=4, decimal_places=2)
    battery_level: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)
    signal_quality: Optional[int] = None
    network_operator: Optional[str] = Field(default=None, max_length=100)
    timestamp: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)


class DeviceCommand(SQLModel, table=True):
    """One row of a device's work queue.

    Commands and pending configurations share this table; ``kind`` tells them
    apart so acknowledgements resolve against a single id space. The partial
    unique index keeps at most one pending row per device, kind and type.
    """

    __tablename__ = "device_commands"
    __table_args__ = (
        Index(
            "uq_device_commands_pending_type",
            "device_id",
            "kind",
            "command_type",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.id")
    user_id: Optional[str] = None
    kind: str = Field(default=QueueKind.COMMAND.value, max_length=20)
    # the other half of an update_config command/configuration pair
    pair_id: Optional[str] = Field(default=None, index=True)
    command_type: str = Field(max_length=50)
    command_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default=CommandStatus.PENDING.value, max_length=20, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None  # applied_at for configurations
    expires_at: Optional[datetime] = None


class DeviceStatusHistory(SQLModel, table=True):
    __tablename__ = "device_status_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.id")
    status: str = Field(max_length=50)
    previous_status: Optional[str] = Field(default=None, max_length=50)
    battery_level: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)
    signal_quality: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow, index=True)


class Geofence(SQLModel, table=True):
    __tablename__ = "geofences"

    id: str = Field(default_factory=new_id, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.id")
    user_id: Optional[str] = None
    name: str = Field(max_length=255)
    description: Optional[str] = None
    center_latitude: Decimal = Field(max_digits=10, decimal_places=8)
    center_longitude: Decimal = Field(max_digits=11, decimal_places=8)
    radius: Decimal = Field(max_digits=8, decimal_places=2)  # meters
    is_active: bool = Field(default=True)
    alert_on_enter: bool = Field(default=True)
    alert_on_exit: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeviceGeofenceState(SQLModel, table=True):
    __tablename__ = "device_geofence_states"

    device_id: str = Field(primary_key=True, foreign_key="devices.id")
    geofence_id: str = Field(primary_key=True, foreign_key="geofences.id", ondelete="CASCADE")
    inside: bool
    updated_at: datetime = Field(default_factory=utcnow)


class GeofenceAlert(SQLModel, table=True):
    __tablename__ = "geofence_alerts"

    id: str = Field(default_factory=new_id, primary_key=True)
    device_id: str = Field(index=True, foreign_key="devices.id")
    geofence_id: Optional[str] = Field(default=None, index=True, foreign_key="geofences.id", ondelete="SET NULL")
    geofence_name: Optional[str] = Field(default=None, max_length=255)
    user_id: Optional[str] = None
    alert_type: str = Field(max_length=20)
    latitude: Decimal = Field(max_digits=10, decimal_places=8)
    longitude: Decimal = Field(max_digits=11, decimal_places=8)
    is_read: bool = Field(default=False)
    triggered_at: datetime = Field(default_factory=utcnow, index=True)
    read_at: Optional[datetime] = None


class SystemLog(SQLModel, table=True):
    __tablename__ = "system_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: Optional[str] = Field(default=None, index=True, foreign_key="devices.id")
    user_id: Optional[str] = None
    level: str = Field(max_length=20)
    category: str = Field(default=LogCategory.SYSTEM.value, max_length=50)
    message: str
    # "metadata" is reserved on declarative classes
    meta: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    timestamp: datetime = Field(default_factory=utcnow, index=True)
