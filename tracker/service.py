"""Tracker service: the object request handlers and the MQTT ingester call.

Constructed once per application with an explicit ``Store``; each public
method is one transaction. Results are returned as response schemas so no
ORM instance outlives its session.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

from .activity import DeviceActivityTracker
from .commands import CommandLifecycleManager
from .errors import ConflictError, DuplicatePendingCommandError, NotFoundError
from .geofence import GeofenceEvaluator
from .models import (
    DEFAULT_DEVICE_CONFIG,
    CommandType,
    Device,
    DeviceCommand,
    DeviceStatus,
    LogCategory,
    LogLevel,
    utcnow,
)
from .schemas import (
    AckResponse,
    CommandCreate,
    CommandOut,
    DeviceOut,
    DeviceRegister,
    DeviceStatusOut,
    DeviceUpdate,
    GeofenceAlertOut,
    GeofenceCreate,
    GeofenceOut,
    HeartbeatReport,
    HeartbeatResponse,
    LocationOut,
    LocationReport,
    LostModeResponse,
    SystemLogOut,
    SystemLogPage,
)
from .storage import Store, StoreSession

_logger = logging.getLogger(__name__)

LOST_MODE_TYPES = (CommandType.ENABLE_LOST_MODE.value, CommandType.DISABLE_LOST_MODE.value)


class TrackerService:
    def __init__(
        self,
        store: Store,
        *,
        publish: Callable[[str], None] | None = None,
        geofence_gps_interval_ms: int = 30000,
    ) -> None:
        self.store = store
        self.publish = publish
        self.commands = CommandLifecycleManager()
        self.geofences = GeofenceEvaluator(self.commands, geofence_gps_interval_ms)
        self.activity = DeviceActivityTracker()

    # ---------------- helpers ----------------
    def _device(self, repo: StoreSession, external_id: str) -> Device:
        device = repo.get_device_by_external_id(external_id)
        if device is None:
            raise NotFoundError("Device not found")
        return device

    def _emit(self, kind: str, external_id: str, data: Any) -> None:
        if self.publish is None:
            return
        self.publish(json.dumps({"kind": kind, "deviceId": external_id, "data": data}, default=str))

    # ---------------- devices ----------------
    def register_device(self, body: DeviceRegister) -> DeviceOut:
        with self.store.begin() as repo:
            if repo.get_device_by_external_id(body.device_id) is not None:
                raise ConflictError("Device already registered")
            config = dict(DEFAULT_DEVICE_CONFIG)
            config.update(body.config or {})
            device = repo.create_device(
                device_id=body.device_id,
                device_name=body.device_name,
                device_type=body.device_type,
                firmware_version=body.firmware_version,
                hardware_version=body.hardware_version,
                user_id=body.user_id,
                config=config,
            )
            repo.append_system_log(
                LogLevel.INFO.value,
                LogCategory.SYSTEM.value,
                f"Device registered: {device.device_name or device.device_id}",
                device_pk=device.id,
            )
            return DeviceOut.model_validate(device)

    def device_exists(self, external_id: str) -> bool:
        with self.store.begin() as repo:
            return repo.get_device_by_external_id(external_id) is not None

    def get_device(self, external_id: str) -> DeviceOut:
        with self.store.begin() as repo:
            return DeviceOut.model_validate(self._device(repo, external_id))

    def list_devices(self) -> list[DeviceOut]:
        with self.store.begin() as repo:
            return [DeviceOut.model_validate(d) for d in repo.list_devices()]

    def update_device(self, external_id: str, body: DeviceUpdate) -> DeviceOut:
        changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
        if "status" in changes:
            changes["status"] = body.status.value
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            repo.update_device(device, **changes)
            return DeviceOut.model_validate(device)

    # ---------------- reports ----------------
    def record_location(self, external_id: str, report: LocationReport) -> LocationOut:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            fields = report.model_dump(exclude={"timestamp"})
            location = repo.add_location(device_id=device.id, timestamp=report.timestamp or utcnow(), **fields)
            self.activity.touch(
                repo,
                device,
                battery_level=report.battery_level,
                signal_quality=report.signal_quality,
            )
            out = LocationOut.model_validate(location)

        alerts = self._check_geofences(external_id, report.latitude, report.longitude)
        self._emit("location", external_id, out.model_dump(mode="json", by_alias=True))
        for alert in alerts:
            self._emit("geofence_alert", external_id, alert.model_dump(mode="json", by_alias=True))
        return out

    def _check_geofences(self, external_id: str, latitude: Decimal, longitude: Decimal) -> list[GeofenceAlertOut]:
        # a failed geofence check must never fail the location report
        try:
            with self.store.begin() as repo:
                device = self._device(repo, external_id)
                alerts = self.geofences.evaluate(repo, device, latitude, longitude)
                return [GeofenceAlertOut.model_validate(a) for a in alerts]
        except Exception:
            _logger.exception("Geofence check failed for device %s", external_id)
            return []

    def heartbeat(self, external_id: str, report: HeartbeatReport) -> HeartbeatResponse:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            self.activity.touch(
                repo,
                device,
                report.status or DeviceStatus.ONLINE,
                battery_level=report.battery_level,
                signal_quality=report.signal_quality,
            )
            pending = self.commands.list_pending(repo, device)
            return HeartbeatResponse(
                timestamp=utcnow(),
                config=device.config or {},
                commands=[CommandOut.model_validate(c) for c in pending],
            )

    def get_config(self, external_id: str) -> dict[str, Any]:
        with self.store.begin() as repo:
            return dict(self._device(repo, external_id).config or {})

    def location_history(self, external_id: str, limit: int = 100) -> list[LocationOut]:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            return [LocationOut.model_validate(loc) for loc in repo.get_locations(device.id, limit)]

    def device_status(self, external_id: str) -> DeviceStatusOut:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            latest = repo.get_latest_location(device.id)
            pending = [CommandOut.model_validate(c) for c in self.commands.list_pending(repo, device)]
            lost_mode = next((c for c in pending if c.command_type in LOST_MODE_TYPES), None)
            return DeviceStatusOut(
                device=DeviceOut.model_validate(device),
                latest_location=LocationOut.model_validate(latest) if latest is not None else None,
                unread_alerts_count=repo.count_unread_alerts(device.id),
                pending_commands=pending,
                lost_mode_command=lost_mode,
                has_lost_mode_command=lost_mode is not None,
            )

    # ---------------- commands ----------------
    def list_pending(self, external_id: str) -> list[CommandOut]:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            return [CommandOut.model_validate(c) for c in self.commands.list_pending(repo, device)]

    def create_command(self, external_id: str, body: CommandCreate, *, user_id: str | None = None) -> CommandOut:
        try:
            with self.store.begin() as repo:
                device = self._device(repo, external_id)
                command = self.commands.create(
                    repo,
                    device,
                    body.command_type,
                    body.command_data,
                    expires_at=body.expires_at,
                    user_id=user_id,
                )
                out = CommandOut.model_validate(command)
        except DuplicatePendingCommandError:
            # lost a race with a concurrent create; report the winner
            with self.store.begin() as repo:
                device = self._device(repo, external_id)
                existing = repo.find_pending_command(device.id, body.command_type)
                raise ConflictError(
                    f"{body.command_type.value} command already pending for this device",
                    existing_command_id=existing.id if existing is not None else None,
                ) from None
        self._emit("command", external_id, out.model_dump(mode="json", by_alias=True))
        return out

    def set_lost_mode(self, external_id: str, lost_mode: bool) -> LostModeResponse:
        command_type = CommandType.ENABLE_LOST_MODE if lost_mode else CommandType.DISABLE_LOST_MODE
        command = self.create_command(external_id, CommandCreate(command_type=command_type))
        action = "enable" if lost_mode else "disable"
        return LostModeResponse(
            message=f"Lost mode {action} command sent to device",
            command_id=command.id,
            status=command.status,
        )

    def acknowledge(self, external_id: str, item_id: str, status: str | None = None) -> AckResponse:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            item = self.commands.acknowledge(repo, device, item_id, status)
            return AckResponse(
                command=CommandOut.model_validate(item),
                config=dict(device.config or {}),
                timestamp=utcnow(),
            )

    def cancel_command(self, external_id: str, item_id: str, *, user_id: str | None = None) -> CommandOut:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            item: DeviceCommand = self.commands.cancel(repo, device, item_id, user_id=user_id)
            return CommandOut.model_validate(item)

    def expire_commands(self, now: datetime | None = None) -> int:
        with self.store.begin() as repo:
            return len(self.commands.expire(repo, now))

    def sweep_offline(self, timeout_seconds: int, now: datetime | None = None) -> int:
        with self.store.begin() as repo:
            return len(self.activity.sweep_offline(repo, timeout_seconds, now))

    # ---------------- geofences ----------------
    def list_geofences(self, external_id: str) -> list[GeofenceOut]:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            return [GeofenceOut.model_validate(g) for g in repo.list_geofences(device.id)]

    def create_geofence(self, external_id: str, body: GeofenceCreate) -> GeofenceOut:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            geofence = self.geofences.create_geofence(repo, device, **body.model_dump())
            return GeofenceOut.model_validate(geofence)

    def delete_geofence(self, external_id: str, geofence_id: str) -> None:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            self.geofences.delete_geofence(repo, device, geofence_id)

    def list_alerts(self, external_id: str, limit: int = 50) -> list[GeofenceAlertOut]:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            return [GeofenceAlertOut.model_validate(a) for a in repo.list_geofence_alerts(device.id, limit)]

    def mark_alert_read(self, external_id: str, alert_id: str) -> GeofenceAlertOut:
        with self.store.begin() as repo:
            device = self._device(repo, external_id)
            alert = repo.get_geofence_alert(alert_id)
            if alert is None or alert.device_id != device.id:
                raise NotFoundError("Alert not found")
            return GeofenceAlertOut.model_validate(repo.mark_alert_read(alert))

    def unread_alerts_count(self, external_id: str) -> int:
        with self.store.begin() as repo:
            return repo.count_unread_alerts(self._device(repo, external_id).id)

    # ---------------- logs ----------------
    def system_logs(
        self,
        external_id: str | None = None,
        day: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> SystemLogPage:
        with self.store.begin() as repo:
            device_pk = None
            if external_id:
                device = repo.get_device_by_external_id(external_id)
                if device is None:
                    return SystemLogPage(logs=[], total_count=0, has_more=False)
                device_pk = device.id
            logs = repo.list_system_logs(device_pk, day, limit, offset)
            total = repo.count_system_logs(device_pk, day)
            return SystemLogPage(
                logs=[SystemLogOut.model_validate(log) for log in logs],
                total_count=total,
                has_more=offset + limit < total,
            )
