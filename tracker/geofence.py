"""Geofence containment checks and geofence lifecycle side effects."""

from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Any

from .commands import CommandLifecycleManager
from .errors import ConflictError, NotFoundError
from .models import (
    AlertType,
    CommandType,
    Device,
    Geofence,
    GeofenceAlert,
    LogCategory,
    LogLevel,
)
from .storage import StoreSession

_logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def contains(geofence: Geofence, latitude: float, longitude: float) -> bool:
    distance = haversine_distance(
        latitude, longitude, float(geofence.center_latitude), float(geofence.center_longitude)
    )
    return distance <= float(geofence.radius)


class GeofenceEvaluator:
    def __init__(self, commands: CommandLifecycleManager, gps_interval_ms: int = 30000) -> None:
        self.commands = commands
        self.gps_interval_ms = gps_interval_ms

    def evaluate(
        self,
        repo: StoreSession,
        device: Device,
        latitude: Decimal,
        longitude: Decimal,
    ) -> list[GeofenceAlert]:
        """Diff containment against the last known state and emit alerts.

        An ``enter`` alert fires when the point is inside and the device was
        not known to be inside; an ``exit`` alert fires when the point is
        outside and the device was inside. With no prior state, an outside
        reading only records the state.
        """
        lat, lon = float(latitude), float(longitude)
        alerts: list[GeofenceAlert] = []
        for geofence in repo.list_geofences(device.id, active_only=True):
            inside = contains(geofence, lat, lon)
            state = repo.get_geofence_state(device.id, geofence.id)
            was_inside = state.inside if state is not None else None

            alert_type: AlertType | None = None
            if inside and not was_inside and geofence.alert_on_enter:
                alert_type = AlertType.ENTER
            elif not inside and was_inside and geofence.alert_on_exit:
                alert_type = AlertType.EXIT

            if state is None or state.inside != inside:
                repo.set_geofence_state(device.id, geofence.id, inside)

            if alert_type is None:
                continue
            alert = repo.create_geofence_alert(
                device_id=device.id,
                geofence_id=geofence.id,
                geofence_name=geofence.name,
                alert_type=alert_type.value,
                latitude=latitude,
                longitude=longitude,
            )
            verb = "entered" if alert_type == AlertType.ENTER else "exited"
            repo.append_system_log(
                LogLevel.WARNING.value,
                LogCategory.GEOFENCE.value,
                f"Device {verb} geofence: {geofence.name}",
                device_pk=device.id,
                metadata={"geofenceId": geofence.id, "latitude": lat, "longitude": lon},
            )
            _logger.info("Device %s %s geofence %s", device.device_id, verb, geofence.name)
            alerts.append(alert)
        return alerts

    def create_geofence(self, repo: StoreSession, device: Device, **fields: Any) -> Geofence:
        geofence = repo.create_geofence(device_id=device.id, **fields)
        if geofence.is_active and repo.count_active_geofences(device.id) == 1:
            self._enqueue(
                repo,
                device,
                CommandType.ENABLE_GEOFENCE_MONITORING,
                {"interval": self.gps_interval_ms, "reason": "geofence_created"},
                "Geofence monitoring enabled - GPS activation command sent",
            )
        return geofence

    def delete_geofence(self, repo: StoreSession, device: Device, geofence_id: str) -> None:
        geofence = repo.get_geofence(geofence_id)
        if geofence is None or geofence.device_id != device.id:
            raise NotFoundError("Geofence not found")
        was_active = geofence.is_active
        repo.delete_geofence(geofence)
        if was_active and repo.count_active_geofences(device.id) == 0:
            self._enqueue(
                repo,
                device,
                CommandType.DISABLE_GEOFENCE_MONITORING,
                {"reason": "no_active_geofences"},
                "Geofence monitoring disabled - no active geofences",
            )

    def _enqueue(
        self,
        repo: StoreSession,
        device: Device,
        command_type: CommandType,
        payload: dict[str, Any],
        message: str,
    ) -> None:
        try:
            command = self.commands.create(repo, device, command_type, payload)
        except ConflictError as exc:
            _logger.info("%s already pending for device %s (%s)", command_type.value, device.device_id, exc.existing_command_id)
            return
        repo.append_system_log(
            LogLevel.INFO.value,
            LogCategory.GEOFENCE.value,
            message,
            device_pk=device.id,
            metadata={"commandId": command.id, "deviceId": device.device_id},
        )
