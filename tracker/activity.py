from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from .models import Device, DeviceStatus, LogCategory, LogLevel, utcnow
from .storage import StoreSession

_logger = logging.getLogger(__name__)


class DeviceActivityTracker:
    """Last-seen bookkeeping and online/offline transitions."""

    def touch(
        self,
        repo: StoreSession,
        device: Device,
        status: DeviceStatus | None = None,
        *,
        battery_level: Decimal | None = None,
        signal_quality: int | None = None,
    ) -> Device:
        """Refresh ``last_seen`` and apply a reported status.

        Without a reported status the device keeps its current one, except
        that an offline device comes back online.
        """
        previous = device.status
        if status is not None:
            new_status = status.value
        elif previous == DeviceStatus.OFFLINE.value:
            new_status = DeviceStatus.ONLINE.value
        else:
            new_status = previous
        repo.update_device(device, last_seen=utcnow(), status=new_status)
        if previous != new_status:
            repo.add_status_history(
                device_id=device.id,
                status=new_status,
                previous_status=previous,
                battery_level=battery_level,
                signal_quality=signal_quality,
            )
            _logger.info("Device %s status %s -> %s", device.device_id, previous, new_status)
        return device

    def sweep_offline(self, repo: StoreSession, timeout_seconds: int, now: datetime | None = None) -> list[Device]:
        now = now or utcnow()
        stale = list(repo.list_devices_seen_before(now - timedelta(seconds=timeout_seconds)))
        for device in stale:
            previous = device.status
            repo.update_device(device, status=DeviceStatus.OFFLINE.value)
            repo.add_status_history(device_id=device.id, status=DeviceStatus.OFFLINE.value, previous_status=previous)
            repo.append_system_log(
                LogLevel.WARNING.value,
                LogCategory.NETWORK.value,
                f"Device went offline: {device.device_name or device.device_id}",
                device_pk=device.id,
                metadata={"lastSeen": device.last_seen.isoformat() if device.last_seen else None},
            )
        if stale:
            _logger.info("Marked %d device(s) offline", len(stale))
        return stale
