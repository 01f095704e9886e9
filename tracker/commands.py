"""Device command lifecycle.

Devices pull work on heartbeat; this module decides what is queued, what a
new request supersedes, and how acknowledgements move a row through its
states. Every method runs inside the caller's ``StoreSession`` so the whole
read-check-write sequence commits as one transaction.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any

from .errors import ConflictError, InputValidationError, InvalidTransitionError, NotFoundError
from .models import (
    CommandStatus,
    CommandType,
    ConfigurationStatus,
    Device,
    DeviceCommand,
    LogCategory,
    LogLevel,
    QueueKind,
    utcnow,
)
from .storage import StoreSession

_logger = logging.getLogger(__name__)

COMMAND_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("sent", "cancelled", "expired"),
    "sent": ("acknowledged", "failed"),
    "acknowledged": ("executed",),
}

CONFIGURATION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("sent", "cancelled", "expired"),
    "sent": ("applied", "failed"),
}

# device-reported command statuses as they apply to a configuration row
CONFIGURATION_STATUS_MAP = {
    CommandStatus.EXECUTED.value: ConfigurationStatus.APPLIED.value,
    CommandStatus.ACKNOWLEDGED.value: ConfigurationStatus.SENT.value,
}

# requesting one side cancels a pending request for the other
EXCLUSIVE_PAIRS = {
    CommandType.ENABLE_LOST_MODE: CommandType.DISABLE_LOST_MODE,
    CommandType.DISABLE_LOST_MODE: CommandType.ENABLE_LOST_MODE,
    CommandType.ENABLE_GEOFENCE_MONITORING: CommandType.DISABLE_GEOFENCE_MONITORING,
    CommandType.DISABLE_GEOFENCE_MONITORING: CommandType.ENABLE_GEOFENCE_MONITORING,
}


def transitions_for(item: DeviceCommand) -> dict[str, tuple[str, ...]]:
    if item.kind == QueueKind.CONFIGURATION.value:
        return CONFIGURATION_TRANSITIONS
    return COMMAND_TRANSITIONS


def is_terminal(item: DeviceCommand) -> bool:
    return item.status not in transitions_for(item)


def transition_path(transitions: dict[str, tuple[str, ...]], current: str, target: str) -> list[str] | None:
    """Shortest forward walk from ``current`` to ``target``.

    Returns the statuses visited after ``current`` (ending with ``target``),
    ``[]`` when already there, or ``None`` when ``target`` is unreachable.
    """
    if current == target:
        return []
    queue: deque[tuple[str, list[str]]] = deque([(current, [])])
    seen = {current}
    while queue:
        status, path = queue.popleft()
        for nxt in transitions.get(status, ()):
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append((nxt, path + [nxt]))
    return None


class CommandLifecycleManager:
    def create(
        self,
        repo: StoreSession,
        device: Device,
        command_type: CommandType,
        payload: dict[str, Any] | None = None,
        *,
        expires_at: datetime | None = None,
        user_id: str | None = None,
    ) -> DeviceCommand:
        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise InputValidationError("expiresAt must be in the future")
        self.expire(repo, now, device=device)

        if command_type == CommandType.UPDATE_CONFIG:
            if not isinstance(payload, dict):
                raise InputValidationError("update_config requires a configuration object in commandData")
            superseded = [
                row
                for row in repo.list_pending_commands(device.id)
                if row.command_type == CommandType.UPDATE_CONFIG.value
            ]
            superseded.extend(repo.list_pending_configurations(device.id))
            for row in superseded:
                repo.update_queue_status(row, CommandStatus.CANCELLED.value)
            command = repo.create_command(
                device.id, command_type, payload, expires_at=expires_at, user_id=user_id
            )
            configuration = repo.create_configuration(device.id, payload, expires_at=expires_at)
            repo.link_pair(command, configuration)
        else:
            existing = repo.find_pending_command(device.id, command_type)
            if existing is not None:
                raise ConflictError(
                    f"{command_type.value} command already pending for this device",
                    existing_command_id=existing.id,
                )
            opposite = EXCLUSIVE_PAIRS.get(command_type)
            if opposite is not None:
                other = repo.find_pending_command(device.id, opposite)
                if other is not None:
                    repo.update_queue_status(other, CommandStatus.CANCELLED.value)
                    repo.append_system_log(
                        LogLevel.INFO.value,
                        LogCategory.COMMAND.value,
                        f"Command {other.id} ({opposite.value}) superseded by {command_type.value}",
                        device_pk=device.id,
                        metadata={"commandId": other.id},
                    )
            command = repo.create_command(
                device.id, command_type, payload, expires_at=expires_at, user_id=user_id
            )

        repo.append_system_log(
            LogLevel.INFO.value,
            LogCategory.COMMAND.value,
            f"Command created: {command.command_type}",
            device_pk=device.id,
            user_id=user_id,
            metadata={"commandId": command.id},
        )
        _logger.info("Queued %s for device %s (command %s)", command.command_type, device.device_id, command.id)
        return command

    def list_pending(self, repo: StoreSession, device: Device, now: datetime | None = None) -> list[DeviceCommand]:
        """Pending commands and pending configurations as one ordered queue."""
        now = now or utcnow()
        items = list(repo.list_pending_commands(device.id, now))
        items.extend(repo.list_pending_configurations(device.id, now))
        items.sort(key=lambda row: (row.created_at, row.id))
        return items

    def _get_owned(self, repo: StoreSession, device: Device, item_id: str) -> DeviceCommand:
        item = repo.get_queue_item(item_id)
        if item is None or item.device_id != device.id:
            raise NotFoundError("Command or configuration not found")
        return item

    def _sibling(self, repo: StoreSession, device: Device, item: DeviceCommand) -> DeviceCommand | None:
        # the other half of an update_config dual-write, while not yet terminal
        if item.pair_id is None:
            return None
        row = repo.get_queue_item(item.pair_id)
        if row is None or row.device_id != device.id or is_terminal(row):
            return None
        return row

    def _advance(self, repo: StoreSession, item: DeviceCommand, requested: str, now: datetime) -> list[str] | None:
        target = requested
        if item.kind == QueueKind.CONFIGURATION.value:
            target = CONFIGURATION_STATUS_MAP.get(requested, requested)
        path = transition_path(transitions_for(item), item.status, target)
        for step in path or ():
            repo.update_queue_status(item, step, now)
        return path

    def acknowledge(
        self,
        repo: StoreSession,
        device: Device,
        item_id: str,
        status: str | None = None,
    ) -> DeviceCommand:
        item = self._get_owned(repo, device, item_id)
        requested = status or CommandStatus.ACKNOWLEDGED.value
        if requested not in {s.value for s in CommandStatus} | {s.value for s in ConfigurationStatus}:
            raise InputValidationError(f"Unknown status: {requested}")

        sibling = self._sibling(repo, device, item)
        current = item.status
        now = utcnow()
        path = self._advance(repo, item, requested, now)
        if path is None:
            raise InvalidTransitionError(
                f"Cannot move {item.kind} from {current} to {requested}",
                current_status=current,
                requested_status=requested,
            )
        if not path:
            return item
        if sibling is not None:
            self._advance(repo, sibling, requested, now)

        if item.status in (CommandStatus.EXECUTED.value, ConfigurationStatus.APPLIED.value):
            if item.command_type == CommandType.UPDATE_CONFIG.value and isinstance(item.command_data, dict):
                repo.update_device(device, config={**(device.config or {}), **item.command_data})

        level = LogLevel.WARNING.value if item.status == CommandStatus.FAILED.value else LogLevel.INFO.value
        repo.append_system_log(
            level,
            LogCategory.COMMAND.value,
            f"{item.command_type} {item.status}",
            device_pk=device.id,
            metadata={"commandId": item.id, "kind": item.kind},
        )
        return item

    def cancel(self, repo: StoreSession, device: Device, item_id: str, *, user_id: str | None = None) -> DeviceCommand:
        """Cancel a pending row; terminal rows are returned unchanged."""
        item = self._get_owned(repo, device, item_id)
        if is_terminal(item):
            return item
        if item.status != CommandStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Command {item.id} is already {item.status} and cannot be cancelled",
                current_status=item.status,
                requested_status=CommandStatus.CANCELLED.value,
            )
        sibling = self._sibling(repo, device, item)
        repo.update_queue_status(item, CommandStatus.CANCELLED.value)
        if sibling is not None and sibling.status == CommandStatus.PENDING.value:
            repo.update_queue_status(sibling, CommandStatus.CANCELLED.value)
        repo.append_system_log(
            LogLevel.INFO.value,
            LogCategory.COMMAND.value,
            f"Command {item.id} cancelled by user",
            device_pk=device.id,
            user_id=user_id,
            metadata={"commandId": item.id},
        )
        return item

    def expire(self, repo: StoreSession, now: datetime | None = None, *, device: Device | None = None) -> list[DeviceCommand]:
        now = now or utcnow()
        expired = list(repo.list_expired_pending(now, device.id if device is not None else None))
        for item in expired:
            repo.update_queue_status(item, CommandStatus.EXPIRED.value)
            repo.append_system_log(
                LogLevel.INFO.value,
                LogCategory.COMMAND.value,
                f"Command {item.id} ({item.command_type}) expired",
                device_pk=item.device_id,
                metadata={"commandId": item.id},
            )
        if expired:
            _logger.info("Expired %d pending command(s)", len(expired))
        return expired
