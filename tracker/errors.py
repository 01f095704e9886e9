"""Error taxonomy shared by the service layer and the transports."""

from __future__ import annotations

from typing import Any


class TrackerError(Exception):
    """Base exception for all tracker errors."""

    status_code = 500

    def context(self) -> dict[str, Any]:
        return {}


class NotFoundError(TrackerError):
    """Referenced device, command, configuration, geofence or alert does not exist."""

    status_code = 404


class ConflictError(TrackerError):
    """A pending command of the same type already exists for the device."""

    status_code = 409

    def __init__(self, message: str, *, existing_command_id: str | None = None) -> None:
        self.existing_command_id = existing_command_id
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        if self.existing_command_id is None:
            return {}
        return {"existingCommandId": self.existing_command_id, "canCancel": True}


class InvalidTransitionError(ConflictError):
    """Requested status is not reachable from the row's current status."""

    def __init__(self, message: str, *, current_status: str, requested_status: str) -> None:
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"currentStatus": self.current_status, "requestedStatus": self.requested_status}


class InputValidationError(TrackerError):
    """Malformed input, rejected before any write."""

    status_code = 400


class StoreError(TrackerError):
    """Underlying persistence failure."""


class DuplicatePendingCommandError(StoreError):
    """Insert violated the one-pending-row-per-type index.

    Only seen when two requests race past the dedup check; the service turns
    it into a :class:`ConflictError`.
    """

    status_code = 409
