"""Persistence collaborator.

``Store`` owns the engine and hands out ``StoreSession`` objects, one per
transaction. Every CRUD operation the service layer needs lives on
``StoreSession`` so that a multi-row operation (e.g. the ``update_config``
command plus its configuration row) commits or rolls back as a unit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Iterator, Sequence

from sqlalchemy import func, or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from .db import get_session
from .errors import DuplicatePendingCommandError, StoreError
from .models import (
    CommandStatus,
    CommandType,
    ConfigurationStatus,
    Device,
    DeviceCommand,
    DeviceGeofenceState,
    DeviceLocation,
    DeviceStatusHistory,
    Geofence,
    GeofenceAlert,
    QueueKind,
    SystemLog,
    utcnow,
)

_logger = logging.getLogger(__name__)

# status -> timestamp column stamped when a queue row enters that status
_STATUS_STAMPS = {
    CommandStatus.SENT.value: "sent_at",
    CommandStatus.ACKNOWLEDGED.value: "acknowledged_at",
    CommandStatus.EXECUTED.value: "executed_at",
    ConfigurationStatus.APPLIED.value: "executed_at",
}


class Store:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def begin(self) -> Iterator["StoreSession"]:
        session = get_session(self.engine)
        try:
            yield StoreSession(session)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            _logger.error("Store transaction failed: %s", exc)
            raise StoreError(f"Storage failure: {exc.__class__.__name__}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class StoreSession:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _add(self, row: Any) -> Any:
        self.session.add(row)
        self.session.flush()
        return row

    def ping(self) -> None:
        self.session.connection().execute(text("select 1"))

    # ---------------- devices ----------------
    def get_device(self, device_pk: str) -> Device | None:
        return self.session.get(Device, device_pk)

    def get_device_by_external_id(self, external_id: str) -> Device | None:
        return self.session.exec(select(Device).where(Device.device_id == external_id)).first()

    def list_devices(self) -> Sequence[Device]:
        return self.session.exec(select(Device).order_by(col(Device.created_at).desc())).all()

    def create_device(self, **fields: Any) -> Device:
        return self._add(Device(**fields))

    def update_device(self, device: Device, **changes: Any) -> Device:
        for key, value in changes.items():
            setattr(device, key, value)
        device.updated_at = utcnow()
        return self._add(device)

    def list_devices_seen_before(self, cutoff: datetime) -> Sequence[Device]:
        stmt = select(Device).where(
            col(Device.last_seen).is_not(None),
            col(Device.last_seen) < cutoff,
            Device.status != "offline",
        )
        return self.session.exec(stmt).all()

    def add_status_history(self, **fields: Any) -> DeviceStatusHistory:
        return self._add(DeviceStatusHistory(**fields))

    # ---------------- locations ----------------
    def add_location(self, **fields: Any) -> DeviceLocation:
        return self._add(DeviceLocation(**fields))

    def get_latest_location(self, device_pk: str) -> DeviceLocation | None:
        stmt = (
            select(DeviceLocation)
            .where(DeviceLocation.device_id == device_pk)
            .order_by(col(DeviceLocation.timestamp).desc(), col(DeviceLocation.id).desc())
        )
        return self.session.exec(stmt).first()

    def get_locations(self, device_pk: str, limit: int = 100) -> Sequence[DeviceLocation]:
        stmt = (
            select(DeviceLocation)
            .where(DeviceLocation.device_id == device_pk)
            .order_by(col(DeviceLocation.timestamp).desc(), col(DeviceLocation.id).desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    # ---------------- command queue ----------------
    def _insert_queue_row(self, row: DeviceCommand) -> DeviceCommand:
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicatePendingCommandError(
                f"{row.command_type} already pending for device {row.device_id}"
            ) from exc
        return row

    def create_command(
        self,
        device_pk: str,
        command_type: CommandType,
        command_data: dict | None = None,
        *,
        expires_at: datetime | None = None,
        user_id: str | None = None,
    ) -> DeviceCommand:
        return self._insert_queue_row(
            DeviceCommand(
                device_id=device_pk,
                kind=QueueKind.COMMAND.value,
                command_type=command_type.value,
                command_data=command_data,
                status=CommandStatus.PENDING.value,
                expires_at=expires_at,
                user_id=user_id,
            )
        )

    def create_configuration(
        self,
        device_pk: str,
        config_data: dict,
        *,
        expires_at: datetime | None = None,
    ) -> DeviceCommand:
        return self._insert_queue_row(
            DeviceCommand(
                device_id=device_pk,
                kind=QueueKind.CONFIGURATION.value,
                command_type=CommandType.UPDATE_CONFIG.value,
                command_data=config_data,
                status=ConfigurationStatus.PENDING.value,
                expires_at=expires_at,
            )
        )

    def link_pair(self, command: DeviceCommand, configuration: DeviceCommand) -> None:
        command.pair_id = configuration.id
        configuration.pair_id = command.id
        self.session.add_all([command, configuration])
        self.session.flush()

    def get_queue_item(self, item_id: str) -> DeviceCommand | None:
        return self.session.get(DeviceCommand, item_id)

    def _pending_stmt(self, device_pk: str, kind: QueueKind, now: datetime | None):
        stmt = select(DeviceCommand).where(
            DeviceCommand.device_id == device_pk,
            DeviceCommand.kind == kind.value,
            DeviceCommand.status == "pending",
        )
        if now is not None:
            stmt = stmt.where(
                or_(col(DeviceCommand.expires_at).is_(None), col(DeviceCommand.expires_at) > now)
            )
        return stmt.order_by(col(DeviceCommand.created_at), col(DeviceCommand.id))

    def list_pending_commands(self, device_pk: str, now: datetime | None = None) -> Sequence[DeviceCommand]:
        return self.session.exec(self._pending_stmt(device_pk, QueueKind.COMMAND, now)).all()

    def list_pending_configurations(self, device_pk: str, now: datetime | None = None) -> Sequence[DeviceCommand]:
        return self.session.exec(self._pending_stmt(device_pk, QueueKind.CONFIGURATION, now)).all()

    def find_pending_command(self, device_pk: str, command_type: CommandType) -> DeviceCommand | None:
        stmt = self._pending_stmt(device_pk, QueueKind.COMMAND, None).where(
            DeviceCommand.command_type == command_type.value
        )
        return self.session.exec(stmt).first()

    def update_queue_status(self, item: DeviceCommand, status: str, at: datetime | None = None) -> DeviceCommand:
        item.status = status
        stamp = _STATUS_STAMPS.get(status)
        if stamp is not None:
            setattr(item, stamp, at or utcnow())
        return self._add(item)

    def list_expired_pending(self, now: datetime, device_pk: str | None = None) -> Sequence[DeviceCommand]:
        stmt = select(DeviceCommand).where(
            DeviceCommand.status == "pending",
            col(DeviceCommand.expires_at).is_not(None),
            col(DeviceCommand.expires_at) <= now,
        )
        if device_pk is not None:
            stmt = stmt.where(DeviceCommand.device_id == device_pk)
        return self.session.exec(stmt).all()

    # ---------------- geofences ----------------
    def create_geofence(self, **fields: Any) -> Geofence:
        return self._add(Geofence(**fields))

    def get_geofence(self, geofence_id: str) -> Geofence | None:
        return self.session.get(Geofence, geofence_id)

    def list_geofences(self, device_pk: str, *, active_only: bool = False) -> Sequence[Geofence]:
        stmt = select(Geofence).where(Geofence.device_id == device_pk)
        if active_only:
            stmt = stmt.where(col(Geofence.is_active).is_(True))
        return self.session.exec(stmt.order_by(col(Geofence.created_at), col(Geofence.id))).all()

    def count_active_geofences(self, device_pk: str) -> int:
        stmt = (
            select(func.count())
            .select_from(Geofence)
            .where(Geofence.device_id == device_pk, col(Geofence.is_active).is_(True))
        )
        return int(self.session.exec(stmt).one())

    def delete_geofence(self, geofence: Geofence) -> None:
        states = self.session.exec(
            select(DeviceGeofenceState).where(DeviceGeofenceState.geofence_id == geofence.id)
        ).all()
        for state in states:
            self.session.delete(state)
        alerts = self.session.exec(select(GeofenceAlert).where(GeofenceAlert.geofence_id == geofence.id)).all()
        for alert in alerts:
            alert.geofence_id = None
            self.session.add(alert)
        self.session.delete(geofence)
        self.session.flush()

    def get_geofence_state(self, device_pk: str, geofence_id: str) -> DeviceGeofenceState | None:
        return self.session.get(DeviceGeofenceState, (device_pk, geofence_id))

    def set_geofence_state(self, device_pk: str, geofence_id: str, inside: bool) -> DeviceGeofenceState:
        state = self.get_geofence_state(device_pk, geofence_id)
        if state is None:
            state = DeviceGeofenceState(device_id=device_pk, geofence_id=geofence_id, inside=inside)
        else:
            state.inside = inside
            state.updated_at = utcnow()
        return self._add(state)

    def create_geofence_alert(self, **fields: Any) -> GeofenceAlert:
        return self._add(GeofenceAlert(**fields))

    def get_geofence_alert(self, alert_id: str) -> GeofenceAlert | None:
        return self.session.get(GeofenceAlert, alert_id)

    def list_geofence_alerts(self, device_pk: str, limit: int = 50) -> Sequence[GeofenceAlert]:
        stmt = (
            select(GeofenceAlert)
            .where(GeofenceAlert.device_id == device_pk)
            .order_by(col(GeofenceAlert.triggered_at).desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def mark_alert_read(self, alert: GeofenceAlert) -> GeofenceAlert:
        if not alert.is_read:
            alert.is_read = True
            alert.read_at = utcnow()
            self._add(alert)
        return alert

    def count_unread_alerts(self, device_pk: str) -> int:
        stmt = (
            select(func.count())
            .select_from(GeofenceAlert)
            .where(GeofenceAlert.device_id == device_pk, col(GeofenceAlert.is_read).is_(False))
        )
        return int(self.session.exec(stmt).one())

    # ---------------- system logs ----------------
    def append_system_log(
        self,
        level: str,
        category: str,
        message: str,
        *,
        device_pk: str | None = None,
        user_id: str | None = None,
        metadata: dict | None = None,
    ) -> SystemLog:
        return self._add(
            SystemLog(
                device_id=device_pk,
                user_id=user_id,
                level=level,
                category=category,
                message=message,
                meta=metadata,
            )
        )

    def _log_filters(self, stmt, device_pk: str | None, day: date | None):
        if device_pk is not None:
            stmt = stmt.where(SystemLog.device_id == device_pk)
        if day is not None:
            start = datetime(day.year, day.month, day.day)
            stmt = stmt.where(col(SystemLog.timestamp) >= start, col(SystemLog.timestamp) < start + timedelta(days=1))
        return stmt

    def list_system_logs(
        self,
        device_pk: str | None = None,
        day: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[SystemLog]:
        stmt = self._log_filters(select(SystemLog), device_pk, day)
        stmt = stmt.order_by(col(SystemLog.timestamp).desc(), col(SystemLog.id).desc()).offset(offset).limit(limit)
        return self.session.exec(stmt).all()

    def count_system_logs(self, device_pk: str | None = None, day: date | None = None) -> int:
        stmt = self._log_filters(select(func.count()).select_from(SystemLog), device_pk, day)
        return int(self.session.exec(stmt).one())
