from __future__ import annotations

from datetime import timedelta

from sqlmodel import select

from tracker.models import CommandType, DeviceStatusHistory, utcnow
from tracker.schemas import CommandCreate, HeartbeatReport, LocationReport


def _history(store, device):
    with store.begin() as repo:
        return list(repo.session.exec(select(DeviceStatusHistory).where(DeviceStatusHistory.device_id == device.id)))


def test_registered_device_starts_offline_with_defaults(service, device):
    assert device.status == "offline"
    assert device.last_seen is None
    assert device.config["heartbeat_interval"] == 300000


def test_heartbeat_marks_online_and_records_history(service, device, store):
    reply = service.heartbeat(device.device_id, HeartbeatReport(battery_level="80", signal_quality=20))

    assert reply.success
    assert reply.config == device.config
    refreshed = service.get_device(device.device_id)
    assert refreshed.status == "online"
    assert refreshed.last_seen is not None
    rows = _history(store, device)
    assert [(h.previous_status, h.status) for h in rows] == [("offline", "online")]


def test_repeated_heartbeat_does_not_duplicate_history(service, device, store):
    service.heartbeat(device.device_id, HeartbeatReport())
    service.heartbeat(device.device_id, HeartbeatReport())

    assert len(_history(store, device)) == 1


def test_heartbeat_reports_device_status(service, device):
    service.heartbeat(device.device_id, HeartbeatReport(status="lost_mode"))

    assert service.get_device(device.device_id).status == "lost_mode"


def test_heartbeat_delivers_pending_queue(service, device):
    service.create_command(device.device_id, CommandCreate(command_type=CommandType.REBOOT))
    service.create_command(
        device.device_id,
        CommandCreate(command_type=CommandType.UPDATE_CONFIG, command_data={"gps_interval": 5000}),
    )

    reply = service.heartbeat(device.device_id, HeartbeatReport())

    assert sorted(c.command_type for c in reply.commands) == ["reboot", "update_config", "update_config"]
    assert sorted(c.kind for c in reply.commands) == ["command", "command", "configuration"]
    # delivery alone does not move rows out of pending
    assert all(c.status == "pending" for c in reply.commands)


def test_sweep_marks_silent_devices_offline(service, device, store):
    service.heartbeat(device.device_id, HeartbeatReport())

    assert service.sweep_offline(900) == 0
    assert service.sweep_offline(900, now=utcnow() + timedelta(hours=1)) == 1

    assert service.get_device(device.device_id).status == "offline"
    assert _history(store, device)[-1].status == "offline"
    logs = service.system_logs(device.device_id).logs
    assert any(log.category == "network" and log.level == "warning" for log in logs)


def test_sweep_skips_devices_never_seen(service, device):
    assert service.sweep_offline(0, now=utcnow() + timedelta(hours=1)) == 0


def test_location_report_keeps_reported_status(service, device, store):
    service.heartbeat(device.device_id, HeartbeatReport(status="lost_mode"))

    service.record_location(device.device_id, LocationReport(latitude="45.1", longitude="9.2"))

    refreshed = service.get_device(device.device_id)
    assert refreshed.status == "lost_mode"
    assert [h.status for h in _history(store, device)] == ["lost_mode"]


def test_location_report_brings_offline_device_online(service, device):
    service.record_location(device.device_id, LocationReport(latitude="45.1", longitude="9.2"))

    assert service.get_device(device.device_id).status == "online"
