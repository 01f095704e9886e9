from __future__ import annotations

from datetime import timedelta

import pytest

from tracker.commands import (
    COMMAND_TRANSITIONS,
    CONFIGURATION_TRANSITIONS,
    transition_path,
)
from tracker.errors import (
    ConflictError,
    DuplicatePendingCommandError,
    InputValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from tracker.models import CommandType, utcnow
from tracker.schemas import CommandCreate, DeviceRegister


def _row(store, item_id):
    with store.begin() as repo:
        return repo.get_queue_item(item_id)


def _create(service, device, command_type, data=None, **kwargs):
    return service.create_command(
        device.device_id, CommandCreate(command_type=command_type, command_data=data, **kwargs)
    )


def test_transition_path_walks_forward():
    assert transition_path(COMMAND_TRANSITIONS, "pending", "executed") == ["sent", "acknowledged", "executed"]
    assert transition_path(COMMAND_TRANSITIONS, "sent", "failed") == ["failed"]
    assert transition_path(COMMAND_TRANSITIONS, "pending", "pending") == []
    assert transition_path(CONFIGURATION_TRANSITIONS, "pending", "applied") == ["sent", "applied"]


def test_transition_path_rejects_backwards_and_terminal_moves():
    assert transition_path(COMMAND_TRANSITIONS, "executed", "sent") is None
    assert transition_path(COMMAND_TRANSITIONS, "cancelled", "sent") is None
    assert transition_path(CONFIGURATION_TRANSITIONS, "pending", "executed") is None


def test_create_queues_pending_command(service, device):
    out = _create(service, device, CommandType.REBOOT)

    assert out.status == "pending"
    assert out.kind == "command"
    assert out.command_type == "reboot"
    assert [c.id for c in service.list_pending(device.device_id)] == [out.id]
    messages = [log.message for log in service.system_logs(device.device_id).logs]
    assert "Command created: reboot" in messages


def test_duplicate_pending_type_conflicts_with_existing_id(service, device):
    first = _create(service, device, CommandType.GET_LOCATION)

    with pytest.raises(ConflictError) as excinfo:
        _create(service, device, CommandType.GET_LOCATION)

    assert excinfo.value.existing_command_id == first.id
    assert excinfo.value.context() == {"existingCommandId": first.id, "canCancel": True}
    assert len(service.list_pending(device.device_id)) == 1


def test_same_type_allowed_again_after_previous_leaves_pending(service, device):
    first = _create(service, device, CommandType.REBOOT)
    service.acknowledge(device.device_id, first.id, "executed")

    second = _create(service, device, CommandType.REBOOT)

    assert second.id != first.id
    assert [c.id for c in service.list_pending(device.device_id)] == [second.id]


def test_pending_commands_are_per_device(service, device):
    other = service.register_device(DeviceRegister(device_id="AA:BB:CC:99:99:99"))
    _create(service, device, CommandType.REBOOT)

    out = _create(service, other, CommandType.REBOOT)

    assert out.status == "pending"
    assert len(service.list_pending(other.device_id)) == 1


def test_update_config_writes_command_and_configuration(service, device):
    out = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})

    pending = service.list_pending(device.device_id)

    assert out.kind == "command"
    assert sorted(c.kind for c in pending) == ["command", "configuration"]
    assert all(c.command_type == "update_config" for c in pending)
    assert all(c.command_data == {"gps_interval": 5000} for c in pending)


def test_update_config_supersedes_previous_request(service, device, store):
    first = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})
    second = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 20000})

    pending = service.list_pending(device.device_id)

    assert sorted(c.kind for c in pending) == ["command", "configuration"]
    assert all(c.command_data == {"gps_interval": 20000} for c in pending)
    assert second.id in {c.id for c in pending}
    assert _row(store, first.id).status == "cancelled"


def test_update_config_requires_object_payload(service, device):
    with pytest.raises(InputValidationError):
        _create(service, device, CommandType.UPDATE_CONFIG)
    assert service.list_pending(device.device_id) == []


def test_enable_lost_mode_cancels_pending_disable(service, device, store):
    disable = _create(service, device, CommandType.DISABLE_LOST_MODE)

    enable = _create(service, device, CommandType.ENABLE_LOST_MODE)

    assert [c.id for c in service.list_pending(device.device_id)] == [enable.id]
    assert _row(store, disable.id).status == "cancelled"


def test_lost_mode_repeat_request_conflicts(service, device):
    first = service.set_lost_mode(device.device_id, True)

    with pytest.raises(ConflictError) as excinfo:
        service.set_lost_mode(device.device_id, True)

    assert excinfo.value.existing_command_id == first.command_id
    status = service.device_status(device.device_id)
    assert status.has_lost_mode_command
    assert status.lost_mode_command.id == first.command_id


def test_ack_defaults_to_acknowledged(service, device, store):
    out = _create(service, device, CommandType.REBOOT)

    ack = service.acknowledge(device.device_id, out.id)

    assert ack.command.status == "acknowledged"
    row = _row(store, out.id)
    assert row.sent_at is not None
    assert row.acknowledged_at is not None
    assert row.executed_at is None


def test_ack_executed_stamps_every_step(service, device, store):
    out = _create(service, device, CommandType.GET_LOCATION)

    ack = service.acknowledge(device.device_id, out.id, "executed")

    assert ack.command.status == "executed"
    row = _row(store, out.id)
    assert row.sent_at and row.acknowledged_at and row.executed_at
    assert service.list_pending(device.device_id) == []


def test_ack_repeated_status_is_noop(service, device):
    out = _create(service, device, CommandType.REBOOT)
    service.acknowledge(device.device_id, out.id, "executed")

    again = service.acknowledge(device.device_id, out.id, "executed")

    assert again.command.status == "executed"


def test_ack_backwards_is_invalid_transition(service, device):
    out = _create(service, device, CommandType.REBOOT)
    service.acknowledge(device.device_id, out.id, "executed")

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.acknowledge(device.device_id, out.id, "sent")

    assert excinfo.value.status_code == 409
    assert excinfo.value.context() == {"currentStatus": "executed", "requestedStatus": "sent"}


def test_ack_unknown_status_rejected(service, device):
    out = _create(service, device, CommandType.REBOOT)

    with pytest.raises(InputValidationError):
        service.acknowledge(device.device_id, out.id, "done")


def test_ack_unknown_id_not_found(service, device):
    with pytest.raises(NotFoundError):
        service.acknowledge(device.device_id, "missing-id", "executed")


def test_ack_other_devices_command_not_found(service, device):
    other = service.register_device(DeviceRegister(device_id="AA:BB:CC:99:99:99"))
    out = _create(service, other, CommandType.REBOOT)

    with pytest.raises(NotFoundError):
        service.acknowledge(device.device_id, out.id, "executed")


def test_ack_configuration_id_applies_config(service, device, store):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})
    configuration = next(c for c in service.list_pending(device.device_id) if c.kind == "configuration")

    ack = service.acknowledge(device.device_id, configuration.id, "executed")

    assert ack.command.id == configuration.id
    assert ack.command.status == "applied"
    assert ack.command.executed_at is not None
    assert ack.config["gps_interval"] == 5000
    assert ack.config["heartbeat_interval"] == 300000
    assert _row(store, command.id).status == "executed"
    assert service.get_config(device.device_id)["gps_interval"] == 5000
    assert service.list_pending(device.device_id) == []


def test_ack_update_config_command_applies_config(service, device):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"lost_mode_interval": 1000})

    ack = service.acknowledge(device.device_id, command.id, "executed")

    assert ack.command.status == "executed"
    assert ack.config["lost_mode_interval"] == 1000
    assert service.list_pending(device.device_id) == []


def test_ack_failed_does_not_touch_config(service, device):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 1})

    ack = service.acknowledge(device.device_id, command.id, "failed")

    assert ack.command.status == "failed"
    assert service.get_config(device.device_id)["gps_interval"] == 10000


def test_cancel_pending_command(service, device):
    out = _create(service, device, CommandType.REBOOT)

    cancelled = service.cancel_command(device.device_id, out.id)

    assert cancelled.status == "cancelled"
    assert service.list_pending(device.device_id) == []


def test_cancel_twice_is_noop(service, device):
    out = _create(service, device, CommandType.REBOOT)
    service.cancel_command(device.device_id, out.id)

    again = service.cancel_command(device.device_id, out.id)

    assert again.status == "cancelled"


def test_cancel_update_config_cancels_configuration(service, device):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})

    service.cancel_command(device.device_id, command.id)

    assert service.list_pending(device.device_id) == []


def test_cancel_acknowledged_command_rejected(service, device):
    out = _create(service, device, CommandType.REBOOT)
    service.acknowledge(device.device_id, out.id)

    with pytest.raises(InvalidTransitionError):
        service.cancel_command(device.device_id, out.id)


def test_create_rejects_past_expiry(service, device):
    with pytest.raises(InputValidationError):
        _create(service, device, CommandType.REBOOT, expires_at=utcnow() - timedelta(minutes=1))


def test_expire_sweep_marks_stale_rows(service, device, store):
    out = _create(service, device, CommandType.REBOOT, expires_at=utcnow() + timedelta(minutes=5))

    assert service.expire_commands(utcnow()) == 0
    assert service.expire_commands(utcnow() + timedelta(minutes=10)) == 1

    assert _row(store, out.id).status == "expired"
    assert service.list_pending(device.device_id) == []


def test_pending_view_hides_rows_past_expiry(service, device, store):
    out = _create(service, device, CommandType.REBOOT, expires_at=utcnow() + timedelta(minutes=5))

    with store.begin() as repo:
        row = repo.get_device_by_external_id(device.device_id)
        later = service.commands.list_pending(repo, row, utcnow() + timedelta(minutes=10))
        now = service.commands.list_pending(repo, row)

    assert later == []
    assert [c.id for c in now] == [out.id]


def test_unique_index_rejects_second_pending_row(store, device):
    with pytest.raises(DuplicatePendingCommandError):
        with store.begin() as repo:
            repo.create_command(device.id, CommandType.REBOOT)
            repo.create_command(device.id, CommandType.REBOOT)

    with store.begin() as repo:
        assert list(repo.list_pending_commands(device.id)) == []


def test_two_step_ack_carries_configuration_to_applied(service, device, store):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})
    configuration = next(c for c in service.list_pending(device.device_id) if c.kind == "configuration")

    service.acknowledge(device.device_id, command.id, "acknowledged")
    assert _row(store, configuration.id).status == "sent"

    service.acknowledge(device.device_id, command.id, "executed")

    assert _row(store, command.id).status == "executed"
    assert _row(store, configuration.id).status == "applied"
    assert service.get_config(device.device_id)["gps_interval"] == 5000


def test_update_config_rows_are_linked(service, device, store):
    command = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})
    configuration = next(c for c in service.list_pending(device.device_id) if c.kind == "configuration")

    assert _row(store, command.id).pair_id == configuration.id
    assert _row(store, configuration.id).pair_id == command.id


def test_superseded_pair_is_not_advanced_by_new_ack(service, device, store):
    first = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 5000})
    first_config = _row(store, first.id).pair_id
    second = _create(service, device, CommandType.UPDATE_CONFIG, {"gps_interval": 20000})

    service.acknowledge(device.device_id, second.id, "executed")

    assert _row(store, first_config).status == "cancelled"
    assert _row(store, _row(store, second.id).pair_id).status == "applied"
