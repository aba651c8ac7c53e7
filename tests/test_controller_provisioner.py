"""Tests for controller_provisioner module."""

import pytest

from homeops.controller_provisioner import ControllerProvisioner
from homeops.errors import RemoteAPIError, TaskTimeoutError, ValidationError
from homeops.models import DeviceKind, Phase, Stage
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CompletedTask

from hypervisor_fixtures import RunningTask


def test_create_shell(fake_api, fake_clock, make_request):
    """Test the shell is created with controllers only."""
    plan = VMSpecBuilder().build(make_request())

    vm = ControllerProvisioner(fake_api, clock=fake_clock).create_shell(plan.controllers, plan.shell)

    assert vm.phase == Phase.CONTROLLERS_CREATED
    assert vm.remote_id in fake_api.vms
    assert len(vm.controllers) == 2
    assert not any(record.is_resolved for record in vm.controllers)
    (shell, controllers), = fake_api.method_calls("create_vm")
    assert all(c.kind == DeviceKind.CONTROLLER for c in controllers)


def test_create_shell_rejects_non_controllers(fake_api, make_request):
    """Test disks cannot be submitted with the shell."""
    plan = VMSpecBuilder().build(make_request())

    with pytest.raises(ValidationError) as exc_info:
        ControllerProvisioner(fake_api).create_shell(plan.controllers + plan.devices, plan.shell)

    assert exc_info.value.stage == Stage.CONTROLLER_PROVISIONING
    assert fake_api.method_calls("create_vm") == []


def test_create_shell_task_failure(fake_api, fake_clock, make_request):
    """Test a failed creation task is tagged and leaves no remote id."""
    fake_api.task_errors["create_vm"] = "insufficient resources"
    plan = VMSpecBuilder().build(make_request())

    with pytest.raises(RemoteAPIError) as exc_info:
        ControllerProvisioner(fake_api, clock=fake_clock).create_shell(plan.controllers, plan.shell)

    error = exc_info.value
    assert error.stage == Stage.CONTROLLER_PROVISIONING
    assert error.vm_name == "node-a"
    assert not error.remote_created
    assert "insufficient resources" in str(error)


def test_create_shell_timeout(fake_api, fake_clock, make_request, monkeypatch):
    """Test a creation task that never finishes times out."""
    monkeypatch.setattr(fake_api, "create_vm", lambda shell, controllers: RunningTask())
    plan = VMSpecBuilder().build(make_request())
    provisioner = ControllerProvisioner(fake_api, timeout=5.0, poll_interval=1.0, clock=fake_clock)

    with pytest.raises(TaskTimeoutError) as exc_info:
        provisioner.create_shell(plan.controllers, plan.shell)

    assert exc_info.value.stage == Stage.CONTROLLER_PROVISIONING
    assert fake_clock.now >= 5.0


def test_create_shell_without_id(fake_api, fake_clock, make_request, monkeypatch):
    """Test a task result without a VM id is an error."""
    monkeypatch.setattr(fake_api, "create_vm", lambda shell, controllers: CompletedTask(result=None))
    plan = VMSpecBuilder().build(make_request())

    with pytest.raises(RemoteAPIError, match="without returning a VM id"):
        ControllerProvisioner(fake_api, clock=fake_clock).create_shell(plan.controllers, plan.shell)
