"""Tests for power_controller module."""

import pytest

from homeops.errors import PowerOnExhaustedError, ProvisioningCancelledError, RemoteAPIError
from homeops.models import Phase, PowerState, ProvisionedVM, Stage
from homeops.power_controller import PowerController, PowerOnState, RetrySchedule
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CancelToken

from hypervisor_fixtures import FakeClock


@pytest.fixture
def vm(fake_api, make_request):
    """A VM in phase REREGISTERED."""
    plan = VMSpecBuilder().build(make_request())
    remote_id = fake_api.create_vm(plan.shell, plan.controllers).wait(1)
    return ProvisionedVM("node-a", remote_id, Phase.REREGISTERED)


class TestRetrySchedule:
    """Retry schedule parsing."""

    def test_default(self):
        """Test the default schedule."""
        schedule = RetrySchedule()
        assert schedule.delays == (10.0, 30.0, 60.0)
        assert schedule.max_attempts == 4
        assert schedule.total_wait == 100.0

    def test_from_string(self):
        """Test parsing a comma separated schedule."""
        assert RetrySchedule.from_string("5, 15").delays == (5.0, 15.0)

    def test_from_empty_string(self):
        """Test an empty schedule allows one attempt."""
        assert RetrySchedule.from_string("").max_attempts == 1

    def test_invalid(self):
        """Test malformed and negative schedules are rejected."""
        with pytest.raises(ValueError):
            RetrySchedule.from_string("10,soon")
        with pytest.raises(ValueError):
            RetrySchedule((-1.0,))

    def test_immediate(self):
        """Test zero-delay schedules."""
        assert RetrySchedule.immediate(2).delays == (0.0, 0.0)


def test_power_on_first_try(fake_api, fake_clock, vm):
    """Test a VM powers on without retries."""
    controller = PowerController(fake_api, clock=fake_clock)

    assert controller.power_on(vm) is True
    assert vm.phase == Phase.ON
    assert controller.state == PowerOnState.ON
    assert controller.attempts == 1
    assert fake_clock.sleeps == []


def test_power_on_retries_on_schedule(fake_api, fake_clock, vm):
    """Test failures are retried after 10s then 30s."""
    fake_api.power_on_failures = 2
    controller = PowerController(fake_api, clock=fake_clock)

    controller.power_on(vm)

    assert fake_clock.sleeps == [10.0, 30.0]
    assert controller.attempts == 3
    assert vm.phase == Phase.ON
    assert fake_api.vms[vm.remote_id].power == PowerState.ON


def test_power_on_exhausted(fake_api, fake_clock, vm):
    """Test four failed attempts exhaust the schedule."""
    fake_api.power_on_failures = 10
    controller = PowerController(fake_api, clock=fake_clock)

    with pytest.raises(PowerOnExhaustedError) as exc_info:
        controller.power_on(vm)

    error = exc_info.value
    assert error.attempts == 4
    assert error.total_wait == 100.0
    assert error.stage == Stage.POWER_ON
    assert isinstance(error.last_error, RemoteAPIError)
    assert fake_clock.sleeps == [10.0, 30.0, 60.0]
    assert len(fake_api.method_calls("power_on")) == 4
    assert controller.state == PowerOnState.FAILED
    assert vm.phase == Phase.REREGISTERED


def test_power_on_custom_schedule(fake_api, fake_clock, vm):
    """Test a custom schedule bounds the attempts."""
    fake_api.power_on_failures = 10
    controller = PowerController(fake_api, RetrySchedule((1.0,)), clock=fake_clock)

    with pytest.raises(PowerOnExhaustedError) as exc_info:
        controller.power_on(vm)

    assert exc_info.value.attempts == 2
    assert fake_clock.sleeps == [1.0]


def test_power_on_already_on(fake_api, fake_clock, vm):
    """Test an already running VM is left alone."""
    fake_api.vms[vm.remote_id].power = PowerState.ON
    controller = PowerController(fake_api, clock=fake_clock)

    assert controller.power_on(vm) is False
    assert vm.phase == Phase.ON
    assert fake_api.method_calls("power_on") == []


def test_power_on_twice_is_idempotent(fake_api, fake_clock, vm):
    """Test a second power-on issues no further power-on call."""
    controller = PowerController(fake_api, clock=fake_clock)
    controller.power_on(vm)

    assert controller.power_on(vm) is False
    assert len(fake_api.method_calls("power_on")) == 1


def test_power_on_by_id(fake_api, fake_clock, vm):
    """Test powering on by remote id."""
    assert PowerController(fake_api, clock=fake_clock).power_on(vm.remote_id) is True
    assert fake_api.vms[vm.remote_id].power == PowerState.ON


def test_cancel_during_backoff(fake_api, vm):
    """Test cancellation during a retry wait stops without further attempts."""
    cancel = CancelToken()
    fake_api.power_on_failures = 10

    clock = FakeClock(on_sleep=lambda seconds: cancel.cancel())

    with pytest.raises(ProvisioningCancelledError) as exc_info:
        PowerController(fake_api, clock=clock).power_on(vm, cancel)

    assert exc_info.value.stage == Stage.POWER_ON
    assert len(fake_api.method_calls("power_on")) == 1


def test_power_off(fake_api, fake_clock, vm):
    """Test power off only acts on running VMs."""
    controller = PowerController(fake_api, clock=fake_clock)
    assert controller.power_off(vm.remote_id) is False

    fake_api.vms[vm.remote_id].power = PowerState.ON
    assert controller.power_off(vm.remote_id) is True
    assert fake_api.vms[vm.remote_id].power == PowerState.OFF
