"""Tests for tasks module."""

import pytest

from homeops.errors import ProvisioningCancelledError, RemoteAPIError, TaskTimeoutError
from homeops.models import Stage
from homeops.tasks import CancelToken, CompletedTask, RemoteTask, SystemClock, TaskState, TaskStatus

from hypervisor_fixtures import FakeClock, RunningTask


class SequenceTask(RemoteTask):
    """Task that walks through a list of statuses."""

    description = "test task"

    def __init__(self, statuses):
        self.statuses = list(statuses)

    def poll(self):
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]


def test_wait_returns_result(fake_clock):
    """Test a task that succeeds after polling returns its result."""
    task = SequenceTask([
        TaskStatus(TaskState.QUEUED),
        TaskStatus(TaskState.RUNNING),
        TaskStatus(TaskState.SUCCESS, result="vm-42"),
    ])

    assert task.wait(10.0, poll_interval=1.0, clock=fake_clock) == "vm-42"
    assert fake_clock.sleeps == [1.0, 1.0]


def test_wait_error(fake_clock):
    """Test a failed task raises with the remote message."""
    task = CompletedTask(error="Invalid configuration for device '0'", description="reconfigure node-a")

    with pytest.raises(RemoteAPIError, match="reconfigure node-a failed: Invalid configuration"):
        task.wait(10.0, clock=fake_clock)


def test_wait_timeout(fake_clock):
    """Test a task that never finishes times out."""
    task = RunningTask()

    with pytest.raises(TaskTimeoutError) as exc_info:
        task.wait(3.0, poll_interval=1.0, clock=fake_clock)

    assert exc_info.value.timeout == 3.0
    assert isinstance(exc_info.value, TimeoutError)
    assert task.polls == 4


def test_wait_cancelled(fake_clock):
    """Test waiting stops when cancelled."""
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(ProvisioningCancelledError):
        RunningTask().wait(10.0, cancel=cancel, clock=fake_clock)


def test_cancel_token():
    """Test cancel token state."""
    cancel = CancelToken()
    cancel.raise_if_cancelled()
    assert not cancel.cancelled

    cancel.cancel()

    assert cancel.cancelled
    with pytest.raises(ProvisioningCancelledError) as exc_info:
        cancel.raise_if_cancelled(Stage.POWER_ON)
    assert exc_info.value.stage == Stage.POWER_ON


def test_system_clock_sleep_cancelled():
    """Test the system clock wakes up on cancellation."""
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(ProvisioningCancelledError):
        SystemClock().sleep(30.0, cancel)


def test_fake_clock_records():
    """Test the fake clock advances without sleeping."""
    clock = FakeClock()
    clock.sleep(5.0)

    assert clock.monotonic() == 5.0
