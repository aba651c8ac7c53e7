"""Shared test fixtures and configuration for homeops tests."""

from unittest import mock

import pytest

from homeops.config import DeploymentSettings
from homeops.models import VMRequest
from homeops.power_controller import RetrySchedule

from hypervisor_fixtures import FakeClock, FakeHypervisorAPI


@pytest.fixture
def fake_api():
    """In-memory hypervisor."""
    return FakeHypervisorAPI()


@pytest.fixture
def fake_clock():
    """Clock that never really sleeps."""
    return FakeClock()


@pytest.fixture
def make_request():
    """Factory for valid VMRequests with overridable fields."""

    def _make(**overrides):
        values = {
            "name": "node-a",
            "cpus": 4,
            "memory_mb": 8192,
            "boot_disk_gb": 100,
            "data_disk_gb": 200,
            "datastore": "ds1",
            "network": "vl999",
            "iso": "[datastore1] talos.iso",
        }
        values.update(overrides)
        return VMRequest(**values)

    return _make


@pytest.fixture
def settings():
    """Settings with the production schedule and quiescence."""
    return DeploymentSettings(task_timeout=30.0, poll_interval=1.0, power_on_schedule=RetrySchedule())


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('homeops.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        # Setup common return values
        proxmox.nodes.return_value.qemu.get.return_value = []
        proxmox.cluster.resources.get.return_value = []

        yield proxmox


@pytest.fixture
def mock_env(monkeypatch):
    """Set up test environment variables."""
    for key in (
        "HOMEOPS_TASK_TIMEOUT",
        "HOMEOPS_TASK_POLL_INTERVAL",
        "HOMEOPS_DISK_QUIESCE_SECONDS",
        "HOMEOPS_POWER_ON_SCHEDULE",
        "HOMEOPS_MAX_CONCURRENCY",
        "HOMEOPS_NODE_PROFILES",
        "HOMEOPS_INSECURE",
    ):
        monkeypatch.delenv(key, raising=False)

    env_vars = {
        "VSPHERE_HOST": "esxi.example.com",
        "VSPHERE_USERNAME": "root",
        "VSPHERE_PASSWORD": "secretvalue",
        "PROXMOX_HOST": "pve.example.com",
        "PROXMOX_TOKEN_ID": "root@pam!homeops",
        "PROXMOX_TOKEN_SECRET": "secretvalue",
        "PROXMOX_NODE": "pve",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars
