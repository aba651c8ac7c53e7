"""Tests for proxmox_backend module."""

from unittest import mock

import pytest

from homeops.disk_provisioner import bind
from homeops.errors import StructuralInvariantError, ValidationError
from homeops.models import (
    BusRole,
    ControllerAllocation,
    ControllerType,
    DeviceIntent,
    DeviceKind,
    Pending,
    Phase,
    PowerState,
    Resolved,
    Stage,
)
from homeops.proxmox_api import ProxmoxClient
from homeops.proxmox_backend import (
    PROXMOX_ROLE_BUSES,
    ProxmoxBackend,
    ProxmoxVMOptions,
    config_controllers,
    device_options,
    shell_options,
    to_storage_iso,
)
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CompletedTask

ALLOCATION = ControllerAllocation(
    {BusRole.BOOT: Resolved(0), BusRole.DATA: Resolved(1), BusRole.OPTICAL: Resolved(2)}
)


def _plan(make_request, **overrides):
    return VMSpecBuilder(role_buses=PROXMOX_ROLE_BUSES).build(make_request(**overrides))


@pytest.fixture
def client():
    """ProxmoxClient double for a node with no VMs."""
    client = mock.MagicMock(spec=ProxmoxClient)
    client.node = "pve"
    client.find_vm.return_value = None
    client.next_vmid.return_value = 100
    client.create_vm.side_effect = lambda vmid, options: CompletedTask(result=str(vmid))
    client.get_config.return_value = {"scsihw": "virtio-scsi-single", "ide2": "none,media=cdrom"}
    client.update_config.return_value = CompletedTask()
    client.power_state.return_value = PowerState.OFF
    client.power_on.return_value = CompletedTask()
    return client


@pytest.fixture
def backend(client, settings, fake_clock):
    return ProxmoxBackend(client, settings, options=ProxmoxVMOptions(), clock=fake_clock)


@pytest.mark.parametrize("iso,expected", [
    ("[local] talos.iso", "local:iso/talos.iso"),
    ("[nas] images/talos.iso", "nas:iso/talos.iso"),
    ("local:iso/talos.iso", "local:iso/talos.iso"),
    ("talos.iso", "local:iso/talos.iso"),
])
def test_to_storage_iso(iso, expected):
    """Test ISO path conversion to Proxmox volume ids."""
    assert to_storage_iso(iso, "local") == expected


class TestShellOptions:
    """Create-call options."""

    def test_defaults(self, make_request):
        """Test the base options of the shell."""
        plan = _plan(make_request)

        config = shell_options(plan.shell, ProxmoxVMOptions(), plan.controllers)

        assert config == {
            "name": "node-a",
            "memory": 8192,
            "cores": 4,
            "sockets": 1,
            "ostype": "l26",
            "cpu": "host,flags=+pdpe1gb;-spec-ctrl",
            "bios": "ovmf",
            "efidisk0": "ds1:1,efitype=4m,pre-enrolled-keys=0",
            "scsihw": "virtio-scsi-single",
            "agent": "enabled=1",
        }

    def test_numa_pinning(self, make_request):
        """Test CPU affinity and NUMA binding."""
        plan = _plan(make_request, cpu_affinity="0-7,32-39", numa_node=1)

        config = shell_options(plan.shell, ProxmoxVMOptions(efi_storage="local-lvm"), plan.controllers)

        assert config["affinity"] == "0-7,32-39"
        assert config["numa"] == 1
        assert config["numa0"] == "cpus=0-3,hostnodes=1,memory=8192,policy=bind"
        assert config["efidisk0"].startswith("local-lvm:1,")


def test_controller_labels_follow_bus(make_request):
    """Test controller labels name the SCSI slots they occupy."""
    plan = _plan(make_request)

    assert [c.label for c in plan.controllers] == ["scsi0", "scsi1"]
    assert {c.controller_type for c in plan.controllers} == {ControllerType.SCSI}


def test_config_controllers():
    """Test SCSI slots exist only with a SCSI hardware model."""
    with_scsi = config_controllers({"scsihw": "virtio-scsi-single"})
    without_scsi = config_controllers({})

    assert len(with_scsi) == 35
    assert {d.controller_type for d in without_scsi} == {ControllerType.IDE}
    assert [d.bus_number for d in without_scsi] == [0, 1, 2, 3]


class TestDeviceOptions:
    """Device config options."""

    def test_bound_devices(self, make_request):
        """Test disks, NIC and cdrom land in their slots with the installer first in boot order."""
        bound = bind(ALLOCATION, _plan(make_request).devices)

        config = device_options(bound, ProxmoxVMOptions())

        assert config == {
            "scsi0": "ds1:100,discard=on,iothread=1",
            "scsi1": "ds1:200,discard=on,iothread=1",
            "net0": "virtio,bridge=vl999,mtu=9000,queues=8,tag=999",
            "ide2": "datastore1:iso/talos.iso,media=cdrom",
            "boot": "order=ide2;scsi0",
        }

    def test_mac_and_watchdog(self, make_request):
        """Test a manual MAC address and the watchdog."""
        plan = _plan(make_request, mac_address="00:a0:98:28:c8:83", enable_watchdog=True, iso=None)
        options = ProxmoxVMOptions(vlan_id=None, discard=False, iothread=False)

        config = device_options(bind(ALLOCATION, plan.devices), options)

        assert config["net0"] == "virtio=00:a0:98:28:c8:83,bridge=vl999,mtu=9000,queues=8"
        assert config["watchdog"] == "model=i6300esb,action=reset"
        assert config["scsi0"] == "ds1:100"
        assert config["boot"] == "order=scsi0"

    def test_unbound_disk_rejected(self, make_request):
        """Test a disk with a placeholder controller is rejected."""
        disk = _plan(make_request).devices_of(DeviceKind.DISK)[0]

        with pytest.raises(ValueError, match="unresolved controller"):
            device_options([disk], ProxmoxVMOptions())

    def test_unsupported_device(self):
        """Test devices Proxmox cannot express are rejected."""
        clock = DeviceIntent(kind=DeviceKind.PRECISION_CLOCK, identity=Pending(-107), label="precision clock")

        with pytest.raises(ValueError, match="not supported"):
            device_options([clock], ProxmoxVMOptions())


class TestProxmoxBackend:
    """End-to-end provisioning against a client double."""

    def test_create(self, backend, client, make_request, fake_clock):
        """Test the full pipeline on Proxmox."""
        vm = backend.create(make_request())

        assert vm.remote_id == "100"
        assert vm.phase == Phase.ON
        assert all(d.is_resolved for d in vm.devices)
        assert fake_clock.sleeps == [10.0]

        vmid, options = client.create_vm.call_args.args
        assert vmid == 100
        assert options["scsihw"] == "virtio-scsi-single"

        client.update_config.assert_called_once()
        remote_id, config = client.update_config.call_args.args
        assert remote_id == "100"
        assert set(config) == {"scsi0", "scsi1", "net0", "ide2", "boot"}
        client.power_on.assert_called_once_with("100")

    def test_create_with_pinned_vmid(self, backend, client, make_request):
        """Test a profile VMID is used instead of the next free one."""
        vm = backend.create(make_request(vmid=250, power_on=False))

        assert vm.remote_id == "250"
        assert vm.phase == Phase.REREGISTERED
        client.next_vmid.assert_not_called()
        client.power_on.assert_not_called()

    def test_existing_vm_rejected(self, backend, client, make_request):
        """Test a name collision stops before anything is created."""
        client.find_vm.return_value = "100"

        with pytest.raises(ValidationError, match="already exists"):
            backend.create(make_request())

        client.create_vm.assert_not_called()

    def test_precision_clock_rejected(self, backend, client, make_request):
        """Test the precision clock fails validation on Proxmox."""
        with pytest.raises(ValidationError) as exc_info:
            backend.create(make_request(enable_precision_clock=True))

        assert exc_info.value.stage == Stage.VALIDATION
        assert exc_info.value.field == "enable_precision_clock"
        client.create_vm.assert_not_called()

    def test_missing_scsi_controller(self, backend, client, make_request):
        """Test a config without scsihw fails controller resolution."""
        client.get_config.return_value = {}

        with pytest.raises(StructuralInvariantError) as exc_info:
            backend.create(make_request())

        assert exc_info.value.stage == Stage.CONTROLLER_RESOLUTION
        assert exc_info.value.remote_id == "100"
        assert exc_info.value.vm.phase == Phase.CONTROLLERS_CREATED
        client.update_config.assert_not_called()

    def test_delete(self, backend, client):
        """Test delete powers off a running VM first."""
        client.find_vm.return_value = "100"
        client.power_state.return_value = PowerState.ON
        client.power_off.return_value = CompletedTask()
        client.destroy.return_value = CompletedTask()

        assert backend.delete("node-a") is True

        client.power_off.assert_called_once_with("100")
        client.destroy.assert_called_once_with("100")

    def test_download_iso_existing(self, backend, client):
        """Test an ISO already in storage is not downloaded again."""
        client.iso_exists.return_value = True

        assert backend.download_iso("https://example.com/talos.iso", "talos.iso") == "local:iso/talos.iso"
        client.download_url.assert_not_called()

    def test_download_iso(self, backend, client):
        """Test the node downloads the ISO itself."""
        client.iso_exists.return_value = False
        client.download_url.return_value = CompletedTask(result="local:iso/talos.iso")

        path = backend.download_iso("https://example.com/talos.iso", "talos.iso")

        assert path == "local:iso/talos.iso"
        client.download_url.assert_called_once_with("local", "https://example.com/talos.iso", "talos.iso")
