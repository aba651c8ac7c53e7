"""Proxmox VE backend.

Proxmox has no controller keys: with ``virtio-scsi-single`` every SCSI slot
gets its own controller, so bus roles resolve to slot indexes read back from
the VM config. Disk descriptors are written by Proxmox itself, so the
re-registration phase does nothing here.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from homeops.backend import PipelineBackend
from homeops.config import Config, DeploymentSettings
from homeops.controller_resolver import match_controllers
from homeops.disk_provisioner import bind
from homeops.errors import ProvisioningError, RemoteAPIError, StructuralInvariantError, ValidationError
from homeops.hypervisor import PowerAPI
from homeops.models import (
    BuildPlan,
    BusRole,
    ControllerAllocation,
    ControllerType,
    DeviceIntent,
    DeviceKind,
    DeviceRecord,
    Phase,
    ProvisionedVM,
    RemoteDevice,
    Resolved,
    ShellSpec,
    Stage,
)
from homeops.pipeline import ProvisioningPhases
from homeops.proxmox_api import ProxmoxClient
from homeops.secrets import ProxmoxCredentials, resolve_proxmox_credentials
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)

PROXMOX_ROLE_BUSES = {
    BusRole.BOOT: (ControllerType.SCSI, 0),
    BusRole.DATA: (ControllerType.SCSI, 1),
    BusRole.OPTICAL: (ControllerType.IDE, 2),
}

SCSI_SLOTS = 31
IDE_SLOTS = 4

_DATASTORE_PATH = re.compile(r"^\[(?P<storage>[^\]]+)\] (?P<path>.+)$")


@dataclass
class ProxmoxVMOptions:
    """Hardware defaults applied to every Proxmox VM."""

    cpu_type: str = "host,flags=+pdpe1gb;-spec-ctrl"
    sockets: int = 1
    ostype: str = "l26"
    scsi_controller: str = "virtio-scsi-single"
    efi_storage: Optional[str] = None
    discard: bool = True
    iothread: bool = True
    mtu: int = 9000
    queues: int = 8
    vlan_id: Optional[int] = 999
    watchdog_model: str = "i6300esb"
    watchdog_action: str = "reset"
    agent: bool = True
    iso_storage: str = "local"


def to_storage_iso(iso_path: str, default_storage: str) -> str:
    """Convert ``[local] talos.iso`` to ``local:iso/talos.iso``. Volume ids pass through."""
    match = _DATASTORE_PATH.match(iso_path)
    if match:
        return f"{match.group('storage')}:iso/{os.path.basename(match.group('path'))}"
    if ":" in iso_path:
        return iso_path
    return f"{default_storage}:iso/{iso_path}"


def shell_options(shell: ShellSpec, options: ProxmoxVMOptions, controllers: Sequence[DeviceIntent]) -> Dict[str, Any]:
    """Options for the create call: CPU, memory, firmware and the SCSI controller model."""
    config: Dict[str, Any] = {
        "name": shell.name,
        "memory": shell.memory_mb,
        "cores": shell.cpus,
        "sockets": options.sockets,
        "ostype": options.ostype,
    }
    if options.cpu_type:
        config["cpu"] = options.cpu_type
    if shell.cpu_affinity:
        config["affinity"] = shell.cpu_affinity
    if shell.numa_node is not None:
        config["numa"] = 1
        config["numa0"] = f"cpus=0-{shell.cpus - 1},hostnodes={shell.numa_node},memory={shell.memory_mb},policy=bind"
    if shell.firmware in ("efi", "ovmf"):
        config["bios"] = "ovmf"
        efi_storage = options.efi_storage or shell.datastore
        config["efidisk0"] = f"{efi_storage}:1,efitype=4m,pre-enrolled-keys=0"
    if any(c.controller_type == ControllerType.SCSI for c in controllers):
        config["scsihw"] = options.scsi_controller
    if options.agent:
        config["agent"] = "enabled=1"
    return config


def config_controllers(config: Dict[str, Any]) -> List[RemoteDevice]:
    """Controller slots a VM config provides.

    SCSI slots exist only when a SCSI hardware model is configured. IDE slots
    are always present on the emulated chipset.
    """
    devices = []
    if config.get("scsihw"):
        for slot in range(SCSI_SLOTS):
            devices.append(RemoteDevice(DeviceKind.CONTROLLER, slot, f"scsi{slot}", ControllerType.SCSI, slot))
    for slot in range(IDE_SLOTS):
        devices.append(RemoteDevice(DeviceKind.CONTROLLER, slot, f"ide{slot}", ControllerType.IDE, slot))
    return devices


def device_options(intents: Sequence[DeviceIntent], options: ProxmoxVMOptions) -> Dict[str, Any]:
    """Config options for bound device intents, posted in a single request."""
    config: Dict[str, Any] = {}
    boot_order: List[str] = []
    disks: List[str] = []

    for intent in intents:
        if intent.kind == DeviceKind.DISK:
            slot = f"scsi{_slot(intent)}"
            value = f"{intent.datastore}:{intent.capacity_gb}"
            if options.discard:
                value += ",discard=on"
            if options.iothread:
                value += ",iothread=1"
            config[slot] = value
            disks.append(slot)
        elif intent.kind == DeviceKind.OPTICAL_DRIVE:
            slot = f"ide{_slot(intent)}"
            config[slot] = f"{to_storage_iso(intent.iso_path or '', options.iso_storage)},media=cdrom"
            boot_order.append(slot)
        elif intent.kind == DeviceKind.NETWORK_ADAPTER:
            value = f"virtio={intent.mac_address}" if intent.mac_address else "virtio"
            value += f",bridge={intent.network}"
            if options.mtu:
                value += f",mtu={options.mtu}"
            if options.queues:
                value += f",queues={options.queues}"
            if options.vlan_id:
                value += f",tag={options.vlan_id}"
            config["net0"] = value
        elif intent.kind == DeviceKind.WATCHDOG:
            value = f"model={options.watchdog_model}"
            if options.watchdog_action:
                value += f",action={options.watchdog_action}"
            config["watchdog"] = value
        else:
            raise ValueError(f"{intent.kind.value} devices are not supported on Proxmox")

    # Boot from the installer first, then the boot disk
    boot_order.extend(disks[:1])
    if boot_order:
        config["boot"] = "order=" + ";".join(boot_order)
    return config


def _slot(intent: DeviceIntent) -> int:
    if not isinstance(intent.controller, Resolved):
        raise ValueError(f"{intent.label} references an unresolved controller")
    return intent.controller.key


class ProxmoxPhases(ProvisioningPhases):
    """Phases 1 and 2 as Proxmox config calls. Phase 3 is the inherited no-op."""

    def __init__(
        self,
        client: ProxmoxClient,
        options: Optional[ProxmoxVMOptions] = None,
        timeout: float = 120.0,
        poll_interval: float = 1.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.client = client
        self.options = options or ProxmoxVMOptions()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

    @property
    def power_api(self) -> PowerAPI:
        return self.client

    def create_shell(self, plan: BuildPlan, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        unsupported = plan.devices_of(DeviceKind.PRECISION_CLOCK)
        if unsupported:
            raise ValidationError(
                "precision clock devices are not supported on Proxmox",
                field="enable_precision_clock",
                stage=Stage.VALIDATION,
                vm_name=plan.shell.name,
            )

        shell = plan.shell
        try:
            vmid = shell.vmid if shell.vmid is not None else self.client.next_vmid()
            config = shell_options(shell, self.options, plan.controllers)
            logger.info(f"🔨 Creating VM {shell.name} (vmid={vmid}, {shell.cpus} cores, {shell.memory_mb} MB)")
            task = self.client.create_vm(vmid, config)
            remote_id = task.wait(self.timeout, self.poll_interval, cancel=cancel, clock=self.clock)
        except ProvisioningError as e:
            raise e.tag(Stage.CONTROLLER_PROVISIONING, vm_name=shell.name)

        vm = ProvisionedVM(
            name=shell.name,
            remote_id=str(remote_id or vmid),
            phase=Phase.CONTROLLERS_CREATED,
            devices=[DeviceRecord.from_intent(c) for c in plan.controllers],
        )
        logger.info(f"✅ VM {shell.name} created with vmid {vm.remote_id}")
        return vm

    def resolve_controllers(self, vm: ProvisionedVM, required_roles: Sequence[BusRole]) -> ControllerAllocation:
        try:
            config = self.client.get_config(vm.remote_id)
        except ProvisioningError as e:
            raise e.tag(Stage.CONTROLLER_RESOLUTION, vm_name=vm.name, remote_id=vm.remote_id)

        allocation = match_controllers(config_controllers(config), required_roles, PROXMOX_ROLE_BUSES)
        missing = allocation.missing(required_roles)
        if missing:
            raise StructuralInvariantError(
                f"VM {vm.remote_id} has no controller for: {', '.join(r.value for r in missing)} "
                f"(scsihw={config.get('scsihw')!r})",
                missing_roles=missing,
                stage=Stage.CONTROLLER_RESOLUTION,
                vm_name=vm.name,
                remote_id=vm.remote_id,
            )
        return allocation

    def attach_devices(
        self,
        vm: ProvisionedVM,
        allocation: ControllerAllocation,
        devices: Sequence[DeviceIntent],
        cancel: Optional[CancelToken] = None,
    ) -> ProvisionedVM:
        bound = bind(allocation, devices)
        config = device_options(bound, self.options)
        logger.info(f"💾 Configuring {', '.join(sorted(config))} on {vm.name}")

        try:
            task = self.client.update_config(vm.remote_id, config)
            task.wait(self.timeout, self.poll_interval, cancel=cancel, clock=self.clock)
        except ProvisioningError as e:
            raise e.tag(Stage.DISK_PROVISIONING, vm_name=vm.name, remote_id=vm.remote_id)

        vm.apply_allocation(allocation)
        for intent in bound:
            record = DeviceRecord.from_intent(intent)
            # Devices are addressed by slot index
            record.resolve(intent.controller.key if isinstance(intent.controller, Resolved) else 0)
            vm.devices.append(record)
        vm.advance(Phase.DISKS_ATTACHED)
        return vm


class ProxmoxBackend(PipelineBackend):
    """Proxmox VE backend using API-token authentication."""

    provider = "proxmox"

    def __init__(
        self,
        client: ProxmoxClient,
        settings: Optional[DeploymentSettings] = None,
        options: Optional[ProxmoxVMOptions] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        settings = settings or DeploymentSettings()
        self.options = options or ProxmoxVMOptions(iso_storage=Config.PROXMOX_ISO_STORAGE)
        phases = ProxmoxPhases(client, self.options, settings.task_timeout, settings.poll_interval, clock)
        super().__init__(
            client,
            phases,
            iso_storage=self.options.iso_storage,
            settings=settings,
            builder=VMSpecBuilder(role_buses=PROXMOX_ROLE_BUSES),
            clock=clock,
        )
        self.client = client

    @classmethod
    def from_credentials(
        cls, credentials: Optional[ProxmoxCredentials] = None, settings: Optional[DeploymentSettings] = None
    ) -> "ProxmoxBackend":
        settings = settings or DeploymentSettings.from_environment()
        credentials = credentials or resolve_proxmox_credentials()
        client = ProxmoxClient(
            credentials.host,
            credentials.node,
            token_id=credentials.token_id,
            token_secret=credentials.token_secret,
            verify_ssl=not settings.insecure,
        )
        return cls(client, settings)

    def download_iso(self, url: str, filename: str) -> str:
        """Let the node download ``url`` into ISO storage and return its volume id."""
        storage = self.options.iso_storage
        if self.client.iso_exists(storage, filename):
            logger.info(f"✅ ISO {filename} already in {storage}")
            return f"{storage}:iso/{filename}"
        logger.info(f"⬇️ Downloading {filename} to {storage} on {self.client.node}")
        result = self.client.download_url(storage, url, filename).wait(
            timeout=600, poll_interval=5, clock=self.clock
        )
        if not result:
            raise RemoteAPIError(f"download of {filename} returned no volume id")
        return str(result)
