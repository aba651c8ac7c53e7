"""Translate a VMRequest into the ordered device intents the pipeline submits."""

import logging
import re
from typing import Dict, List, Optional, Tuple

from homeops.errors import ValidationError
from homeops.models import (
    ROLE_BUSES,
    BuildPlan,
    BusRole,
    ControllerType,
    DeviceIntent,
    DeviceKind,
    Pending,
    ShellSpec,
    Stage,
    VMRequest,
)

logger = logging.getLogger(__name__)

# Placeholder keys submitted before the hypervisor allocates real ones
BOOT_CONTROLLER_PLACEHOLDER = -100
DATA_CONTROLLER_PLACEHOLDER = -101
NETWORK_ADAPTER_PLACEHOLDER = -104
OPTICAL_BUS_PLACEHOLDER = -105
OPTICAL_DRIVE_PLACEHOLDER = -106
PRECISION_CLOCK_PLACEHOLDER = -107
WATCHDOG_PLACEHOLDER = -108
BOOT_DISK_PLACEHOLDER = -1
DATA_DISK_PLACEHOLDER = -2

_DATASTORE_ISO = re.compile(r"^\[[^\[\]]+\] \S.*\.iso$", re.IGNORECASE)
_STORAGE_ISO = re.compile(r"^[A-Za-z0-9][\w.-]*:iso/[^/\s]+\.iso$", re.IGNORECASE)
_BARE_ISO = re.compile(r"^[^\[\]\s/:][^\[\]:]*\.iso$", re.IGNORECASE)
_MAC = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$", re.IGNORECASE)


def build_iso_path(datastore: str, filename: str) -> str:
    """Build a datastore path, e.g. ``[datastore1] metal-amd64.iso``."""
    return f"[{datastore}] {filename}"


def is_well_formed_iso(iso: str) -> bool:
    """Accept ``[ds] path.iso``, ``storage:iso/file.iso`` or a bare ``file.iso``."""
    return bool(_DATASTORE_ISO.match(iso) or _STORAGE_ISO.match(iso) or _BARE_ISO.match(iso))


class VMSpecBuilder:
    """Builds the shell, controller intents and device intents for a request.

    Pure: the same request always yields the same plan and nothing remote is
    touched.
    """

    def __init__(
        self,
        guest_id: str = "other6xLinux64Guest",
        firmware: str = "efi",
        role_buses: Optional[Dict[BusRole, Tuple[ControllerType, int]]] = None,
    ) -> None:
        self.guest_id = guest_id
        self.firmware = firmware
        self.role_buses = role_buses or ROLE_BUSES

    def validate(self, request: VMRequest) -> None:
        """Raise ValidationError for the first violated constraint."""

        def fail(field: str, message: str) -> None:
            raise ValidationError(message, field=field, stage=Stage.VALIDATION, vm_name=request.name or None)

        if not request.name or not request.name.strip():
            fail("name", "VM name is required")
        if request.cpus <= 0:
            fail("cpus", "vCPUs must be greater than 0")
        if request.memory_mb <= 0:
            fail("memory_mb", "memory must be greater than 0")
        if request.boot_disk_gb <= 0:
            fail("boot_disk_gb", "boot disk size must be greater than 0")
        if request.data_disk_gb is not None and request.data_disk_gb < 0:
            fail("data_disk_gb", "data disk size cannot be negative")
        if not request.datastore:
            fail("datastore", "datastore is required")
        if not request.network:
            fail("network", "network is required")
        if request.mac_address and not _MAC.match(request.mac_address):
            fail("mac_address", f"invalid MAC address: {request.mac_address}")
        if request.iso is not None and not is_well_formed_iso(request.iso):
            fail("iso", f"malformed ISO path: {request.iso!r}")

    def resolve_iso_path(self, request: VMRequest) -> Optional[str]:
        """Qualify a bare ISO filename with its datastore."""
        if request.iso is None:
            return None
        if _BARE_ISO.match(request.iso):
            return build_iso_path(request.iso_datastore or request.datastore, request.iso)
        return request.iso

    def build(self, request: VMRequest) -> BuildPlan:
        """Validate ``request`` and produce its BuildPlan."""
        self.validate(request)

        shell = ShellSpec(
            name=request.name,
            cpus=request.cpus,
            memory_mb=request.memory_mb,
            datastore=request.datastore,
            firmware=self.firmware,
            guest_id=self.guest_id,
            enable_iommu=request.enable_iommu,
            expose_counters=request.expose_counters,
            cpu_affinity=request.cpu_affinity,
            numa_node=request.numa_node,
            resource_pool=request.resource_pool,
            vmid=request.vmid,
        )

        controllers: List[DeviceIntent] = [self._controller(BusRole.BOOT, BOOT_CONTROLLER_PLACEHOLDER)]
        devices: List[DeviceIntent] = [
            self._disk(request, BusRole.BOOT, BOOT_DISK_PLACEHOLDER, BOOT_CONTROLLER_PLACEHOLDER, request.boot_disk_gb, "boot disk"),
        ]

        if request.data_disk_gb:
            controllers.append(self._controller(BusRole.DATA, DATA_CONTROLLER_PLACEHOLDER))
            devices.append(
                self._disk(request, BusRole.DATA, DATA_DISK_PLACEHOLDER, DATA_CONTROLLER_PLACEHOLDER, request.data_disk_gb, "data disk")
            )

        devices.append(
            DeviceIntent(
                kind=DeviceKind.NETWORK_ADAPTER,
                identity=Pending(NETWORK_ADAPTER_PLACEHOLDER),
                label="network adapter",
                network=request.network,
                mac_address=request.mac_address or None,
            )
        )

        iso_path = self.resolve_iso_path(request)
        if iso_path is not None:
            devices.append(
                DeviceIntent(
                    kind=DeviceKind.OPTICAL_DRIVE,
                    identity=Pending(OPTICAL_DRIVE_PLACEHOLDER),
                    label="cdrom",
                    controller_role=BusRole.OPTICAL,
                    controller=Pending(OPTICAL_BUS_PLACEHOLDER),
                    unit_number=0,
                    datastore=request.iso_datastore or request.datastore,
                    iso_path=iso_path,
                )
            )

        if request.enable_precision_clock:
            devices.append(
                DeviceIntent(
                    kind=DeviceKind.PRECISION_CLOCK,
                    identity=Pending(PRECISION_CLOCK_PLACEHOLDER),
                    label="precision clock",
                )
            )

        if request.enable_watchdog:
            devices.append(
                DeviceIntent(kind=DeviceKind.WATCHDOG, identity=Pending(WATCHDOG_PLACEHOLDER), label="watchdog")
            )

        logger.debug(f"Built plan for {request.name}: {len(controllers)} controllers, {len(devices)} devices")
        return BuildPlan(shell=shell, controllers=tuple(controllers), devices=tuple(devices))

    def _controller(self, role: BusRole, placeholder: int) -> DeviceIntent:
        controller_type, bus_number = self.role_buses[role]
        return DeviceIntent(
            kind=DeviceKind.CONTROLLER,
            identity=Pending(placeholder),
            label=f"{controller_type.value}{bus_number}",
            role=role,
            controller_type=controller_type,
            bus_number=bus_number,
        )

    @staticmethod
    def _disk(
        request: VMRequest, role: BusRole, placeholder: int, controller_placeholder: int, size_gb: int, label: str
    ) -> DeviceIntent:
        return DeviceIntent(
            kind=DeviceKind.DISK,
            identity=Pending(placeholder),
            label=label,
            controller_role=role,
            controller=Pending(controller_placeholder),
            unit_number=0,
            capacity_gb=size_gb,
            thin_provisioned=request.thin_provisioned,
            datastore=request.datastore,
        )
