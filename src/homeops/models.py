"""Data models for VM provisioning."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


class Phase(Enum):
    """Lifecycle phase of a provisioned VM. Phases only move forward."""

    CONTROLLERS_CREATED = 1
    DISKS_ATTACHED = 2
    REREGISTERED = 3
    ON = 4


class Stage(Enum):
    """Pipeline step. Used to tag errors with where they happened."""

    VALIDATION = "validation"
    CONTROLLER_PROVISIONING = "controller-provisioning"
    CONTROLLER_RESOLUTION = "controller-resolution"
    DISK_PROVISIONING = "disk-provisioning"
    DESCRIPTOR_RECONCILIATION = "descriptor-reconciliation"
    POWER_ON = "power-on"


class PowerState(Enum):
    """Power state as reported by the hypervisor."""

    OFF = "off"
    ON = "on"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class DeviceKind(Enum):
    """Kinds of hypervisor devices managed by the pipeline."""

    CONTROLLER = "controller"
    DISK = "disk"
    NETWORK_ADAPTER = "network-adapter"
    OPTICAL_DRIVE = "optical-drive"
    PRECISION_CLOCK = "precision-clock"
    WATCHDOG = "watchdog"


class ControllerType(Enum):
    """Bus controller models."""

    NVME = "nvme"
    IDE = "ide"
    SCSI = "scsi"


class BusRole(Enum):
    """Logical controller slot that devices attach to."""

    BOOT = "boot-bus"
    DATA = "data-bus"
    OPTICAL = "optical-bus"


# Where each role lives on the hypervisor. The optical bus is the default IDE
# controller that the platform adds to every new VM.
ROLE_BUSES: Dict[BusRole, Tuple[ControllerType, int]] = {
    BusRole.BOOT: (ControllerType.NVME, 0),
    BusRole.DATA: (ControllerType.NVME, 1),
    BusRole.OPTICAL: (ControllerType.IDE, 0),
}


@dataclass(frozen=True)
class Pending:
    """Identity of a device that the hypervisor has not allocated yet.

    ``placeholder`` is the temporary key submitted on the wire; it is always
    negative and never equal to a real key.
    """

    placeholder: int

    def __post_init__(self) -> None:
        if self.placeholder >= 0:
            raise ValueError(f"placeholder keys must be negative, got {self.placeholder}")

    @property
    def is_resolved(self) -> bool:
        return False


@dataclass(frozen=True)
class Resolved:
    """Identity assigned by the hypervisor."""

    key: int

    @property
    def is_resolved(self) -> bool:
        return True


DeviceKey = Union[Pending, Resolved]


@dataclass(frozen=True)
class VMRequest:
    """Declarative request for one VM. Never mutated by the orchestrator."""

    name: str
    cpus: int
    memory_mb: int
    boot_disk_gb: int
    datastore: str
    network: str
    data_disk_gb: Optional[int] = None
    mac_address: Optional[str] = None
    iso: Optional[str] = None
    iso_datastore: Optional[str] = None
    resource_pool: Optional[str] = None
    cpu_affinity: Optional[str] = None
    numa_node: Optional[int] = None
    vmid: Optional[int] = None
    enable_iommu: bool = True
    enable_precision_clock: bool = False
    enable_watchdog: bool = False
    thin_provisioned: bool = True
    expose_counters: bool = False
    power_on: bool = True

    def with_overrides(self, **changes: Any) -> "VMRequest":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class ShellSpec:
    """Base settings of the VM shell submitted in phase 1."""

    name: str
    cpus: int
    memory_mb: int
    datastore: str
    firmware: str = "efi"
    guest_id: str = "other6xLinux64Guest"
    enable_iommu: bool = True
    expose_counters: bool = False
    cpu_affinity: Optional[str] = None
    numa_node: Optional[int] = None
    resource_pool: Optional[str] = None
    vmid: Optional[int] = None


@dataclass(frozen=True)
class DeviceIntent:
    """One device to create.

    Controllers carry the ``role`` they provide. Attached devices carry the
    ``controller_role`` they attach to and a ``controller`` identity that is
    ``Pending`` until bound against a ControllerAllocation.
    """

    kind: DeviceKind
    identity: DeviceKey
    label: str
    role: Optional[BusRole] = None
    controller_type: Optional[ControllerType] = None
    bus_number: Optional[int] = None
    controller_role: Optional[BusRole] = None
    controller: Optional[DeviceKey] = None
    unit_number: Optional[int] = None
    capacity_gb: Optional[int] = None
    thin_provisioned: bool = True
    datastore: Optional[str] = None
    network: Optional[str] = None
    mac_address: Optional[str] = None
    iso_path: Optional[str] = None

    @property
    def is_controller(self) -> bool:
        return self.kind == DeviceKind.CONTROLLER

    @property
    def attaches_to_controller(self) -> bool:
        return self.controller_role is not None

    @property
    def is_bound(self) -> bool:
        """True once the controller reference is a resolved identity."""
        return not self.attaches_to_controller or isinstance(self.controller, Resolved)

    @property
    def capacity_kb(self) -> int:
        return (self.capacity_gb or 0) * 1024 * 1024


@dataclass(frozen=True)
class BuildPlan:
    """Output of VMSpecBuilder: the shell, its controllers and the devices to attach."""

    shell: ShellSpec
    controllers: Tuple[DeviceIntent, ...]
    devices: Tuple[DeviceIntent, ...]

    @property
    def required_roles(self) -> Tuple[BusRole, ...]:
        """Every role that must be resolved before devices can be attached."""
        roles: List[BusRole] = [c.role for c in self.controllers if c.role is not None]
        for device in self.devices:
            if device.controller_role is not None and device.controller_role not in roles:
                roles.append(device.controller_role)
        return tuple(roles)

    def devices_of(self, kind: DeviceKind) -> Tuple[DeviceIntent, ...]:
        return tuple(d for d in self.devices if d.kind == kind)


@dataclass(frozen=True)
class RemoteDevice:
    """A device as read back from the hypervisor."""

    kind: DeviceKind
    key: int
    label: str = ""
    controller_type: Optional[ControllerType] = None
    bus_number: Optional[int] = None
    controller_key: Optional[int] = None
    unit_number: Optional[int] = None


@dataclass(frozen=True)
class VMSummary:
    """Inventory view of one VM. ``details`` holds platform-specific fields."""

    name: str
    remote_id: str
    power_state: PowerState
    cpus: Optional[int] = None
    memory_mb: Optional[int] = None
    details: Mapping[str, str] = field(default_factory=dict)


@dataclass
class DeviceRecord:
    """The orchestrator's record of one hypervisor device."""

    intent: DeviceIntent
    identity: DeviceKey

    @classmethod
    def from_intent(cls, intent: DeviceIntent) -> "DeviceRecord":
        return cls(intent=intent, identity=intent.identity)

    @property
    def kind(self) -> DeviceKind:
        return self.intent.kind

    @property
    def is_resolved(self) -> bool:
        return isinstance(self.identity, Resolved)

    def resolve(self, key: int) -> None:
        self.identity = Resolved(key)


@dataclass(frozen=True)
class ControllerAllocation:
    """Mapping from bus role to resolved controller identity."""

    keys: Mapping[BusRole, Resolved] = field(default_factory=dict)

    def __contains__(self, role: object) -> bool:
        return role in self.keys

    def key_for(self, role: BusRole) -> Resolved:
        return self.keys[role]

    def missing(self, roles: Iterable[BusRole]) -> List[BusRole]:
        return [role for role in roles if role not in self.keys]


@dataclass
class ProvisionedVM:
    """Remote VM as seen by the orchestrator."""

    name: str
    remote_id: str
    phase: Phase
    devices: List[DeviceRecord] = field(default_factory=list)
    descriptor_path: Optional[str] = None

    def advance(self, phase: Phase) -> None:
        """Move to ``phase``. Phases may only move forward."""
        if phase.value < self.phase.value:
            raise ValueError(f"VM {self.name} cannot move from {self.phase.name} back to {phase.name}")
        self.phase = phase

    def devices_of(self, kind: DeviceKind) -> List[DeviceRecord]:
        return [d for d in self.devices if d.kind == kind]

    @property
    def controllers(self) -> List[DeviceRecord]:
        return self.devices_of(DeviceKind.CONTROLLER)

    @property
    def disks(self) -> List[DeviceRecord]:
        return self.devices_of(DeviceKind.DISK)

    def apply_allocation(self, allocation: ControllerAllocation) -> None:
        """Record resolved identities for the controllers this VM owns."""
        for record in self.controllers:
            role = record.intent.role
            if role is not None and role in allocation:
                record.resolve(allocation.key_for(role).key)

    def apply_remote_devices(self, remote: Iterable[RemoteDevice]) -> None:
        """Resolve attached device records against a read-back inventory.

        Devices are matched by kind and, for attached devices, by controller
        and unit number.
        """
        pool = [r for r in remote if r.kind != DeviceKind.CONTROLLER]
        for record in self.devices:
            if record.is_resolved or record.kind == DeviceKind.CONTROLLER:
                continue
            for candidate in pool:
                if candidate.kind != record.kind:
                    continue
                controller = record.intent.controller
                if isinstance(controller, Resolved) and candidate.controller_key != controller.key:
                    continue
                if record.intent.unit_number is not None and candidate.unit_number != record.intent.unit_number:
                    continue
                record.resolve(candidate.key)
                pool.remove(candidate)
                break


@dataclass
class VMOutcome:
    """Terminal outcome for one request of a batch."""

    request: VMRequest
    vm: Optional[ProvisionedVM] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.vm is not None

    @property
    def failed_stage(self) -> Optional[Stage]:
        return getattr(self.error, "stage", None)

    @property
    def remote_id(self) -> Optional[str]:
        if self.vm is not None:
            return self.vm.remote_id
        return getattr(self.error, "remote_id", None)


@dataclass
class BatchResult:
    """Per-request outcomes of a deployment batch, in request order."""

    outcomes: List[VMOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> List[VMOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[VMOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0

    def outcome_for(self, name: str) -> VMOutcome:
        for outcome in self.outcomes:
            if outcome.request.name == name:
                return outcome
        raise KeyError(name)

    def get_summary(self) -> str:
        return f"Batch: {self.success_count}/{self.total} succeeded, {self.failure_count} failed"
