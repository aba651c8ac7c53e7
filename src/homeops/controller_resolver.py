"""Map logical bus roles to the controller keys the hypervisor assigned."""

import logging
from typing import Dict, Iterable, Optional, Sequence

from homeops.errors import ProvisioningError, StructuralInvariantError
from homeops.hypervisor import HypervisorAPI
from homeops.models import (
    ROLE_BUSES,
    BusRole,
    ControllerAllocation,
    ControllerType,
    DeviceKind,
    RemoteDevice,
    Resolved,
    Stage,
)

logger = logging.getLogger(__name__)


def match_controllers(
    devices: Iterable[RemoteDevice],
    roles: Sequence[BusRole],
    role_buses: Optional[Dict[BusRole, tuple]] = None,
) -> ControllerAllocation:
    """Match controller devices to roles by controller type and bus number.

    Keys are never used for matching. Roles with no matching controller are
    left out of the returned allocation.
    """
    role_buses = role_buses or ROLE_BUSES
    by_bus: Dict[tuple, RemoteDevice] = {}
    for device in devices:
        if device.kind != DeviceKind.CONTROLLER or device.controller_type is None:
            continue
        by_bus.setdefault((device.controller_type, device.bus_number), device)

    keys: Dict[BusRole, Resolved] = {}
    for role in roles:
        controller = by_bus.get(role_buses[role])
        if controller is not None:
            keys[role] = Resolved(controller.key)
    return ControllerAllocation(keys=keys)


class ControllerKeyResolver:
    """Reads back a VM's devices and builds its ControllerAllocation."""

    def __init__(self, api: HypervisorAPI, role_buses: Optional[Dict[BusRole, tuple]] = None) -> None:
        self.api = api
        self.role_buses = role_buses or ROLE_BUSES

    def resolve(self, remote_id: str, required_roles: Sequence[BusRole]) -> ControllerAllocation:
        """Resolve every role in ``required_roles`` for the VM ``remote_id``.

        Raises:
            StructuralInvariantError: If an expected controller is missing
        """
        try:
            devices = self.api.read_devices(remote_id)
        except ProvisioningError as e:
            raise e.tag(Stage.CONTROLLER_RESOLUTION, remote_id=remote_id)

        allocation = match_controllers(devices, required_roles, self.role_buses)
        missing = allocation.missing(required_roles)
        if missing:
            wanted = ", ".join(f"{r.value} ({_describe(self.role_buses[r])})" for r in missing)
            raise StructuralInvariantError(
                f"VM {remote_id} is missing controllers for: {wanted}",
                missing_roles=missing,
                stage=Stage.CONTROLLER_RESOLUTION,
                remote_id=remote_id,
            )

        for role in required_roles:
            logger.debug(f"{remote_id}: {role.value} -> controller key {allocation.key_for(role).key}")
        return allocation


def _describe(bus: tuple) -> str:
    controller_type, bus_number = bus
    if isinstance(controller_type, ControllerType):
        controller_type = controller_type.value
    return f"{controller_type} bus {bus_number}"
