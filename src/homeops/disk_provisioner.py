"""Phase 2: attach disks and the remaining devices against resolved controllers."""

import logging
from dataclasses import replace
from typing import List, Optional, Sequence

from homeops.errors import AllocationPreconditionError, ProvisioningError
from homeops.hypervisor import HypervisorAPI
from homeops.models import ControllerAllocation, DeviceIntent, DeviceKind, DeviceRecord, Phase, ProvisionedVM, Stage
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)


def bind(allocation: ControllerAllocation, intents: Sequence[DeviceIntent]) -> List[DeviceIntent]:
    """Rewrite each intent's controller reference to its resolved identity.

    Pure check, nothing remote is touched.

    Raises:
        AllocationPreconditionError: If any referenced role is absent from ``allocation``
    """
    roles = []
    for intent in intents:
        if intent.is_controller:
            raise AllocationPreconditionError(
                f"controller {intent.label} cannot be attached in the disk phase", stage=Stage.DISK_PROVISIONING
            )
        if intent.controller_role is not None and intent.controller_role not in roles:
            roles.append(intent.controller_role)

    missing = allocation.missing(roles)
    if missing:
        raise AllocationPreconditionError(
            f"controller allocation lacks roles: {', '.join(r.value for r in missing)}",
            missing_roles=missing,
            stage=Stage.DISK_PROVISIONING,
        )

    return [
        replace(intent, controller=allocation.key_for(intent.controller_role))
        if intent.controller_role is not None
        else intent
        for intent in intents
    ]


class DiskProvisioner:
    """Submits every device addition in a single reconfiguration request."""

    def __init__(
        self, api: HypervisorAPI, timeout: float = 120.0, poll_interval: float = 1.0, clock: Optional[Clock] = None
    ) -> None:
        self.api = api
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

    def attach(
        self,
        vm: ProvisionedVM,
        allocation: ControllerAllocation,
        intents: Sequence[DeviceIntent],
        cancel: Optional[CancelToken] = None,
    ) -> ProvisionedVM:
        """Attach ``intents`` to ``vm`` and move it to phase DISKS_ATTACHED."""
        bound = bind(allocation, intents)
        disks = [i for i in bound if i.kind == DeviceKind.DISK]
        logger.info(
            f"💾 Attaching {len(disks)} disk(s) and {len(bound) - len(disks)} other device(s) to {vm.name}"
        )

        try:
            task = self.api.reconfigure(vm.remote_id, bound)
            task.wait(self.timeout, self.poll_interval, cancel=cancel, clock=self.clock)
            vm.apply_allocation(allocation)
            vm.devices.extend(DeviceRecord.from_intent(i) for i in bound)
            vm.apply_remote_devices(self.api.read_devices(vm.remote_id))
        except ProvisioningError as e:
            raise e.tag(Stage.DISK_PROVISIONING, vm_name=vm.name, remote_id=vm.remote_id)

        vm.advance(Phase.DISKS_ATTACHED)
        for disk in vm.disks:
            logger.debug(f"{vm.name}: {disk.intent.label} {disk.intent.capacity_gb} GB -> {disk.identity}")
        return vm
