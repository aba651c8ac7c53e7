"""Phase 1: create the VM shell with its bus controllers only."""

import logging
from typing import Optional, Sequence

from homeops.errors import ProvisioningError, RemoteAPIError, ValidationError
from homeops.hypervisor import HypervisorAPI
from homeops.models import DeviceIntent, DeviceRecord, Phase, ProvisionedVM, ShellSpec, Stage
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)


class ControllerProvisioner:
    """Submits the creation request and waits for the remote task."""

    def __init__(
        self, api: HypervisorAPI, timeout: float = 120.0, poll_interval: float = 1.0, clock: Optional[Clock] = None
    ) -> None:
        self.api = api
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

    def create_shell(
        self, controllers: Sequence[DeviceIntent], shell: ShellSpec, cancel: Optional[CancelToken] = None
    ) -> ProvisionedVM:
        """Create the VM and return it in phase CONTROLLERS_CREATED.

        Only controller intents may be submitted here; disks and every other
        device reference controllers and wait for phase 2.
        """
        stray = [c.label for c in controllers if not c.is_controller]
        if stray:
            raise ValidationError(
                f"only controllers can be created with the shell, got: {', '.join(stray)}",
                stage=Stage.CONTROLLER_PROVISIONING,
                vm_name=shell.name,
            )

        logger.info(f"🔨 Creating VM {shell.name} ({shell.cpus} vCPU, {shell.memory_mb} MB, {len(controllers)} controllers)")
        try:
            task = self.api.create_vm(shell, controllers)
            remote_id = task.wait(self.timeout, self.poll_interval, cancel=cancel, clock=self.clock)
        except ProvisioningError as e:
            raise e.tag(Stage.CONTROLLER_PROVISIONING, vm_name=shell.name)

        if not remote_id:
            raise RemoteAPIError(
                "creation task finished without returning a VM id",
                stage=Stage.CONTROLLER_PROVISIONING,
                vm_name=shell.name,
            )

        vm = ProvisionedVM(
            name=shell.name,
            remote_id=str(remote_id),
            phase=Phase.CONTROLLERS_CREATED,
            devices=[DeviceRecord.from_intent(c) for c in controllers],
        )
        logger.info(f"✅ VM {shell.name} created with id {vm.remote_id}")
        return vm
