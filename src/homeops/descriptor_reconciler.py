"""Phase 3: unregister and re-register a VM so disk descriptors are rewritten.

Disks added after creation keep the adapter type recorded when their backing
file was created. Registering the VM again from its configuration file makes
vSphere recompute each descriptor against the controllers actually present.
"""

import logging
from typing import Optional

from homeops.errors import ProvisioningCancelledError, ProvisioningError, ReregistrationError
from homeops.hypervisor import HypervisorAPI
from homeops.models import Phase, ProvisionedVM, Stage
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)


class DescriptorReconciler:
    """Runs the unregister/register cycle. Any failure is fatal for the VM."""

    def __init__(
        self, api: HypervisorAPI, timeout: float = 120.0, poll_interval: float = 1.0, clock: Optional[Clock] = None
    ) -> None:
        self.api = api
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

    def reregister(
        self, remote_id: str, name: str, pool: Optional[str] = None, cancel: Optional[CancelToken] = None
    ) -> str:
        """Re-register ``remote_id`` from its descriptor and return the new id."""
        new_id: Optional[str] = None
        try:
            path = self.api.descriptor_path(remote_id)
            logger.info(f"🔁 Re-registering {name} from {path}")
            self.api.unregister(remote_id)
            task = self.api.register(path, name, pool)
            result = task.wait(self.timeout, self.poll_interval, cancel=cancel, clock=self.clock)
            new_id = str(result) if result else None
        except ProvisioningCancelledError as e:
            raise e.tag(Stage.DESCRIPTOR_RECONCILIATION, vm_name=name, remote_id=remote_id)
        except ProvisioningError as e:
            raise ReregistrationError(
                f"re-registration of {name} failed: {e.message}",
                original_id=remote_id,
                new_id=new_id,
                stage=Stage.DESCRIPTOR_RECONCILIATION,
                vm_name=name,
                remote_id=remote_id,
                cause=e,
            ) from e

        if not new_id:
            raise ReregistrationError(
                f"registration of {name} returned no VM id",
                original_id=remote_id,
                stage=Stage.DESCRIPTOR_RECONCILIATION,
                vm_name=name,
                remote_id=remote_id,
            )

        if new_id != remote_id:
            logger.info(f"{name}: id changed {remote_id} -> {new_id}")
        return new_id

    def reconcile(
        self, vm: ProvisionedVM, pool: Optional[str] = None, cancel: Optional[CancelToken] = None
    ) -> ProvisionedVM:
        """Re-register ``vm`` and move it to phase REREGISTERED."""
        try:
            vm.descriptor_path = self.api.descriptor_path(vm.remote_id)
        except ProvisioningError as e:
            raise e.tag(Stage.DESCRIPTOR_RECONCILIATION, vm_name=vm.name, remote_id=vm.remote_id)
        vm.remote_id = self.reregister(vm.remote_id, vm.name, pool, cancel)
        vm.advance(Phase.REREGISTERED)
        return vm
