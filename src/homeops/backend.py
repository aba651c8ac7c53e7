"""Shared HypervisorBackend built on the provisioning pipeline."""

import logging
import os
from typing import List, Optional

from homeops.config import DeploymentSettings
from homeops.errors import ProvisioningError, RemoteAPIError, ValidationError
from homeops.hypervisor import HypervisorBackend, InventoryAPI
from homeops.models import ProvisionedVM, Stage, VMRequest, VMSummary
from homeops.pipeline import ProvisioningPhases, ProvisioningPipeline
from homeops.power_controller import PowerController
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CancelToken, Clock, RemoteTask, SystemClock

logger = logging.getLogger(__name__)


class PipelineBackend(HypervisorBackend):
    """Backend capabilities over an InventoryAPI and a phase set."""

    provider = "hypervisor"

    def __init__(
        self,
        api: InventoryAPI,
        phases: ProvisioningPhases,
        iso_storage: str,
        settings: Optional[DeploymentSettings] = None,
        builder: Optional[VMSpecBuilder] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.api = api
        self.phases = phases
        self.iso_storage = iso_storage
        self.settings = settings or DeploymentSettings()
        self.clock = clock or SystemClock()
        self.pipeline = ProvisioningPipeline(
            phases,
            builder=builder,
            schedule=self.settings.power_on_schedule,
            clock=self.clock,
            disk_quiesce_seconds=self.settings.disk_quiesce_seconds,
            task_timeout=self.settings.task_timeout,
            poll_interval=self.settings.poll_interval,
        )

    @property
    def name(self) -> str:
        return self.provider

    def create(self, request: VMRequest, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        # Validation runs before the inventory lookup
        self.pipeline.builder.validate(request)
        try:
            existing = self.api.find_vm(request.name)
        except ProvisioningError as e:
            raise e.tag(Stage.VALIDATION, vm_name=request.name)
        if existing is not None:
            raise ValidationError(
                f"VM {request.name} already exists (id {existing})",
                field="name",
                stage=Stage.VALIDATION,
                vm_name=request.name,
            )
        return self.pipeline.run(request, cancel)

    def _require(self, name: str) -> str:
        remote_id = self.api.find_vm(name)
        if remote_id is None:
            raise RemoteAPIError(f"VM {name} not found on {self.provider}", vm_name=name)
        return remote_id

    def _wait(self, task: RemoteTask) -> None:
        task.wait(self.settings.task_timeout, self.settings.poll_interval, clock=self.clock)

    def delete(self, name: str) -> bool:
        remote_id = self.api.find_vm(name)
        if remote_id is None:
            logger.info(f"VM {name} does not exist, nothing to delete")
            return False

        try:
            if self.power_controller().power_off(remote_id):
                logger.info(f"Powered off {name} before deletion")
        except ProvisioningError as e:
            logger.warning(f"⚠️ Failed to power off {name}: {e}")

        logger.info(f"🗑️ Deleting VM {name} ({remote_id})")
        self._wait(self.api.destroy(remote_id))
        logger.info(f"✅ VM {name} deleted")
        return True

    def start(self, name: str) -> None:
        remote_id = self._require(name)
        self.power_controller().power_on(remote_id)

    def stop(self, name: str) -> None:
        remote_id = self._require(name)
        if self.power_controller().power_off(remote_id):
            logger.info(f"✅ VM {name} powered off")
        else:
            logger.info(f"VM {name} is already off")

    def upload_iso(self, local_path: str, filename: Optional[str] = None) -> str:
        if not os.path.isfile(local_path):
            raise FileNotFoundError(f"ISO not found: {local_path}")
        return self.api.upload_file(local_path, self.iso_storage, filename or os.path.basename(local_path))

    def list(self) -> List[VMSummary]:
        return sorted(self.api.list_vms(), key=lambda vm: vm.name)

    def info(self, name: str) -> VMSummary:
        return self.api.vm_info(self._require(name))

    def power_controller(self) -> PowerController:
        return self.pipeline.power_controller()

    def close(self) -> None:
        self.api.close()
