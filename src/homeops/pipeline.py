"""Per-VM provisioning pipeline: validation, then phases 1 to 4 in order."""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from homeops.controller_provisioner import ControllerProvisioner
from homeops.controller_resolver import ControllerKeyResolver
from homeops.descriptor_reconciler import DescriptorReconciler
from homeops.disk_provisioner import DiskProvisioner
from homeops.errors import ProvisioningError
from homeops.hypervisor import HypervisorAPI, PowerAPI
from homeops.models import BuildPlan, BusRole, ControllerAllocation, DeviceIntent, Phase, ProvisionedVM, Stage, VMRequest
from homeops.power_controller import PowerController, RetrySchedule
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)


class ProvisioningPhases(ABC):
    """Backend-specific implementation of phases 1 to 3.

    Phase 4 is always the shared PowerController over ``power_api``.
    """

    @property
    @abstractmethod
    def power_api(self) -> PowerAPI:
        ...

    @abstractmethod
    def create_shell(self, plan: BuildPlan, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        ...

    @abstractmethod
    def resolve_controllers(self, vm: ProvisionedVM, required_roles: Sequence[BusRole]) -> ControllerAllocation:
        ...

    @abstractmethod
    def attach_devices(
        self,
        vm: ProvisionedVM,
        allocation: ControllerAllocation,
        devices: Sequence[DeviceIntent],
        cancel: Optional[CancelToken] = None,
    ) -> ProvisionedVM:
        ...

    def reregister(self, vm: ProvisionedVM, pool: Optional[str] = None, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        """Phase 3. Backends without the descriptor defect only advance the phase."""
        logger.debug(f"{vm.name}: descriptor reconciliation not needed")
        vm.advance(Phase.REREGISTERED)
        return vm


class HypervisorPhases(ProvisioningPhases):
    """Phases 1 to 3 for a HypervisorAPI with a keyed device model."""

    def __init__(
        self, api: HypervisorAPI, timeout: float = 120.0, poll_interval: float = 1.0, clock: Optional[Clock] = None
    ) -> None:
        self.api = api
        self.provisioner = ControllerProvisioner(api, timeout, poll_interval, clock)
        self.resolver = ControllerKeyResolver(api)
        self.disks = DiskProvisioner(api, timeout, poll_interval, clock)
        self.reconciler = DescriptorReconciler(api, timeout, poll_interval, clock)

    @property
    def power_api(self) -> PowerAPI:
        return self.api

    def create_shell(self, plan: BuildPlan, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        return self.provisioner.create_shell(plan.controllers, plan.shell, cancel)

    def resolve_controllers(self, vm: ProvisionedVM, required_roles: Sequence[BusRole]) -> ControllerAllocation:
        return self.resolver.resolve(vm.remote_id, required_roles)

    def attach_devices(
        self,
        vm: ProvisionedVM,
        allocation: ControllerAllocation,
        devices: Sequence[DeviceIntent],
        cancel: Optional[CancelToken] = None,
    ) -> ProvisionedVM:
        return self.disks.attach(vm, allocation, devices, cancel)

    def reregister(self, vm: ProvisionedVM, pool: Optional[str] = None, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        return self.reconciler.reconcile(vm, pool, cancel)


class ProvisioningPipeline:
    """Runs one VMRequest through every phase, strictly in sequence.

    No phase starts before the previous phase's remote task completed. Errors
    are tagged with the failing Stage and carry the partially provisioned VM.
    Nothing is rolled back on failure or cancellation.
    """

    def __init__(
        self,
        phases: ProvisioningPhases,
        builder: Optional[VMSpecBuilder] = None,
        schedule: Optional[RetrySchedule] = None,
        clock: Optional[Clock] = None,
        disk_quiesce_seconds: float = 10.0,
        task_timeout: float = 120.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.phases = phases
        self.builder = builder or VMSpecBuilder()
        self.schedule = schedule if schedule is not None else RetrySchedule()
        self.clock = clock or SystemClock()
        self.disk_quiesce_seconds = disk_quiesce_seconds
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval

    def run(self, request: VMRequest, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        cancel = cancel or CancelToken()
        plan = self.builder.build(request)

        stage = Stage.CONTROLLER_PROVISIONING
        vm: Optional[ProvisionedVM] = None
        try:
            cancel.raise_if_cancelled()
            vm = self.phases.create_shell(plan, cancel)

            stage = Stage.CONTROLLER_RESOLUTION
            cancel.raise_if_cancelled()
            allocation = self.phases.resolve_controllers(vm, plan.required_roles)

            stage = Stage.DISK_PROVISIONING
            cancel.raise_if_cancelled()
            self.phases.attach_devices(vm, allocation, plan.devices, cancel)

            stage = Stage.DESCRIPTOR_RECONCILIATION
            if self.disk_quiesce_seconds > 0:
                logger.info(f"⏳ Waiting {self.disk_quiesce_seconds:g}s for {vm.name} disk files to settle")
                self.clock.sleep(self.disk_quiesce_seconds, cancel)
            cancel.raise_if_cancelled()
            self.phases.reregister(vm, request.resource_pool, cancel)

            if not request.power_on:
                logger.info(f"VM {vm.name} provisioned, power-on skipped")
                return vm

            stage = Stage.POWER_ON
            cancel.raise_if_cancelled()
            self.power_controller().power_on(vm, cancel)
        except ProvisioningError as e:
            raise self._annotate(e, stage, request, vm)
        except Exception as e:
            error = ProvisioningError(f"unexpected error: {e}", cause=e)
            raise self._annotate(error, stage, request, vm) from e

        logger.info(f"🎉 VM {vm.name} ready (id {vm.remote_id})")
        return vm

    def power_controller(self) -> PowerController:
        """A fresh PowerController; its attempt state belongs to one run."""
        return PowerController(
            self.phases.power_api, self.schedule, self.clock, self.task_timeout, self.poll_interval
        )

    @staticmethod
    def _annotate(
        error: ProvisioningError, stage: Stage, request: VMRequest, vm: Optional[ProvisionedVM]
    ) -> ProvisioningError:
        error.tag(stage, vm_name=request.name, remote_id=vm.remote_id if vm is not None else None)
        if vm is not None:
            error.vm = vm
        logger.error(f"❌ Provisioning {request.name} failed: {error}")
        return error
