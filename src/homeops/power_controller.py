"""Phase 4: power-on with a fixed retry schedule."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

from homeops.errors import PowerOnExhaustedError, ProvisioningCancelledError, ProvisioningError
from homeops.hypervisor import PowerAPI
from homeops.models import Phase, PowerState, ProvisionedVM, Stage
from homeops.tasks import CancelToken, Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrySchedule:
    """Ordered waits between power-on attempts, in seconds.

    A schedule of n delays allows n + 1 attempts.
    """

    delays: Tuple[float, ...] = (10.0, 30.0, 60.0)

    def __post_init__(self) -> None:
        if any(d < 0 for d in self.delays):
            raise ValueError(f"retry delays must not be negative: {self.delays}")

    @classmethod
    def from_string(cls, value: str) -> "RetrySchedule":
        """Parse ``"10,30,60"``. An empty string means a single attempt."""
        parts = [p.strip() for p in value.split(",") if p.strip()]
        try:
            return cls(tuple(float(p) for p in parts))
        except ValueError as e:
            raise ValueError(f"invalid retry schedule {value!r}: {e}") from e

    @classmethod
    def immediate(cls, retries: int) -> "RetrySchedule":
        """Zero-delay schedule with ``retries`` retries."""
        return cls(tuple(0.0 for _ in range(retries)))

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    @property
    def total_wait(self) -> float:
        return float(sum(self.delays))

    def __len__(self) -> int:
        return len(self.delays)


class PowerOnState(Enum):
    """States of a single power-on run."""

    OFF = "off"
    STARTING = "starting"
    ON = "on"
    FAILED = "failed"


class PowerController:
    """Powers VMs on, retrying while background disk finalization completes."""

    def __init__(
        self,
        api: PowerAPI,
        schedule: Optional[RetrySchedule] = None,
        clock: Optional[Clock] = None,
        task_timeout: float = 120.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.api = api
        self.schedule = schedule if schedule is not None else RetrySchedule()
        self.clock = clock or SystemClock()
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self.state = PowerOnState.OFF
        self.attempts = 0
        self.waits: List[float] = []

    def power_on(self, target: Union[ProvisionedVM, str], cancel: Optional[CancelToken] = None) -> bool:
        """Power ``target`` on. Returns True if a power-on task was issued.

        Already running VMs are left alone and count as success.

        Raises:
            PowerOnExhaustedError: After ``len(schedule) + 1`` failed attempts
            ProvisioningCancelledError: If ``cancel`` fires; never retried
        """
        vm = target if isinstance(target, ProvisionedVM) else None
        remote_id = vm.remote_id if vm is not None else str(target)
        name = vm.name if vm is not None else remote_id

        self.attempts = 0
        self.waits = []

        if vm is not None and vm.phase == Phase.ON:
            logger.info(f"VM {name} is already on")
            self.state = PowerOnState.ON
            return False

        try:
            current = self.api.power_state(remote_id)
        except ProvisioningError as e:
            raise e.tag(Stage.POWER_ON, vm_name=name, remote_id=remote_id)
        if current == PowerState.ON:
            logger.info(f"VM {name} is already powered on")
            self._mark_on(vm)
            return False

        self.state = PowerOnState.OFF
        last_error: Optional[BaseException] = None
        for attempt in range(self.schedule.max_attempts):
            if cancel is not None:
                cancel.raise_if_cancelled(Stage.POWER_ON)
            self.attempts = attempt + 1
            self.state = PowerOnState.STARTING
            logger.info(f"⚡ Powering on {name} (attempt {self.attempts}/{self.schedule.max_attempts})")
            try:
                task = self.api.power_on(remote_id)
                task.wait(self.task_timeout, self.poll_interval, cancel=cancel, clock=self.clock)
            except ProvisioningCancelledError as e:
                self.state = PowerOnState.FAILED
                raise e.tag(Stage.POWER_ON, vm_name=name, remote_id=remote_id)
            except ProvisioningError as e:
                last_error = e
                self.state = PowerOnState.OFF
                if attempt < len(self.schedule):
                    delay = self.schedule.delays[attempt]
                    logger.warning(f"Power-on of {name} failed: {e.message}. Retrying in {delay:g}s")
                    self.waits.append(delay)
                    try:
                        self.clock.sleep(delay, cancel)
                    except ProvisioningCancelledError as cancelled:
                        self.state = PowerOnState.FAILED
                        raise cancelled.tag(Stage.POWER_ON, vm_name=name, remote_id=remote_id)
                continue

            logger.info(f"✅ VM {name} powered on")
            self._mark_on(vm)
            return True

        self.state = PowerOnState.FAILED
        total_wait = float(sum(self.waits))
        message = (
            f"failed to power on {name} after {self.attempts} attempts ({total_wait:g}s waited): "
            f"{getattr(last_error, 'message', last_error)}"
        )
        logger.error(f"❌ {message}")
        raise PowerOnExhaustedError(
            message,
            attempts=self.attempts,
            total_wait=total_wait,
            last_error=last_error,
            stage=Stage.POWER_ON,
            vm_name=name,
            remote_id=remote_id,
        )

    def power_off(self, remote_id: str, cancel: Optional[CancelToken] = None) -> bool:
        """Power off if running. Returns False when the VM was already off."""
        if self.api.power_state(remote_id) != PowerState.ON:
            return False
        self.api.power_off(remote_id).wait(self.task_timeout, self.poll_interval, cancel=cancel, clock=self.clock)
        return True

    def _mark_on(self, vm: Optional[ProvisionedVM]) -> None:
        self.state = PowerOnState.ON
        if vm is not None:
            vm.advance(Phase.ON)
