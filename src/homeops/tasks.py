"""Remote task waiting, cancellation and injectable time."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from homeops.errors import ProvisioningCancelledError, RemoteAPIError, TaskTimeoutError
from homeops.models import Stage

logger = logging.getLogger(__name__)


class CancelToken:
    """External cancellation signal shared with a running pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``. Returns True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self, stage: Optional[Stage] = None) -> None:
        if self.cancelled:
            raise ProvisioningCancelledError("provisioning cancelled", stage=stage)


class Clock(ABC):
    """Time source for waits and backoff."""

    @abstractmethod
    def monotonic(self) -> float:
        ...

    @abstractmethod
    def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> None:
        """Sleep, raising ProvisioningCancelledError if ``cancel`` fires."""
        ...


class SystemClock(Clock):
    """Real time."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> None:
        if seconds <= 0:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return
        if cancel is None:
            time.sleep(seconds)
            return
        if cancel.wait(seconds):
            raise ProvisioningCancelledError("provisioning cancelled while waiting")


class TaskState(Enum):
    """Remote task states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TaskStatus:
    """Snapshot of a remote task."""

    state: TaskState
    result: Any = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in (TaskState.SUCCESS, TaskState.ERROR)


class RemoteTask(ABC):
    """Handle on an asynchronous remote operation."""

    description: str = "remote task"

    @abstractmethod
    def poll(self) -> TaskStatus:
        """Return the current state of the task."""
        ...

    def wait(
        self,
        timeout: float,
        poll_interval: float = 1.0,
        cancel: Optional[CancelToken] = None,
        clock: Optional[Clock] = None,
    ) -> Any:
        """Block until the task finishes and return its result.

        Raises:
            RemoteAPIError: If the task finished with an error
            TaskTimeoutError: If the task did not finish within ``timeout``
            ProvisioningCancelledError: If ``cancel`` fired while waiting
        """
        clock = clock or SystemClock()
        deadline = clock.monotonic() + timeout
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            status = self.poll()
            if status.state == TaskState.SUCCESS:
                return status.result
            if status.state == TaskState.ERROR:
                raise RemoteAPIError(f"{self.description} failed: {status.error or 'unknown error'}")
            if clock.monotonic() >= deadline:
                raise TaskTimeoutError(f"{self.description} did not complete within {timeout:g}s", timeout=timeout)
            clock.sleep(poll_interval, cancel)


class CompletedTask(RemoteTask):
    """A task that has already finished. Used for synchronous remote calls."""

    def __init__(self, result: Any = None, error: Optional[str] = None, description: str = "remote task") -> None:
        self.result = result
        self.error = error
        self.description = description

    def poll(self) -> TaskStatus:
        if self.error is not None:
            return TaskStatus(TaskState.ERROR, error=self.error)
        return TaskStatus(TaskState.SUCCESS, result=self.result)
