"""Error taxonomy for VM provisioning.

Every error raised by the provisioning pipeline is a ``ProvisioningError``.
The pipeline tags each one with the ``Stage`` that failed so an operator can
tell "never created" apart from "created but not disked" apart from
"created and disked but not powered on" without parsing message text.
"""

from typing import Any, Iterable, Optional

from homeops.models import Stage


class ProvisioningError(Exception):
    """Base exception for VM provisioning errors."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[Stage] = None,
        vm_name: Optional[str] = None,
        remote_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.vm_name = vm_name
        self.remote_id = remote_id
        self.cause = cause
        # Partially provisioned VM, attached by the pipeline when one exists
        self.vm: Any = None

    def tag(self, stage: Stage, vm_name: Optional[str] = None, remote_id: Optional[str] = None) -> "ProvisioningError":
        """Fill in stage and identity fields that are not already set."""
        if self.stage is None:
            self.stage = stage
        if self.vm_name is None:
            self.vm_name = vm_name
        if self.remote_id is None:
            self.remote_id = remote_id
        return self

    @property
    def remote_created(self) -> bool:
        """True if the remote VM object is known to exist."""
        return self.remote_id is not None

    def __str__(self) -> str:
        prefix = f"[{self.stage.value}] " if self.stage else ""
        return f"{prefix}{self.message}"


class ValidationError(ProvisioningError):
    """Raised when a VMRequest is invalid. Never retried, no remote call made."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class RemoteAPIError(ProvisioningError):
    """Raised when the hypervisor rejects a request or a remote task fails."""

    def __init__(self, message: str, retryable: bool = False, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable


class TaskTimeoutError(ProvisioningError, TimeoutError):
    """Raised when a remote task wait exceeds its bound.

    The remote operation may still complete; the VM is in an unknown state.
    """

    def __init__(self, message: str, timeout: float = 0.0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.timeout = timeout


class StructuralInvariantError(ProvisioningError):
    """Raised when the remote VM exists but is missing expected controllers."""

    def __init__(self, message: str, missing_roles: Iterable[Any] = (), **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.missing_roles = tuple(missing_roles)


class AllocationPreconditionError(ProvisioningError):
    """Raised when devices are bound against an allocation lacking a required role."""

    def __init__(self, message: str, missing_roles: Iterable[Any] = (), **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.missing_roles = tuple(missing_roles)


class ReregistrationError(RemoteAPIError):
    """Raised when the unregister/register cycle fails. Fatal for the VM."""

    def __init__(
        self,
        message: str,
        original_id: Optional[str] = None,
        new_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.original_id = original_id
        self.new_id = new_id

    def __str__(self) -> str:
        return f"{super().__str__()} (before: {self.original_id}, after: {self.new_id})"


class PowerOnExhaustedError(ProvisioningError):
    """Raised when every power-on attempt in the retry schedule failed."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        total_wait: float = 0.0,
        last_error: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("cause", last_error)
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.total_wait = total_wait
        self.last_error = last_error


class ProvisioningCancelledError(ProvisioningError):
    """Raised when an external cancellation aborts a pipeline.

    Partially created remote resources are NOT rolled back.
    """


class SecretNotFoundError(Exception):
    """Raised when a secret cannot be resolved from 1Password or the environment."""
