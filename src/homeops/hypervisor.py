"""Hypervisor control API boundary and backend capability set."""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from homeops.models import DeviceIntent, PowerState, ProvisionedVM, RemoteDevice, ShellSpec, VMRequest, VMSummary
from homeops.tasks import CancelToken, RemoteTask


class PowerAPI(ABC):
    """Power operations needed by the PowerController."""

    @abstractmethod
    def power_state(self, remote_id: str) -> PowerState:
        ...

    @abstractmethod
    def power_on(self, remote_id: str) -> RemoteTask:
        ...

    @abstractmethod
    def power_off(self, remote_id: str) -> RemoteTask:
        ...


class InventoryAPI(PowerAPI):
    """Lookup, removal and file upload on a hypervisor."""

    @abstractmethod
    def find_vm(self, name: str) -> Optional[str]:
        """Remote id of the VM called ``name``, or None."""
        ...

    @abstractmethod
    def list_vms(self) -> List[VMSummary]:
        ...

    @abstractmethod
    def vm_info(self, remote_id: str) -> VMSummary:
        """Summary of one VM including its platform details."""
        ...

    @abstractmethod
    def destroy(self, remote_id: str) -> RemoteTask:
        ...

    @abstractmethod
    def upload_file(self, local_path: str, datastore: str, remote_name: str) -> str:
        """Upload a file to a datastore and return its platform path."""
        ...

    def close(self) -> None:
        """Release the connection."""


class HypervisorAPI(InventoryAPI):
    """Remote control API of a hypervisor with a keyed device model.

    Methods that start remote work return a RemoteTask; read calls return
    data directly. Implementations raise RemoteAPIError when the backend
    rejects a request.
    """

    @abstractmethod
    def create_vm(self, shell: ShellSpec, controllers: Sequence[DeviceIntent]) -> RemoteTask:
        """Create a VM shell with only the given controllers. Task result: remote id."""
        ...

    @abstractmethod
    def reconfigure(self, remote_id: str, devices: Sequence[DeviceIntent]) -> RemoteTask:
        """Add all ``devices`` to the VM in a single request."""
        ...

    @abstractmethod
    def read_devices(self, remote_id: str) -> List[RemoteDevice]:
        ...

    @abstractmethod
    def descriptor_path(self, remote_id: str) -> str:
        """Path of the VM's on-disk configuration file."""
        ...

    @abstractmethod
    def unregister(self, remote_id: str) -> None:
        ...

    @abstractmethod
    def register(self, path: str, name: str, pool: Optional[str] = None) -> RemoteTask:
        """Register a VM from ``path``. Task result: new remote id."""
        ...


class HypervisorBackend(ABC):
    """Capability set every hypervisor backend provides."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def create(self, request: VMRequest, cancel: Optional[CancelToken] = None) -> ProvisionedVM:
        """Provision one VM end to end."""
        ...

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Delete a VM. Returns False if it did not exist."""
        ...

    @abstractmethod
    def start(self, name: str) -> None:
        ...

    @abstractmethod
    def stop(self, name: str) -> None:
        ...

    @abstractmethod
    def upload_iso(self, local_path: str, filename: Optional[str] = None) -> str:
        """Upload boot media and return the path VMRequest.iso should use."""
        ...

    @abstractmethod
    def list(self) -> List[VMSummary]:
        """Every VM on the hypervisor, sorted by name."""
        ...

    @abstractmethod
    def info(self, name: str) -> VMSummary:
        ...

    def close(self) -> None:
        """Release backend connections."""
