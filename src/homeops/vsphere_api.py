import logging
import os
import ssl
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence

import requests
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from homeops.errors import RemoteAPIError
from homeops.hypervisor import HypervisorAPI
from homeops.models import (
    ControllerType,
    DeviceIntent,
    DeviceKind,
    PowerState,
    RemoteDevice,
    Resolved,
    ShellSpec,
    VMSummary,
)
from homeops.tasks import RemoteTask, TaskState, TaskStatus

logger = logging.getLogger(__name__)

_TASK_STATES = {
    "queued": TaskState.QUEUED,
    "running": TaskState.RUNNING,
    "success": TaskState.SUCCESS,
    "error": TaskState.ERROR,
}

_POWER_STATES = {
    "poweredOn": PowerState.ON,
    "poweredOff": PowerState.OFF,
    "suspended": PowerState.SUSPENDED,
}


def parse_cpu_set(value: str) -> List[int]:
    """Expand ``"0-3,8"`` to ``[0, 1, 2, 3, 8]``."""
    cpus: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = part.split("-", 1)
            cpus.extend(range(int(start), int(end) + 1))
        else:
            cpus.append(int(part))
    return cpus


def _fault_message(fault: Any) -> str:
    return getattr(fault, "msg", None) or str(fault)


@contextmanager
def remote_call(action: str) -> Iterator[None]:
    """Translate vmodl faults raised inside the block into RemoteAPIError."""
    try:
        yield
    except vmodl.MethodFault as e:
        raise RemoteAPIError(f"{action} failed: {_fault_message(e)}", cause=e) from e


class VSphereTask(RemoteTask):
    """Wraps a ``vim.Task``. The result of a VM-returning task is its moid."""

    def __init__(self, task: Any, description: str) -> None:
        self.task = task
        self.description = description

    def poll(self) -> TaskStatus:
        with remote_call(self.description):
            info = self.task.info
        state = _TASK_STATES.get(str(info.state), TaskState.RUNNING)
        if state == TaskState.ERROR:
            return TaskStatus(state, error=_fault_message(info.error) if info.error else None)
        if state == TaskState.SUCCESS:
            result = info.result
            return TaskStatus(state, result=getattr(result, "_moId", result))
        return TaskStatus(state)


def build_shell_config(shell: ShellSpec, controllers: Sequence[DeviceIntent]) -> vim.vm.ConfigSpec:
    """ConfigSpec for the VM shell: base settings plus controller additions only."""
    extra_config = [vim.option.OptionValue(key="disk.EnableUUID", value="TRUE")]
    if shell.expose_counters:
        extra_config.append(vim.option.OptionValue(key="monitor.phys_bits_used", value="45"))

    spec = vim.vm.ConfigSpec()
    spec.name = shell.name
    spec.guestId = shell.guest_id
    spec.numCPUs = shell.cpus
    spec.memoryMB = shell.memory_mb
    spec.files = vim.vm.FileInfo(vmPathName=f"[{shell.datastore}] {shell.name}")
    spec.firmware = shell.firmware
    spec.bootOptions = vim.vm.BootOptions(efiSecureBootEnabled=False)
    spec.flags = vim.vm.FlagInfo(
        virtualMmuUsage="automatic",
        virtualExecUsage="hvAuto",
        vvtdEnabled=shell.enable_iommu,
    )
    spec.vPMCEnabled = shell.expose_counters
    spec.extraConfig = extra_config
    spec.tools = vim.vm.ToolsConfigInfo(syncTimeWithHost=True)
    if shell.cpu_affinity:
        spec.cpuAffinity = vim.vm.AffinityInfo(affinitySet=parse_cpu_set(shell.cpu_affinity))
    spec.deviceChange = [build_device_spec(c) for c in controllers]
    return spec


def _connectable() -> vim.vm.device.VirtualDevice.ConnectInfo:
    return vim.vm.device.VirtualDevice.ConnectInfo(connected=True, startConnected=True, allowGuestControl=True)


def _placeholder(intent: DeviceIntent) -> int:
    identity = intent.identity
    return identity.key if isinstance(identity, Resolved) else identity.placeholder


def _controller_key(intent: DeviceIntent) -> int:
    if not isinstance(intent.controller, Resolved):
        raise ValueError(f"{intent.label} references an unresolved controller")
    return intent.controller.key


def build_device_spec(
    intent: DeviceIntent,
    datastore: Optional[Any] = None,
    network: Optional[Any] = None,
) -> vim.vm.device.VirtualDeviceSpec:
    """Translate one DeviceIntent into an ``add`` VirtualDeviceSpec.

    ``datastore`` and ``network`` are the managed objects backing disks, the
    optical drive and the NIC. Attached devices must already be bound to a
    resolved controller key.
    """
    spec = vim.vm.device.VirtualDeviceSpec()
    spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    key = _placeholder(intent)

    if intent.kind == DeviceKind.CONTROLLER:
        if intent.controller_type == ControllerType.NVME:
            device = vim.vm.device.VirtualNVMEController()
        elif intent.controller_type == ControllerType.SCSI:
            device = vim.vm.device.ParaVirtualSCSIController()
            device.sharedBus = vim.vm.device.VirtualSCSIController.Sharing.noSharing
        elif intent.controller_type == ControllerType.IDE:
            device = vim.vm.device.VirtualIDEController()
        else:
            raise ValueError(f"unsupported controller type: {intent.controller_type}")
        device.key = key
        device.busNumber = intent.bus_number or 0

    elif intent.kind == DeviceKind.DISK:
        spec.fileOperation = vim.vm.device.VirtualDeviceSpec.FileOperation.create
        device = vim.vm.device.VirtualDisk()
        device.key = key
        device.controllerKey = _controller_key(intent)
        device.unitNumber = intent.unit_number or 0
        device.capacityInKB = intent.capacity_kb
        backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo()
        # Empty file name places the VMDK in the VM folder
        backing.fileName = ""
        backing.datastore = datastore
        backing.diskMode = "persistent"
        backing.thinProvisioned = intent.thin_provisioned
        backing.eagerlyScrub = False
        device.backing = backing

    elif intent.kind == DeviceKind.NETWORK_ADAPTER:
        device = vim.vm.device.VirtualVmxnet3()
        device.key = key
        backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()
        backing.deviceName = intent.network
        backing.network = network
        device.backing = backing
        device.connectable = _connectable()
        if intent.mac_address:
            device.addressType = "manual"
            device.macAddress = intent.mac_address
        else:
            device.addressType = "generated"

    elif intent.kind == DeviceKind.OPTICAL_DRIVE:
        device = vim.vm.device.VirtualCdrom()
        device.key = key
        device.controllerKey = _controller_key(intent)
        device.unitNumber = intent.unit_number or 0
        device.backing = vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName=intent.iso_path, datastore=datastore)
        device.connectable = _connectable()

    elif intent.kind == DeviceKind.PRECISION_CLOCK:
        device = vim.vm.device.VirtualPrecisionClock()
        device.key = key
        device.backing = vim.vm.device.VirtualPrecisionClock.SystemClockBackingInfo(protocol="ntp")

    elif intent.kind == DeviceKind.WATCHDOG:
        device = vim.vm.device.VirtualWDT()
        device.key = key
        device.runOnBoot = True

    else:
        raise ValueError(f"unsupported device kind: {intent.kind}")

    spec.device = device
    return spec


def to_vm_summary(vm: Any) -> VMSummary:
    """Translate a ``vim.VirtualMachine`` summary."""
    config = vm.summary.config
    guest = vm.summary.guest
    return VMSummary(
        name=config.name,
        remote_id=vm._moId,
        power_state=_POWER_STATES.get(str(vm.summary.runtime.powerState), PowerState.UNKNOWN),
        cpus=config.numCpu,
        memory_mb=config.memorySizeMB,
        details={
            "guest": config.guestFullName or "",
            "path": config.vmPathName or "",
            "ip": (guest.ipAddress if guest else None) or "",
        },
    )


def to_remote_device(device: Any) -> Optional[RemoteDevice]:
    """Translate a ``vim.vm.device.VirtualDevice``. Unmanaged kinds map to None."""
    label = device.deviceInfo.label if getattr(device, "deviceInfo", None) else ""

    if isinstance(device, vim.vm.device.VirtualNVMEController):
        return RemoteDevice(DeviceKind.CONTROLLER, device.key, label, ControllerType.NVME, device.busNumber)
    if isinstance(device, vim.vm.device.VirtualIDEController):
        return RemoteDevice(DeviceKind.CONTROLLER, device.key, label, ControllerType.IDE, device.busNumber)
    if isinstance(device, vim.vm.device.VirtualSCSIController):
        return RemoteDevice(DeviceKind.CONTROLLER, device.key, label, ControllerType.SCSI, device.busNumber)

    kind = None
    if isinstance(device, vim.vm.device.VirtualDisk):
        kind = DeviceKind.DISK
    elif isinstance(device, vim.vm.device.VirtualEthernetCard):
        kind = DeviceKind.NETWORK_ADAPTER
    elif isinstance(device, vim.vm.device.VirtualCdrom):
        kind = DeviceKind.OPTICAL_DRIVE
    elif isinstance(device, vim.vm.device.VirtualPrecisionClock):
        kind = DeviceKind.PRECISION_CLOCK
    elif isinstance(device, vim.vm.device.VirtualWDT):
        kind = DeviceKind.WATCHDOG
    if kind is None:
        return None

    return RemoteDevice(
        kind,
        device.key,
        label,
        controller_key=getattr(device, "controllerKey", None),
        unit_number=getattr(device, "unitNumber", None),
    )


class VSphereAPI(HypervisorAPI):
    """pyVmomi client for a standalone ESXi host or vCenter."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        insecure: bool = True,
        port: int = 443,
        service_instance: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.insecure = insecure
        self.port = port
        self._si = service_instance
        self._connect_lock = threading.Lock()

    @property
    def si(self) -> Any:
        # One session shared by every pipeline thread
        if self._si is None:
            with self._connect_lock:
                if self._si is None:
                    self._si = self.connect()
        return self._si

    def connect(self) -> Any:
        ssl_context = None
        if self.insecure:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        logger.info(f"Connecting to vSphere at {self.host}")
        try:
            return SmartConnect(
                host=self.host, user=self.username, pwd=self.password, port=self.port, sslContext=ssl_context
            )
        except vim.fault.InvalidLogin as e:
            raise RemoteAPIError(f"vSphere login failed for {self.username}@{self.host}", cause=e) from e
        except (vmodl.MethodFault, OSError) as e:
            raise RemoteAPIError(f"Failed to connect to vSphere {self.host}: {e}", retryable=True, cause=e) from e

    def close(self) -> None:
        with self._connect_lock:
            if self._si is not None:
                Disconnect(self._si)
                self._si = None

    @property
    def content(self) -> Any:
        return self.si.RetrieveContent()

    def _find_all(self, vimtype: Any) -> List[Any]:
        content = self.content
        container = content.viewManager.CreateContainerView(content.rootFolder, [vimtype], True)
        try:
            return list(container.view)
        finally:
            container.Destroy()

    def _find(self, vimtype: Any, name: str) -> Optional[Any]:
        for obj in self._find_all(vimtype):
            if obj.name == name:
                return obj
        return None

    def _datacenter(self) -> Any:
        for entity in self.content.rootFolder.childEntity:
            if isinstance(entity, vim.Datacenter):
                return entity
        raise RemoteAPIError(f"No datacenter found on {self.host}")

    def _resource_pool(self, name: Optional[str] = None) -> Any:
        if name:
            pool = self._find(vim.ResourcePool, name)
            if pool is None:
                raise RemoteAPIError(f"Resource pool {name} not found")
            return pool
        for entity in self._datacenter().hostFolder.childEntity:
            if isinstance(entity, vim.ComputeResource):
                return entity.resourcePool
        raise RemoteAPIError(f"No compute resource found on {self.host}")

    def _datastore(self, name: Optional[str]) -> Optional[Any]:
        if not name:
            return None
        datastore = self._find(vim.Datastore, name)
        if datastore is None:
            raise RemoteAPIError(f"Datastore {name} not found")
        return datastore

    def _network(self, name: Optional[str]) -> Optional[Any]:
        if not name:
            return None
        network = self._find(vim.Network, name)
        if network is None:
            raise RemoteAPIError(f"Network {name} not found")
        return network

    def _vm(self, remote_id: str) -> Any:
        return vim.VirtualMachine(remote_id, self.si._stub)

    def create_vm(self, shell: ShellSpec, controllers: Sequence[DeviceIntent]) -> RemoteTask:
        with remote_call(f"create VM {shell.name}"):
            self._datastore(shell.datastore)  # raises for an unknown datastore
            spec = build_shell_config(shell, controllers)
            folder = self._datacenter().vmFolder
            task = folder.CreateVM_Task(config=spec, pool=self._resource_pool(shell.resource_pool))
        return VSphereTask(task, f"create VM {shell.name}")

    def reconfigure(self, remote_id: str, devices: Sequence[DeviceIntent]) -> RemoteTask:
        with remote_call(f"reconfigure {remote_id}"):
            lookup: Callable[[Optional[str]], Optional[Any]] = _memoize(self._datastore)
            changes = [
                build_device_spec(
                    d,
                    datastore=lookup(d.datastore),
                    network=self._network(d.network) if d.kind == DeviceKind.NETWORK_ADAPTER else None,
                )
                for d in devices
            ]
            task = self._vm(remote_id).ReconfigVM_Task(spec=vim.vm.ConfigSpec(deviceChange=changes))
        return VSphereTask(task, f"reconfigure {remote_id}")

    def read_devices(self, remote_id: str) -> List[RemoteDevice]:
        with remote_call(f"read devices of {remote_id}"):
            hardware = self._vm(remote_id).config.hardware.device
        return [d for d in (to_remote_device(device) for device in hardware) if d is not None]

    def descriptor_path(self, remote_id: str) -> str:
        with remote_call(f"read config path of {remote_id}"):
            return str(self._vm(remote_id).config.files.vmPathName)

    def unregister(self, remote_id: str) -> None:
        with remote_call(f"unregister {remote_id}"):
            self._vm(remote_id).UnregisterVM()

    def register(self, path: str, name: str, pool: Optional[str] = None) -> RemoteTask:
        with remote_call(f"register {name}"):
            folder = self._datacenter().vmFolder
            task = folder.RegisterVM_Task(path=path, name=name, asTemplate=False, pool=self._resource_pool(pool))
        return VSphereTask(task, f"register {name}")

    def power_state(self, remote_id: str) -> PowerState:
        with remote_call(f"read power state of {remote_id}"):
            state = self._vm(remote_id).runtime.powerState
        return _POWER_STATES.get(str(state), PowerState.UNKNOWN)

    def power_on(self, remote_id: str) -> RemoteTask:
        with remote_call(f"power on {remote_id}"):
            task = self._vm(remote_id).PowerOnVM_Task()
        return VSphereTask(task, f"power on {remote_id}")

    def power_off(self, remote_id: str) -> RemoteTask:
        with remote_call(f"power off {remote_id}"):
            task = self._vm(remote_id).PowerOffVM_Task()
        return VSphereTask(task, f"power off {remote_id}")

    def destroy(self, remote_id: str) -> RemoteTask:
        with remote_call(f"destroy {remote_id}"):
            task = self._vm(remote_id).Destroy_Task()
        return VSphereTask(task, f"destroy {remote_id}")

    def list_vms(self) -> List[VMSummary]:
        with remote_call("list VMs"):
            return [to_vm_summary(vm) for vm in self._find_all(vim.VirtualMachine)]

    def vm_info(self, remote_id: str) -> VMSummary:
        with remote_call(f"read summary of {remote_id}"):
            return to_vm_summary(self._vm(remote_id))

    def find_vm(self, name: str) -> Optional[str]:
        with remote_call(f"find VM {name}"):
            vm = self._find(vim.VirtualMachine, name)
        return vm._moId if vm is not None else None

    def session_cookies(self) -> dict:
        """Session cookie of the SOAP connection, for HTTP file transfers."""
        raw = self.si._stub.cookie
        name, rest = raw.split("=", 1)
        return {name.strip(): rest.split(";", 1)[0]}

    def upload_file(self, local_path: str, datastore: str, remote_name: str) -> str:
        """PUT ``local_path`` to ``https://host/folder/<remote_name>`` on ``datastore``."""
        size_mb = os.path.getsize(local_path) // (1024 * 1024)
        logger.info(f"📤 Uploading {remote_name} ({size_mb} MB) to [{datastore}]")

        with remote_call(f"look up datacenter for {datastore}"):
            dc_name = self._datacenter().name
        url = f"https://{self.host}:{self.port}/folder/{remote_name}"
        try:
            with open(local_path, "rb") as f:
                response = requests.put(
                    url,
                    params={"dcPath": dc_name, "dsName": datastore},
                    data=f,
                    headers={"Content-Type": "application/octet-stream"},
                    cookies=self.session_cookies(),
                    verify=not self.insecure,
                    timeout=3600,
                )
            response.raise_for_status()
        except requests.RequestException as e:
            raise RemoteAPIError(f"Upload of {remote_name} to {datastore} failed: {e}", cause=e) from e

        path = f"[{datastore}] {remote_name}"
        logger.info(f"✅ Uploaded {path}")
        return path


def _memoize(func: Callable[[Optional[str]], Optional[Any]]) -> Callable[[Optional[str]], Optional[Any]]:
    cache: dict = {}

    def lookup(name: Optional[str]) -> Optional[Any]:
        if name not in cache:
            cache[name] = func(name)
        return cache[name]

    return lookup
