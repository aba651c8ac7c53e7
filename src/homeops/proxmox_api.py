from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional
import logging
import os

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
import requests

from homeops.errors import RemoteAPIError
from homeops.hypervisor import InventoryAPI
from homeops.models import PowerState, VMSummary
from homeops.tasks import CompletedTask, RemoteTask, TaskState, TaskStatus

logger = logging.getLogger(__name__)

_POWER_STATES = {
    "running": PowerState.ON,
    "stopped": PowerState.OFF,
    "paused": PowerState.SUSPENDED,
    "suspended": PowerState.SUSPENDED,
}

# Config keys shown by vm_info
INFO_CONFIG_KEYS = ("cores", "sockets", "bios", "scsihw", "ostype", "boot")


@contextmanager
def remote_call(action: str) -> Iterator[None]:
    """Translate proxmoxer and transport errors raised inside the block."""
    try:
        yield
    except ResourceException as e:
        raise RemoteAPIError(f"{action} failed: {e}", retryable=e.status_code >= 500, cause=e) from e
    except requests.RequestException as e:
        raise RemoteAPIError(f"{action} failed: {e}", retryable=True, cause=e) from e


def parse_token(token: str) -> tuple:
    """Split ``user@realm!name=secret`` into (user, token name, secret)."""
    try:
        user_token, secret = token.split("=", 1)
        user, token_name = user_token.split("!", 1)
    except ValueError:
        raise ValueError(f"API token must look like 'user@realm!name=secret', got {token.split('=')[0]!r}")
    return user, token_name, secret


class ProxmoxTask(RemoteTask):
    """UPID-based Proxmox task. ``result`` is returned once the task succeeds."""

    def __init__(self, client: "ProxmoxClient", upid: str, description: str, result: Any = None) -> None:
        self.client = client
        self.upid = upid
        self.description = description
        self.result = result

    def poll(self) -> TaskStatus:
        with remote_call(self.description):
            status = self.client.api.nodes(self.client.node).tasks(self.upid).status.get()
        if status.get("status") != "stopped":
            return TaskStatus(TaskState.RUNNING)
        exit_status = status.get("exitstatus", "")
        if exit_status == "OK":
            return TaskStatus(TaskState.SUCCESS, result=self.result)
        return TaskStatus(TaskState.ERROR, error=exit_status or "task stopped without exit status")


class ProxmoxClient(InventoryAPI):
    """Wrapper around the Proxmox VE API for a single node, using token auth."""

    def __init__(
        self,
        host: str,
        node: str,
        token: Optional[str] = None,
        token_id: Optional[str] = None,
        token_secret: Optional[str] = None,
        verify_ssl: bool = False,
        api: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.node = node

        # Either "user@realm!name=secret" or a token id plus its secret
        if token:
            self.user, self.token_name, self.api_token = parse_token(token)
        elif token_id and token_secret:
            self.user, self.token_name, self.api_token = parse_token(f"{token_id}={token_secret}")
        elif api is None:
            raise ValueError("Proxmox API token is not set")

        if api is not None:
            self.api = api
        else:
            self.api = ProxmoxAPI(
                host, user=self.user, token_name=self.token_name, token_value=self.api_token, verify_ssl=verify_ssl
            )

    def _task(self, upid: Any, description: str, result: Any = None) -> RemoteTask:
        # Synchronous endpoints return no UPID
        if not upid or not str(upid).startswith("UPID:"):
            return CompletedTask(result=result, description=description)
        return ProxmoxTask(self, str(upid), description, result)

    def _qemu(self, vmid: str) -> Any:
        return self.api.nodes(self.node).qemu(int(vmid))

    def _qemu_list(self) -> List[Dict[str, Any]]:
        with remote_call(f"list VMs on {self.node}"):
            return self.api.nodes(self.node).qemu.get()  # type: ignore[no-any-return]

    def _summary(self, vmid: Any, status: Dict[str, Any], name: Optional[str] = None) -> VMSummary:
        maxmem = status.get("maxmem")
        return VMSummary(
            name=name or status.get("name", ""),
            remote_id=str(vmid),
            power_state=_POWER_STATES.get(status.get("status", ""), PowerState.UNKNOWN),
            cpus=status.get("cpus"),
            memory_mb=int(maxmem) // (1024 * 1024) if maxmem else None,
            details={"node": self.node, "uptime": f"{status.get('uptime', 0)}s"},
        )

    def list_vms(self) -> List[VMSummary]:
        return [self._summary(vm["vmid"], vm) for vm in self._qemu_list()]

    def vm_info(self, remote_id: str) -> VMSummary:
        with remote_call(f"read status of VM {remote_id}"):
            status = self._qemu(remote_id).status.current.get()
        config = self.get_config(remote_id)
        summary = self._summary(remote_id, status, name=config.get("name"))
        details = dict(summary.details)
        details.update({key: str(config[key]) for key in INFO_CONFIG_KEYS if key in config})
        return replace(summary, details=details)

    def find_vm(self, name: str) -> Optional[str]:
        for vm in self._qemu_list():
            if vm.get("name") == name:
                return str(vm["vmid"])
        return None

    def next_vmid(self) -> int:
        """Lowest free VMID from 100, counting every VM and container in the cluster."""
        with remote_call("list cluster resources"):
            resources = self.api.cluster.resources.get(type="vm")
        used = {int(r["vmid"]) for r in resources}
        for candidate in range(100, 1000000):
            if candidate not in used:
                return candidate
        raise RemoteAPIError("No available VMIDs found")

    def create_vm(self, vmid: int, options: Dict[str, Any]) -> RemoteTask:
        with remote_call(f"create VM {options.get('name', vmid)}"):
            upid = self.api.nodes(self.node).qemu.post(vmid=vmid, **options)
        return self._task(upid, f"create VM {vmid}", result=str(vmid))

    def get_config(self, vmid: str) -> Dict[str, Any]:
        with remote_call(f"read config of VM {vmid}"):
            return self._qemu(vmid).config.get()  # type: ignore[no-any-return]

    def update_config(self, vmid: str, options: Dict[str, Any]) -> RemoteTask:
        with remote_call(f"update config of VM {vmid}"):
            upid = self._qemu(vmid).config.post(**options)
        return self._task(upid, f"update config of VM {vmid}")

    def power_state(self, remote_id: str) -> PowerState:
        with remote_call(f"read status of VM {remote_id}"):
            status = self._qemu(remote_id).status.current.get()
        return _POWER_STATES.get(status.get("status", ""), PowerState.UNKNOWN)

    def power_on(self, remote_id: str) -> RemoteTask:
        with remote_call(f"start VM {remote_id}"):
            upid = self._qemu(remote_id).status.start.post()
        return self._task(upid, f"start VM {remote_id}")

    def power_off(self, remote_id: str) -> RemoteTask:
        with remote_call(f"stop VM {remote_id}"):
            upid = self._qemu(remote_id).status.stop.post()
        return self._task(upid, f"stop VM {remote_id}")

    def destroy(self, remote_id: str) -> RemoteTask:
        with remote_call(f"delete VM {remote_id}"):
            upid = self._qemu(remote_id).delete()
        return self._task(upid, f"delete VM {remote_id}")

    def iso_exists(self, storage: str, filename: str) -> bool:
        with remote_call(f"list content of {storage}"):
            content = self.api.nodes(self.node).storage(storage).content.get(content="iso")
        return any(item.get("volid", "").endswith(f"iso/{filename}") for item in content)

    def upload_file(self, local_path: str, datastore: str, remote_name: str) -> str:
        """Upload an ISO to ``datastore`` unless a file of that name is already there."""
        path = f"{datastore}:iso/{remote_name}"
        if self.iso_exists(datastore, remote_name):
            logger.info(f"✅ ISO {remote_name} already exists in storage {datastore}. Skipping upload.")
            return path

        size_mb = os.path.getsize(local_path) // (1024 * 1024)
        logger.info(f"📤 Uploading {remote_name} ({size_mb} MB) to {datastore}")
        with remote_call(f"upload {remote_name} to {datastore}"):
            with open(local_path, "rb") as iso_file:
                upid = self.api.nodes(self.node).storage(datastore).upload.post(content="iso", filename=iso_file)
        self._task(upid, f"upload {remote_name}").wait(timeout=600, poll_interval=5)
        return path

    def download_url(self, storage: str, url: str, filename: str) -> RemoteTask:
        """Have the node fetch ``url`` straight into ``storage``."""
        with remote_call(f"download {filename} to {storage}"):
            upid = self.api.nodes(self.node).storage(storage)("download-url").post(
                content="iso", filename=filename, url=url
            )
        return self._task(upid, f"download {filename}", result=f"{storage}:iso/{filename}")
