import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from homeops.power_controller import RetrySchedule


class Config:
    """Loads hypervisor endpoints and VM defaults from environment variables."""

    load_dotenv()

    # vSphere / ESXi
    VSPHERE_HOST = os.getenv("VSPHERE_HOST")
    VSPHERE_USERNAME = os.getenv("VSPHERE_USERNAME")
    VSPHERE_PASSWORD = os.getenv("VSPHERE_PASSWORD")
    VSPHERE_HOST_REF = os.getenv("VSPHERE_HOST_REF", "op://Infrastructure/esxi/add more/host")
    VSPHERE_USERNAME_REF = os.getenv("VSPHERE_USERNAME_REF", "op://Infrastructure/esxi/username")
    VSPHERE_PASSWORD_REF = os.getenv("VSPHERE_PASSWORD_REF", "op://Infrastructure/esxi/password")

    # Proxmox VE
    PROXMOX_HOST = os.getenv("PROXMOX_HOST")
    PROXMOX_TOKEN_ID = os.getenv("PROXMOX_TOKEN_ID")
    PROXMOX_TOKEN_SECRET = os.getenv("PROXMOX_TOKEN_SECRET")
    PROXMOX_NODE = os.getenv("PROXMOX_NODE")
    PROXMOX_HOST_REF = os.getenv("PROXMOX_HOST_REF", "op://Infrastructure/PVE-API/HOST")
    PROXMOX_TOKEN_ID_REF = os.getenv("PROXMOX_TOKEN_ID_REF", "op://Infrastructure/PVE-API/TOKENID")
    PROXMOX_TOKEN_SECRET_REF = os.getenv("PROXMOX_TOKEN_SECRET_REF", "op://Infrastructure/PVE-API/SECRET")
    PROXMOX_NODE_REF = os.getenv("PROXMOX_NODE_REF", "op://Infrastructure/PVE-API/node")
    PROXMOX_STORAGE = os.getenv("PROXMOX_STORAGE", "local-lvm")
    PROXMOX_ISO_STORAGE = os.getenv("PROXMOX_ISO_STORAGE", "local")
    PROXMOX_BRIDGE = os.getenv("PROXMOX_BRIDGE", "vmbr0")

    # VM defaults
    DEFAULT_MEMORY_MB = int(os.getenv("DEFAULT_MEMORY_MB", str(48 * 1024)))
    DEFAULT_VCPUS = int(os.getenv("DEFAULT_VCPUS", "8"))
    DEFAULT_BOOT_DISK_GB = int(os.getenv("DEFAULT_BOOT_DISK_GB", "500"))
    DEFAULT_DATA_DISK_GB = int(os.getenv("DEFAULT_DATA_DISK_GB", "1000"))
    DEFAULT_DATASTORE = os.getenv("DEFAULT_DATASTORE", "truenas")
    DEFAULT_NETWORK = os.getenv("DEFAULT_NETWORK", "vl999")
    ISO_DATASTORE = os.getenv("ISO_DATASTORE", "datastore1")
    ISO_NAME = os.getenv("ISO_NAME", "vmware-amd64.iso")
    ISO_DOWNLOAD_DIR = os.getenv("ISO_DOWNLOAD_DIR", os.path.expanduser("~/.cache/homeops/isos"))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DeploymentSettings:
    """Timing and concurrency settings for the provisioning pipeline."""

    task_timeout: float = 120.0
    poll_interval: float = 1.0
    # Disk backing files keep finalizing after the reconfigure task
    # reports success and nothing signals completion.
    disk_quiesce_seconds: float = 10.0
    power_on_schedule: RetrySchedule = RetrySchedule()
    max_concurrency: int = 3
    node_profiles_path: Optional[str] = None
    insecure: bool = True

    @classmethod
    def from_environment(cls) -> "DeploymentSettings":
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            task_timeout=float(os.getenv("HOMEOPS_TASK_TIMEOUT", "120")),
            poll_interval=float(os.getenv("HOMEOPS_TASK_POLL_INTERVAL", "1")),
            disk_quiesce_seconds=float(os.getenv("HOMEOPS_DISK_QUIESCE_SECONDS", "10")),
            power_on_schedule=RetrySchedule.from_string(os.getenv("HOMEOPS_POWER_ON_SCHEDULE", "10,30,60")),
            max_concurrency=int(os.getenv("HOMEOPS_MAX_CONCURRENCY", "3")),
            node_profiles_path=os.getenv("HOMEOPS_NODE_PROFILES") or None,
            insecure=_env_bool("HOMEOPS_INSECURE", True),
        )

    def validate(self) -> None:
        """Validate settings."""
        if self.task_timeout <= 0:
            raise ValueError(f"Task timeout must be positive, got {self.task_timeout}")

        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")

        if self.disk_quiesce_seconds < 0:
            raise ValueError(f"Disk quiesce interval cannot be negative, got {self.disk_quiesce_seconds}")

        if any(delay < 0 for delay in self.power_on_schedule.delays):
            raise ValueError(f"Power-on schedule cannot contain negative delays: {self.power_on_schedule.delays}")

        if self.max_concurrency < 1:
            raise ValueError(f"Max concurrency must be at least 1, got {self.max_concurrency}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_timeout": self.task_timeout,
            "poll_interval": self.poll_interval,
            "disk_quiesce_seconds": self.disk_quiesce_seconds,
            "power_on_schedule": list(self.power_on_schedule.delays),
            "max_concurrency": self.max_concurrency,
            "node_profiles_path": self.node_profiles_path,
            "insecure": self.insecure,
        }
