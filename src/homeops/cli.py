"""
Command-line interface for VM provisioning.
Deploys, inspects, deletes and power-cycles VMs on vSphere or Proxmox.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from homeops.config import Config, DeploymentSettings
from homeops.coordinator import DeploymentCoordinator
from homeops.hypervisor import HypervisorBackend
from homeops.iso_manager import IsoManager
from homeops.models import BatchResult, VMRequest
from homeops.node_profiles import NodeProfileStore
from homeops.tasks import CancelToken

# Initialize CLI app and console
app = typer.Typer(
    name="homeops",
    help="VM provisioning for vSphere and Proxmox",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


class Provider(str, Enum):
    vsphere = "vsphere"
    proxmox = "proxmox"


def get_backend(provider: Provider, settings: DeploymentSettings) -> HypervisorBackend:
    """Connect to the selected hypervisor with credentials from 1Password or the environment."""
    if provider == Provider.proxmox:
        from homeops.proxmox_backend import ProxmoxBackend

        return ProxmoxBackend.from_credentials(settings=settings)

    from homeops.vsphere_backend import VSphereBackend

    return VSphereBackend.from_credentials(settings=settings)


def node_names(name: str, count: int) -> List[str]:
    """``k8s`` expands to k8s-0, k8s-1, ...; other names to NAME-01, NAME-02, ..."""
    if count <= 1:
        return [name]
    if name == "k8s":
        return [f"k8s-{i}" for i in range(count)]
    return [f"{name}-{i:02d}" for i in range(1, count + 1)]


def default_iso(provider: Provider) -> str:
    if provider == Provider.proxmox:
        return f"{Config.PROXMOX_ISO_STORAGE}:iso/{Config.ISO_NAME}"
    return Config.ISO_NAME


def build_requests(
    names: List[str],
    provider: Provider,
    profiles: Optional[NodeProfileStore] = None,
    datastore: Optional[str] = None,
    network: Optional[str] = None,
    **fields,
) -> List[VMRequest]:
    """Build one VMRequest per name, filling pinning from node profiles.

    Explicit options win over profiles, profiles win over Config defaults.
    """
    if provider == Provider.proxmox:
        default_datastore, default_network = Config.PROXMOX_STORAGE, Config.PROXMOX_BRIDGE
    else:
        default_datastore, default_network = Config.DEFAULT_DATASTORE, Config.DEFAULT_NETWORK

    requests = []
    for name in names:
        request = VMRequest(name=name, datastore=datastore or "", network=network or default_network, **fields)
        if profiles is not None:
            request = profiles.apply(request)
        if not request.datastore:
            request = request.with_overrides(datastore=default_datastore)
        requests.append(request)
    return requests


def print_results(result: BatchResult) -> None:
    table = Table(title="Deployment Results")
    table.add_column("VM", style="cyan")
    table.add_column("Result")
    table.add_column("Phase")
    table.add_column("Remote ID")
    table.add_column("Failed Stage", style="yellow")
    table.add_column("Error", style="red")

    for outcome in result.outcomes:
        vm = outcome.vm
        table.add_row(
            outcome.request.name,
            "✅ ok" if outcome.succeeded else "❌ failed",
            vm.phase.name if vm is not None else "-",
            outcome.remote_id or "-",
            outcome.failed_stage.value if outcome.failed_stage else "-",
            str(outcome.error) if outcome.error else "",
        )

    console.print(table)
    console.print(result.get_summary())


@app.command("deploy")
def deploy(
    name: str = typer.Argument(..., help="VM name, or base name with --node-count"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
    node_count: int = typer.Option(1, "--node-count", "-n", min=1, help="Number of VMs to deploy"),
    concurrent: Optional[int] = typer.Option(None, "--concurrent", help="Max VMs provisioned in parallel"),
    memory: int = typer.Option(Config.DEFAULT_MEMORY_MB, help="Memory in MB"),
    vcpus: int = typer.Option(Config.DEFAULT_VCPUS, help="Number of vCPUs"),
    boot_disk: int = typer.Option(Config.DEFAULT_BOOT_DISK_GB, help="Boot disk size in GB"),
    data_disk: int = typer.Option(Config.DEFAULT_DATA_DISK_GB, help="Data disk size in GB, 0 for none"),
    datastore: Optional[str] = typer.Option(None, help="Datastore / storage for the disks"),
    network: Optional[str] = typer.Option(None, help="Port group / bridge for the NIC"),
    mac_address: Optional[str] = typer.Option(None, "--mac-address", help="MAC address (single VM only)"),
    iso: Optional[str] = typer.Option(None, help="Boot ISO path"),
    no_iso: bool = typer.Option(False, "--no-iso", help="Deploy without boot media"),
    profiles_file: Optional[Path] = typer.Option(None, "--profiles", help="Node profile YAML file"),
    power_on: bool = typer.Option(True, "--power-on/--no-power-on", help="Power on after provisioning"),
    precision_clock: bool = typer.Option(False, "--precision-clock", help="Add a precision clock device"),
    watchdog: bool = typer.Option(False, "--watchdog", help="Add a watchdog timer device"),
    thick: bool = typer.Option(False, "--thick", help="Thick-provision the disks"),
) -> None:
    """Deploy one or more VMs."""
    try:
        settings = DeploymentSettings.from_environment()
        settings.validate()

        profiles = None
        profile_path = profiles_file or settings.node_profiles_path
        if profile_path:
            profiles = NodeProfileStore.load(profile_path)

        names = node_names(name, node_count)
        if mac_address and len(names) > 1:
            console.print("❌ --mac-address can only be used with a single VM")
            raise typer.Exit(1)

        requests = build_requests(
            names,
            provider,
            profiles,
            datastore=datastore,
            network=network,
            cpus=vcpus,
            memory_mb=memory,
            boot_disk_gb=boot_disk,
            data_disk_gb=data_disk or None,
            mac_address=mac_address,
            iso=None if no_iso else (iso or default_iso(provider)),
            iso_datastore=Config.ISO_DATASTORE if provider == Provider.vsphere else None,
            enable_precision_clock=precision_clock,
            enable_watchdog=watchdog,
            thin_provisioned=not thick,
            power_on=power_on,
        )
    except (ValueError, FileNotFoundError) as e:
        console.print(f"❌ Invalid deployment settings: {e}")
        raise typer.Exit(1)

    console.print(f"🚀 Deploying {len(requests)} VM(s) to {provider.value}...")
    try:
        backend = get_backend(provider, settings)
    except Exception as e:
        console.print(f"❌ Failed to connect to {provider.value}: {e}")
        raise typer.Exit(1)

    try:
        coordinator = DeploymentCoordinator(backend, settings.max_concurrency)
        result = coordinator.run_batch(requests, max_concurrency=concurrent, cancel=CancelToken())
    finally:
        backend.close()

    print_results(result)
    if not result.all_succeeded:
        raise typer.Exit(1)


def _backend_or_exit(provider: Provider) -> HypervisorBackend:
    try:
        settings = DeploymentSettings.from_environment()
        settings.validate()
        return get_backend(provider, settings)
    except Exception as e:
        console.print(f"❌ Failed to connect to {provider.value}: {e}")
        raise typer.Exit(1)


@app.command("delete")
def delete(
    name: str = typer.Argument(..., help="VM name"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
) -> None:
    """Power off and delete a VM."""
    backend = _backend_or_exit(provider)
    try:
        if backend.delete(name):
            console.print(f"✅ VM {name} deleted")
        else:
            console.print(f"VM {name} does not exist")
    except Exception as e:
        console.print(f"❌ Failed to delete {name}: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()


@app.command("start")
def start(
    name: str = typer.Argument(..., help="VM name"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
) -> None:
    """Power on a VM."""
    backend = _backend_or_exit(provider)
    try:
        backend.start(name)
        console.print(f"✅ VM {name} is on")
    except Exception as e:
        console.print(f"❌ Failed to start {name}: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()


@app.command("stop")
def stop(
    name: str = typer.Argument(..., help="VM name"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
) -> None:
    """Power off a VM."""
    backend = _backend_or_exit(provider)
    try:
        backend.stop(name)
        console.print(f"✅ VM {name} is off")
    except Exception as e:
        console.print(f"❌ Failed to stop {name}: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()


@app.command("list")
def list_vms(
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
) -> None:
    """List VMs on the hypervisor."""
    backend = _backend_or_exit(provider)
    try:
        vms = backend.list()
    except Exception as e:
        console.print(f"❌ Failed to list VMs: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()

    if not vms:
        console.print("No virtual machines found.")
        return

    table = Table(title=f"Virtual Machines on {provider.value}")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Power")
    table.add_column("CPUs", justify="right")
    table.add_column("Memory (MB)", justify="right")
    for vm in vms:
        table.add_row(
            vm.remote_id,
            vm.name,
            vm.power_state.value,
            str(vm.cpus) if vm.cpus is not None else "-",
            str(vm.memory_mb) if vm.memory_mb is not None else "-",
        )
    console.print(table)


@app.command("info")
def info(
    name: str = typer.Argument(..., help="VM name"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
) -> None:
    """Show details of one VM."""
    backend = _backend_or_exit(provider)
    try:
        vm = backend.info(name)
    except Exception as e:
        console.print(f"❌ Failed to read {name}: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()

    table = Table(title=f"VM {vm.name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("ID", vm.remote_id)
    table.add_row("Power", vm.power_state.value)
    table.add_row("CPUs", str(vm.cpus) if vm.cpus is not None else "-")
    table.add_row("Memory (MB)", str(vm.memory_mb) if vm.memory_mb is not None else "-")
    for key, value in vm.details.items():
        table.add_row(key, value or "-")
    console.print(table)


@app.command("upload-iso")
def upload_iso(
    url: str = typer.Argument(..., help="ISO download URL"),
    provider: Provider = typer.Option(Provider.vsphere, "--provider", "-p", help="Hypervisor backend"),
    filename: Optional[str] = typer.Option(None, help="Name to store the ISO under"),
    download_dir: Optional[Path] = typer.Option(None, help="Local download directory"),
) -> None:
    """Download an ISO and upload it to the hypervisor's ISO storage."""
    backend = _backend_or_exit(provider)
    try:
        manager = IsoManager(str(download_dir) if download_dir else None)
        path = manager.ensure(url, backend, filename)
        console.print(f"✅ ISO available at {path}")
    except Exception as e:
        console.print(f"❌ Failed to upload ISO: {e}")
        raise typer.Exit(1)
    finally:
        backend.close()


if __name__ == "__main__":
    app()
