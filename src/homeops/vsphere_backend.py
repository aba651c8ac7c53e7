import logging
from typing import Optional

from homeops.backend import PipelineBackend
from homeops.config import Config, DeploymentSettings
from homeops.pipeline import HypervisorPhases
from homeops.secrets import VSphereCredentials, resolve_vsphere_credentials
from homeops.spec_builder import VMSpecBuilder
from homeops.tasks import Clock
from homeops.vsphere_api import VSphereAPI

logger = logging.getLogger(__name__)


class VSphereBackend(PipelineBackend):
    """ESXi / vCenter backend: NVMe controllers plus the re-registration phase."""

    provider = "vsphere"

    def __init__(
        self,
        api: VSphereAPI,
        settings: Optional[DeploymentSettings] = None,
        iso_datastore: Optional[str] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        settings = settings or DeploymentSettings()
        phases = HypervisorPhases(api, settings.task_timeout, settings.poll_interval, clock)
        super().__init__(
            api,
            phases,
            iso_storage=iso_datastore or Config.ISO_DATASTORE,
            settings=settings,
            builder=VMSpecBuilder(),
            clock=clock,
        )

    @classmethod
    def from_credentials(
        cls, credentials: Optional[VSphereCredentials] = None, settings: Optional[DeploymentSettings] = None
    ) -> "VSphereBackend":
        settings = settings or DeploymentSettings.from_environment()
        credentials = credentials or resolve_vsphere_credentials()
        api = VSphereAPI(credentials.host, credentials.username, credentials.password, insecure=settings.insecure)
        return cls(api, settings)
