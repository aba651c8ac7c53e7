"""Tests for vsphere_backend module."""

from unittest import mock

from homeops.config import DeploymentSettings
from homeops.models import DeviceKind, Phase
from homeops.secrets import VSphereCredentials
from homeops.vsphere_backend import VSphereBackend


def test_create_reregisters_before_power_on(fake_api, fake_clock, settings, make_request):
    """Test the vSphere flow re-registers the VM and powers on the new id."""
    backend = VSphereBackend(fake_api, settings, iso_datastore="datastore1", clock=fake_clock)

    vm = backend.create(make_request())

    assert vm.phase == Phase.ON
    assert vm.remote_id == "vm-2"
    assert fake_api.method_calls("unregister") == [("vm-1",)]
    assert fake_api.method_calls("power_on") == [("vm-2",)]
    assert len(vm.devices_of(DeviceKind.DISK)) == 2
    assert fake_clock.sleeps == [10.0]


def test_upload_iso_to_iso_datastore(fake_api, tmp_path):
    """Test ISOs go to the configured ISO datastore."""
    iso = tmp_path / "talos.iso"
    iso.write_bytes(b"iso")
    backend = VSphereBackend(fake_api, DeploymentSettings(), iso_datastore="isos")

    assert backend.upload_iso(str(iso)) == "[isos] talos.iso"


@mock.patch('homeops.vsphere_backend.VSphereAPI')
def test_from_credentials(mock_vsphere_api):
    """Test the API is built from the credential bundle."""
    credentials = VSphereCredentials("esxi.example.com", "root", "secretvalue")

    backend = VSphereBackend.from_credentials(credentials, DeploymentSettings(insecure=False))

    mock_vsphere_api.assert_called_once_with("esxi.example.com", "root", "secretvalue", insecure=False)
    assert backend.name == "vsphere"
