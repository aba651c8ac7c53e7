"""Tests for iso_manager module."""

from unittest import mock

import pytest
import requests

from homeops.iso_manager import IsoManager

TALOS_URL = "https://github.com/siderolabs/talos/releases/latest/download/metal-amd64.iso"


def _response(chunks=()):
    response = mock.MagicMock()
    response.__enter__.return_value = response
    response.iter_content.return_value = chunks
    return response


@pytest.mark.parametrize("url", [
    "ftp://example.com/talos.iso",
    "https://example.com/talos.img",
    "talos.iso",
])
def test_filename_from_url_invalid(url):
    """Test only http(s) URLs to .iso files are accepted."""
    with pytest.raises(ValueError):
        IsoManager.filename_from_url(url)


def test_filename_from_url():
    """Test the filename is the last path component."""
    assert IsoManager.filename_from_url(TALOS_URL) == "metal-amd64.iso"


@mock.patch('homeops.iso_manager.requests.get')
def test_download(mock_get, tmp_path):
    """Test a streamed download lands at the final path."""
    mock_get.return_value = _response([b"iso ", b"", b"content"])
    manager = IsoManager(download_dir=str(tmp_path / "isos"))

    path = manager.download(TALOS_URL)

    assert path == str(tmp_path / "isos" / "metal-amd64.iso")
    with open(path, "rb") as iso_file:
        assert iso_file.read() == b"iso content"
    assert not (tmp_path / "isos" / "metal-amd64.iso.part").exists()
    mock_get.assert_called_once_with(TALOS_URL, stream=True, timeout=60.0)


@mock.patch('homeops.iso_manager.requests.get')
def test_download_skips_existing(mock_get, tmp_path):
    """Test an ISO already on disk is not downloaded again."""
    (tmp_path / "metal-amd64.iso").write_bytes(b"iso")

    path = IsoManager(download_dir=str(tmp_path)).download(TALOS_URL)

    assert path == str(tmp_path / "metal-amd64.iso")
    mock_get.assert_not_called()


@mock.patch('homeops.iso_manager.requests.get')
def test_download_empty_file(mock_get, tmp_path):
    """Test an empty download is removed and reported."""
    mock_get.return_value = _response([])

    with pytest.raises(ValueError, match="empty"):
        IsoManager(download_dir=str(tmp_path)).download(TALOS_URL)

    assert not (tmp_path / "metal-amd64.iso").exists()


@mock.patch('homeops.iso_manager.requests.get')
def test_download_http_error(mock_get, tmp_path):
    """Test HTTP errors propagate."""
    mock_get.return_value = _response()
    mock_get.return_value.raise_for_status.side_effect = requests.HTTPError("404 Not Found")

    with pytest.raises(requests.HTTPError):
        IsoManager(download_dir=str(tmp_path)).download(TALOS_URL)


@mock.patch('homeops.iso_manager.requests.get')
def test_ensure_uploads_through_backend(mock_get, tmp_path):
    """Test ensure downloads and hands the file to the backend."""
    mock_get.return_value = _response([b"iso"])
    backend = mock.MagicMock()
    backend.upload_iso.return_value = "[datastore1] talos.iso"

    path = IsoManager(download_dir=str(tmp_path)).ensure(TALOS_URL, backend, filename="talos.iso")

    assert path == "[datastore1] talos.iso"
    backend.upload_iso.assert_called_once_with(str(tmp_path / "talos.iso"), "talos.iso")


@mock.patch('homeops.iso_manager.requests.get')
def test_download_interrupted_cleans_up(mock_get, tmp_path):
    """Test a failure mid-stream removes the partial file and closes the response."""

    def broken_stream(chunk_size):
        yield b"iso "
        raise requests.ConnectionError("connection reset by peer")

    response = _response()
    response.iter_content.side_effect = broken_stream
    mock_get.return_value = response

    with pytest.raises(requests.ConnectionError):
        IsoManager(download_dir=str(tmp_path)).download(TALOS_URL)

    assert list(tmp_path.iterdir()) == []
    response.__exit__.assert_called_once()
