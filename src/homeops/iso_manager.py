import logging
import os
from typing import Optional
from urllib.parse import urlparse

import requests

from homeops.config import Config
from homeops.hypervisor import HypervisorBackend

logger = logging.getLogger(__name__)


class IsoManager:
    """Handles ISO download and upload to a hypervisor backend."""

    def __init__(self, download_dir: Optional[str] = None, timeout: float = 60.0) -> None:
        self.download_dir = download_dir or Config.ISO_DOWNLOAD_DIR
        self.timeout = timeout

    @staticmethod
    def filename_from_url(url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"ISO URL must start with http:// or https://, got {url!r}")
        filename = os.path.basename(parsed.path)
        if not filename.lower().endswith(".iso"):
            raise ValueError(f"ISO URL must point to an .iso file, got {url!r}")
        return filename

    def download(self, url: str, dest_dir: Optional[str] = None, filename: Optional[str] = None) -> str:
        """Download the ISO at ``url`` unless it is already present. Returns the local path."""
        filename = filename or self.filename_from_url(url)
        dest_dir = dest_dir or self.download_dir
        path = os.path.join(dest_dir, filename)

        if os.path.isfile(path):
            logger.info(f"ISO {filename} already exists locally. Skipping download.")
            return path

        os.makedirs(dest_dir, exist_ok=True)
        logger.info(f"⬇️ Downloading {filename} from {url}...")
        # Only complete downloads land at ``path``
        partial = f"{path}.part"
        try:
            with requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as iso_file:
                    for chunk in response.iter_content(chunk_size=8192):
                        if chunk:
                            iso_file.write(chunk)
        except BaseException:
            if os.path.exists(partial):
                os.remove(partial)
            raise
        os.replace(partial, path)

        if os.path.getsize(path) == 0:
            os.remove(path)
            raise ValueError(f"Downloaded ISO {filename} is empty")

        logger.info(f"✅ Downloaded {filename}.")
        return path

    def ensure(self, url: str, backend: HypervisorBackend, filename: Optional[str] = None) -> str:
        """Download ``url`` and upload it through ``backend``. Returns the platform path."""
        filename = filename or self.filename_from_url(url)
        local_path = self.download(url, filename=filename)
        remote_path = backend.upload_iso(local_path, filename)
        logger.info(f"📀 ISO available at {remote_path}")
        return remote_path
