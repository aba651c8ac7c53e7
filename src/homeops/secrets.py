"""Hypervisor credentials from 1Password, with environment fallback."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional

from homeops.config import Config
from homeops.errors import SecretNotFoundError

logger = logging.getLogger(__name__)

OP_PREFIX = "op://"


@dataclass(frozen=True)
class VSphereCredentials:
    host: str
    username: str
    password: str


@dataclass(frozen=True)
class ProxmoxCredentials:
    host: str
    token_id: str
    token_secret: str
    node: str


class SecretResolver:
    """Resolves ``op://vault/item/field`` references with the 1Password CLI."""

    def __init__(self, op_binary: str = "op", timeout: int = 30) -> None:
        self.op_binary = op_binary
        self.timeout = timeout
        self._cache: Dict[str, str] = {}

    def read_1password(self, ref: str) -> Optional[str]:
        """Return the secret value, or None if 1Password cannot provide it."""
        if ref in self._cache:
            return self._cache[ref]
        if shutil.which(self.op_binary) is None:
            logger.debug(f"1Password CLI '{self.op_binary}' not found")
            return None

        try:
            result = subprocess.run(
                [self.op_binary, "read", ref],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            logger.debug(f"op read {ref} failed: {e}")
            return None

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "not signed in" in stderr or "unauthorized" in stderr:
                logger.warning("1Password CLI not authenticated. Run 'op signin'")
            else:
                logger.debug(f"op read {ref} failed: {stderr}")
            return None

        value = result.stdout.strip()
        if not value:
            return None
        self._cache[ref] = value
        return value

    def resolve(self, ref: str, env_var: Optional[str] = None) -> str:
        """Resolve ``ref``, falling back to the environment variable ``env_var``.

        Plain values (not ``op://`` references) are returned unchanged.

        Raises:
            SecretNotFoundError: If neither 1Password nor the environment has a value
        """
        if ref and not ref.startswith(OP_PREFIX):
            return ref

        if ref:
            value = self.read_1password(ref)
            if value:
                return value

        if env_var:
            value = os.getenv(env_var)
            if value:
                logger.warning(f"⚠️ Using {env_var} from the environment (less secure than 1Password)")
                return value

        raise SecretNotFoundError(
            f"Secret {ref or env_var} not found in 1Password"
            + (f" or environment variable {env_var}" if env_var else "")
        )


def resolve_vsphere_credentials(resolver: Optional[SecretResolver] = None) -> VSphereCredentials:
    """vSphere host and login from 1Password, else VSPHERE_* variables."""
    resolver = resolver or SecretResolver()
    return VSphereCredentials(
        host=resolver.resolve(Config.VSPHERE_HOST_REF, "VSPHERE_HOST"),
        username=resolver.resolve(Config.VSPHERE_USERNAME_REF, "VSPHERE_USERNAME"),
        password=resolver.resolve(Config.VSPHERE_PASSWORD_REF, "VSPHERE_PASSWORD"),
    )


def resolve_proxmox_credentials(resolver: Optional[SecretResolver] = None) -> ProxmoxCredentials:
    """Proxmox API token from 1Password, else PROXMOX_* variables."""
    resolver = resolver or SecretResolver()
    return ProxmoxCredentials(
        host=resolver.resolve(Config.PROXMOX_HOST_REF, "PROXMOX_HOST"),
        token_id=resolver.resolve(Config.PROXMOX_TOKEN_ID_REF, "PROXMOX_TOKEN_ID"),
        token_secret=resolver.resolve(Config.PROXMOX_TOKEN_SECRET_REF, "PROXMOX_TOKEN_SECRET"),
        node=resolver.resolve(Config.PROXMOX_NODE_REF, "PROXMOX_NODE"),
    )
