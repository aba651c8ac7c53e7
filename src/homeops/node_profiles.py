"""Per-node hardware pinning loaded from a YAML table.

Example::

    nodes:
      k8s-0:
        datastore: local-nvme1
        mac_address: "00:a0:98:28:c8:83"
        cpu_affinity: "0-7,32-39"
        numa_node: 0
        vmid: 100
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from homeops.models import VMRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeProfile:
    """Hardware pinning for one named node."""

    name: str
    datastore: Optional[str] = None
    mac_address: Optional[str] = None
    cpu_affinity: Optional[str] = None
    vmid: Optional[int] = None
    numa_node: Optional[int] = None

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "NodeProfile":
        known = {f.name for f in fields(cls)} - {"name"}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown fields in node profile {name}: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = dict(data)
        if values.get("cpu_affinity") is not None:
            values["cpu_affinity"] = str(values["cpu_affinity"])
        for key in ("vmid", "numa_node"):
            if values.get(key) is not None:
                values[key] = int(values[key])
        return cls(name=name, **values)


class NodeProfileStore:
    """Lookup of NodeProfiles by node name."""

    def __init__(self, profiles: Optional[Mapping[str, NodeProfile]] = None) -> None:
        self.profiles: Dict[str, NodeProfile] = dict(profiles or {})

    @classmethod
    def load(cls, path: Union[str, Path]) -> "NodeProfileStore":
        """Load profiles from a YAML file.

        Raises:
            FileNotFoundError: If ``path`` does not exist
            ValueError: If the document is empty or malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Node profile file not found: {path}")

        try:
            with open(path) as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

        return cls.from_document(document, source=str(path))

    @classmethod
    def from_document(cls, document: Any, source: str = "<document>") -> "NodeProfileStore":
        if not document or not isinstance(document, dict):
            raise ValueError(f"Node profile document {source} is empty or not a mapping")
        nodes = document.get("nodes")
        if not isinstance(nodes, dict) or not nodes:
            raise ValueError(f"Node profile document {source} has no 'nodes' mapping")

        profiles = {}
        for name, data in nodes.items():
            if not isinstance(data, dict):
                raise ValueError(f"Node profile {name} in {source} must be a mapping")
            profiles[str(name)] = NodeProfile.from_dict(str(name), data)

        logger.info(f"Loaded {len(profiles)} node profile(s) from {source}")
        return cls(profiles)

    def get(self, name: str) -> Optional[NodeProfile]:
        return self.profiles.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.profiles

    def __len__(self) -> int:
        return len(self.profiles)

    def apply(self, request: VMRequest) -> VMRequest:
        """Return a copy of ``request`` with empty fields filled from its profile.

        Values already set on the request win. Requests without a profile are
        returned unchanged.
        """
        profile = self.get(request.name)
        if profile is None:
            return request

        changes: Dict[str, Any] = {}
        for field_name in ("datastore", "mac_address", "cpu_affinity", "vmid", "numa_node"):
            value = getattr(profile, field_name)
            if value is not None and getattr(request, field_name) in (None, ""):
                changes[field_name] = value

        if not changes:
            return request
        logger.debug(f"Applying node profile to {request.name}: {', '.join(sorted(changes))}")
        return request.with_overrides(**changes)
