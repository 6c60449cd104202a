"""Locating Coolify instances on disk and discovering the running ones."""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from . import manifest
from .config import Config
from .errors import InstanceNotFound, ManifestNotFound

if TYPE_CHECKING:
    from .containers import Engine

logger = logging.getLogger(__name__)


class Namespace(Enum):
    """The two mutually exclusive instance namespaces.

    The value is the snapshot subdirectory under the backup root.
    """
    SERVICE = 'services'
    APPLICATION = 'apps'

    def root(self, config: Config) -> Path:
        return config.services_dir if self is Namespace.SERVICE else config.apps_dir


# Lookup order: services before applications
NAMESPACES = (Namespace.SERVICE, Namespace.APPLICATION)


@dataclass(frozen=True)
class InstanceLocation:
    instance_id: str
    namespace: Namespace
    path: Path

    @property
    def env_file(self) -> Path:
        return self.path / '.env'

    @property
    def compose_file(self) -> Optional[Path]:
        return manifest.find_compose_file(self.path)

    def require_compose_file(self) -> Path:
        compose_file = self.compose_file
        if compose_file is None:
            raise ManifestNotFound(self.instance_id)
        return compose_file

    def load_manifest(self) -> manifest.ServiceMap:
        """Parse the compose file fresh. Manifests change between runs."""
        return manifest.load(self.require_compose_file())

    def snapshot_root(self, config: Config) -> Path:
        return config.backup_dir / self.namespace.value / self.instance_id


def locate(instance_id: str, config: Config) -> InstanceLocation:
    """Find which namespace an instance lives in. First match wins."""
    if not instance_id or '/' in instance_id or instance_id in ('.', '..'):
        raise InstanceNotFound(instance_id)
    for namespace in NAMESPACES:
        path = namespace.root(config) / instance_id
        if path.is_dir():
            return InstanceLocation(instance_id, namespace, path)
    raise InstanceNotFound(instance_id)


def list_instances(config: Config, namespace: Namespace) -> List[InstanceLocation]:
    root = namespace.root(config)
    if not root.is_dir():
        return []
    return [
        InstanceLocation(entry.name, namespace, entry)
        for entry in sorted(root.iterdir())
        if entry.is_dir()
    ]


def discover_running(config: Config, engine: 'Engine') -> List[InstanceLocation]:
    """Instances that have a compose file and at least one running container.

    A container counts when its name contains the instance id, which is how
    Coolify names every container it starts for an instance.
    """
    running_names = engine.running_names()
    found = []
    for namespace in NAMESPACES:
        for location in list_instances(config, namespace):
            if location.compose_file is None:
                continue
            if any(location.instance_id in name for name in running_names):
                found.append(location)
    logger.info(f"Discovered {len(found)} instances with running containers")
    return found
