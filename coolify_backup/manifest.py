"""
docker-compose manifest parsing.

Coolify instance directories carry hand edited compose files and the host
does not always have a YAML library that accepts them, so the parser works on
raw text: a line-oriented state machine driven by indentation. Callers only
see parse() / load() and the ServiceMap they return, so the implementation
can be swapped for a structured parser without touching them.

Known limitation: the state machine tracks a single role indent and a single
volumes indent. Manifests with mixed or irregular indentation can attribute
a volume to the wrong role.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional

logger = logging.getLogger(__name__)

COMPOSE_FILENAMES = ('docker-compose.yml', 'docker-compose.yaml')

# Keys that look like "  name:" but are properties of a service, not services
PROPERTY_KEYS = frozenset([
    'volumes', 'image', 'environment', 'depends_on', 'labels', 'networks',
    'command', 'build', 'ports', 'expose', 'healthcheck', 'restart',
    'container_name', 'env_file', 'working_dir', 'user', 'entrypoint',
    'stdin_open', 'tty', 'privileged', 'devices', 'dns', 'logging',
    'configs', 'secrets', 'deploy',
])

# Volume classification keywords, matched against the whole declaration
EMBEDDED_DB_KEYWORDS = ('db-data', 'dbdata')
EMBEDDED_DB_PATH_EXCLUDES = ('mysql', 'postgres', 'redis')

STORAGE_KEYWORDS = (
    'laravel-storage', 'storage-data', 'storage', 'uploads', 'upload',
    'files', 'file', 'media', 'assets', 'attachments',
)
STORAGE_EXCLUDES = (
    'cache', 'tmp', 'temp', 'logs', 'database-data', 'db-data', 'dbdata',
    'pg-data', 'postgres-data', 'mysql-data', 'redis-data',
)

_ROLE_LINE = re.compile(r'^(\s+)([A-Za-z0-9_.-]+):\s*(#.*)?$')
_KEY_VALUE = re.compile(r'^([A-Za-z0-9_.-]+):\s*(.*?)\s*$')
_LONG_FORM_ITEM = re.compile(r'^[A-Za-z_]+:(\s|$)')


def _unquote(value: str) -> str:
    return value.strip().strip('"\'').strip()


def _strip_comment(value: str) -> str:
    if ' #' in value:
        value = value.split(' #', 1)[0]
    return value.strip()


@dataclass(frozen=True)
class VolumeMount:
    """One short-form volume declaration: name:container_path[:mode]."""
    name: str
    mount_path: str
    line: str = ''

    @property
    def suffix(self) -> str:
        """Friendly snapshot filename: text after the last underscore.

        Coolify prefixes named volumes with the instance id
        (``<uuid>_storage-data``); bind mounts are reduced to their last
        path component first.
        """
        base = self.name.rstrip('/').rsplit('/', 1)[-1]
        return base.rsplit('_', 1)[-1] or base

    @property
    def is_embedded_database(self) -> bool:
        text = (self.line or f'{self.name}:{self.mount_path}').lower()
        if not any(keyword in text for keyword in EMBEDDED_DB_KEYWORDS):
            return False
        path = self.mount_path.lower()
        return not any(engine in path for engine in EMBEDDED_DB_PATH_EXCLUDES)

    @property
    def is_bulk_storage(self) -> bool:
        text = (self.line or f'{self.name}:{self.mount_path}').lower()
        if any(keyword in text for keyword in STORAGE_EXCLUDES):
            return False
        return any(keyword in text for keyword in STORAGE_KEYWORDS)


@dataclass
class ServiceRole:
    name: str
    volumes: List[VolumeMount] = field(default_factory=list)
    container_name: Optional[str] = None


class StorageVolume(NamedTuple):
    role: str
    volume: VolumeMount

    @property
    def suffix(self) -> str:
        return self.volume.suffix

    @property
    def mount_path(self) -> str:
        return self.volume.mount_path


@dataclass
class ServiceMap:
    """Roles declared in one manifest, in declaration order."""
    roles: Dict[str, ServiceRole] = field(default_factory=dict)
    project: str = ''
    path: Optional[Path] = None

    def __contains__(self, role: str) -> bool:
        return role in self.roles

    def __iter__(self) -> Iterator[ServiceRole]:
        return iter(self.roles.values())

    def __len__(self) -> int:
        return len(self.roles)

    def get(self, role: str) -> Optional[ServiceRole]:
        return self.roles.get(role)

    def container_name(self, role: str) -> Optional[str]:
        service = self.roles.get(role)
        return service.container_name if service else None


def _parse_volume_item(item: str) -> Optional[VolumeMount]:
    """Parse the text after '- ' in a volumes list."""
    text = _unquote(_strip_comment(item))
    if not text or _LONG_FORM_ITEM.match(text):
        # Anonymous volume or long-form mapping, neither has a name to back up
        return None
    parts = text.split(':')
    if len(parts) < 2:
        return None
    name = _unquote(parts[0])
    mount_path = _unquote(parts[1])
    if not name or not mount_path:
        return None
    return VolumeMount(name=name, mount_path=mount_path, line=text)


def _parse_flow_list(value: str) -> List[VolumeMount]:
    """Parse an inline list: volumes: ['a:/x', b:/y]"""
    inner = value.strip()[1:-1]
    mounts = []
    for item in inner.split(','):
        mount = _parse_volume_item(item)
        if mount:
            mounts.append(mount)
    return mounts


def parse(text: str, project: str = '') -> ServiceMap:
    """Parse compose text into a ServiceMap. Never raises on odd input."""
    service_map = ServiceMap(project=project)

    in_services = False
    role_indent: Optional[int] = None
    current: Optional[ServiceRole] = None
    in_volumes = False
    volumes_indent = 0

    for raw in text.splitlines():
        line = raw.rstrip('\r\n').replace('\t', '  ')
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue

        indent = len(line) - len(line.lstrip(' '))

        # Root level key: enter or leave the services region
        if indent == 0:
            in_services = bool(re.match(r'^services:\s*(#.*)?$', line))
            current = None
            in_volumes = False
            role_indent = None
            continue

        if not in_services:
            continue

        if in_volumes:
            if stripped.startswith('-') and indent >= volumes_indent:
                mount = _parse_volume_item(stripped[1:])
                if mount:
                    current.volumes.append(mount)
                continue
            if indent > volumes_indent:
                continue
            in_volumes = False

        role_match = _ROLE_LINE.match(line)
        if role_match:
            name = role_match.group(2)
            is_role_level = role_indent is None or indent == role_indent
            if name not in PROPERTY_KEYS and is_role_level:
                role_indent = indent
                current = service_map.roles.setdefault(name, ServiceRole(name=name))
                continue

        if current is None or (role_indent is not None and indent <= role_indent):
            continue

        key_match = _KEY_VALUE.match(stripped)
        if not key_match:
            continue
        key, value = key_match.group(1), _strip_comment(key_match.group(2))

        if key == 'volumes':
            if value.startswith('[') and value.endswith(']'):
                current.volumes.extend(_parse_flow_list(value))
            elif not value:
                in_volumes = True
                volumes_indent = indent
        elif key == 'container_name' and value and current.container_name is None:
            current.container_name = _unquote(value)

    return service_map


def find_compose_file(directory: Path) -> Optional[Path]:
    """docker-compose.yml, else docker-compose.yaml, else None."""
    for name in COMPOSE_FILENAMES:
        candidate = Path(directory) / name
        if candidate.is_file():
            return candidate
    return None


def load(compose_file: Path) -> ServiceMap:
    """Read and parse a compose file. The project name is its directory name."""
    compose_file = Path(compose_file)
    text = compose_file.read_text(encoding='utf-8', errors='replace')
    service_map = parse(text, project=compose_file.parent.name)
    service_map.path = compose_file
    return service_map


def find_embedded_database(service_map: ServiceMap) -> Optional[StorageVolume]:
    """First volume classified as an embedded (SQLite style) database."""
    for role in service_map:
        for volume in role.volumes:
            if volume.is_embedded_database:
                return StorageVolume(role.name, volume)
    return None


def find_storage_volumes(service_map: ServiceMap) -> List[StorageVolume]:
    """Every bulk storage volume across all roles, one per snapshot filename."""
    found: List[StorageVolume] = []
    seen = set()
    for role in service_map:
        for volume in role.volumes:
            if not volume.is_bulk_storage:
                continue
            if volume.suffix in seen:
                logger.debug(f"Skipping duplicate storage volume '{volume.suffix}' in role {role.name}")
                continue
            seen.add(volume.suffix)
            found.append(StorageVolume(role.name, volume))
    return found
