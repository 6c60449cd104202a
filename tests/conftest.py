import io
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from coolify_backup.config import Config
from coolify_backup.containers import ContainerState, Engine, ExecStream


@dataclass
class FakeContainer:
    name: str
    image: str = 'alpine:3'
    running: bool = True
    # mount path -> {relative file name: content}
    paths: Dict[str, Dict[str, bytes]] = field(default_factory=dict)
    # mount path -> {relative link name: link target}
    links: Dict[str, Dict[str, str]] = field(default_factory=dict)


def default_exec(container: FakeContainer, cmd: List[str], environment) -> Tuple[int, bytes, bytes]:
    if cmd[0] in ('mysqldump', 'pg_dump', 'pg_dumpall'):
        return 0, f"-- {cmd[0]} {cmd[-1]} from {container.name}\n".encode() * 50, b''
    return 0, b'', b''


class FakeEngine(Engine):
    """In-memory container engine that records every call."""

    def __init__(self):
        self.containers: Dict[str, FakeContainer] = {}
        self.on_exec: Callable = default_exec
        self.input_exit_code = 0
        self.execs: List[Tuple[str, List[str], Optional[dict]]] = []
        self.inputs: List[Tuple[str, List[str], bytes, Optional[dict]]] = []
        self.copied_in: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.copied_links: Dict[Tuple[str, str], Dict[str, str]] = {}

    def add(self, name: str, image: str = 'alpine:3', running: bool = True) -> FakeContainer:
        container = FakeContainer(name, image, running)
        self.containers[name] = container
        return container

    @property
    def destructive_calls(self) -> int:
        return len(self.inputs) + len(self.copied_in)

    def running_names(self):
        return [c.name for c in self.containers.values() if c.running]

    def state(self, name):
        container = self.containers.get(name)
        if container is None:
            return ContainerState.ABSENT
        return ContainerState.RUNNING if container.running else ContainerState.EXISTS_BUT_STOPPED

    def image(self, name):
        container = self.containers.get(name)
        return container.image if container else ''

    def exec_stream(self, name, cmd, environment=None):
        cmd = list(cmd)
        self.execs.append((name, cmd, environment))
        exit_code, stdout, stderr = self.on_exec(self.containers[name], cmd, environment)
        chunks = [(stdout[i:i + 64], None) for i in range(0, len(stdout), 64)]
        if stderr:
            chunks.append((None, stderr))
        return ExecStream(iter(chunks), lambda: exit_code)

    def exec_input(self, name, cmd, data, environment=None):
        payload = b''.join(data)
        self.inputs.append((name, list(cmd), payload, environment))
        return self.input_exit_code, '' if not self.input_exit_code else 'ERROR 1045'

    def copy_out(self, name, path):
        files = self.containers[name].paths[path]
        top = PurePosixPath(path).name
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w') as tar:
            info = tarfile.TarInfo(top)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
            for rel, content in sorted(files.items()):
                info = tarfile.TarInfo(f'{top}/{rel}')
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
            for rel, target in sorted(self.containers[name].links.get(path, {}).items()):
                info = tarfile.TarInfo(f'{top}/{rel}')
                info.type = tarfile.SYMTYPE
                info.linkname = target
                tar.addfile(info)
        data = buffer.getvalue()
        return iter([data[i:i + 1000] for i in range(0, len(data), 1000)])

    def copy_in(self, name, path, tar_data):
        extracted, links = {}, {}
        with tarfile.open(fileobj=tar_data, mode='r') as tar:
            for member in tar.getmembers():
                if member.isfile():
                    extracted[member.name] = tar.extractfile(member).read()
                elif member.issym():
                    links[member.name] = member.linkname
        self.copied_in[(name, path)] = extracted
        self.copied_links[(name, path)] = links


class FakeCompleted:
    def __init__(self, returncode=0, stderr=''):
        self.returncode = returncode
        self.stdout = ''
        self.stderr = stderr


class RecordingRunner:
    """Stands in for subprocess.run."""

    def __init__(self, returncode=0):
        self.returncode = returncode
        self.calls: List[List[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        return FakeCompleted(self.returncode, 'failed' if self.returncode else '')


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def config(tmp_path):
    coolify = tmp_path / 'coolify'
    return Config(
        backup_dir=tmp_path / 'backups',
        coolify_dir=coolify,
        services_dir=coolify / 'services',
        apps_dir=coolify / 'applications',
        log_dir=tmp_path / 'logs',
    )


def write_instance(root: Path, instance_id: str, compose: str, env: str = '') -> Path:
    directory = root / instance_id
    directory.mkdir(parents=True, exist_ok=True)
    (directory / 'docker-compose.yml').write_text(compose)
    if env:
        (directory / '.env').write_text(env)
    return directory


MYSQL_COMPOSE = """\
services:
  app:
    image: 'wordpress:latest'
  mysql:
    image: 'mysql:8'
    volumes:
      - 'mysql-data:/var/lib/mysql'
"""

POSTGRES_COMPOSE = """\
services:
  db:
    image: 'postgres:15'
    volumes:
      - 'app_storage:/data/app/storage'
"""

SQLITE_COMPOSE = """\
services:
  uptime:
    image: 'louislam/uptime-kuma:1'
    volumes:
      - 'uptime_db-data:/app/data'
"""

FILES_COMPOSE = """\
services:
  web:
    image: 'nginx:alpine'
    volumes:
      - 'abc_uploads:/var/www/uploads'
      - 'abc_cache-data:/var/cache/nginx'
"""


@pytest.fixture
def mysql_instance(config, engine):
    """Service 'wp1' with a running MySQL container."""
    write_instance(config.services_dir, 'wp1', MYSQL_COMPOSE,
                   'MYSQL_USER=wp\nMYSQL_PASSWORD=secret\nMYSQL_DATABASE=wordpress\n')
    engine.add('app-wp1-101', 'wordpress:latest')
    engine.add('mysql-wp1-101', 'mysql:8')
    return 'wp1'


@pytest.fixture
def postgres_instance(config, engine):
    """Application 'pg1' with a running PostgreSQL container and a storage volume."""
    write_instance(config.apps_dir, 'pg1', POSTGRES_COMPOSE, 'POSTGRES_USER=u\nPOSTGRES_DB=mydb\n')
    container = engine.add('db-pg1-202', 'postgres:15')
    container.paths['/data/app/storage'] = {'report.pdf': b'%PDF-1.4 report'}
    return 'pg1'


@pytest.fixture
def sqlite_instance(config, engine):
    write_instance(config.services_dir, 'kuma1', SQLITE_COMPOSE, 'TZ=UTC\n')
    container = engine.add('uptime-kuma1-303', 'louislam/uptime-kuma:1')
    container.paths['/app/data'] = {'kuma.db': b'SQLite format 3\x00' + b'\x01' * 100}
    return 'kuma1'


@pytest.fixture
def files_instance(config, engine):
    write_instance(config.services_dir, 'abc', FILES_COMPOSE, 'APP_NAME=site\n')
    container = engine.add('web-abc-404', 'nginx:alpine')
    container.paths['/var/www/uploads'] = {'a.png': b'\x89PNG', 'docs/b.txt': b'hello'}
    return 'abc'


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def make_instance():
    return write_instance
