"""
Container engine access and container resolution.

DockerEngine is the only place that talks to the Docker daemon. Everything
else goes through the small Engine interface so tests can substitute an
in-memory engine.
"""

import contextlib
import logging
import re
import socket
import threading
import time
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import docker
from docker.errors import DockerException, NotFound
from docker.utils.socket import consume_socket_output, demux_adaptor, frames_iter
from requests.exceptions import RequestException

from .errors import EngineError, NoContainerCandidates, NoRunningContainer
from .manifest import ServiceMap

logger = logging.getLogger(__name__)


def _guarded(stream: Iterable, what: str) -> Iterator:
    """Re-raise transport errors from a docker stream as EngineError."""
    try:
        yield from stream
    except (DockerException, RequestException) as e:
        raise EngineError(f"{what}: {e}") from e


class ContainerState(Enum):
    RUNNING = 'running'
    EXISTS_BUT_STOPPED = 'exists but not running'
    ABSENT = 'not found'


# =============================================================================
# ENGINE
# =============================================================================

class ExecStream:
    """Streaming stdout of a command running inside a container.

    Iterate to receive stdout chunks. exit_code and stderr are available once
    the iterator is exhausted.
    """

    def __init__(self, chunks: Iterable[Tuple[Optional[bytes], Optional[bytes]]], finish):
        self._chunks = chunks
        self._finish = finish
        self._stderr: List[bytes] = []
        self.exit_code: Optional[int] = None

    def __iter__(self) -> Iterator[bytes]:
        for stdout, stderr in self._chunks:
            if stderr:
                self._stderr.append(stderr)
            if stdout:
                yield stdout
        self.exit_code = self._finish()

    @property
    def stderr(self) -> str:
        return b''.join(self._stderr).decode('utf-8', errors='replace').strip()


class Engine:
    """Interface of the container engine used by the resolver and executors."""

    def running_names(self) -> List[str]:
        raise NotImplementedError

    def state(self, name: str) -> ContainerState:
        raise NotImplementedError

    def image(self, name: str) -> str:
        raise NotImplementedError

    def exec_stream(self, name: str, cmd: Sequence[str],
                    environment: Optional[Dict[str, str]] = None) -> ExecStream:
        raise NotImplementedError

    def exec_input(self, name: str, cmd: Sequence[str], data: Iterable[bytes],
                   environment: Optional[Dict[str, str]] = None) -> Tuple[int, str]:
        """Run cmd with data on stdin. Returns (exit_code, combined output)."""
        raise NotImplementedError

    def copy_out(self, name: str, path: str) -> Iterator[bytes]:
        """Tar stream of path, like `docker cp name:path -`."""
        raise NotImplementedError

    def copy_in(self, name: str, path: str, tar_data: bytes) -> None:
        """Extract a tar stream into path inside the container."""
        raise NotImplementedError


class DockerEngine(Engine):
    """Engine backed by the docker-py SDK."""

    # exec_inspect polls after the output stream closed
    EXIT_POLL_INTERVAL = 0.1
    EXIT_POLL_ATTEMPTS = 50

    def __init__(self, client: Optional[docker.DockerClient] = None, sleep=time.sleep):
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise EngineError(f"Cannot connect to Docker: {e}") from e
        return self._client

    def running_names(self) -> List[str]:
        try:
            return [c.name for c in self.client.containers.list()]
        except DockerException as e:
            raise EngineError(f"Failed to list containers: {e}") from e

    def _get(self, name: str):
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except DockerException as e:
            raise EngineError(f"Failed to inspect container {name}: {e}") from e

    def state(self, name: str) -> ContainerState:
        container = self._get(name)
        if container is None:
            return ContainerState.ABSENT
        if container.attrs.get('State', {}).get('Running'):
            return ContainerState.RUNNING
        return ContainerState.EXISTS_BUT_STOPPED

    def image(self, name: str) -> str:
        container = self._get(name)
        if container is None:
            return ''
        return container.attrs.get('Config', {}).get('Image', '') or ''

    def _exit_code(self, exec_id: str, name: str) -> int:
        """Exit code of a finished exec. The exec may still be winding down
        when its output closes, so Running is polled for a short while."""
        api = self.client.api
        for _ in range(self.EXIT_POLL_ATTEMPTS):
            try:
                info = api.exec_inspect(exec_id)
            except DockerException as e:
                raise EngineError(f"Failed to inspect exec in {name}: {e}") from e
            if not info.get('Running') and info.get('ExitCode') is not None:
                return info['ExitCode']
            self._sleep(self.EXIT_POLL_INTERVAL)
        raise EngineError(f"Exec in {name} did not report an exit code")

    def exec_stream(self, name, cmd, environment=None) -> ExecStream:
        api = self.client.api
        try:
            exec_id = api.exec_create(name, list(cmd), stdout=True, stderr=True,
                                      environment=environment)['Id']
            chunks = api.exec_start(exec_id, stream=True, demux=True)
        except DockerException as e:
            raise EngineError(f"Failed to exec in {name}: {e}") from e

        return ExecStream(_guarded(chunks, f"Exec stream from {name} failed"),
                          lambda: self._exit_code(exec_id, name))

    def exec_input(self, name, cmd, data, environment=None) -> Tuple[int, str]:
        """Run cmd with data on stdin. Returns (exit_code, combined output).

        stdin is fed from a background thread while the output is read, so a
        client that prints an error for every statement cannot block on a
        full socket buffer.
        """
        api = self.client.api
        try:
            exec_id = api.exec_create(name, list(cmd), stdin=True, stdout=True, stderr=True,
                                      environment=environment)['Id']
            sock = api.exec_start(exec_id, socket=True)
        except DockerException as e:
            raise EngineError(f"Failed to exec in {name}: {e}") from e

        raw = getattr(sock, '_sock', sock)
        send_errors: List[BaseException] = []

        def feed() -> None:
            try:
                for chunk in data:
                    raw.sendall(chunk)
            except Exception as e:
                send_errors.append(e)
            finally:
                try:
                    raw.shutdown(socket.SHUT_WR)
                except OSError as e:
                    logger.debug(f"stdin of exec in {name} already closed: {e}")

        writer = threading.Thread(target=feed, name=f'exec-stdin-{name}', daemon=True)
        writer.start()
        try:
            frames = (demux_adaptor(*frame) for frame in frames_iter(sock, tty=False))
            stdout, stderr = consume_socket_output(frames, demux=True)
        except (OSError, DockerException) as e:
            # unblocks the writer if it is stuck in sendall
            with contextlib.suppress(OSError):
                raw.shutdown(socket.SHUT_RDWR)
            raise EngineError(f"Exec output from {name} failed: {e}") from e
        finally:
            writer.join()
            sock.close()

        output = b''.join(part for part in (stdout, stderr) if part)
        exit_code = self._exit_code(exec_id, name)
        if send_errors:
            error = send_errors[0]
            if not isinstance(error, OSError):
                raise error
            if exit_code == 0:
                raise EngineError(f"Failed to send input to {name}: {error}") from error
        return exit_code, output.decode('utf-8', errors='replace').strip()

    def copy_out(self, name, path) -> Iterator[bytes]:
        container = self._get(name)
        if container is None:
            raise EngineError(f"Container {name} not found")
        try:
            stream, _stat = container.get_archive(path)
        except NotFound as e:
            raise EngineError(f"Path {path} not found in {name}") from e
        except DockerException as e:
            raise EngineError(f"Failed to copy {name}:{path}: {e}") from e
        return _guarded(stream, f"Copy from {name}:{path} failed")

    def copy_in(self, name, path, tar_data) -> None:
        container = self._get(name)
        if container is None:
            raise EngineError(f"Container {name} not found")
        try:
            if not container.put_archive(path, tar_data):
                raise EngineError(f"Docker refused to copy into {name}:{path}")
        except DockerException as e:
            raise EngineError(f"Failed to copy into {name}:{path}: {e}") from e


# =============================================================================
# RESOLVER
# =============================================================================

class ContainerResolver:
    """Maps a manifest role to the concrete container Coolify started for it."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def resolve_container(self, service_map: ServiceMap, role: str) -> str:
        """Best-effort container name for a role. May return ''."""
        project = service_map.project
        if not project:
            return service_map.container_name(role) or ''

        running = self.engine.running_names()

        # Coolify names containers <role>-<instance>-<suffix>
        strict = re.compile(rf'^{re.escape(role)}-{re.escape(project)}-')
        for name in running:
            if strict.match(name):
                return name

        relaxed = re.compile(rf'^{re.escape(role)}.*{re.escape(project)}')
        for name in running:
            if relaxed.match(name):
                return name

        declared = service_map.container_name(role)
        if declared:
            return declared

        # docker compose default naming, unverified
        return f'{project}-{role}-1'

    def check_container(self, name: str) -> ContainerState:
        if not name:
            return ContainerState.ABSENT
        return self.engine.state(name)

    def find_running_container(self, service_map: ServiceMap, *roles: str) -> str:
        """First candidate role whose container is running.

        Raises NoRunningContainer with the names that were tried, or
        NoContainerCandidates when no role resolved to any name.
        """
        tried: List[str] = []
        for role in roles:
            name = self.resolve_container(service_map, role)
            if not name:
                continue
            if name not in tried:
                tried.append(name)
            if self.check_container(name) is ContainerState.RUNNING:
                logger.debug(f"Role '{role}' resolved to running container {name}")
                return name
        if tried:
            raise NoRunningContainer(tried)
        raise NoContainerCandidates(list(roles))

    def image_of(self, name: str) -> str:
        return self.engine.image(name)
