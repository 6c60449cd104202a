"""
Backup strategies.

Four strategies, tried in this fixed order during discovery:

  mysql     mysqldump per database        -> <db>.sql.zst
  postgres  pg_dump per database          -> <db>.sql.zst
  sqlite    copy of the db-data volume    -> sqlite-data.tar.zst
  files     copy of each storage volume   -> <volume>.tar.zst

Every executor has a side-effect free probe() used by auto-discovery, an
execute() that writes payloads into a snapshot directory, and an apply() that
restores one payload back into the live container.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Type

from . import archive, envfile
from .containers import ContainerResolver, ContainerState
from .envfile import Credentials
from .errors import (
    ContainerNotRunning,
    EngineError,
    ExecutionError,
    ImageMismatch,
    MissingCredentials,
    NoContainerCandidates,
    NoMatchingVolume,
    NotApplicable,
)
from .instances import InstanceLocation
from .manifest import ServiceMap, StorageVolume, find_embedded_database, find_storage_volumes

logger = logging.getLogger(__name__)

SQLITE_ARCHIVE = 'sqlite-data.tar.zst'
SQLITE_STAGING = 'sqlite-data'
ENV_BACKUP = 'env.backup'


class Strategy(Enum):
    MYSQL = 'mysql'
    POSTGRES = 'postgres'
    SQLITE = 'sqlite'
    FILES = 'files'


# Discovery order. Files are excluded from auto-discovery and run on their
# own schedule (--files-only / BACKUP_FILES).
PRIORITY = (Strategy.MYSQL, Strategy.POSTGRES, Strategy.SQLITE, Strategy.FILES)
DATABASE_STRATEGIES = (Strategy.MYSQL, Strategy.POSTGRES, Strategy.SQLITE)


@dataclass
class InstanceContext:
    """Everything a strategy needs about one instance, read fresh."""
    location: InstanceLocation
    service_map: ServiceMap
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, location: InstanceLocation) -> 'InstanceContext':
        return cls(
            location=location,
            service_map=location.load_manifest(),
            env=envfile.read_env(location.env_file),
        )

    @property
    def instance_id(self) -> str:
        return self.location.instance_id


@dataclass
class StrategyResult:
    strategy: Strategy
    payloads: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """At least one payload was written."""
        return bool(self.payloads)


# =============================================================================
# BASE
# =============================================================================

class StrategyExecutor:
    strategy: Strategy

    def __init__(self, resolver: ContainerResolver, compression_level: int = archive.DEFAULT_LEVEL):
        self.resolver = resolver
        self.engine = resolver.engine
        self.level = compression_level

    def probe(self, ctx: InstanceContext) -> bool:
        """True when the strategy applies. Absence is not an error."""
        raise NotImplementedError

    def execute(self, ctx: InstanceContext, output_dir: Path) -> StrategyResult:
        raise NotImplementedError

    def apply(self, ctx: InstanceContext, payload: Path) -> None:
        """Restore one payload file into the live container."""
        raise NotImplementedError

    def restore_target(self, ctx: InstanceContext, payload: Path) -> str:
        """Human readable destination of apply(), for dry runs and prompts."""
        raise NotImplementedError

    # Shared helpers

    def _require_running(self, service_map: ServiceMap, role: str) -> str:
        container = self.resolver.resolve_container(service_map, role)
        if not container:
            raise NoContainerCandidates([role])
        state = self.resolver.check_container(container)
        if state is not ContainerState.RUNNING:
            raise ContainerNotRunning(container, state.value)
        return container

    def _copy_and_archive(self, container: str, mount_path: str, output_dir: Path,
                          staging_name: str, archive_name: str) -> Path:
        """docker cp container:mount_path staging && tar --zstd && rm staging"""
        output_dir.mkdir(parents=True, exist_ok=True)
        staging = output_dir / staging_name
        try:
            archive.extract_tar_stream(self.engine.copy_out(container, mount_path), output_dir, staging_name)
            return archive.create_archive(staging, output_dir / archive_name,
                                          arcname=staging_name, level=self.level)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _copy_back(self, container: str, mount_path: str, payload: Path) -> None:
        """Extract an archive and copy its top directory's contents into the container."""
        with tempfile.TemporaryDirectory(prefix='coolify-restore-') as tmp:
            archive.extract_archive(payload, Path(tmp))
            top = archive.archive_top_level(payload)
            staged = Path(tmp) / top if top else Path(tmp)
            if not staged.is_dir():
                raise ExecutionError(f"Archive {payload.name} does not contain a directory")
            with tempfile.TemporaryFile() as tar_file:
                archive.pack_directory_contents(staged, tar_file)
                self.engine.copy_in(container, mount_path, tar_file)


class _RelationalExecutor(StrategyExecutor):
    roles: Tuple[str, ...] = ()
    image_keywords: Tuple[str, ...] = ()
    engine_label = ''
    default_database_keys: Tuple[str, ...] = ()

    def credentials(self, env: Dict[str, str]) -> Optional[Credentials]:
        raise NotImplementedError

    def dump_command(self, credentials: Credentials, database: str) -> List[str]:
        raise NotImplementedError

    def client_environment(self, credentials: Credentials) -> Optional[Dict[str, str]]:
        raise NotImplementedError

    def find_container(self, ctx: InstanceContext) -> str:
        """Running container for this engine, with the image double check."""
        container = self.resolver.find_running_container(ctx.service_map, *self.roles)
        image = self.resolver.image_of(container)
        if not any(keyword in image.lower() for keyword in self.image_keywords):
            raise ImageMismatch(container, image, self.engine_label)
        return container

    def probe(self, ctx: InstanceContext) -> bool:
        try:
            self.find_container(ctx)
        except NotApplicable:
            return False
        return True

    def databases(self, ctx: InstanceContext) -> List[str]:
        return envfile.resolve_databases(ctx.env, self.default_database_keys)

    def execute(self, ctx: InstanceContext, output_dir: Path) -> StrategyResult:
        result = StrategyResult(self.strategy)

        credentials = self.credentials(ctx.env)
        if credentials is None:
            raise MissingCredentials(f"Missing {self.engine_label} credentials for {ctx.instance_id}")

        container = self.find_container(ctx)

        databases = self.databases(ctx)
        if not databases:
            result.errors.append(f"No {self.engine_label} databases configured for {ctx.instance_id}")
            return result

        output_dir.mkdir(parents=True, exist_ok=True)
        for database in databases:
            logger.info(f"  Dumping {self.engine_label} database: {database}")
            try:
                result.payloads.append(self._dump(container, credentials, database, output_dir))
            except (ExecutionError, EngineError, OSError) as e:
                logger.error(f"  Failed to dump database {database}: {e}")
                result.errors.append(f"{database}: {e}")
        return result

    def _dump(self, container: str, credentials: Credentials, database: str, output_dir: Path) -> Path:
        target = output_dir / f'{database}{archive.SQL_SUFFIX}'
        cmd = self.dump_command(credentials, database)
        stream = self.engine.exec_stream(container, cmd, environment=self.client_environment(credentials))
        size = archive.compress_stream(stream, target, level=self.level)
        if stream.exit_code:
            target.unlink(missing_ok=True)
            raise ExecutionError(
                f"{cmd[0]} exited with {stream.exit_code}: {stream.stderr or 'no output'}", command=cmd)
        logger.debug(f"  Wrote {target} ({size} bytes uncompressed)")
        return target

    def restore_target(self, ctx: InstanceContext, payload: Path) -> str:
        container = self.find_container(ctx)
        return f"{database_name(payload)} in container {container}"


# =============================================================================
# MYSQL / MARIADB
# =============================================================================

class MySQLExecutor(_RelationalExecutor):
    strategy = Strategy.MYSQL
    roles = ('db', 'mysql', 'mariadb')
    image_keywords = ('mysql', 'mariadb')
    engine_label = 'MySQL'
    default_database_keys = envfile.MYSQL_DATABASE_KEYS

    def credentials(self, env):
        return envfile.mysql_credentials(env)

    def client_environment(self, credentials):
        # Keeps the password out of the container's process list
        return {'MYSQL_PWD': credentials.password or ''}

    def dump_command(self, credentials, database):
        return ['mysqldump', f'-u{credentials.user}', database]

    def apply(self, ctx: InstanceContext, payload: Path) -> None:
        """Stream the dump into mysql. The dump is self-sufficient, no drop first."""
        credentials = self.credentials(ctx.env)
        if credentials is None:
            raise MissingCredentials(f"Missing MySQL credentials for {ctx.instance_id}")
        container = self.find_container(ctx)
        database = database_name(payload)
        cmd = ['mysql', f'-u{credentials.user}', database]
        exit_code, output = self.engine.exec_input(
            container, cmd, archive.decompress_stream(payload),
            environment=self.client_environment(credentials))
        if exit_code:
            raise ExecutionError(f"Failed to restore database {database}: {output}", command=cmd)


# =============================================================================
# POSTGRESQL
# =============================================================================

class PostgresExecutor(_RelationalExecutor):
    strategy = Strategy.POSTGRES
    roles = ('db', 'postgres', 'postgresql')
    image_keywords = ('postgres',)
    engine_label = 'PostgreSQL'
    default_database_keys = envfile.POSTGRES_DATABASE_KEYS

    def credentials(self, env):
        return envfile.postgres_credentials(env)

    def client_environment(self, credentials):
        if credentials.password:
            return {'PGPASSWORD': credentials.password}
        return None

    def dump_command(self, credentials, database):
        return ['pg_dump', '-U', credentials.user, '--no-owner', '--no-acl', database]

    def apply(self, ctx: InstanceContext, payload: Path) -> None:
        """Drop and recreate the database, then stream the dump into psql."""
        credentials = self.credentials(ctx.env)
        if credentials is None:
            raise MissingCredentials(f"Missing PostgreSQL credentials for {ctx.instance_id}")
        container = self.find_container(ctx)
        database = database_name(payload)
        quoted = '"' + database.replace('"', '""') + '"'
        environment = self.client_environment(credentials)

        logger.info(f"  Dropping existing database {database}...")
        drop = ['psql', '-U', credentials.user, '-c', f'DROP DATABASE IF EXISTS {quoted};', 'postgres']
        exit_code, output = self.engine.exec_input(container, drop, (), environment=environment)
        if exit_code:
            logger.warning(f"  Drop of {database} failed, continuing: {output}")

        create = ['psql', '-U', credentials.user, '-c', f'CREATE DATABASE {quoted};', 'postgres']
        exit_code, output = self.engine.exec_input(container, create, (), environment=environment)
        if exit_code:
            raise ExecutionError(f"Failed to create database {database}: {output}", command=create)

        cmd = ['psql', '-q', '-U', credentials.user, database]
        exit_code, output = self.engine.exec_input(
            container, cmd, archive.decompress_stream(payload), environment=environment)
        if exit_code:
            raise ExecutionError(f"Failed to restore database {database}: {output}", command=cmd)


# =============================================================================
# SQLITE (embedded database directory)
# =============================================================================

class SQLiteExecutor(StrategyExecutor):
    """Copies the single db-data volume. Only the first match is used."""
    strategy = Strategy.SQLITE

    def probe(self, ctx: InstanceContext) -> bool:
        return find_embedded_database(ctx.service_map) is not None

    def locate(self, ctx: InstanceContext) -> StorageVolume:
        found = find_embedded_database(ctx.service_map)
        if found is None:
            raise NoMatchingVolume(f"No SQLite data volume (db-data/dbdata) found for {ctx.instance_id}")
        return found

    def execute(self, ctx: InstanceContext, output_dir: Path) -> StrategyResult:
        result = StrategyResult(self.strategy)
        found = self.locate(ctx)
        logger.info(f"  Found SQLite volume in service '{found.role}' at path '{found.mount_path}'")
        container = self._require_running(ctx.service_map, found.role)

        logger.info(f"  Copying SQLite data from {container}:{found.mount_path}")
        try:
            result.payloads.append(self._copy_and_archive(
                container, found.mount_path, output_dir, SQLITE_STAGING, SQLITE_ARCHIVE))
        except (ExecutionError, EngineError, OSError) as e:
            logger.error(f"  Failed to copy SQLite data from {container}: {e}")
            result.errors.append(f"sqlite-data: {e}")
        return result

    def restore_target(self, ctx: InstanceContext, payload: Path) -> str:
        found = self.locate(ctx)
        container = self.resolver.resolve_container(ctx.service_map, found.role)
        return f"{container}:{found.mount_path}"

    def apply(self, ctx: InstanceContext, payload: Path) -> None:
        found = self.locate(ctx)
        container = self._require_running(ctx.service_map, found.role)
        logger.info(f"  Restoring to {container}:{found.mount_path}")
        self._copy_back(container, found.mount_path, payload)


# =============================================================================
# FILE STORAGE VOLUMES
# =============================================================================

class FilesExecutor(StrategyExecutor):
    """One archive per storage volume, across all roles."""
    strategy = Strategy.FILES

    def probe(self, ctx: InstanceContext) -> bool:
        return bool(find_storage_volumes(ctx.service_map))

    def volumes(self, ctx: InstanceContext) -> List[StorageVolume]:
        found = find_storage_volumes(ctx.service_map)
        if not found:
            raise NoMatchingVolume(f"No file storage volumes found for {ctx.instance_id}")
        return found

    def execute(self, ctx: InstanceContext, output_dir: Path) -> StrategyResult:
        result = StrategyResult(self.strategy)
        for found in self.volumes(ctx):
            logger.info(f"  Found storage volume '{found.suffix}' in service '{found.role}' at '{found.mount_path}'")
            try:
                container = self._require_running(ctx.service_map, found.role)
                logger.info(f"  Copying files from {container}:{found.mount_path}")
                result.payloads.append(self._copy_and_archive(
                    container, found.mount_path, output_dir,
                    f'{found.suffix}-temp', f'{found.suffix}{archive.ARCHIVE_SUFFIX}'))
            except (NotApplicable, ExecutionError, EngineError, OSError) as e:
                logger.error(f"  {found.suffix}: {e}")
                result.errors.append(f"{found.suffix}: {e}")
        return result

    def volume_for(self, ctx: InstanceContext, payload: Path) -> StorageVolume:
        suffix = payload.name[:-len(archive.ARCHIVE_SUFFIX)]
        for found in self.volumes(ctx):
            if found.suffix == suffix:
                return found
        raise NoMatchingVolume(f"Volume {suffix} not found in compose file")

    def restore_target(self, ctx: InstanceContext, payload: Path) -> str:
        found = self.volume_for(ctx, payload)
        container = self.resolver.resolve_container(ctx.service_map, found.role)
        return f"{container}:{found.mount_path}"

    def apply(self, ctx: InstanceContext, payload: Path) -> None:
        found = self.volume_for(ctx, payload)
        container = self._require_running(ctx.service_map, found.role)
        logger.info(f"  Restoring to {container}:{found.mount_path}")
        self._copy_back(container, found.mount_path, payload)


# =============================================================================
# REGISTRY
# =============================================================================

EXECUTOR_CLASSES: Dict[Strategy, Type[StrategyExecutor]] = {
    Strategy.MYSQL: MySQLExecutor,
    Strategy.POSTGRES: PostgresExecutor,
    Strategy.SQLITE: SQLiteExecutor,
    Strategy.FILES: FilesExecutor,
}

if set(EXECUTOR_CLASSES) != set(Strategy):
    raise ImportError(f"Executors missing for: {set(Strategy) - set(EXECUTOR_CLASSES)}")


def build_executors(resolver: ContainerResolver,
                    compression_level: int = archive.DEFAULT_LEVEL) -> Dict[Strategy, StrategyExecutor]:
    return {strategy: cls(resolver, compression_level) for strategy, cls in EXECUTOR_CLASSES.items()}


def probe_all(executors: Dict[Strategy, StrategyExecutor], ctx: InstanceContext,
              strategies: Sequence[Strategy] = PRIORITY) -> List[Strategy]:
    """Applicable strategies, in priority order."""
    return [s for s in strategies if executors[s].probe(ctx)]


def database_name(payload: Path) -> str:
    return payload.name[:-len(archive.SQL_SUFFIX)]


def classify_payloads(names: Iterable[str]) -> Dict[str, List[str]]:
    """Group snapshot file names into sql / sqlite / files."""
    groups: Dict[str, List[str]] = {'sql': [], 'sqlite': [], 'files': []}
    for name in sorted(names):
        if name.endswith(archive.SQL_SUFFIX):
            groups['sql'].append(name)
        elif name == SQLITE_ARCHIVE:
            groups['sqlite'].append(name)
        elif name.endswith(archive.ARCHIVE_SUFFIX):
            groups['files'].append(name)
    return groups
