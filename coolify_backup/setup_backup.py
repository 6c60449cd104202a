"""Backup of the Coolify installation itself, for moving to a new VPS."""

import fnmatch
import logging
import shutil
import socket
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import archive, retention
from .backup import TIMESTAMP_FORMAT
from .config import Config
from .containers import DockerEngine, Engine
from .errors import BackupError, ConfigurationError, EngineError, ExecutionError
from .notify import HeartbeatPhase, Notifier, NullNotifier, RunReport, finish_run
from .retention import RemoteSync

logger = logging.getLogger(__name__)

COOLIFY_DB_PREFIX = 'coolify-db'
COOLIFY_CONTAINER = 'coolify'
COOLIFY_DB_USER = 'coolify'
DB_DUMP = 'coolify-db.sql.zst'
DATA_ARCHIVE = 'coolify-data.tar.zst'
MANIFEST = 'manifest.txt'
SSH_DIR = 'ssh'
DATA_EXCLUDES = ('*/backups/*', '*/logs/*')
VPS_SCRIPTS_DIR = 'vps-scripts'

MANIFEST_TEMPLATE = """\
Coolify Backup Manifest
=======================
Date: {date}
Hostname: {hostname}
Coolify Version: {version}

Contents:
- coolify-db.sql.zst: Coolify's internal PostgreSQL database
- coolify-data.tar.zst: {coolify_dir} directory (configs, docker-compose files)
- ssh/: SSH keys (if present)

Restore Instructions:
1. Install Coolify on new VPS
2. Copy this directory to <BACKUP_DIR>/coolify-setup/ on the new VPS
3. Run: coolify-restore --coolify-setup
"""


def excluded_from_data(member_name: str) -> bool:
    return any(fnmatch.fnmatch(member_name, pattern) for pattern in DATA_EXCLUDES)


class SetupBackup:
    """Coolify database, data directory, ssh keys and the orchestrator .env."""

    def __init__(self, config: Config, engine: Optional[Engine] = None,
                 notifier: Optional[Notifier] = None, sync: Optional[RemoteSync] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 hostname: Callable[[], str] = socket.gethostname):
        self.config = config
        self.engine = engine or DockerEngine()
        self.notifier = notifier or NullNotifier()
        self.sync = sync or RemoteSync(config)
        self._clock = clock
        self._hostname = hostname

    def run(self) -> RunReport:
        coolify_dir = self.config.coolify_dir
        if not coolify_dir.is_dir():
            raise ConfigurationError(f"Coolify directory not found: {coolify_dir}")

        report = RunReport('backup-coolify-setup')
        self.notifier.ping(HeartbeatPhase.START)
        now = self._clock()
        timestamp = now.strftime(TIMESTAMP_FORMAT)
        snapshot_dir = self.config.setup_backup_dir / timestamp
        snapshot_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Starting Coolify setup backup")

        self._step(report, 'database', self.backup_database, snapshot_dir)
        self._step(report, 'data', self.backup_data, snapshot_dir)
        self._step(report, 'ssh', self.backup_ssh_keys, snapshot_dir)
        self.write_manifest(snapshot_dir, now)
        logger.info(f"Coolify backup completed: {snapshot_dir}")

        vps_root = self.config.backup_dir / VPS_SCRIPTS_DIR
        self.backup_own_env(vps_root / timestamp)

        retention.cleanup(self.config.setup_backup_dir, self.config.retention_days, depth=1)
        retention.cleanup(vps_root, self.config.retention_days, depth=1)

        try:
            self.sync.sync_to_remote(self.config.backup_dir)
        except BackupError as e:
            logger.error(f"Remote sync failed: {e}")
            report.record_failure('remote', 'sync', str(e))

        logger.info("All backups completed")
        return finish_run(self.notifier, report)

    def _step(self, report: RunReport, kind: str, step, snapshot_dir: Path) -> None:
        try:
            if step(snapshot_dir):
                report.record_success('coolify-setup', kind)
        except (ExecutionError, EngineError, OSError) as e:
            logger.error(f"Failed to backup Coolify {kind}: {e}")
            report.record_failure('coolify-setup', kind, str(e))

    def find_database_container(self) -> Optional[str]:
        for name in self.engine.running_names():
            if name.startswith(COOLIFY_DB_PREFIX):
                return name
        return None

    def backup_database(self, snapshot_dir: Path) -> bool:
        """pg_dumpall of Coolify's own PostgreSQL."""
        logger.info("Backing up Coolify's internal database")
        container = self.find_database_container()
        if container is None:
            raise ExecutionError("Coolify database container not found")

        target = snapshot_dir / DB_DUMP
        cmd = ['pg_dumpall', '-U', COOLIFY_DB_USER]
        stream = self.engine.exec_stream(container, cmd)
        archive.compress_stream(stream, target, level=self.config.zstd_level)
        if stream.exit_code:
            target.unlink(missing_ok=True)
            raise ExecutionError(f"pg_dumpall exited with {stream.exit_code}: {stream.stderr}", command=cmd)
        return True

    def backup_data(self, snapshot_dir: Path) -> bool:
        logger.info("Backing up Coolify configuration")
        archive.create_archive(self.config.coolify_dir, snapshot_dir / DATA_ARCHIVE,
                               level=self.config.zstd_level, exclude=excluded_from_data)
        return True

    def backup_ssh_keys(self, snapshot_dir: Path) -> bool:
        source = self.config.coolify_dir / SSH_DIR
        if not source.is_dir():
            return False
        logger.info("Backing up SSH keys")
        shutil.copytree(source, snapshot_dir / SSH_DIR, dirs_exist_ok=True)
        return True

    def write_manifest(self, snapshot_dir: Path, now: datetime) -> Path:
        try:
            version = self.engine.image(COOLIFY_CONTAINER) or 'unknown'
        except EngineError:
            version = 'unknown'
        path = snapshot_dir / MANIFEST
        path.write_text(MANIFEST_TEMPLATE.format(
            date=now.strftime('%a %b %d %H:%M:%S %Y'),
            hostname=self._hostname(),
            version=version,
            coolify_dir=self.config.coolify_dir,
        ))
        return path

    def backup_own_env(self, target_dir: Path) -> Optional[Path]:
        """Copy the orchestrator's own .env next to the setup snapshots."""
        env_file = self.config.env_file
        if env_file is None or not env_file.is_file():
            logger.info("No orchestrator .env found to back up")
            return None
        logger.info("Backing up vps-scripts .env")
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / '.env'
        shutil.copy2(env_file, target)
        logger.info(f"vps-scripts backup completed: {target_dir}")
        return target
