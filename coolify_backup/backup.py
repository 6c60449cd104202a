"""
Backup runs.

A run works in one of four modes, chosen from the command line and Config:

  files-only   --files-only <id>...     files strategy for the given ids
  direct       <id>...                  probe the database strategies per id
  manual       BACKUP_MYSQL=... etc.    run the configured strategy per id, no probing
  discovery    (default)                probe every instance with running containers

Every instance gets one snapshot directory per run,
<backup_dir>/<services|apps>/<id>/<YYYYMMDD_HHMMSS>/, and its .env is copied
there once as env.backup when at least one strategy produced a payload.
"""

import logging
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from . import retention
from .config import Config
from .containers import ContainerResolver, DockerEngine, Engine
from .errors import BackupError, ConfigurationError, EngineError, NotApplicable
from .instances import NAMESPACES, InstanceLocation, discover_running, locate
from .notify import HeartbeatPhase, Notifier, NullNotifier, RunReport, finish_run
from .retention import RemoteSync
from .strategies import (
    DATABASE_STRATEGIES,
    ENV_BACKUP,
    InstanceContext,
    Strategy,
    StrategyExecutor,
    StrategyResult,
    build_executors,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


def format_size(size: int) -> str:
    value = float(size)
    for unit in ('B', 'K', 'M', 'G'):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == 'B' else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}T"


def copy_env_backup(location: InstanceLocation, snapshot_dir: Path) -> Optional[Path]:
    """Copy the instance .env into the snapshot as env.backup, if there is one."""
    if not location.env_file.is_file():
        logger.debug(f"No .env file for {location.instance_id}")
        return None
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    target = snapshot_dir / ENV_BACKUP
    shutil.copy2(location.env_file, target)
    return target


class BackupRunner:
    """Runs one backup invocation and reports the outcome."""

    def __init__(self, config: Config, engine: Optional[Engine] = None,
                 notifier: Optional[Notifier] = None, sync: Optional[RemoteSync] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.engine = engine or DockerEngine()
        self.resolver = ContainerResolver(self.engine)
        self.executors = build_executors(self.resolver, config.zstd_level)
        self.notifier = notifier or NullNotifier()
        self.sync = sync or RemoteSync(config)
        self._clock = clock
        self._sleep = sleep
        self._last_timestamp: Optional[str] = None

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def run(self, instance_ids: Sequence[str] = (), files_only: bool = False) -> RunReport:
        """Run a backup in the mode implied by the arguments and Config."""
        if files_only and not instance_ids:
            raise ConfigurationError("--files-only requires at least one instance id")

        report = RunReport('backup-databases')
        self.notifier.ping(HeartbeatPhase.START)
        timestamp = self.new_timestamp()
        snapshots: List[Path] = []

        logger.info("Starting backup")

        if files_only:
            for instance_id in instance_ids:
                snapshots += self.backup_configured(instance_id, Strategy.FILES, timestamp, report)
        elif instance_ids:
            logger.info(f"Backing up specified instances: {' '.join(instance_ids)}")
            for instance_id in instance_ids:
                snapshots += self.backup_direct(instance_id, timestamp, report)
        elif not self.config.has_manual_config:
            logger.info("No BACKUP_* config found - auto-discovering running services")
            try:
                locations = discover_running(self.config, self.engine)
            except EngineError as e:
                logger.error(f"Discovery failed: {e}")
                report.record_failure('discovery', 'auto', str(e))
                locations = []
            for location in locations:
                snapshots += self.backup_discovered(location, timestamp, report)
        else:
            for strategy, ids in self.configured_ids():
                for instance_id in ids:
                    snapshots += self.backup_configured(instance_id, strategy, timestamp, report)

        if snapshots:
            self.apply_retention(files_only)
            try:
                self.sync.sync_to_remote(self.config.backup_dir)
            except BackupError as e:
                logger.error(f"Remote sync failed: {e}")
                report.record_failure('remote', 'sync', str(e))

        logger.info(f"Backup completed ({len(snapshots)} backups)")
        self.log_backup_files(snapshots)

        return finish_run(self.notifier, report)

    def new_timestamp(self) -> str:
        """Snapshot directory name for this run, never the previous run's."""
        stamp = self._clock().strftime(TIMESTAMP_FORMAT)
        while stamp == self._last_timestamp:
            self._sleep(0.1)
            stamp = self._clock().strftime(TIMESTAMP_FORMAT)
        self._last_timestamp = stamp
        return stamp

    def configured_ids(self) -> List[Tuple[Strategy, Tuple[str, ...]]]:
        return [
            (Strategy.MYSQL, self.config.backup_mysql),
            (Strategy.POSTGRES, self.config.backup_postgres),
            (Strategy.SQLITE, self.config.backup_sqlite),
            (Strategy.FILES, self.config.backup_files),
        ]

    # -------------------------------------------------------------------------
    # Per instance
    # -------------------------------------------------------------------------

    def backup_direct(self, instance_id: str, timestamp: str, report: RunReport) -> List[Path]:
        try:
            location = locate(instance_id, self.config)
        except BackupError as e:
            logger.error(str(e))
            report.record_failure(instance_id, 'auto', str(e))
            return []
        return self.backup_discovered(location, timestamp, report)

    def backup_discovered(self, location: InstanceLocation, timestamp: str, report: RunReport,
                          strategies: Iterable[Strategy] = DATABASE_STRATEGIES) -> List[Path]:
        """Probe each strategy in priority order and run the ones that apply."""
        instance_id = location.instance_id
        try:
            ctx = InstanceContext.load(location)
        except BackupError as e:
            logger.error(str(e))
            report.record_failure(instance_id, 'auto', str(e))
            return []

        logger.info(f"Auto-backup ({location.namespace.value}): {instance_id}")
        snapshot_dir = location.snapshot_root(self.config) / timestamp
        succeeded = []

        for strategy in strategies:
            executor = self.executors[strategy]
            try:
                if not executor.probe(ctx):
                    continue
            except EngineError as e:
                logger.error(f"  {strategy.value} probe failed for {instance_id}: {e}")
                report.record_failure(instance_id, strategy.value, str(e))
                continue

            logger.info(f"  Trying {strategy.value} backup for {instance_id}")
            result = self._execute(executor, ctx, snapshot_dir, report)
            if result is not None and result.ok:
                succeeded.append(strategy.value)

        if not succeeded:
            logger.info(f"  No backup strategy applied to {instance_id}")
            return []

        copy_env_backup(location, snapshot_dir)
        report.record_success(instance_id, ','.join(succeeded))
        return [snapshot_dir]

    def backup_configured(self, instance_id: str, strategy: Strategy, timestamp: str,
                          report: RunReport) -> List[Path]:
        """Run one explicitly configured strategy. Not applying is a failure here."""
        try:
            location = locate(instance_id, self.config)
            ctx = InstanceContext.load(location)
        except BackupError as e:
            logger.error(str(e))
            report.record_failure(instance_id, strategy.value, str(e))
            return []

        logger.info(f"Backing up {strategy.value} ({location.namespace.value}): {instance_id}")
        snapshot_dir = location.snapshot_root(self.config) / timestamp
        result = self._execute(self.executors[strategy], ctx, snapshot_dir, report)
        if result is None or not result.ok:
            if result is not None and not result.errors:
                report.record_failure(instance_id, strategy.value, "Backup failed")
            return []

        copy_env_backup(location, snapshot_dir)
        report.record_success(instance_id, strategy.value)
        return [snapshot_dir]

    def _execute(self, executor: StrategyExecutor, ctx: InstanceContext, snapshot_dir: Path,
                 report: RunReport) -> Optional[StrategyResult]:
        """Run an executor, moving its errors into the report."""
        label = executor.strategy.value
        try:
            result = executor.execute(ctx, snapshot_dir)
        except (NotApplicable, EngineError) as e:
            logger.error(f"  {label} backup failed for {ctx.instance_id}: {e}")
            report.record_failure(ctx.instance_id, label, str(e))
            return None
        for error in result.errors:
            report.record_failure(ctx.instance_id, label, error)
        return result

    # -------------------------------------------------------------------------
    # After the run
    # -------------------------------------------------------------------------

    def apply_retention(self, files_only: bool) -> None:
        """File runs use the file window; database runs keep file snapshots."""
        for namespace in NAMESPACES:
            root = self.config.backup_dir / namespace.value
            if files_only:
                retention.cleanup(root, self.config.files_retention_days)
            else:
                retention.cleanup(root, self.config.retention_days, skip_if_file_backup=True)

    def log_backup_files(self, snapshots: Sequence[Path]) -> None:
        if not snapshots:
            return
        logger.info("")
        logger.info("Backup files:")
        for snapshot_dir in snapshots:
            if not snapshot_dir.is_dir():
                continue
            for path in sorted(snapshot_dir.glob('*.zst')):
                logger.info(f"  {format_size(path.stat().st_size)}  {path}")
