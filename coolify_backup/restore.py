"""
Restoring snapshots.

A restore walks a fixed sequence of states:

  SELECT_TARGET -> SELECT_SNAPSHOT -> VALIDATE -> CONFIRM
      -> PRE_RESTORE_SNAPSHOT -> APPLY -> RESTART_CONTAINER -> DONE

VALIDATE runs before anything touches a container, so a corrupt snapshot
never gets as far as the pre-restore snapshot. In dry-run mode every state
after VALIDATE only logs what it would do.
"""

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from . import archive
from .backup import TIMESTAMP_FORMAT, copy_env_backup
from .config import Config
from .containers import ContainerResolver, DockerEngine, Engine
from .errors import (
    BackupError,
    EngineError,
    ExecutionError,
    IntegrityError,
    NotApplicable,
    RestoreCancelled,
    SnapshotNotFound,
)
from .instances import NAMESPACES, InstanceLocation, Namespace, locate
from .retention import RemoteSync
from .setup_backup import COOLIFY_DB_PREFIX, COOLIFY_DB_USER, DATA_ARCHIVE, DB_DUMP, MANIFEST, SSH_DIR
from .strategies import (
    PRIORITY,
    SQLITE_ARCHIVE,
    InstanceContext,
    Strategy,
    build_executors,
    classify_payloads,
)

logger = logging.getLogger(__name__)

CONFIRM_ANSWERS = ('y', 'yes')
DB_STARTUP_TIMEOUT = 30  # seconds


class RestoreState(Enum):
    SELECT_TARGET = 'select-target'
    SELECT_SNAPSHOT = 'select-snapshot'
    VALIDATE = 'validate'
    CONFIRM = 'confirm'
    PRE_RESTORE_SNAPSHOT = 'pre-restore-snapshot'
    APPLY = 'apply'
    RESTART_CONTAINER = 'restart-container'
    DONE = 'done'


# =============================================================================
# SNAPSHOT CATALOGUE
# =============================================================================

def format_timestamp(ts: str) -> str:
    """20240131_020000 -> 2024-01-31 02:00:00"""
    try:
        return datetime.strptime(ts, TIMESTAMP_FORMAT).strftime('%Y-%m-%d %H:%M:%S')
    except ValueError:
        return ts


def snapshot_payloads(snapshot_dir: Path) -> List[Path]:
    """Every *.sql.zst and *.tar.zst file, in name order."""
    return sorted(
        path for path in snapshot_dir.iterdir()
        if path.is_file() and path.name.endswith((archive.SQL_SUFFIX, archive.ARCHIVE_SUFFIX))
    )


def describe_snapshot(snapshot_dir: Path) -> str:
    """Short content summary, e.g. "2 SQL SQLite 1 Files"."""
    groups = classify_payloads(p.name for p in snapshot_payloads(snapshot_dir))

    contents = []
    if groups['sql']:
        contents.append(f"{len(groups['sql'])} SQL")
    if groups['sqlite']:
        contents.append("SQLite")
    if groups['files']:
        contents.append(f"{len(groups['files'])} Files")
    return ' '.join(contents) if contents else 'empty'


def validate_snapshot(snapshot_dir: Path) -> List[Path]:
    """zstd integrity check of every payload. Raises IntegrityError.

    Returns the validated payloads.
    """
    snapshot_dir = Path(snapshot_dir)
    if not snapshot_dir.is_dir():
        raise IntegrityError(f"Backup path does not exist: {snapshot_dir}")

    payloads = snapshot_payloads(snapshot_dir)
    if not payloads:
        raise IntegrityError(f"No backup files found in: {snapshot_dir}")

    corrupt = [path.name for path in payloads if not archive.verify(path)]
    if corrupt:
        for name in corrupt:
            logger.error(f"Corrupt file: {name}")
        raise IntegrityError(f"Corrupt files in {snapshot_dir}: {', '.join(corrupt)}")
    return payloads


class SnapshotCatalog:
    """Read-only view of the backup root."""

    def __init__(self, config: Config):
        self.backup_dir = config.backup_dir
        self.setup_dir = config.setup_backup_dir

    def category_dir(self, namespace: Namespace) -> Path:
        return self.backup_dir / namespace.value

    def list_instances(self, namespace: Namespace) -> List[str]:
        root = self.category_dir(namespace)
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir())

    def list_snapshots(self, namespace: Namespace, instance_id: str) -> List[str]:
        """Snapshot timestamps, newest first."""
        return self._timestamps(self.category_dir(namespace) / instance_id)

    def list_setup_snapshots(self) -> List[str]:
        return self._timestamps(self.setup_dir)

    @staticmethod
    def _timestamps(root: Path) -> List[str]:
        if not root.is_dir():
            return []
        # YYYYMMDD_HHMMSS sorts chronologically as text
        return sorted((entry.name for entry in root.iterdir() if entry.is_dir()), reverse=True)

    def find_namespace(self, instance_id: str) -> Namespace:
        """Namespace holding snapshots for an instance, services first."""
        for namespace in NAMESPACES:
            if (self.category_dir(namespace) / instance_id).is_dir():
                return namespace
        raise SnapshotNotFound(instance_id)

    def snapshot_dir(self, namespace: Namespace, instance_id: str, timestamp: str) -> Path:
        return self.category_dir(namespace) / instance_id / timestamp


# =============================================================================
# RESTORE
# =============================================================================

@dataclass
class RestoreItem:
    payload: Path
    strategy: Strategy

    @property
    def name(self) -> str:
        return self.payload.name


@dataclass
class RestoreOutcome:
    target: str
    snapshot: Path
    dry_run: bool = False
    restored: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    pre_restore_dir: Optional[Path] = None
    restarted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class RestoreOrchestrator:
    """Restores snapshots into live containers.

    input_func and output are the interactive channel; tests pass
    scripted replacements.
    """

    def __init__(self, config: Config, engine: Optional[Engine] = None,
                 dry_run: bool = False, assume_yes: bool = False,
                 input_func: Callable[[str], str] = input,
                 output: Callable[[str], None] = print,
                 clock: Callable[[], datetime] = datetime.now,
                 runner=subprocess.run,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.engine = engine or DockerEngine()
        self.resolver = ContainerResolver(self.engine)
        self.executors = build_executors(self.resolver, config.zstd_level)
        self.catalog = SnapshotCatalog(config)
        self.dry_run = dry_run
        self.assume_yes = assume_yes
        self._input = input_func
        self._print = output
        self._clock = clock
        self._run = runner
        self._sleep = sleep
        self.state: Optional[RestoreState] = None

    def _enter(self, state: RestoreState) -> None:
        logger.debug(f"Restore state: {state.value}")
        self.state = state

    def _dry(self, message: str) -> None:
        logger.info(f"[DRY-RUN] {message}")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def fetch_remote(self) -> None:
        logger.info("Fetching backups from remote storage...")
        RemoteSync(self.config, runner=self._run).sync_from_remote(self.config.backup_dir)

    def restore_direct(self, instance_id: str, latest: bool = False,
                       target_id: Optional[str] = None) -> Optional[RestoreOutcome]:
        """Restore one instance by id, choosing the snapshot interactively or the latest."""
        namespace = self.catalog.find_namespace(instance_id)
        snapshots = self.catalog.list_snapshots(namespace, instance_id)
        if not snapshots:
            raise SnapshotNotFound(instance_id)

        if latest:
            timestamp = snapshots[0]
            logger.info(f"Using latest backup: {format_timestamp(timestamp)}")
        else:
            timestamp = self.choose_snapshot(namespace, instance_id, snapshots)
            if timestamp is None:
                return None

        snapshot_dir = self.catalog.snapshot_dir(namespace, instance_id, timestamp)
        return self.restore_snapshot(instance_id, snapshot_dir, target_id=target_id)

    def restore_snapshot(self, instance_id: str, snapshot_dir: Path,
                         item_names: Optional[Sequence[str]] = None,
                         target_id: Optional[str] = None) -> Optional[RestoreOutcome]:
        """Run the restore state machine for one snapshot.

        The snapshot belongs to instance_id; target_id redirects the data to
        another instance. item_names limits the restore to those payloads;
        otherwise they are chosen interactively, or all of them with
        assume_yes. Returns None when the operator backs out of selection.
        """
        self._enter(RestoreState.SELECT_TARGET)
        target = locate(target_id or instance_id, self.config)
        ctx = InstanceContext.load(target)
        if target_id and target_id != instance_id:
            logger.info(f"Restoring {instance_id} backup into {target_id}")

        self._enter(RestoreState.SELECT_SNAPSHOT)
        snapshot_dir = Path(snapshot_dir)
        logger.info(f"Selected backup: {snapshot_dir}")

        self._enter(RestoreState.VALIDATE)
        logger.info("Validating backup...")
        payloads = validate_snapshot(snapshot_dir)
        logger.info("Backup validation passed")

        items = self.plan_items(ctx, payloads)
        selected = self.select_items(items, item_names)
        if selected is None:
            return None

        outcome = RestoreOutcome(target=target.instance_id, snapshot=snapshot_dir, dry_run=self.dry_run)

        self._enter(RestoreState.CONFIRM)
        self.confirm(target.instance_id, self.describe_selection(snapshot_dir, selected, items))

        self._enter(RestoreState.PRE_RESTORE_SNAPSHOT)
        outcome.pre_restore_dir = self.pre_restore_snapshot(ctx, [item.strategy for item in selected])

        self._enter(RestoreState.APPLY)
        for item in selected:
            self.apply_item(ctx, item, outcome)

        self._enter(RestoreState.RESTART_CONTAINER)
        if outcome.restored or self.dry_run:
            outcome.restarted = self.restart(target)

        self._enter(RestoreState.DONE)
        if outcome.failed:
            logger.error(f"Restore finished with {len(outcome.failed)} failed item(s)")
        else:
            logger.info("Restore completed")
        return outcome

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    def item_strategy(self, ctx: InstanceContext, payload: Path) -> Strategy:
        """Which executor restores a payload into the target.

        SQL dumps go to PostgreSQL only when the target has a running
        PostgreSQL container; anything else is treated as MySQL.
        """
        if payload.name.endswith(archive.SQL_SUFFIX):
            if self.executors[Strategy.POSTGRES].probe(ctx):
                return Strategy.POSTGRES
            return Strategy.MYSQL
        if payload.name == SQLITE_ARCHIVE:
            return Strategy.SQLITE
        return Strategy.FILES

    def plan_items(self, ctx: InstanceContext, payloads: Sequence[Path]) -> List[RestoreItem]:
        """Restorable items: SQL dumps first, then SQLite, then file volumes."""
        items = [RestoreItem(p, self.item_strategy(ctx, p)) for p in payloads]
        order = {strategy: index for index, strategy in enumerate(PRIORITY)}
        return sorted(items, key=lambda item: (order[item.strategy], item.name))

    def select_items(self, items: List[RestoreItem],
                     item_names: Optional[Sequence[str]] = None) -> Optional[List[RestoreItem]]:
        if item_names:
            wanted = set(item_names)
            unknown = wanted - {item.name for item in items}
            if unknown:
                raise IntegrityError(f"Not in backup: {', '.join(sorted(unknown))}")
            return [item for item in items if item.name in wanted]

        if self.assume_yes:
            return items

        self._print("")
        self._print("Available items to restore:")
        for index, item in enumerate(items, 1):
            self._print(f"  {index}) {item.name} ({item.strategy.value})")
        self._print("  a) All items")
        self._print("  b) Back")
        self._print("")
        selection = self._input(f"Select item [1-{len(items)}, a, b]: ").strip()

        if selection == 'a':
            return items
        if selection == 'b':
            return None
        index = self._parse_choice(selection, len(items))
        if index is None:
            logger.error("Invalid selection")
            return None
        return [items[index]]

    @staticmethod
    def describe_selection(snapshot_dir: Path, selected: List[RestoreItem], items: List[RestoreItem]) -> str:
        stamp = format_timestamp(snapshot_dir.name)
        if len(selected) == len(items) and len(items) > 1:
            return f"{stamp} (all items)"
        return f"{stamp} ({', '.join(item.name for item in selected)})"

    def confirm(self, target: str, backup_info: str) -> None:
        """Explicit yes required unless assume_yes or dry run. Raises RestoreCancelled."""
        if self.assume_yes or self.dry_run:
            return
        self._print("")
        self._print("=== Restore Confirmation ===")
        self._print(f"Target: {target}")
        self._print(f"Backup: {backup_info}")
        self._print("")
        self._print("WARNING: This will overwrite existing data!")
        self._print("")
        response = self._input("Continue? [y/N]: ").strip().lower()
        if response not in CONFIRM_ANSWERS:
            logger.info("Restore cancelled by user")
            raise RestoreCancelled("Restore cancelled by user")

    def pre_restore_snapshot(self, ctx: InstanceContext, strategies: Sequence[Strategy]) -> Optional[Path]:
        """Back up the target's current data for the strategies about to be restored.

        Failures are logged and do not block the restore: the target may not
        hold any data yet.
        """
        if not self.config.restore_pre_backup:
            return None
        if self.dry_run:
            self._dry("Would create pre-restore backup")
            return None

        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        pre_dir = self.config.pre_restore_dir / ctx.instance_id / timestamp
        logger.info("Creating pre-restore backup...")
        pre_dir.mkdir(parents=True, exist_ok=True)

        for strategy in PRIORITY:
            if strategy not in strategies:
                continue
            try:
                result = self.executors[strategy].execute(ctx, pre_dir)
            except (BackupError, OSError) as e:
                logger.warning(f"  Pre-restore {strategy.value} backup failed: {e}")
                continue
            for error in result.errors:
                logger.warning(f"  Pre-restore {strategy.value} backup: {error}")

        copy_env_backup(ctx.location, pre_dir)
        logger.info(f"Pre-restore backup saved to: {pre_dir}")
        return pre_dir

    def apply_item(self, ctx: InstanceContext, item: RestoreItem, outcome: RestoreOutcome) -> None:
        executor = self.executors[item.strategy]
        try:
            if self.dry_run:
                self._dry(f"Would restore {item.name} ({item.strategy.value}) to {executor.restore_target(ctx, item.payload)}")
                if item.strategy is Strategy.POSTGRES:
                    self._dry("Would drop and recreate database first")
                return
            logger.info(f"Restoring {item.strategy.value}: {item.name}")
            executor.apply(ctx, item.payload)
        except (NotApplicable, ExecutionError, EngineError, OSError) as e:
            logger.error(f"Failed to restore {item.name}: {e}")
            outcome.failed.append(f"{item.name}: {e}")
            return
        logger.info(f"  {item.name} restored successfully")
        outcome.restored.append(item.name)

    def restart(self, location: InstanceLocation) -> bool:
        """docker compose restart. A failure is reported, never raised."""
        if self.dry_run:
            self._dry(f"Would restart containers for {location.instance_id}")
            return False
        compose_file = location.compose_file
        if compose_file is None:
            logger.error(f"No compose file found for {location.instance_id}")
            return False
        logger.info(f"Restarting containers for {location.instance_id}...")
        if not self._compose(compose_file, 'restart'):
            logger.error("Failed to restart containers")
            return False
        logger.info("Containers restarted successfully")
        return True

    def _compose(self, compose_file: Path, *args: str) -> bool:
        cmd = ['docker', 'compose', '-f', str(compose_file), *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = self._run(cmd, capture_output=True, text=True)
        except OSError as e:
            logger.error(f"Could not run docker compose: {e}")
            return False
        if result.returncode != 0:
            logger.error(f"docker compose {' '.join(args)} failed: {result.stderr.strip()}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Coolify setup
    # -------------------------------------------------------------------------

    @property
    def coolify_compose_file(self) -> Path:
        return self.config.coolify_dir / 'source' / 'docker-compose.yml'

    def restore_setup(self, snapshot_dir: Path) -> bool:
        """Restore a coolify-setup snapshot onto this host."""
        snapshot_dir = Path(snapshot_dir)
        logger.info(f"Restoring Coolify setup from: {snapshot_dir}")
        manifest_file = snapshot_dir / MANIFEST
        if not manifest_file.is_file():
            raise IntegrityError(f"Invalid Coolify backup - {MANIFEST} not found")

        validate_snapshot(snapshot_dir)

        self._print("")
        self._print("=== Backup Manifest ===")
        self._print(manifest_file.read_text())

        if self.dry_run:
            self._dry("Would restore Coolify setup:")
            self._dry("- Stop Coolify containers")
            self._dry(f"- Restore database from {DB_DUMP}")
            self._dry(f"- Restore data from {DATA_ARCHIVE}")
            self._dry("- Restore SSH keys if present")
            self._dry("- Start Coolify containers")
            return True

        self.confirm("Coolify Installation", str(snapshot_dir))

        compose_file = self.coolify_compose_file
        logger.info("Stopping Coolify...")
        self._compose(compose_file, 'down')

        ok = True
        if (snapshot_dir / DB_DUMP).is_file():
            ok = self._restore_setup_database(compose_file, snapshot_dir / DB_DUMP) and ok

        if (snapshot_dir / DATA_ARCHIVE).is_file():
            logger.info("Restoring Coolify data directory...")
            archive.extract_archive(snapshot_dir / DATA_ARCHIVE, self.config.coolify_dir.parent)

        if (snapshot_dir / SSH_DIR).is_dir():
            logger.info("Restoring SSH keys...")
            restore_ssh_keys(snapshot_dir / SSH_DIR, self.config.coolify_dir / SSH_DIR)

        logger.info("Starting Coolify...")
        ok = self._compose(compose_file, 'up', '-d') and ok
        if ok:
            logger.info("Coolify setup restored successfully")
        return ok

    def _restore_setup_database(self, compose_file: Path, dump: Path) -> bool:
        logger.info("Restoring Coolify database...")
        self._compose(compose_file, 'up', '-d', COOLIFY_DB_PREFIX)
        container = self._wait_for_setup_database()
        if container is None:
            logger.error("Coolify database container did not start")
            return False
        exit_code, output = self.engine.exec_input(
            container, ['psql', '-U', COOLIFY_DB_USER], archive.decompress_stream(dump))
        if exit_code:
            logger.error(f"Failed to restore Coolify database: {output}")
            return False
        return True

    def _wait_for_setup_database(self) -> Optional[str]:
        for _ in range(DB_STARTUP_TIMEOUT):
            for name in self.engine.running_names():
                if name.startswith(COOLIFY_DB_PREFIX):
                    # Give postgres a moment to accept connections
                    self._sleep(5)
                    return name
            self._sleep(1)
        return None

    # -------------------------------------------------------------------------
    # Interactive menus
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_choice(selection: str, count: int) -> Optional[int]:
        if selection.isdigit() and 1 <= int(selection) <= count:
            return int(selection) - 1
        return None

    def _choose(self, title: str, labels: List[str], prompt: str) -> Optional[int]:
        self._print("")
        self._print(title)
        for index, label in enumerate(labels, 1):
            self._print(f"  {index}) {label}")
        self._print("  b) Back")
        self._print("")
        selection = self._input(f"{prompt} [1-{len(labels)}]: ").strip()
        if selection == 'b':
            return None
        index = self._parse_choice(selection, len(labels))
        if index is None:
            logger.error("Invalid selection")
        return index

    def choose_snapshot(self, namespace: Namespace, instance_id: str,
                        snapshots: Optional[List[str]] = None) -> Optional[str]:
        snapshots = snapshots or self.catalog.list_snapshots(namespace, instance_id)
        if not snapshots:
            logger.error(f"No backups found for: {instance_id}")
            return None
        labels = [
            f"{format_timestamp(ts)} - "
            f"{describe_snapshot(self.catalog.snapshot_dir(namespace, instance_id, ts))}"
            for ts in snapshots
        ]
        index = self._choose(f"Available backups for {instance_id}:", labels, "Select backup")
        return None if index is None else snapshots[index]

    def choose_instance(self, namespace: Namespace) -> Optional[str]:
        instances = self.catalog.list_instances(namespace)
        if not instances:
            logger.error(f"No backups found in {self.catalog.category_dir(namespace)}")
            return None
        labels = []
        for instance_id in instances:
            snapshots = self.catalog.list_snapshots(namespace, instance_id)
            latest = format_timestamp(snapshots[0]) if snapshots else 'none'
            labels.append(f"{instance_id} (latest: {latest})")
        index = self._choose(f"Available instances in {namespace.value}:", labels, "Select instance")
        return None if index is None else instances[index]

    def interactive_restore(self, namespace: Namespace) -> Optional[RestoreOutcome]:
        instance_id = self.choose_instance(namespace)
        if instance_id is None:
            return None
        timestamp = self.choose_snapshot(namespace, instance_id)
        if timestamp is None:
            return None
        return self.restore_snapshot(
            instance_id, self.catalog.snapshot_dir(namespace, instance_id, timestamp))

    def interactive_setup_restore(self) -> bool:
        snapshots = self.catalog.list_setup_snapshots()
        if not snapshots:
            logger.error("No Coolify setup backups found")
            return False
        index = self._choose("Available Coolify setup backups:",
                             [format_timestamp(ts) for ts in snapshots], "Select backup")
        if index is None:
            return False
        return self.restore_setup(self.catalog.setup_dir / snapshots[index])

    def main_menu(self) -> None:
        """Loop until the operator quits. Failed restores return to the menu."""
        actions = {
            '1': lambda: self.interactive_restore(Namespace.SERVICE),
            '2': lambda: self.interactive_restore(Namespace.APPLICATION),
            '3': self.interactive_setup_restore,
        }
        while True:
            self._print("")
            self._print("=== VPS Backup Restore ===")
            if self.dry_run:
                self._print("[DRY-RUN MODE - No changes will be made]")
            self._print("")
            self._print("Select backup category:")
            self._print(f"  1) Services ({self.catalog.category_dir(Namespace.SERVICE)}/)")
            self._print(f"  2) Applications ({self.catalog.category_dir(Namespace.APPLICATION)}/)")
            self._print(f"  3) Coolify Setup ({self.catalog.setup_dir}/)")
            self._print("  q) Quit")
            self._print("")
            choice = self._input("Enter choice: ").strip()

            if choice.lower() == 'q':
                logger.info("Exiting")
                return
            action = actions.get(choice)
            if action is None:
                logger.error("Invalid choice")
                continue
            try:
                action()
            except RestoreCancelled:
                continue
            except BackupError as e:
                logger.error(str(e))


def restore_ssh_keys(source: Path, dest: Path) -> None:
    """Copy ssh keys and tighten modes: 0700 on the directory, 0600 on files."""
    shutil.copytree(source, dest, dirs_exist_ok=True)
    os.chmod(dest, 0o700)
    for path in dest.iterdir():
        if path.is_file():
            os.chmod(path, 0o600)
