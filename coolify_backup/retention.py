"""Snapshot retention and remote sync."""

import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from .archive import ARCHIVE_SUFFIX
from .config import Config
from .errors import ConfigurationError, SyncError
from .strategies import SQLITE_ARCHIVE

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def has_file_backup(snapshot_dir: Path) -> bool:
    """True when the snapshot holds a storage volume archive.

    sqlite-data.tar.zst is a database payload and does not count.
    """
    return any(
        entry.is_file() and entry.name.endswith(ARCHIVE_SUFFIX) and entry.name != SQLITE_ARCHIVE
        for entry in snapshot_dir.iterdir()
    )


def _snapshot_dirs(root: Path, depth: int) -> List[Path]:
    level = [root]
    for _ in range(depth):
        level = [child for parent in level for child in sorted(parent.iterdir()) if child.is_dir()]
    return level


def cleanup(root: Path, retention_days: int, skip_if_file_backup: bool = False,
            now: Optional[float] = None, depth: int = 2) -> List[Path]:
    """Delete snapshot directories older than retention_days.

    Snapshots sit at <root>/<instance>/<timestamp> (depth 2); the setup
    backup keeps them directly under the root (depth 1). With
    skip_if_file_backup, snapshots holding file archives are kept; they
    follow the longer file retention applied by --files-only runs.
    Returns the deleted directories.
    """
    root = Path(root)
    if not root.is_dir():
        return []

    logger.info(f"Cleaning backups older than {retention_days} days in {root}")
    cutoff = (time.time() if now is None else now) - retention_days * SECONDS_PER_DAY
    deleted = []

    for snapshot_dir in _snapshot_dirs(root, depth):
        if snapshot_dir.stat().st_mtime >= cutoff:
            continue
        if skip_if_file_backup and has_file_backup(snapshot_dir):
            logger.debug(f"Keeping {snapshot_dir}: contains file backups")
            continue
        logger.info(f"Removing old backup: {snapshot_dir}")
        shutil.rmtree(snapshot_dir)
        deleted.append(snapshot_dir)

    return deleted


class RemoteSync:
    """rsync or rclone mirror of the backup root, chosen by REMOTE_SYNC_METHOD."""

    def __init__(self, config: Config, runner=subprocess.run):
        self.method = config.remote_sync_method
        self.rsync_target = config.rsync_target
        self.rclone_remote = config.rclone_remote
        self._run = runner

    @property
    def configured(self) -> bool:
        if self.method == 'rsync':
            return bool(self.rsync_target)
        if self.method == 'rclone':
            return bool(self.rclone_remote)
        return False

    def _execute(self, cmd: List[str]) -> None:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = self._run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise SyncError(f"{cmd[0]} could not be started: {e}") from e
        if result.returncode != 0:
            raise SyncError(f"{cmd[0]} failed ({result.returncode}): {result.stderr.strip()}")

    def sync_to_remote(self, path: Path) -> bool:
        """Push path to the remote. Unconfigured sync is a no-op.

        Returns True when a sync ran.
        """
        if not self.configured:
            logger.info("No remote sync method configured")
            return False
        if self.method == 'rsync':
            logger.info(f"Syncing to {self.rsync_target}")
            self._execute(['rsync', '-avz', '--delete', str(path), self.rsync_target])
        else:
            logger.info(f"Syncing to {self.rclone_remote}")
            self._execute(['rclone', 'sync', str(path), self.rclone_remote])
        return True

    def sync_from_remote(self, path: Path) -> None:
        """Pull the remote into path before a restore."""
        if self.method == 'rsync':
            if not self.rsync_target:
                raise ConfigurationError("RSYNC_TARGET not configured")
            logger.info(f"Fetching from {self.rsync_target}")
            self._execute(['rsync', '-avz', self.rsync_target, str(path)])
        elif self.method == 'rclone':
            if not self.rclone_remote:
                raise ConfigurationError("RCLONE_REMOTE not configured")
            logger.info(f"Fetching from {self.rclone_remote}")
            self._execute(['rclone', 'sync', self.rclone_remote, str(path)])
        else:
            raise ConfigurationError("No remote sync method configured (set REMOTE_SYNC_METHOD)")
        logger.info("Remote fetch completed")
