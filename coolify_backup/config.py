"""
Orchestrator configuration.

Read once at startup from the project's own .env file (overlaid by the
process environment) into an immutable Config that is passed explicitly to
every component. Library code never reads os.environ itself.

Recognised keys:
  BACKUP_DIR                    Backup root (default: /backups)
  COOLIFY_DIR                   Coolify data root (default: /data/coolify)
  COOLIFY_SERVICES_DIR          Service instances (default: <COOLIFY_DIR>/services)
  COOLIFY_APPS_DIR              Application instances (default: <COOLIFY_DIR>/applications)
  BACKUP_RETENTION_DAYS         Database snapshot retention (default: 7)
  BACKUP_FILES_RETENTION_DAYS   File snapshot retention (default: 30)
  REMOTE_SYNC_METHOD            rsync|rclone (default: unset, no sync)
  RSYNC_TARGET / RCLONE_REMOTE  Remote destination for the chosen method
  RESTORE_PRE_BACKUP            Safety snapshot before restores (default: true)
  BACKUP_MYSQL / BACKUP_POSTGRES / BACKUP_SQLITE / BACKUP_FILES
                                Comma separated instance ids (manual mode)
  ENABLE_LOGGING                Also log to <project>/logs/<script>.log
  LOG_TO_SCREEN                 Log to stdout (default: true)
  BACKUP_SCHEDULE               Daemon cron for database backups (default: 0 2 * * *)
  FILES_BACKUP_SCHEDULE         Daemon cron for file backups (default: unset)
  SETUP_BACKUP_SCHEDULE         Daemon cron for the setup backup (default: 0 4 * * 0)
  CHECK_INTERVAL                Daemon loop interval in seconds (default: 60)
  ZSTD_LEVEL                    zstd compression level (default: 3)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values

from .errors import ConfigurationError

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_ENV_FILE = PROJECT_ROOT / '.env'

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _split_ids(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated id list, dropping blanks."""
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(',') if item.strip())


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == '':
        return default
    return value.strip().lower() in TRUE_VALUES


def _as_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got '{raw}'")


@dataclass(frozen=True)
class Config:
    """Immutable orchestrator settings."""
    backup_dir: Path = Path('/backups')
    coolify_dir: Path = Path('/data/coolify')
    services_dir: Path = Path('/data/coolify/services')
    apps_dir: Path = Path('/data/coolify/applications')
    retention_days: int = 7
    files_retention_days: int = 30
    remote_sync_method: str = ''
    rsync_target: str = ''
    rclone_remote: str = ''
    restore_pre_backup: bool = True
    backup_mysql: Tuple[str, ...] = ()
    backup_postgres: Tuple[str, ...] = ()
    backup_sqlite: Tuple[str, ...] = ()
    backup_files: Tuple[str, ...] = ()
    enable_logging: bool = False
    log_to_screen: bool = True
    log_dir: Path = PROJECT_ROOT / 'logs'
    env_file: Optional[Path] = None
    backup_schedule: str = '0 2 * * *'
    files_backup_schedule: str = ''
    setup_backup_schedule: str = '0 4 * * 0'
    check_interval: int = 60
    zstd_level: int = 3

    @property
    def has_manual_config(self) -> bool:
        """True when database strategies were configured explicitly.

        BACKUP_FILES does not count: file backups never suppress
        auto-discovery of databases.
        """
        return bool(self.backup_mysql or self.backup_postgres or self.backup_sqlite)

    @property
    def pre_restore_dir(self) -> Path:
        return self.backup_dir / 'pre-restore'

    @property
    def setup_backup_dir(self) -> Path:
        return self.backup_dir / 'coolify-setup'


def load_config(env_file: Optional[Path] = None,
                environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from an .env file and the process environment.

    Values from the environment win over the file so that a scheduler can
    override single settings without editing .env.
    """
    path = Path(env_file) if env_file else DEFAULT_ENV_FILE
    values: Dict[str, str] = {}
    if path.is_file():
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    elif env_file is not None:
        raise ConfigurationError(f".env file not found at {path}")

    values.update(os.environ if environ is None else environ)

    coolify_dir = Path(values.get('COOLIFY_DIR') or '/data/coolify')

    return Config(
        backup_dir=Path(values.get('BACKUP_DIR') or '/backups'),
        coolify_dir=coolify_dir,
        services_dir=Path(values.get('COOLIFY_SERVICES_DIR') or coolify_dir / 'services'),
        apps_dir=Path(values.get('COOLIFY_APPS_DIR') or coolify_dir / 'applications'),
        retention_days=_as_int(values, 'BACKUP_RETENTION_DAYS', 7),
        files_retention_days=_as_int(values, 'BACKUP_FILES_RETENTION_DAYS', 30),
        remote_sync_method=(values.get('REMOTE_SYNC_METHOD') or '').strip().lower(),
        rsync_target=values.get('RSYNC_TARGET') or '',
        rclone_remote=values.get('RCLONE_REMOTE') or '',
        restore_pre_backup=_as_bool(values.get('RESTORE_PRE_BACKUP'), True),
        backup_mysql=_split_ids(values.get('BACKUP_MYSQL')),
        backup_postgres=_split_ids(values.get('BACKUP_POSTGRES')),
        backup_sqlite=_split_ids(values.get('BACKUP_SQLITE')),
        backup_files=_split_ids(values.get('BACKUP_FILES')),
        enable_logging=_as_bool(values.get('ENABLE_LOGGING'), False),
        log_to_screen=_as_bool(values.get('LOG_TO_SCREEN'), True),
        log_dir=Path(values.get('LOG_DIR') or PROJECT_ROOT / 'logs'),
        env_file=path if path.is_file() else None,
        backup_schedule=values.get('BACKUP_SCHEDULE') or '0 2 * * *',
        files_backup_schedule=values.get('FILES_BACKUP_SCHEDULE') or '',
        setup_backup_schedule=values.get('SETUP_BACKUP_SCHEDULE') or '0 4 * * 0',
        check_interval=_as_int(values, 'CHECK_INTERVAL', 60),
        zstd_level=_as_int(values, 'ZSTD_LEVEL', 3),
    )
