from pathlib import Path

import pytest

from coolify_backup import config as config_module
from coolify_backup.config import Config, load_config
from coolify_backup.errors import ConfigurationError


@pytest.fixture(autouse=True)
def no_project_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, 'DEFAULT_ENV_FILE', tmp_path / 'absent.env')


def test_defaults_without_env_file():
    config = load_config(environ={})
    assert config.backup_dir == Path('/backups')
    assert config.services_dir == Path('/data/coolify/services')
    assert config.apps_dir == Path('/data/coolify/applications')
    assert config.retention_days == 7
    assert config.files_retention_days == 30
    assert config.restore_pre_backup is True
    assert config.backup_schedule == '0 2 * * *'
    assert not config.has_manual_config


def test_env_file_and_environment_overlay(tmp_path):
    env_file = tmp_path / '.env'
    env_file.write_text(
        'BACKUP_DIR=/srv/backups\n'
        'BACKUP_RETENTION_DAYS=14\n'
        'BACKUP_MYSQL=a, b,,\n'
        'RESTORE_PRE_BACKUP=false\n'
        'REMOTE_SYNC_METHOD=RClone\n'
    )
    config = load_config(env_file, environ={'BACKUP_RETENTION_DAYS': '3'})
    assert config.backup_dir == Path('/srv/backups')
    assert config.retention_days == 3
    assert config.backup_mysql == ('a', 'b')
    assert config.has_manual_config
    assert config.restore_pre_backup is False
    assert config.remote_sync_method == 'rclone'
    assert config.env_file == env_file
    assert config.pre_restore_dir == Path('/srv/backups/pre-restore')


def test_coolify_dir_drives_instance_roots():
    config = load_config(environ={'COOLIFY_DIR': '/opt/coolify'})
    assert config.services_dir == Path('/opt/coolify/services')
    assert config.apps_dir == Path('/opt/coolify/applications')


def test_files_config_alone_is_not_manual():
    assert not Config(backup_files=('x',)).has_manual_config


def test_invalid_integer_raises():
    with pytest.raises(ConfigurationError):
        load_config(environ={'CHECK_INTERVAL': 'soon'})


def test_missing_explicit_env_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / 'missing.env', environ={})


def test_config_is_immutable():
    config = Config()
    with pytest.raises(AttributeError):
        config.retention_days = 1
