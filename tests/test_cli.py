import json

import pytest

from coolify_backup import cli
from coolify_backup.config import load_config
from coolify_backup.containers import Engine


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, 'setup_logging', lambda config, script_name, level: None)


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / '.env'
    path.write_text(
        f'BACKUP_DIR={tmp_path / "backups"}\n'
        f'COOLIFY_DIR={tmp_path / "coolify"}\n'
        'FILES_BACKUP_SCHEDULE=0 3 * * *\n'
        'BACKUP_FILES=abc\n'
    )
    return str(path)


def test_files_only_without_ids_exits_1(env_file):
    with pytest.raises(SystemExit) as excinfo:
        cli.backup_main(['--files-only', '--env-file', env_file])
    assert excinfo.value.code == 1


def test_missing_env_file_exits_1(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.backup_main(['--env-file', str(tmp_path / 'missing.env')])
    assert excinfo.value.code == 1
    assert 'ERROR:' in capsys.readouterr().err


def test_target_requires_id(env_file):
    with pytest.raises(SystemExit) as excinfo:
        cli.restore_main(['--target', 'abc', '--env-file', env_file])
    assert excinfo.value.code == 2


def test_restore_unknown_instance_exits_1(env_file):
    with pytest.raises(SystemExit) as excinfo:
        cli.restore_main(['ghost', '--latest', '--env-file', env_file])
    assert excinfo.value.code == 1


def test_build_jobs(env_file):
    config = load_config(env_file)
    jobs = cli.build_jobs(config, Engine())
    assert [(job.name, job.schedule) for job in jobs] == [
        ('database-backup', '0 2 * * *'),
        ('files-backup', '0 3 * * *'),
        ('setup-backup', '0 4 * * 0'),
    ]


def test_daemon_list(env_file, capsys):
    cli.daemon_main(['--list', '--env-file', env_file])
    listed = json.loads(capsys.readouterr().out)
    assert [entry['job'] for entry in listed] == ['database-backup', 'files-backup', 'setup-backup']
    assert all(entry['next_run'] for entry in listed)


def test_daemon_unknown_job(env_file):
    with pytest.raises(SystemExit) as excinfo:
        cli.daemon_main(['--run-now', 'nope', '--env-file', env_file])
    assert excinfo.value.code == 1
