import dataclasses
import os
import time
from datetime import datetime

import pytest

from coolify_backup.backup import BackupRunner, format_size
from coolify_backup.errors import ConfigurationError
from coolify_backup.notify import HeartbeatPhase, Notifier, RunStatus
from coolify_backup.retention import RemoteSync

T0 = datetime(2024, 1, 1, 2, 0, 0)
T1 = datetime(2024, 1, 1, 2, 0, 1)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.reports = []
        self.pings = []

    def notify(self, report):
        self.reports.append(report)

    def ping(self, phase):
        self.pings.append(phase)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_runner(config, engine, runner, notifier):
    def _make(config=config, times=(T0,), sleeps=None):
        clock = iter(times)
        return BackupRunner(
            config, engine=engine, notifier=notifier,
            sync=RemoteSync(config, runner),
            clock=lambda: next(clock),
            sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
        )
    return _make


def test_discovery_backs_up_running_databases(config, make_runner, notifier, mysql_instance, postgres_instance):
    report = make_runner().run()

    wp1 = config.backup_dir / 'services' / 'wp1' / '20240101_020000'
    pg1 = config.backup_dir / 'apps' / 'pg1' / '20240101_020000'
    assert sorted(p.name for p in wp1.iterdir()) == ['env.backup', 'wordpress.sql.zst']
    assert sorted(p.name for p in pg1.iterdir()) == ['env.backup', 'mydb.sql.zst']
    assert (wp1 / 'env.backup').read_text() == (config.services_dir / 'wp1' / '.env').read_text()

    assert report.status is RunStatus.SUCCESS
    assert report.backed_up == ['wp1 (mysql)', 'pg1 (postgres)']
    assert notifier.reports == [report]
    assert notifier.pings == [HeartbeatPhase.START, HeartbeatPhase.SUCCESS]


def test_discovery_leaves_file_volumes_alone(config, make_runner, postgres_instance):
    make_runner().run()
    snapshot = config.backup_dir / 'apps' / 'pg1' / '20240101_020000'
    assert not (snapshot / 'storage.tar.zst').exists()


def test_consecutive_runs_get_distinct_snapshots(config, make_runner, mysql_instance):
    sleeps = []
    backup = make_runner(times=(T0, T0, T0, T1), sleeps=sleeps)
    backup.run()
    backup.run()

    snapshots = sorted(p.name for p in (config.backup_dir / 'services' / 'wp1').iterdir())
    assert snapshots == ['20240101_020000', '20240101_020001']
    assert len(sleeps) == 2


def test_partial_failure(engine, make_runner, mysql_instance, postgres_instance):
    def on_exec(container, cmd, environment):
        if cmd[0] == 'mysqldump':
            return 1, b'', b'Access denied'
        return 0, b'-- dump\n', b''
    engine.on_exec = on_exec

    report = make_runner().run()

    assert report.status is RunStatus.PARTIAL
    assert report.backed_up == ['pg1 (postgres)']
    assert len(report.errors) == 1
    assert report.errors[0].startswith('wp1 (mysql): wordpress:')


def test_files_only_requires_ids(make_runner):
    with pytest.raises(ConfigurationError):
        make_runner().run(files_only=True)


def test_files_only(config, make_runner, files_instance):
    report = make_runner().run(['abc'], files_only=True)
    snapshot = config.backup_dir / 'services' / 'abc' / '20240101_020000'
    assert sorted(p.name for p in snapshot.iterdir()) == ['env.backup', 'uploads.tar.zst']
    assert report.backed_up == ['abc (files)']


def test_direct_mode_reports_unknown_instances(make_runner, mysql_instance):
    report = make_runner().run(['wp1', 'ghost'])
    assert report.backed_up == ['wp1 (mysql)']
    assert report.errors == ['ghost (auto): Instance not found in services or applications: ghost']
    assert report.status is RunStatus.PARTIAL


def test_manual_mode_does_not_fall_back(config, make_runner, notifier, postgres_instance):
    manual = dataclasses.replace(config, backup_mysql=('pg1',))
    report = make_runner(config=manual).run()

    assert report.status is RunStatus.FAILURE
    assert report.errors[0].startswith('pg1 (mysql):')
    assert not (config.backup_dir / 'apps' / 'pg1').exists()
    assert notifier.pings[-1] is HeartbeatPhase.FAIL


def test_retention_and_sync_after_run(config, make_runner, runner, mysql_instance):
    old = config.backup_dir / 'services' / 'wp1' / '20230101_020000'
    old.mkdir(parents=True)
    (old / 'wordpress.sql.zst').write_bytes(b'x')
    mtime = time.time() - 30 * 86400
    os.utime(old, (mtime, mtime))
    synced = dataclasses.replace(config, remote_sync_method='rsync', rsync_target='backup@host:/srv')

    report = make_runner(config=synced).run()

    assert report.status is RunStatus.SUCCESS
    assert not old.exists()
    assert runner.calls == [['rsync', '-avz', '--delete', str(config.backup_dir), 'backup@host:/srv']]


def test_sync_failure_is_recorded(config, make_runner, runner, mysql_instance):
    runner.returncode = 12
    synced = dataclasses.replace(config, remote_sync_method='rclone', rclone_remote='b2:bucket')
    report = make_runner(config=synced).run()
    assert report.status is RunStatus.PARTIAL
    assert report.errors[0].startswith('remote (sync):')


def test_nothing_to_back_up_skips_sync(config, make_runner, runner):
    synced = dataclasses.replace(config, remote_sync_method='rsync', rsync_target='backup@host:/srv')
    report = make_runner(config=synced).run()
    assert report.total == 0
    assert runner.calls == []


@pytest.mark.parametrize('size, expected', [
    (512, '512B'),
    (2048, '2.0K'),
    (5 * 1024 * 1024, '5.0M'),
])
def test_format_size(size, expected):
    assert format_size(size) == expected
