import dataclasses
import io
import tarfile
from datetime import datetime

import pytest

from coolify_backup import archive
from coolify_backup.errors import ConfigurationError
from coolify_backup.notify import RunStatus
from coolify_backup.retention import RemoteSync
from coolify_backup.setup_backup import SetupBackup, excluded_from_data

NOW = datetime(2024, 1, 7, 4, 0, 0)


@pytest.fixture
def coolify_host(config, engine, tmp_path):
    coolify = config.coolify_dir
    (coolify / 'source').mkdir(parents=True)
    (coolify / 'source' / '.env').write_text('APP_KEY=base64:abc\n')
    (coolify / 'backups').mkdir()
    (coolify / 'backups' / 'huge.dump').write_bytes(b'x' * 100)
    (coolify / 'ssh').mkdir()
    (coolify / 'ssh' / 'id_ed25519').write_text('PRIVATE')
    engine.add('coolify-db', 'postgres:15-alpine')
    engine.add('coolify', 'ghcr.io/coollabsio/coolify:4.0.0-beta.300')

    own_env = tmp_path / 'orchestrator.env'
    own_env.write_text('BACKUP_DIR=/backups\n')
    return dataclasses.replace(config, env_file=own_env)


def make_backup(config, engine, runner):
    return SetupBackup(config, engine=engine, sync=RemoteSync(config, runner),
                       clock=lambda: NOW, hostname=lambda: 'vps-1')


def test_setup_backup(coolify_host, engine, runner):
    config = coolify_host
    report = make_backup(config, engine, runner).run()

    snapshot_dir = config.setup_backup_dir / '20240107_040000'
    assert sorted(p.name for p in snapshot_dir.iterdir()) == [
        'coolify-data.tar.zst', 'coolify-db.sql.zst', 'manifest.txt', 'ssh']
    assert report.status is RunStatus.SUCCESS
    assert report.backed_up == ['coolify-setup (database)', 'coolify-setup (data)', 'coolify-setup (ssh)']
    assert engine.execs[0][:2] == ('coolify-db', ['pg_dumpall', '-U', 'coolify'])

    manifest = (snapshot_dir / 'manifest.txt').read_text()
    assert 'Hostname: vps-1' in manifest
    assert 'Coolify Version: ghcr.io/coollabsio/coolify:4.0.0-beta.300' in manifest

    data = io.BytesIO(b''.join(archive.decompress_stream(snapshot_dir / 'coolify-data.tar.zst')))
    with tarfile.open(fileobj=data) as tar:
        names = tar.getnames()
    assert 'coolify/source/.env' in names
    assert 'coolify/backups/huge.dump' not in names

    assert (config.backup_dir / 'vps-scripts' / '20240107_040000' / '.env').read_text() == 'BACKUP_DIR=/backups\n'


def test_missing_database_container_is_partial(coolify_host, engine, runner):
    del engine.containers['coolify-db']
    report = make_backup(coolify_host, engine, runner).run()
    assert report.status is RunStatus.PARTIAL
    assert report.errors == ['coolify-setup (database): Coolify database container not found']


def test_missing_coolify_dir(config, engine, runner):
    with pytest.raises(ConfigurationError):
        make_backup(config, engine, runner).run()


def test_data_excludes():
    assert excluded_from_data('coolify/backups/x.zst')
    assert excluded_from_data('coolify/logs/laravel.log')
    assert not excluded_from_data('coolify/source/.env')
