import io
import tarfile

import pytest

from coolify_backup import archive
from coolify_backup.containers import ContainerResolver
from coolify_backup.errors import ExecutionError, ImageMismatch, MissingCredentials, NoMatchingVolume
from coolify_backup.instances import locate
from coolify_backup.strategies import (
    DATABASE_STRATEGIES,
    EXECUTOR_CLASSES,
    PRIORITY,
    SQLITE_ARCHIVE,
    InstanceContext,
    Strategy,
    build_executors,
    classify_payloads,
    database_name,
    probe_all,
)


@pytest.fixture
def executors(engine):
    return build_executors(ContainerResolver(engine))


@pytest.fixture
def context(config):
    def _load(instance_id):
        return InstanceContext.load(locate(instance_id, config))
    return _load


def _members(path):
    buffer = io.BytesIO(b''.join(archive.decompress_stream(path)))
    with tarfile.open(fileobj=buffer, mode='r') as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers() if m.isfile()}


def test_every_strategy_has_an_executor():
    assert set(EXECUTOR_CLASSES) == set(Strategy)
    assert PRIORITY[:3] == DATABASE_STRATEGIES


def test_probe_postgres_instance(executors, context, postgres_instance):
    ctx = context(postgres_instance)
    assert executors[Strategy.POSTGRES].probe(ctx)
    assert not executors[Strategy.MYSQL].probe(ctx)
    assert not executors[Strategy.SQLITE].probe(ctx)
    assert executors[Strategy.FILES].probe(ctx)
    assert [v.suffix for v in executors[Strategy.FILES].volumes(ctx)] == ['storage']
    assert probe_all(executors, ctx) == [Strategy.POSTGRES, Strategy.FILES]


def test_probe_has_no_side_effects(engine, executors, context, mysql_instance):
    ctx = context(mysql_instance)
    assert probe_all(executors, ctx) == [Strategy.MYSQL]
    assert engine.execs == []
    assert engine.destructive_calls == 0


def test_mysql_execute(engine, executors, context, mysql_instance, tmp_path):
    out = tmp_path / 'snap'
    result = executors[Strategy.MYSQL].execute(context(mysql_instance), out)

    assert result.ok
    assert result.errors == []
    assert result.payloads == [out / 'wordpress.sql.zst']
    assert archive.verify(out / 'wordpress.sql.zst')

    container, cmd, environment = engine.execs[0]
    assert container == 'mysql-wp1-101'
    assert cmd == ['mysqldump', '-uwp', 'wordpress']
    assert environment == {'MYSQL_PWD': 'secret'}
    assert 'secret' not in ' '.join(cmd)


def test_mysql_dump_failure_removes_partial_file(engine, executors, context, mysql_instance, tmp_path):
    engine.on_exec = lambda container, cmd, environment: (2, b'-- partial', b'Access denied')
    out = tmp_path / 'snap'
    result = executors[Strategy.MYSQL].execute(context(mysql_instance), out)

    assert not result.ok
    assert len(result.errors) == 1
    assert 'Access denied' in result.errors[0]
    assert not (out / 'wordpress.sql.zst').exists()


def test_mysql_missing_credentials(config, executors, context, mysql_instance, tmp_path):
    (config.services_dir / 'wp1' / '.env').write_text('MYSQL_USER=wp\n')
    with pytest.raises(MissingCredentials):
        executors[Strategy.MYSQL].execute(context(mysql_instance), tmp_path / 'snap')


def test_image_mismatch_is_not_applicable(engine, executors, context, mysql_instance):
    engine.containers['mysql-wp1-101'].image = 'redis:7'
    with pytest.raises(ImageMismatch):
        executors[Strategy.MYSQL].find_container(context(mysql_instance))
    assert not executors[Strategy.MYSQL].probe(context(mysql_instance))


def test_postgres_execute_and_apply(engine, executors, context, postgres_instance, tmp_path):
    executor = executors[Strategy.POSTGRES]
    ctx = context(postgres_instance)
    result = executor.execute(ctx, tmp_path / 'snap')
    payload = tmp_path / 'snap' / 'mydb.sql.zst'
    assert result.payloads == [payload]
    assert engine.execs[0][1] == ['pg_dump', '-U', 'u', '--no-owner', '--no-acl', 'mydb']

    executor.apply(ctx, payload)

    drop, create, load = engine.inputs
    assert drop[1][-2] == 'DROP DATABASE IF EXISTS "mydb";'
    assert create[1][-2] == 'CREATE DATABASE "mydb";'
    assert load[1] == ['psql', '-q', '-U', 'u', 'mydb']
    assert load[2] == b''.join(archive.decompress_stream(payload))
    assert load[3] is None


def test_mysql_apply_failure_raises(engine, executors, context, mysql_instance, tmp_path):
    executor = executors[Strategy.MYSQL]
    ctx = context(mysql_instance)
    executor.execute(ctx, tmp_path / 'snap')
    engine.input_exit_code = 1
    with pytest.raises(ExecutionError):
        executor.apply(ctx, tmp_path / 'snap' / 'wordpress.sql.zst')


def test_sqlite_execute(executors, context, sqlite_instance, tmp_path):
    out = tmp_path / 'snap'
    result = executors[Strategy.SQLITE].execute(context(sqlite_instance), out)

    assert result.payloads == [out / SQLITE_ARCHIVE]
    assert archive.archive_top_level(out / SQLITE_ARCHIVE) == 'sqlite-data'
    assert 'sqlite-data/kuma.db' in _members(out / SQLITE_ARCHIVE)
    assert not (out / 'sqlite-data').exists()


def test_sqlite_apply_copies_contents(engine, executors, context, sqlite_instance, tmp_path):
    executor = executors[Strategy.SQLITE]
    ctx = context(sqlite_instance)
    executor.execute(ctx, tmp_path / 'snap')
    executor.apply(ctx, tmp_path / 'snap' / SQLITE_ARCHIVE)
    copied = engine.copied_in[('uptime-kuma1-303', '/app/data')]
    assert list(copied) == ['kuma.db']


def test_files_execute_skips_excluded_volumes(executors, context, files_instance, tmp_path):
    out = tmp_path / 'snap'
    result = executors[Strategy.FILES].execute(context(files_instance), out)

    assert result.payloads == [out / 'uploads.tar.zst']
    assert _members(out / 'uploads.tar.zst') == {
        'uploads-temp/a.png': b'\x89PNG',
        'uploads-temp/docs/b.txt': b'hello',
    }
    assert sorted(p.name for p in out.iterdir()) == ['uploads.tar.zst']


def test_files_stopped_container_is_recorded(engine, executors, context, files_instance, tmp_path):
    engine.containers['web-abc-404'].running = False
    result = executors[Strategy.FILES].execute(context(files_instance), tmp_path / 'snap')
    assert not result.ok
    assert result.errors and result.errors[0].startswith('uploads:')


def test_files_apply(engine, executors, context, files_instance, tmp_path):
    executor = executors[Strategy.FILES]
    ctx = context(files_instance)
    executor.execute(ctx, tmp_path / 'snap')
    payload = tmp_path / 'snap' / 'uploads.tar.zst'

    assert executor.restore_target(ctx, payload) == 'web-abc-404:/var/www/uploads'
    executor.apply(ctx, payload)
    assert engine.copied_in[('web-abc-404', '/var/www/uploads')] == {
        'a.png': b'\x89PNG',
        'docs/b.txt': b'hello',
    }


def test_files_keep_absolute_symlinks(engine, executors, context, files_instance, tmp_path):
    engine.containers['web-abc-404'].links['/var/www/uploads'] = {'current': '/var/www/uploads/a.png'}
    executor = executors[Strategy.FILES]
    ctx = context(files_instance)
    out = tmp_path / 'snap'

    result = executor.execute(ctx, out)

    assert result.ok
    assert result.payloads == [out / 'uploads.tar.zst']
    buffer = io.BytesIO(b''.join(archive.decompress_stream(out / 'uploads.tar.zst')))
    with tarfile.open(fileobj=buffer, mode='r') as tar:
        link = tar.getmember('uploads-temp/current')
    assert link.issym()
    assert link.linkname == '/var/www/uploads/a.png'

    executor.apply(ctx, out / 'uploads.tar.zst')
    assert engine.copied_links[('web-abc-404', '/var/www/uploads')] == {'current': '/var/www/uploads/a.png'}


def test_files_apply_unknown_volume(executors, context, files_instance, tmp_path):
    with pytest.raises(NoMatchingVolume):
        executors[Strategy.FILES].volume_for(context(files_instance), tmp_path / 'media.tar.zst')


def test_classify_payloads():
    names = ['b.sql.zst', SQLITE_ARCHIVE, 'uploads.tar.zst', 'a.sql.zst', 'env.backup', 'notes.txt']
    assert classify_payloads(names) == {
        'sql': ['a.sql.zst', 'b.sql.zst'],
        'sqlite': [SQLITE_ARCHIVE],
        'files': ['uploads.tar.zst'],
    }


def test_database_name(tmp_path):
    assert database_name(tmp_path / 'my.app.sql.zst') == 'my.app'
