import logging

from coolify_backup.notify import (
    HeartbeatPhase,
    LoggingNotifier,
    RunReport,
    RunStatus,
    finish_run,
    format_duration,
)


def test_status():
    report = RunReport('backup-databases')
    assert report.status is RunStatus.SUCCESS
    report.record_success('abc', 'mysql')
    report.record_failure('def', 'postgres', 'boom')
    assert report.status is RunStatus.PARTIAL
    assert report.total == 2

    failed = RunReport('backup-databases')
    failed.record_failure('def', 'postgres', 'boom')
    assert failed.status is RunStatus.FAILURE


def test_summary():
    report = RunReport('backup-databases', started=100.0)
    report.record_success('abc', 'mysql,sqlite')
    report.record_failure('def', 'files', 'container stopped')
    report.finished = 175.0

    summary = report.summary()

    assert 'Status: PARTIAL' in summary
    assert 'Duration: 1m 15s' in summary
    assert '  - abc (mysql,sqlite)' in summary
    assert '  - def (files): container stopped' in summary


def test_format_duration():
    assert format_duration(42) == '42s'
    assert format_duration(125) == '2m 5s'


def test_logging_notifier(caplog):
    report = RunReport('setup-backup')
    report.record_failure('coolify', 'database', 'pg_dumpall failed')
    notifier = LoggingNotifier()

    with caplog.at_level(logging.DEBUG, logger='coolify_backup.notify'):
        finish_run(notifier, report)

    assert report.finished
    assert 'Status: FAILURE' in caplog.text
    assert 'Heartbeat: fail' in caplog.text
    assert any(r.levelno == logging.WARNING for r in caplog.records)


def test_heartbeat_phases():
    assert [p.value for p in HeartbeatPhase] == ['start', 'success', 'fail']
