"""Command line entry points."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .backup import BackupRunner
from .config import Config, load_config
from .containers import DockerEngine, Engine
from .errors import BackupError, ConfigurationError, RestoreCancelled
from .logs import setup_logging
from .notify import LoggingNotifier
from .restore import RestoreOrchestrator
from .scheduler import ScheduledJob, Scheduler
from .setup_backup import SetupBackup

logger = logging.getLogger(__name__)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--env-file', metavar='PATH', help='Orchestrator .env file (default: <project>/.env)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')


def _startup(args: argparse.Namespace, script_name: str) -> Config:
    """Load config and set up logging. Configuration errors exit 1."""
    try:
        config = load_config(args.env_file)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config, script_name, logging.DEBUG if args.verbose else logging.INFO)
    return config


# =============================================================================
# coolify-backup
# =============================================================================

def backup_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description='Back up Coolify services and applications',
        epilog='Without ids, runs the BACKUP_* configuration or auto-discovers running instances.')
    parser.add_argument('ids', nargs='*', metavar='ID', help='Instance ids to back up')
    parser.add_argument('--files-only', action='store_true', help='Back up file storage volumes only')
    _add_common(parser)
    args = parser.parse_args(argv)

    config = _startup(args, 'backup-databases')
    try:
        BackupRunner(config, notifier=LoggingNotifier()).run(args.ids, files_only=args.files_only)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    # Failures are in the report; the schedule keeps running
    sys.exit(0)


# =============================================================================
# coolify-setup-backup
# =============================================================================

def setup_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description='Back up the Coolify installation for VPS migration')
    _add_common(parser)
    args = parser.parse_args(argv)

    config = _startup(args, 'backup-coolify-setup')
    try:
        SetupBackup(config, notifier=LoggingNotifier()).run()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    sys.exit(0)


# =============================================================================
# coolify-restore
# =============================================================================

def restore_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description='Restore backups for Coolify services and applications',
        epilog='Without an id, an interactive menu is shown.')
    parser.add_argument('id', nargs='?', metavar='ID', help='Restore this instance directly')
    parser.add_argument('--fetch-remote', action='store_true', help='Sync backups from remote storage first')
    parser.add_argument('--dry-run', action='store_true', help='Preview without making changes')
    parser.add_argument('--coolify-setup', action='store_true', help='Restore the Coolify installation')
    parser.add_argument('--latest', action='store_true', help='Use the most recent backup')
    parser.add_argument('-y', '--yes', action='store_true', help='Skip confirmation prompts')
    parser.add_argument('--target', metavar='ID', help='Restore into this instance instead (migration)')
    _add_common(parser)
    args = parser.parse_args(argv)

    if args.target and not args.id:
        parser.error('--target requires the id of the instance whose backup is restored')

    config = _startup(args, 'restore')
    orchestrator = RestoreOrchestrator(config, dry_run=args.dry_run, assume_yes=args.yes)

    try:
        if args.fetch_remote:
            orchestrator.fetch_remote()

        if args.coolify_setup:
            sys.exit(0 if orchestrator.interactive_setup_restore() else 1)

        if args.id:
            outcome = orchestrator.restore_direct(args.id, latest=args.latest, target_id=args.target)
            sys.exit(0 if outcome is None or outcome.ok else 1)

        orchestrator.main_menu()
    except RestoreCancelled:
        sys.exit(1)
    except BackupError as e:
        logger.error(str(e))
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        print()
        sys.exit(130)
    sys.exit(0)


# =============================================================================
# coolify-backup-daemon
# =============================================================================

def build_jobs(config: Config, engine: Engine) -> List[ScheduledJob]:
    """Scheduled jobs for the daemon. A job without a schedule is left out."""
    notifier = LoggingNotifier()
    jobs = [
        ScheduledJob('database-backup', config.backup_schedule,
                     lambda: BackupRunner(config, engine, notifier).run()),
    ]
    if config.files_backup_schedule and config.backup_files:
        jobs.append(ScheduledJob(
            'files-backup', config.files_backup_schedule,
            lambda: BackupRunner(config, engine, notifier).run(config.backup_files, files_only=True)))
    if config.setup_backup_schedule:
        jobs.append(ScheduledJob('setup-backup', config.setup_backup_schedule,
                                 lambda: SetupBackup(config, engine, notifier).run()))
    return jobs


def daemon_main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description='Coolify Backup Scheduler')
    parser.add_argument('--run-now', metavar='JOB', help='Run one job now and exit')
    parser.add_argument('--list', action='store_true', help='List scheduled jobs')
    _add_common(parser)
    args = parser.parse_args(argv)

    config = _startup(args, 'backup-daemon')
    scheduler = Scheduler(config, build_jobs(config, DockerEngine()))

    if args.list:
        print(json.dumps([
            {
                'job': job.name,
                'schedule': job.schedule,
                'next_run': job.next_run.isoformat() if job.next_run else None,
            }
            for job in scheduler.jobs
        ], indent=2))
    elif args.run_now:
        for job in scheduler.jobs:
            if job.name == args.run_now:
                try:
                    job.run()
                except BackupError as e:
                    logger.error(str(e))
                    sys.exit(1)
                sys.exit(0)
        logger.error(f"Unknown job: {args.run_now}")
        sys.exit(1)
    else:
        scheduler.run_forever()


if __name__ == '__main__':
    backup_main()
