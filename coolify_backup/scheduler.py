"""
Scheduler daemon.

Runs the database backup, the files backup and the setup backup on their
cron schedules from a single long-running process, for hosts where
installing crontab entries is not an option.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter

from .config import Config

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """A named callable and the cron expression it runs on."""
    name: str
    schedule: str
    run: Callable[[], object]
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    def update_next_run(self, base: Optional[datetime] = None) -> None:
        """Calculate the next run time based on the cron schedule."""
        try:
            cron = croniter(self.schedule, base or datetime.now())
            self.next_run = cron.get_next(datetime)
        except (ValueError, KeyError) as e:
            logger.error(f"Invalid cron schedule '{self.schedule}' for {self.name}: {e}")
            self.next_run = None

    @property
    def enabled(self) -> bool:
        return self.next_run is not None


class Scheduler:
    """Runs due jobs one after another in the calling thread."""

    def __init__(self, config: Config, jobs: List[ScheduledJob],
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.jobs = jobs
        self._clock = clock
        self._sleep = sleep
        now = self._clock()
        for job in self.jobs:
            job.update_next_run(now)

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Run every job whose next run has passed. Returns the names run.

        A failing job is logged and rescheduled like a successful one.
        """
        now = now or self._clock()
        ran = []
        for job in self.jobs:
            if not job.enabled or now < job.next_run:
                continue
            logger.info(f"Running scheduled job: {job.name}")
            try:
                job.run()
            except Exception as e:
                logger.exception(f"Scheduled job {job.name} failed: {e}")
            job.last_run = now
            job.update_next_run(now)
            ran.append(job.name)
            if job.next_run:
                logger.info(f"Next {job.name} run: {job.next_run.isoformat()}")
        return ran

    def run_forever(self) -> None:
        logger.info("=" * 60)
        logger.info("Coolify Backup Scheduler Starting")
        logger.info("=" * 60)
        logger.info(f"Backup directory: {self.config.backup_dir}")
        logger.info(f"Check interval: {self.config.check_interval} seconds")
        for job in self.jobs:
            state = job.next_run.isoformat() if job.enabled else 'disabled'
            logger.info(f"Job {job.name}: '{job.schedule}' (next: {state})")
        logger.info("=" * 60)

        while True:
            self.run_pending()
            self._sleep(self.config.check_interval)
