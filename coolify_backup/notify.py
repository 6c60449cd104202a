"""
Run reporting.

Every backup run ends with a RunReport handed to a Notifier. Delivery
(Discord, email, healthchecks.io) lives outside this package; the default
Notifier does nothing and LoggingNotifier writes the summary to the log.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILURE = 'failure'


class HeartbeatPhase(Enum):
    START = 'start'
    SUCCESS = 'success'
    FAIL = 'fail'


def format_duration(seconds: int) -> str:
    if seconds >= 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass
class RunReport:
    """Success/failure tally of one run."""
    script: str
    started: float = field(default_factory=time.time)
    finished: float = 0.0
    backed_up: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.backed_up)

    @property
    def fail_count(self) -> int:
        return len(self.errors)

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    def record_success(self, instance_id: str, kind: str) -> None:
        self.backed_up.append(f"{instance_id} ({kind})")

    def record_failure(self, instance_id: str, kind: str, message: str) -> None:
        self.errors.append(f"{instance_id} ({kind}): {message}")

    @property
    def status(self) -> RunStatus:
        if self.fail_count and not self.success_count:
            return RunStatus.FAILURE
        if self.fail_count:
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    def finish(self) -> 'RunReport':
        self.finished = time.time()
        return self

    @property
    def duration_seconds(self) -> int:
        end = self.finished or time.time()
        return int(end - self.started)

    def summary(self) -> str:
        lines = [
            f"BACKUP REPORT: {self.script}",
            f"Status: {self.status.value.upper()}",
            f"Duration: {format_duration(self.duration_seconds)}",
            f"Successful: {self.success_count}",
            f"Failed: {self.fail_count}",
            f"Total: {self.total}",
        ]
        if self.backed_up:
            lines.append("")
            lines.append("BACKED UP")
            lines.extend(f"  - {item}" for item in self.backed_up)
        if self.errors:
            lines.append("")
            lines.append("ERRORS")
            lines.extend(f"  - {item}" for item in self.errors)
        return '\n'.join(lines)


class Notifier:
    """Reporting sink. Implementations must not raise."""

    def notify(self, report: RunReport) -> None:
        pass

    def ping(self, phase: HeartbeatPhase) -> None:
        pass


class NullNotifier(Notifier):
    pass


class LoggingNotifier(Notifier):
    def notify(self, report: RunReport) -> None:
        level = logging.INFO if report.status is RunStatus.SUCCESS else logging.WARNING
        for line in report.summary().splitlines():
            logger.log(level, line)

    def ping(self, phase: HeartbeatPhase) -> None:
        logger.debug(f"Heartbeat: {phase.value}")


def finish_run(notifier: Notifier, report: RunReport) -> RunReport:
    """Close the report, send it, and ping the heartbeat with the outcome."""
    report.finish()
    notifier.notify(report)
    notifier.ping(HeartbeatPhase.SUCCESS if report.status is RunStatus.SUCCESS else HeartbeatPhase.FAIL)
    return report
