"""Logging setup for the command line entry points."""

import logging
import sys

from .config import Config

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class _BelowError(logging.Filter):
    def filter(self, record):
        return record.levelno < logging.ERROR


def setup_logging(config: Config, script_name: str, level: int = logging.INFO) -> logging.Logger:
    """Configure the root logger for one script run.

    Informational output goes to stdout when LOG_TO_SCREEN is on. Errors
    always go to stderr. With ENABLE_LOGGING everything is also appended to
    <log_dir>/<script_name>.log.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if config.log_to_screen:
        stdout = logging.StreamHandler(sys.stdout)
        stdout.setFormatter(formatter)
        stdout.addFilter(_BelowError())
        root.addHandler(stdout)

    stderr = logging.StreamHandler(sys.stderr)
    stderr.setFormatter(formatter)
    stderr.setLevel(logging.ERROR)
    root.addHandler(stderr)

    if config.enable_logging:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_dir / f'{script_name}.log')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # docker-py and urllib3 are chatty at INFO
    logging.getLogger('docker').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logging.getLogger(script_name)
