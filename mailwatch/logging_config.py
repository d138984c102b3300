"""Logging setup for the mail watch service.

Work for an account runs on pool threads, so log lines are tagged with the
account and job they belong to via account_context().
"""

import contextvars
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s [%(account_id)s] %(name)s: %(message)s"

# Loggers that are chatty at INFO
NOISY_LOGGERS = ("googleapiclient", "google.auth", "urllib3", "apscheduler", "uvicorn.access")

_account_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mailwatch_account_id", default=None
)
_job: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mailwatch_job", default=None
)


@contextmanager
def account_context(account_id: str, job: Optional[str] = None) -> Iterator[None]:
    """Tag every record logged inside the block with an account and job name."""
    account_token = _account_id.set(account_id)
    job_token = _job.set(job)
    try:
        yield
    finally:
        _job.reset(job_token)
        _account_id.reset(account_token)


class AccountContextFilter(logging.Filter):
    """Copies the current account context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "account_id"):
            record.account_id = _account_id.get() or "-"
        if not hasattr(record, "job"):
            record.job = _job.get()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregators.

    Fields: timestamp, level, logger, message, thread, plus account_id and
    job inside an account_context(), and exception when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        account_id = getattr(record, "account_id", None)
        if account_id and account_id != "-":
            entry["account_id"] = account_id
        job = getattr(record, "job", None)
        if job:
            entry["job"] = job
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level_override: Optional[str] = None) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level_override: If set, takes precedence over LOG_LEVEL.

    Environment variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Defaults to INFO.
        LOG_FORMAT: "json" for JSON lines, anything else for text.
    """
    level_name = (level_override or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(AccountContextFilter())
    if os.getenv("LOG_FORMAT", "text").lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
