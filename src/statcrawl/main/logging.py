import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from statcrawl.main.config import get_loglevel
from statcrawl.main.run_context import get_run_context

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}

# Attributes every LogRecord carries; anything else on a record came from extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

_NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.orm",
    "sqlalchemy.dialects",
    "apscheduler.scheduler",
    "apscheduler.executors.default",
    "asyncio",
)


class ContextJSONFormatter(logging.Formatter):
    """One JSON object per record: base fields, run context, then extras.

    Metric events keep ``metric_name``/``metric_value`` at the top level so the
    log pipeline can aggregate them without parsing the message.
    """

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting logic
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in get_run_context().items():
            if value is not None:
                log.setdefault(key, value)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            log.setdefault(key, value)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log["stack"] = record.stack_info

        return json.dumps(log, default=str)


def quiet_third_party_loggers(level: int) -> None:
    """Keep library chatter out of job logs unless running at DEBUG."""
    threshold = logging.INFO if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(threshold)
        noisy.propagate = False


quiet_third_party_loggers(get_loglevel())


def _console_handler(level: int) -> logging.Handler:
    if JSON_LOGS_ENABLED:
        handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(ContextJSONFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, markup=False, show_path=True)
    handler.setLevel(level)
    return handler


class SimpleLogger(logging.Logger):
    ERROR = logging.ERROR
    WARN = logging.WARN
    INFO = logging.INFO
    DEBUG = logging.DEBUG

    def __init__(self, name: str = "statcrawl", level: int = logging.WARNING, console: bool = True):
        logging.Logger.__init__(self, name, level)
        if console:
            self.addHandler(_console_handler(level))


def get_logger(module_name: str) -> SimpleLogger:
    return SimpleLogger(name=module_name, level=get_loglevel())
