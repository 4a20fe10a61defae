"""Logging utilities shared by the web app, scheduler and CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import structlog


_DEFAULT_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]

_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "apscheduler.scheduler")


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """Route Dropfolio's structlog events through stdlib logging.

    ``level`` comes from ``runtime.log_level`` or the CLI ``--verbose`` flag;
    ``json_output`` mirrors ``runtime.json_logs``. ``log_file`` receives a
    copy of the request, refresh and scheduler events.
    """

    handlers = [logging.StreamHandler()]

    if log_file:
        log_path = Path(log_file).expanduser()
        if not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(level=level.upper(), format="%(message)s", handlers=handlers, force=True)

    processors = list(_DEFAULT_PROCESSORS)
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Request-level chatter from the HTTP client and scheduler only when debugging.
    client_level = logging.INFO if level.upper() == "DEBUG" else logging.WARNING
    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(client_level)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, e.g. ``get_logger("dropfolio.cache")``."""

    return structlog.get_logger(name)
