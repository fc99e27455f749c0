"""structlog setup: one event stream routed through stdlib handlers.

Engine modules log through ``get_logger``; ``setup_logging`` renders those
events once (JSON, or console lines in debug) and hands the text to the
stdout handler and, when the log directory is writable, a rotating
``incidentdesk.log``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog

LOG_FILE = "incidentdesk.log"


def _processors(debug: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if debug:
        return chain + [structlog.dev.ConsoleRenderer()]
    # JSON lines carry the traceback as a string field
    return chain + [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _file_handler(log_dir: str, max_bytes: int, backup_count: int) -> logging.Handler | None:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError:
        return None


def setup_logging(
    debug: bool = False,
    log_dir: str = "logs",
    log_max_bytes: int = 10_000_000,
    log_backup_count: int = 5,
) -> None:
    level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=_processors(debug),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stdout), level))

    file_handler = _file_handler(log_dir, log_max_bytes, log_backup_count)
    if file_handler is None:
        get_logger("logging").warning("log_file_unavailable", log_dir=log_dir)
    else:
        root.addHandler(_handler(file_handler, level))


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
