"""
core/logging.py
---------------
structlog setup shared by the API process, the queue worker and the
create_tables script.

With DEBUG on, lines are rendered for a terminal; otherwise each line is a
JSON object. The tenant middleware and the job queue bind per-request and
per-job fields (tenant_code, method, path, topic, entry_id) into
structlog's contextvars, and every line logged until they are cleared
includes them.
"""

import logging
import sys

import structlog

from commerce.core.config import settings

# Library loggers that only add noise outside DEBUG
_CHATTY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine")


def configure_logging() -> None:
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if not settings.DEBUG:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_log_context(**fields) -> None:
    structlog.contextvars.bind_contextvars(**fields)


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = __name__):
    return structlog.get_logger(name)
