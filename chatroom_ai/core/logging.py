"""
core/logging.py
---------------
structlog setup shared by the API and the queue worker.

Every event carries a `process` field ("api" or "worker"), so one log
stream can hold both kinds of process and still be filtered apart.
Job-level fields (job_id, attempt, message_id) are bound per call site
with logger.bind().

DEBUG=true renders coloured console lines, otherwise one JSON object per line.
"""

import logging
import sys
from typing import Optional

import structlog

from chatroom_ai.core.config import settings

# stdlib loggers that drown out job events at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "openai")


def add_process(process: str):
    """Processor that stamps `process` on events which don't set it themselves."""

    def processor(logger, method_name, event_dict):
        event_dict.setdefault("process", process)
        return event_dict

    return processor


def configure_logging(process: str = "api", debug: Optional[bool] = None) -> None:
    debug = settings.DEBUG if debug is None else debug
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if debug else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_process(process),
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__):
    return structlog.get_logger(name)
