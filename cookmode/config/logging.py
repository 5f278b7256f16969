"""
Structured logging for the queue, the executors and the CLI.

Every executor binds the job it is running (job_id, job_type, worker_id,
attempt) into structlog's contextvars, so log lines emitted anywhere below
WorkerPool.process carry the job without passing a logger around.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from .settings import Settings


def _renderer(settings: Settings) -> Processor:
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings) -> None:
    """Configure structlog once per process (worker or CLI invocation)."""
    level = getattr(logging, settings.log_level)

    # Third-party loggers (sqlalchemy, httpx, redis) go to stdout as well
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
    else:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(settings))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_job_context(**context: Any) -> None:
    """Attach the running job to every log line of the current executor task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_job_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
