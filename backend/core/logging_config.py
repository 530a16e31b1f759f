"""Structured logging for engine processes.

Every entry, from structlog and stdlib loggers alike, carries the worker
identity of the process. While an execution is being driven its id and
tenant are bound as context variables, so service-layer logs written on
its behalf can be correlated with the engine's own.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from app.config import Settings, get_settings


class ProcessContext:
    """structlog processor stamping worker and environment onto each entry."""

    def __init__(self, worker_id: Optional[str], environment: str):
        self.worker_id = worker_id
        self.environment = environment

    def __call__(self, logger, method_name: str, event_dict: dict) -> dict:
        if self.worker_id:
            event_dict.setdefault("worker_id", self.worker_id)
        event_dict.setdefault("environment", self.environment)
        return event_dict


@contextmanager
def execution_log_context(execution_id: str, organization_id: str) -> Iterator[None]:
    """Bind an execution to every log entry written in the current task."""
    with structlog.contextvars.bound_contextvars(
        execution_id=execution_id,
        organization_id=organization_id,
    ):
        yield


def setup_logging(settings: Settings = None, worker_id: Optional[str] = None) -> None:
    """Configure logging for one engine process.

    Text output (colored console) in development or with LOG_FORMAT=text,
    JSON lines otherwise.

    Args:
        settings: Application settings
        worker_id: Identity this process writes to claimed executions
    """
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        ProcessContext(worker_id, settings.ENVIRONMENT),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Services, dispatcher and SQLAlchemy log through stdlib
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    # Per-request lines from external call steps and webhooks
    for name in ("aiosqlite", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
