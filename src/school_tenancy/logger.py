"""
Structured logging for school tenancy.

structlog over stdlib logging. Work done on behalf of one school runs inside
``tenant_log_context``, so every entry it emits carries ``tenant_code`` and
``database`` without each call site repeating them.
"""
from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

import structlog

if TYPE_CHECKING:
    from school_tenancy.config import Settings


def configure_logging(log_level: str = "INFO", json_logs: bool = True, *, sql_echo: bool = False) -> None:
    """
    Route structlog through stdlib logging.

    JSON lines in deployed environments, colored console output locally.
    ``sql_echo`` lets SQLAlchemy's engine logger through at INFO (every
    statement against every school database), otherwise it is held at WARNING.
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_settings(settings: "Settings") -> None:
    configure_logging(settings.log_level, settings.json_logs, sql_echo=settings.debug)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def tenant_log_context(tenant_code: str, database: str) -> Iterator[None]:
    """
    Bind the school to every log entry emitted inside the block.

    Bindings are restored on exit, so nested or concurrent tenant work (each
    asyncio task has its own context) never leaks one school's keys into
    another's entries.
    """
    with structlog.contextvars.bound_contextvars(tenant_code=tenant_code, database=database):
        yield
