"""Structured logging for the archiver process.

Every record goes through one stdout handler. Lines emitted while a job is
being processed carry the job's ``uid`` and ``attempt``.
"""

from __future__ import annotations

import logging
import sys

import structlog

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("aiokafka", "sqlalchemy.engine", "httpx", "aiosmtplib")

_JOB_KEYS = ("uid", "attempt")


def _pre_chain() -> list[structlog.types.Processor]:
    # Shared by structlog loggers and foreign (stdlib) records.
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _stdout_handler(renderer: structlog.types.Processor) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    return handler


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Parameters
    ----------
    json:
        JSON lines when *True* (production). Coloured console output otherwise.
    level:
        Root log level name, case-insensitive.
    """
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_stdout_handler(renderer))
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_job_context(*, uid: int, attempt: int) -> None:
    """Attach the current job's UID and attempt to every log line in this task."""
    structlog.contextvars.bind_contextvars(uid=uid, attempt=attempt)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars(*_JOB_KEYS)
