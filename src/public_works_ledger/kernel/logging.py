"""
Structured logging for the Public Works Ledger.

Each CLI command runs inside a correlation scope, so a status change,
the alert it caused and the notification delivered later on a worker
thread all log the same correlation_id.
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from public_works_ledger.kernel.errors import LedgerError

correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

# Who did what with how much: kept out of log output
REDACTED_FIELDS = frozenset(
    {
        "actor_id",
        "responsible_id",
        "amount",
        "justification",
        "document_ref",
        "receipt_number",
    }
)
REDACTED = "***REDACTED***"


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id (a fresh one unless given) for the enclosed block"""
    cid = correlation_id or secrets.token_urlsafe(12)
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    cid = correlation_id_var.get()
    if cid is not None:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_sensitive(context: dict[str, Any]) -> dict[str, Any]:
    """
    Mask personal and financial values in a log context.

    Example:
        >>> redact_sensitive({"actor_id": "u-7", "line_id": "lin-1"})
        {'actor_id': '***REDACTED***', 'line_id': 'lin-1'}
    """
    return {k: REDACTED if k in REDACTED_FIELDS else v for k, v in context.items()}


def configure_logging(*, json_output: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog on top of the standard logging module.

    Args:
        json_output: JSON lines (production) instead of console output
        log_level: Logging level name
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def is_production() -> bool:
    """True when ENVIRONMENT is 'production'."""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


class LogOperation:
    """
    Time a ledger operation and log its outcome.

    Completion logs at INFO. A LedgerError is a rejected request and logs
    at WARNING with its message; anything else is a failure and logs at
    ERROR with the traceback outside production.
    """

    def __init__(self, logger: structlog.stdlib.BoundLogger, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = redact_sensitive(context)
        self.start_time = 0.0

    def __enter__(self) -> "LogOperation":
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        fields = {"operation": self.operation, "duration_ms": duration_ms, **self.context}

        if exc_type is None:
            self.logger.info(f"{self.operation} completed", **fields)
        elif issubclass(exc_type, LedgerError):
            self.logger.warning(f"{self.operation} rejected", reason=str(exc_val), **fields)
        else:
            self.logger.error(f"{self.operation} failed", exc_info=not is_production(), **fields)
