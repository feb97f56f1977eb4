"""
Structured logging for the procurement orchestration core.

Every external call (start a request, execute a task) runs in its own
correlation scope. The scope also carries the call's non-sensitive fields
(task_id, supplier_count, ...) through structlog's contextvars, so the lines
logged by the task queue, the fan-out or the join fired deep inside the call
can be grepped together.

Fun fact: The word "log" comes from ships' logs - sailors measured speed by
throwing a wooden log overboard and counting knots on the rope as it ran out!
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from typing import Any

import structlog

from procurement_flow.kernel.errors import WorkflowError

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


def generate_correlation_id() -> str:
    return secrets.token_urlsafe(16)


def get_correlation_id() -> str:
    """The current correlation id; outside any scope a fresh one is set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    log_level: str = "INFO",
) -> None:
    """
    Configure structlog on top of stdlib logging.

    Logs go to stderr so that CLI output on stdout stays clean.

    Args:
        json_output: JSON lines (production) or colored console (development)
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        renderer: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def is_production() -> bool:
    """True when ENVIRONMENT is set to 'production'."""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


# Identities and commercial terms stay out of the logs
REDACTED_FIELDS = frozenset(
    {
        "actor",
        "actor_id",
        "created_by",
        "candidates",
        "price",
        "comments",
    }
)


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Redact sensitive fields from log context.

    Example:
        >>> redact_context({"actor": "helen.kelly", "activity": "Complete quotation"})
        {'actor': '***REDACTED***', 'activity': 'Complete quotation'}
    """
    return {
        k: "***REDACTED***" if k in REDACTED_FIELDS else v
        for k, v in context.items()
    }


class LogOperation:
    """
    Log start and outcome of one engine operation, with its duration

    The outermost operation opens a correlation scope; nested ones inherit
    it. Non-sensitive context is bound for the whole block, sensitive
    context only appears (redacted) on the start and outcome lines.

    A WorkflowError is the caller's to correct and is logged as a warning
    without traceback; anything else is an error.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: float = 0.0
        self._cid_token: contextvars.Token[str] | None = None
        self._bound_tokens: Any = None

    @property
    def _sensitive(self) -> dict[str, Any]:
        return {k: v for k, v in redact_context(self.context).items() if k in REDACTED_FIELDS}

    def __enter__(self) -> "LogOperation":
        self._cid_token = correlation_id_var.set(
            correlation_id_var.get() or generate_correlation_id()
        )
        self._bound_tokens = structlog.contextvars.bind_contextvars(
            operation=self.operation,
            **{k: v for k, v in self.context.items() if k not in REDACTED_FIELDS},
        )
        self.start_time = time.perf_counter()
        self.logger.info(f"{self.operation} started", **self._sensitive)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        try:
            if exc_type is None:
                self.logger.info(
                    f"{self.operation} completed",
                    duration_ms=duration_ms,
                    **self._sensitive,
                )
            elif issubclass(exc_type, WorkflowError):
                self.logger.warning(
                    f"{self.operation} refused",
                    duration_ms=duration_ms,
                    error_type=exc_type.__name__,
                    error=str(exc_val),
                    **self._sensitive,
                )
            else:
                self.logger.error(
                    f"{self.operation} failed",
                    duration_ms=duration_ms,
                    error_type=exc_type.__name__,
                    error=str(exc_val),
                    exc_info=not is_production(),
                    **self._sensitive,
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._bound_tokens)
            if self._cid_token is not None:
                correlation_id_var.reset(self._cid_token)
