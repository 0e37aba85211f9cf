"""Structured logging configuration.

JSON (or plain text) log lines carrying the request correlation ID and,
while an escalation run is being mutated, the alert ID it belongs to.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Set by CorrelationIdMiddleware for the lifetime of an HTTP request
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Set by the escalation engine while it holds a run's lock
alert_id_ctx: ContextVar[str | None] = ContextVar("alert_id", default=None)


@contextmanager
def bind_alert_id(alert_id: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with ``alert_id``."""
    token = alert_id_ctx.set(alert_id)
    try:
        yield
    finally:
        alert_id_ctx.reset(token)


def _context_fields() -> dict[str, str]:
    fields = {}
    correlation_id = correlation_id_ctx.get()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    alert_id = alert_id_ctx.get()
    if alert_id:
        fields["alert_id"] = alert_id
    return fields


class JsonFormatter(logging.Formatter):
    """Render a log record as a single JSON object.

    Keys: timestamp, level, service, logger, message, any context fields
    (correlation_id, alert_id), keyword fields passed to StructuredLogger,
    and exception/location details for errors.
    """

    def __init__(self, service_name: str = "oncall-escalation-api"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_context_fields())

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.levelno >= logging.ERROR:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for local development.

    Format: timestamp - service - level - [correlation_id] - message key=value...
    """

    def __init__(self, service_name: str = "oncall-escalation-api"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        context = _context_fields()
        correlation_id = context.pop("correlation_id", "-")

        fields = {**context, **getattr(record, "extra_fields", {})}
        suffix = " ".join(f"{key}={value}" for key, value in fields.items())

        line = (
            f"{timestamp} - {self.service_name} - {record.levelname} - "
            f"[{correlation_id}] - {record.getMessage()}"
        )
        if suffix:
            line = f"{line} {suffix}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = "oncall-escalation-api",
) -> None:
    """Configure the root logger.

    Args:
        log_format: 'json' for structured logging, 'text' for human-readable
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name to include in logs
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if log_format.lower() == "json":
        handler.setFormatter(JsonFormatter(service_name=service_name))
    else:
        handler.setFormatter(TextFormatter(service_name=service_name))
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper taking structured fields as keyword arguments.

    ``exc_info=True`` is honoured as the stdlib flag rather than being
    emitted as a field.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, fields: dict[str, Any]) -> None:
        exc_info = fields.pop("exc_info", False)
        extra = {"extra_fields": fields} if fields else {}
        self._logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at ERROR level with the active exception's traceback."""
        fields["exc_info"] = True
        self._log(logging.ERROR, msg, fields)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name)
