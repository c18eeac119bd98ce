"""
Structured JSON logging for Schema Reconciler.

Provides standardized logging with:
- JSON formatted output to stderr
- UTC timestamps with timezone info
- Structured context fields
- Secret redaction (database passwords never reach the logs)
- Component-based logger creation
- StepLogger, the per-step logging interface the executor writes to

All logs use Python's standard logging module with custom formatting.
Log level defaults to INFO, use setup_logging(verbose=True) for DEBUG.

Examples:
    >>> from schema_reconciler.utils.logging import setup_logging, StepLogger
    >>> setup_logging(verbose=True)
    >>> steps = StepLogger(run_id="20261018T083045Z")
    >>> steps.log(logging.INFO, "add_column", "command_usage", "applied", duration_ms=3)

Security:
    - NEVER log connection passwords
    - Redact sensitive data before logging
    - Only stderr is used (stdout reserved for user output)
"""

import json
import logging
import re
import sys
from typing import Any

from schema_reconciler.utils.time import utc_timestamp


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON with structured fields.

    Each log record is formatted as a JSON object with:
    - timestamp: ISO 8601 UTC timestamp
    - level: Log level (INFO, WARNING, ERROR, DEBUG)
    - component: Module/component name (from logger name)
    - message: Human-readable log message
    - context: Additional structured data (from 'context' in extra)
    - run_id: Current run identifier (from 'run_id' in extra, if available)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": utc_timestamp(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add context if provided via extra={'context': {...}}
        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry["context"] = record.context

        # Add run_id if provided via extra={'run_id': '...'}
        if hasattr(record, "run_id"):
            log_entry["run_id"] = record.run_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts credentials from log messages.

    Prevents accidental logging of:
    - Passwords embedded in database URLs
    - password=/MYSQL_PWD= assignments
    - Bearer tokens

    "mysql://bot:s3cret@db:3306/jmf" -> "mysql://bot:***@db:3306/jmf"
    "MYSQL_PWD=s3cret" -> "MYSQL_PWD=***"
    """

    SECRET_PATTERNS = [
        (re.compile(r"(\b[a-zA-Z][a-zA-Z0-9+.-]*://[^:/@\s]+):([^@\s]+)@"), r"\1:***@"),
        (re.compile(r"\b(MYSQL_PWD|password|passwd|pwd)=([^\s&;,]+)", re.IGNORECASE), r"\1=***"),
        (re.compile(r"\bBearer\s+[a-zA-Z0-9._-]{8,}"), "Bearer ***"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from message, args and context; always keep the record."""
        record.msg = self._redact_secrets(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._redact_secrets(str(v)) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._redact_secrets(str(arg)) for arg in record.args)

        if hasattr(record, "context") and isinstance(record.context, dict):
            record.context = self._redact_dict(record.context)

        return True

    def _redact_secrets(self, text: str) -> str:
        for pattern, replacement in self.SECRET_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Recursively redact secrets in dictionary values."""
        result = {}
        for key, value in data.items():
            if isinstance(value, str):
                result[key] = self._redact_secrets(value)
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, list):
                result[key] = [self._redact_secrets(v) if isinstance(v, str) else v for v in value]
            else:
                result[key] = value
        return result


def setup_logging(verbose: bool = False, quiet_logs: bool = False) -> None:
    """
    Configure structured JSON logging for the application.

    Sets up:
    - JSON formatter for structured output
    - Secret redaction filter
    - stderr output (stdout reserved for user-facing content)
    - Log level: DEBUG if verbose, WARNING if quiet_logs, INFO otherwise

    Args:
        verbose: If True, set log level to DEBUG
        quiet_logs: If True (and not verbose), only warnings and errors are logged
    """
    if verbose:
        level = logging.DEBUG
    elif quiet_logs:
        level = logging.WARNING
    else:
        level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers (prevents duplicate logs)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SecretRedactingFilter())

    root_logger.addHandler(handler)


def get_logger(component: str) -> logging.Logger:
    """
    Get a logger instance for a specific component.

    Args:
        component: Component name (e.g., "planner.differ", "executor")

    Returns:
        Logger instance sharing the configuration set by setup_logging()
    """
    return logging.getLogger(component)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    run_id: str | None = None,
) -> None:
    """
    Log a message with structured context and optional run_id.

    Equivalent to logger.log(level, message, extra={'context': {...}, 'run_id': '...'})

    Example:
        >>> log_with_context(
        ...     get_logger("executor"),
        ...     logging.INFO,
        ...     "Step applied",
        ...     context={"step_kind": "add_column", "table": "command_usage"},
        ...     run_id="20261018T083045Z",
        ... )
    """
    extra = {}

    if context is not None:
        extra["context"] = context

    if run_id is not None:
        extra["run_id"] = run_id

    logger.log(level, message, extra=extra if extra else None)


class StepLogger:
    """
    Structured per-step logging sink used by the executor and reconciler.

    ``log(level, step_kind, table_name, message, **context)`` never raises:
    the engine depends on the call succeeding or being a no-op, never on
    the log format.

    Args:
        logger: Underlying logger (default: "schema_reconciler.steps")
        run_id: Identifier attached to every entry of one reconcile call
    """

    def __init__(self, logger: logging.Logger | None = None, run_id: str | None = None):
        self.logger = logger or get_logger("schema_reconciler.steps")
        self.run_id = run_id

    def log(
        self,
        level: int | str,
        step_kind: str | None,
        table_name: str | None,
        message: str,
        **context: Any,
    ) -> None:
        try:
            if isinstance(level, str):
                level = logging.getLevelName(level.upper())
            entry = {"step_kind": step_kind, "table": table_name, **context}
            log_with_context(self.logger, level, message, context=entry, run_id=self.run_id)
        except Exception:  # noqa: BLE001 - a failing sink is a no-op
            pass
