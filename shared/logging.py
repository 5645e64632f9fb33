"""
Structured logging with JSON formatting and correlation-id propagation.

Provides:
- JSON-formatted logs for easy parsing
- Correlation IDs that follow one user action across the pipeline
  (submit -> route -> broker call -> fill -> position update)
- Performance-aware logging (broker call latency)
- Security-aware logging (credential and PII redaction)
"""

import logging
import json
import time
import uuid
from typing import Optional, Dict, Any
from contextvars import ContextVar
from datetime import datetime, timezone
import traceback
import sys


# Context variables for correlation propagation
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
_span_id: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

ROOT_LOGGER_NAME = "order_plane"


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def __init__(self, service_name: str, environment: str = "development"):
        """Initialize JSON formatter.

        Args:
            service_name: Name of the service (e.g. order_plane)
            environment: Environment name (development, staging, production)
        """
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "environment": self.environment,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = _correlation_id.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        span_id = _span_id.get()
        if span_id:
            log_data["span_id"] = span_id

        # Add custom fields from record
        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Structured logger: keyword arguments become JSON fields.

    Handlers are installed once by configure_logging(); module loggers only
    propagate to the ``order_plane`` tree.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _extra(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields)
        correlation_id = _correlation_id.get()
        if correlation_id and 'correlation_id' not in fields:
            fields['correlation_id'] = correlation_id
        return {'extra_fields': fields}

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra=self._extra(kwargs))

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra=self._extra(kwargs))

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra=self._extra(kwargs))

    def error(self, msg: str, **kwargs):
        exc_info = kwargs.pop('exc_info', False)
        self.logger.error(msg, extra=self._extra(kwargs), exc_info=exc_info)

    def critical(self, msg: str, **kwargs):
        exc_info = kwargs.pop('exc_info', False)
        self.logger.critical(msg, extra=self._extra(kwargs), exc_info=exc_info)

    def exception(self, msg: str, **kwargs):
        """Log exception with traceback."""
        self.logger.exception(msg, extra=self._extra(kwargs))


class CorrelationContext:
    """Context manager binding a correlation id to everything logged inside it.

    Works across ``await`` boundaries and is copied into tasks created
    inside the block (asyncio copies the current context).
    """

    def __init__(self, correlation_id: Optional[str] = None, span_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.span_id = span_id or uuid.uuid4().hex[:16]
        self._tokens = []

    def __enter__(self):
        self._tokens.append((_correlation_id, _correlation_id.set(self.correlation_id)))
        self._tokens.append((_span_id, _span_id.set(self.span_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


class PerformanceLogger:
    """Logger for broker call latency with automatic timing."""

    def __init__(self, logger: StructuredLogger, operation: str, **fields):
        """Initialize performance logger.

        Args:
            logger: Structured logger instance
            operation: Operation name being tracked
            **fields: Extra fields attached to both log lines
        """
        self.logger = logger
        self.operation = operation
        self.fields = fields
        self.start_time = None
        self.duration_s: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_s = time.perf_counter() - self.start_time
        duration_ms = self.duration_s * 1000

        if exc_type:
            self.logger.warning(
                f"{self.operation}_failed",
                duration_ms=round(duration_ms, 3),
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.fields
            )
        else:
            self.logger.debug(
                f"{self.operation}_completed",
                duration_ms=round(duration_ms, 3),
                **self.fields
            )


SENSITIVE_FIELDS = (
    'password', 'secret', 'api_key', 'api_secret', 'token', 'access_token',
    'refresh_token', 'authorization', 'account_number', 'pin', 'totp',
)


def redact_pii(data: Dict[str, Any], pii_fields: Optional[tuple] = None) -> Dict[str, Any]:
    """Redact sensitive fields (recursively) from log data.

    Args:
        data: Data dictionary
        pii_fields: Field names to redact (default: credential-like fields)

    Returns:
        Copy of the dictionary with sensitive values replaced
    """
    pii_fields = pii_fields or SENSITIVE_FIELDS
    redacted = {}
    for key, value in data.items():
        if key.lower() in pii_fields:
            redacted[key] = "***REDACTED***"
        elif isinstance(value, dict):
            redacted[key] = redact_pii(value, pii_fields)
        else:
            redacted[key] = value
    return redacted


def get_correlation_id() -> Optional[str]:
    """Current correlation id, if any."""
    return _correlation_id.get()


_configured: Dict[str, logging.Handler] = {}


def configure_logging(
    service_name: str = ROOT_LOGGER_NAME,
    environment: str = "development",
    level: int = logging.INFO,
    json_output: bool = True,
    logger_names: tuple = (ROOT_LOGGER_NAME, "shared", "contracts"),
) -> None:
    """Install one stdout handler on the project's logger trees.

    Safe to call repeatedly; the previous handler is replaced.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(JSONFormatter(service_name, environment))
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    for name in logger_names:
        logger = logging.getLogger(name)
        previous = _configured.pop(name, None)
        if previous is not None:
            logger.removeHandler(previous)
        logger.addHandler(handler)
        logger.setLevel(level)
        _configured[name] = handler
