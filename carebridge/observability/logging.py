"""
Structured JSON logging with correlation IDs.

Features:
- JSON-formatted log entries
- Correlation ID from the current request context
- Trace ID correlation when an OpenTelemetry span is recording
- Timestamp in ISO format
- Redaction of secrets and raw personal identifiers
"""
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter as jsonlogger

# Context variables for request correlation
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Secret-bearing fields, matched as substrings of the field name
SENSITIVE_FIELDS = {
    "password", "passwd", "pwd", "secret", "token",
    "access_token", "refresh_token", "api_key", "apikey",
    "authorization", "credential", "private_key", "plaintext_key",
}

# Raw personal identifiers, matched exactly; hashed variants stay loggable
PII_FIELDS = {
    "user_id", "admin_user_id", "source_ip", "ip_address",
    "user_agent", "email", "phone",
}

REDACTED_VALUE = "[REDACTED]"


def set_request_context(request_id: Optional[str] = None) -> None:
    """Set the request context for logging correlation."""
    if request_id:
        _request_id.set(request_id)


def clear_request_context() -> None:
    """Clear the request context."""
    _request_id.set(None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return _request_id.get()


def _should_redact(field_name: str) -> bool:
    """Check if a field name should be redacted."""
    field_lower = field_name.lower()
    if field_lower in PII_FIELDS:
        return True
    return any(sensitive in field_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_fields(record_dict: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive fields from a (possibly nested) log payload."""
    result = {}
    for key, value in record_dict.items():
        if _should_redact(key):
            result[key] = REDACTED_VALUE
        elif isinstance(value, dict):
            result[key] = _redact_sensitive_fields(value)
        else:
            result[key] = value
    return result


class CorrelatedJsonFormatter(jsonlogger):
    """
    JSON log formatter with correlation IDs and sensitive field redaction.

    Adds:
    - timestamp: ISO format timestamp
    - level: Log level name
    - logger: Logger name
    - correlation_id: Request correlation ID (when in context)
    - trace_id: OpenTelemetry trace ID (when available)
    - span_id: OpenTelemetry span ID (when available)
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        if "message" not in log_record:
            log_record["message"] = record.getMessage()

        log_record["correlation_id"] = get_request_id()

        span = trace.get_current_span()
        if span.is_recording():
            ctx = span.get_span_context()
            log_record["trace_id"] = format(ctx.trace_id, "032x")
            log_record["span_id"] = format(ctx.span_id, "016x")

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
            log_record["traceback"] = "".join(traceback.format_exception(*record.exc_info))

        redacted = _redact_sensitive_fields(log_record)
        log_record.clear()
        log_record.update(redacted)


def setup_logging(
    level: int | str = logging.INFO,
    format_json: bool = True,
) -> None:
    """
    Configure root logger with JSON formatting.

    Args:
        level: Log level (default: INFO)
        format_json: Use JSON formatting (default: True)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if format_json:
        formatter = CorrelatedJsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
