"""
Structured logging for the Access Gateway.

Every line is a JSON object carrying the service name, the request id, the
authenticated subject (when known) and the active trace/span ids. Credential
material never reaches the output: fields that look like passwords, tokens,
cookies or keys are replaced before rendering.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
subject_id_var: ContextVar[Optional[str]] = ContextVar("subject_id", default=None)

REDACTED = "***REDACTED***"

# Case-insensitive substrings; "token_id" is an identifier, not a credential
SENSITIVE_FIELD_PATTERNS = frozenset({
    "password",
    "secret",
    "access_token",
    "refresh_token",
    "authorization",
    "cookie",
    "api_key",
    "signing_key",
})

_service_name: Optional[str] = None


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure JSON logging for a service."""
    global _service_name
    _service_name = service_name

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_correlation_context,
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag events with the configured service, falling back to the logger prefix."""
    if _service_name:
        event_dict.setdefault("service", _service_name)
    else:
        logger_name = event_dict.get("logger", "")
        if "." in logger_name:
            event_dict.setdefault("service", logger_name.split(".")[0])
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    subject_id = subject_id_var.get()
    if subject_id:
        event_dict.setdefault("subject_id", subject_id)
    return event_dict


def is_sensitive_field(name: str) -> bool:
    lowered = name.lower()
    return any(pattern in lowered for pattern in SENSITIVE_FIELD_PATTERNS)


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace credential-bearing values, including inside nested dicts."""
    return _redact(event_dict)


def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in data.items():
        if is_sensitive_field(str(key)):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = _redact(value)
        else:
            result[key] = value
    return result


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when the caller sent none."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_subject_context(subject_id: Optional[str] = None):
    """Bind the authenticated subject to subsequent log lines."""
    if subject_id:
        subject_id_var.set(subject_id)


def clear_context():
    request_id_var.set(None)
    subject_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
