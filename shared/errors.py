"""
Shared error handling for the Access Gateway.

Every failure the gateway surfaces to a caller is an ``AccessLayerException``
subclass carrying a machine-readable code and the HTTP status it maps to.
Messages are deliberately generic: they never echo store or signature
library text, and never reveal whether an account exists.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Access Gateway errors."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, code: str = "AUTHENTICATION_ERROR", message: str = "Authentication failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class InvalidCredentials(AuthenticationError):
    """The credential collaborator rejected the supplied credentials."""

    def __init__(self, message: str = "Invalid credentials", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIALS", message, details)


class InvalidToken(AuthenticationError):
    """Malformed token, bad signature, wrong issuer/audience or wrong kind."""

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_TOKEN", message, details)


class ExpiredToken(AuthenticationError):
    """Token was valid but its lifetime has passed."""

    def __init__(self, message: str = "Token expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_EXPIRED", message, details)


class RevokedToken(AuthenticationError):
    """Refresh token was revoked, rotated, or is unknown to the store."""

    def __init__(self, message: str = "Token revoked", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_REVOKED", message, details)


class NotFoundError(AccessLayerException):
    """Requested resource does not exist for this caller."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class StoreUnavailable(AccessLayerException):
    """A backing store could not be reached within its timeout."""

    status_code = 503

    def __init__(self, store: str, message: str = "Service temporarily unavailable",
                 details: Optional[Dict[str, Any]] = None):
        self.store = store
        super().__init__("STORE_UNAVAILABLE", message, details)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class RateLimitExceeded(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, retry_after_seconds: int, message: str = "Rate limit exceeded",
                 details: Optional[Dict[str, Any]] = None):
        self.retry_after_seconds = retry_after_seconds
        details = dict(details or {})
        details.setdefault("retry_after_seconds", retry_after_seconds)
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)
