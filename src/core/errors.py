from datetime import datetime, timezone
from typing import Any


class AppError(Exception):
    """
    Base application error. Carries the HTTP status the API layer renders.
    """
    status_code: int = 500

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_response(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "statusCode": self.status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ConfigurationError(AppError):
    status_code = 500


class ValidationError(AppError):
    status_code = 400


class AuthenticityError(AppError):
    # Bad or missing webhook signature. Never retried.
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class NotFound(AppError):
    status_code = 404


class UpstreamError(AppError):
    """Airtable or Stripe rejected a call. Not retried."""
    status_code = 502

    def __init__(self, service: str, message: str | None = None, context: dict[str, Any] | None = None):
        super().__init__(message or f"External service error: {service}", context)
        self.service = service


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout, throttling or 5xx from a dependency. Retryable."""
    status_code = 503


class PartialFailure(AppError):
    """
    A non-critical step failed after the critical write succeeded.
    Kept on the webhook outcome and logged; never raised or rendered.
    """
