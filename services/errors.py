"""
Domain errors for the booking and payment engine.

Every error knows its HTTP status and whether the caller may retry, so routes
can render them uniformly and the processor can decide between retrying and
giving up.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    status_code = 500
    default_code = "error"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "error": self.message,
            "errorCode": self.code,
            "canRetry": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BookingError):
    status_code = 400
    default_code = "validation_error"


class NotFoundError(BookingError):
    status_code = 404
    default_code = "not_found"


class ConflictError(BookingError):
    status_code = 409
    default_code = "conflict"


class InvalidStateError(ConflictError):
    """The booking exists but is in a state that forbids the operation."""

    status_code = 400
    default_code = "invalid_state"


class TransientError(BookingError):
    status_code = 503
    default_code = "transient_error"
    retryable = True


class ContentionError(TransientError):
    default_code = "contention"


class GatewayError(BookingError):
    """A payment gateway call failed; status/retryable are set per failure class."""

    default_code = "gateway_error"


class ConfigurationError(BookingError):
    status_code = 500
    default_code = "configuration_error"


class SignatureError(BookingError):
    status_code = 400
    default_code = "invalid_signature"
