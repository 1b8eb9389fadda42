"""Error code catalog and exception hierarchy for FlexGate notifications.

Every exception raised by the notification core carries an ``ErrorCode``
so that an admin layer can map it to an HTTP response without inspecting
message strings.

Error Code Ranges:
    E0xx: Validation errors (4xx)
    E1xx: Lookup errors (404)
    E2xx: Delivery errors (never surfaced to event producers)
    E3xx: Persistence errors (logged and swallowed by the manager)

Example:
    >>> from flexgate.errors import ErrorCode, ValidationError
    >>> err = ValidationError("Invalid webhook URL: nope", ErrorCode.WEBHOOK_URL_INVALID)
    >>> err.code.value
    'E001'
    >>> err.http_status
    400
"""

from __future__ import annotations

from enum import Enum
from typing import Any

__all__ = [
    "ERROR_REGISTRY",
    "DeliveryError",
    "ErrorCode",
    "FlexGateError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    "get_error_message",
    "get_error_status",
]


class ErrorCode(str, Enum):
    """Notification error codes."""

    # E0xx - Validation
    WEBHOOK_URL_INVALID = "E001"
    WEBHOOK_HTTPS_REQUIRED = "E002"
    FIELD_VALIDATION_FAILED = "E003"

    # E1xx - Lookup
    WEBHOOK_NOT_FOUND = "E100"

    # E2xx - Delivery
    DELIVERY_FAILED = "E200"

    # E3xx - Persistence
    STORE_UNAVAILABLE = "E300"


ERROR_REGISTRY: dict[ErrorCode, dict[str, Any]] = {
    ErrorCode.WEBHOOK_URL_INVALID: {
        "error": "webhook_url_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Invalid webhook URL",
    },
    ErrorCode.WEBHOOK_HTTPS_REQUIRED: {
        "error": "webhook_https_required",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook URLs must use HTTPS in production",
    },
    ErrorCode.FIELD_VALIDATION_FAILED: {
        "error": "field_validation_failed",
        "http_status": 422,
        "recoverable": False,
        "message": "Field validation failed",
    },
    ErrorCode.WEBHOOK_NOT_FOUND: {
        "error": "webhook_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Webhook not found",
    },
    ErrorCode.DELIVERY_FAILED: {
        "error": "delivery_failed",
        "http_status": 502,
        "recoverable": True,
        "message": "Webhook delivery failed",
    },
    ErrorCode.STORE_UNAVAILABLE: {
        "error": "store_unavailable",
        "http_status": 503,
        "recoverable": True,
        "message": "Delivery store temporarily unavailable",
    },
}


def get_error_status(code: ErrorCode) -> int:
    """Get HTTP status for an error code."""
    entry = ERROR_REGISTRY.get(code)
    if entry is None:
        return 500
    status = entry.get("http_status")
    return int(status) if status is not None else 500


def get_error_message(code: ErrorCode) -> str:
    """Get default message for an error code."""
    entry = ERROR_REGISTRY.get(code)
    if entry is None:
        return "Unknown error"
    message = entry.get("message")
    return str(message) if message is not None else "Unknown error"


class FlexGateError(Exception):
    """Base class for notification errors."""

    default_code: ErrorCode = ErrorCode.FIELD_VALIDATION_FAILED

    def __init__(self, message: str | None = None, code: ErrorCode | None = None) -> None:
        self.code = code or self.default_code
        self.message = message or get_error_message(self.code)
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return get_error_status(self.code)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error body."""
        entry = ERROR_REGISTRY.get(self.code, {})
        return {
            "code": self.code.value,
            "error": entry.get("error", "unknown_error"),
            "message": self.message,
            "recoverable": entry.get("recoverable", False),
        }


class ValidationError(FlexGateError):
    """Malformed or insecure input to a registry operation or ``emit``."""

    default_code = ErrorCode.FIELD_VALIDATION_FAILED


class NotFoundError(FlexGateError):
    """Referenced webhook does not exist."""

    default_code = ErrorCode.WEBHOOK_NOT_FOUND


class DeliveryError(FlexGateError):
    """An HTTP delivery attempt failed.

    Raised for transport errors, timeouts and non-2xx responses. The
    delivery worker always catches it and applies the retry policy.
    """

    default_code = ErrorCode.DELIVERY_FAILED

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class PersistenceError(FlexGateError):
    """The delivery store could not complete a read or write."""

    default_code = ErrorCode.STORE_UNAVAILABLE
