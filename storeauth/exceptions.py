"""Exception hierarchy for storeauth.

Every error carries the HTTP-style ``status_code`` and ``error_type`` of the
failure class it represents, so remote API failures and local validation
failures can be reported to operators the same way.
"""

from __future__ import annotations

from typing import Any


class StoreAuthError(Exception):
    """Base exception for all storeauth errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str = "An internal error occurred") -> None:
        self.message = message
        super().__init__(message)


class ValidationError(StoreAuthError):
    """Rejected input, with optional field-level messages."""

    status_code = 422
    error_type = "validation_error"

    def __init__(
        self,
        message: str = "Invalid data provided",
        errors: dict[str, list[str]] | None = None,
    ) -> None:
        super().__init__(message)
        self.errors: dict[str, list[str]] = errors or {}

    def messages(self) -> list[str]:
        """Flatten field errors in field order, falling back to the message."""
        flat = [msg for field_errors in self.errors.values() for msg in field_errors]
        return flat or [self.message]


class ConflictError(StoreAuthError):
    """The operation would duplicate or contradict existing state."""

    status_code = 409
    error_type = "conflict"

    def __init__(self, message: str = "Conflict", reason: str = "conflict") -> None:
        super().__init__(message)
        self.reason = reason


class PermissionDeniedError(StoreAuthError):
    """The acting user lacks the permission for the operation."""

    status_code = 403
    error_type = "insufficient_permission"


class NotAuthenticatedError(StoreAuthError):
    status_code = 401
    error_type = "unauthenticated"


class NotFoundError(StoreAuthError):
    """Requested resource was not found."""

    status_code = 404
    error_type = "not_found"


class TransportError(StoreAuthError):
    """Network failure or unexpected server response; safe to retry."""

    status_code = 503
    error_type = "network_error"


#: Failure kinds reported for items of a batch operation.
FAILURE_PERMISSION = "insufficient_permission"
FAILURE_VALIDATION = "validation"
FAILURE_NETWORK = "network"

GENERIC_NETWORK_MESSAGE = "Network error. Please check your connection and try again."


def describe_failure(exc: BaseException) -> tuple[str, str, dict[str, list[str]]]:
    """Classify *exc* for display as ``(kind, message, field_errors)``.

    403-class errors become an insufficient-permission message, 422-class
    errors carry their field messages, and anything else is reported as a
    generic network failure.
    """
    if isinstance(exc, PermissionDeniedError):
        message = exc.message or "You do not have permission to perform this action"
        return FAILURE_PERMISSION, f"Insufficient permission: {message}", {}
    if isinstance(exc, ValidationError):
        return FAILURE_VALIDATION, ", ".join(exc.messages()), dict(exc.errors)
    return FAILURE_NETWORK, GENERIC_NETWORK_MESSAGE, {}


def error_from_response(status_code: int, body: Any) -> StoreAuthError:
    """Build the matching exception for a non-2xx API response."""
    data = body if isinstance(body, dict) else {}
    message = data.get("message") or data.get("error")
    if not isinstance(message, str):
        message = None

    if status_code == 422:
        errors: dict[str, list[str]] = {}
        raw_errors = data.get("errors")
        if isinstance(raw_errors, dict):
            for field, value in raw_errors.items():
                if isinstance(value, list):
                    errors[field] = [str(v) for v in value]
                elif isinstance(value, str):
                    errors[field] = [value]
        return ValidationError(message or "Invalid data provided", errors)
    if status_code == 403:
        return PermissionDeniedError(
            message or "You do not have permission to perform this action"
        )
    if status_code == 401:
        return NotAuthenticatedError(message or "Authentication required. Please login")
    if status_code == 404:
        return NotFoundError(message or "The requested resource was not found")
    if status_code == 409:
        return ConflictError(message or "Conflict")
    if status_code >= 500:
        return TransportError(message or "Server error. Please try again later")
    return StoreAuthError(message or f"Unexpected response status {status_code}")
