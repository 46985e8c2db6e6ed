"""Exception hierarchy shared by all modelhook components."""

from typing import Any

from fastapi import status


class ModelHookError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error_type, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ConfigurationError(ModelHookError):
    """A required secret or setting is missing. Fatal, never retried."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "configuration_error"


class AuthenticationError(ModelHookError):
    """Caller credentials or request signature are missing or wrong."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"


class ValidationError(ModelHookError):
    """Input failed validation. ``errors`` maps field names to messages."""

    status_code = 422
    error_type = "validation_error"

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None) -> None:
        super().__init__(message, errors=errors or {})
        self.errors = errors or {}


class NotFoundError(ModelHookError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class RateLimitError(ModelHookError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = "rate_limited"

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class DeliveryError(ModelHookError):
    """Outbound delivery failed. Recorded on the subscription, never raised to callers."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "delivery_error"

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message, code=code)
        self.code = code


class RecoveryError(ModelHookError):
    """A snapshot is unreadable or structurally invalid. Nothing was written."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "recovery_error"
