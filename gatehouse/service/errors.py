from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - validation_error (422)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - configuration_error (500)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, invalid one-time codes or invalid opaque tokens (422)."""
    status_code = 422
    error_code = "validation_error"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(
            "Validation failed.",
            detail={"errors": [{"field": field, "message": message}]},
        )


class AuthenticationError(ServiceError):
    """Bad credentials or invalid refresh token (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Blocked account or failed authorization predicate (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ConfigurationError(ServiceError):
    """Required seed data or configuration is missing.

    Not recoverable by the caller; an operator has to seed the data.
    """
    status_code = 500
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ConfigurationError",
]
