from __future__ import annotations

from typing import Optional

INVALID_TOKEN_MESSAGE = "invalid token"
EMAIL_UNVERIFIED_MESSAGE = "EMAIL_UNVERIFIED"


class ServiceError(Exception):
    """Base class for service-layer failures rendered as HTTP errors.

    Subclasses pin the HTTP ``status_code`` and the ``error_code`` that lands
    in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    """Input rejected by a service rule (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials missing or wrong (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenRejectedError(AuthenticationError):
    """A bearer token failed validation.

    The message never says which check failed.
    """

    def __init__(self, **kwargs) -> None:
        super().__init__(INVALID_TOKEN_MESSAGE, **kwargs)


class EmailUnverifiedError(AuthenticationError):
    """Valid token, but the route needs a verified email (401)."""

    def __init__(self, message: str = EMAIL_UNVERIFIED_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or similar uniqueness clash (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Bucket exhausted (429); ``retry_after_seconds`` feeds ``Retry-After``."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int = 0, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after_seconds", retry_after_seconds)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


__all__ = [
    "EMAIL_UNVERIFIED_MESSAGE",
    "INVALID_TOKEN_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenRejectedError",
    "EmailUnverifiedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
