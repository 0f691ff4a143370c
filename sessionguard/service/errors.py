from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - service_unavailable (503)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "Invalid credentials",
        *,
        attempts_remaining: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.attempts_remaining = attempts_remaining
        if attempts_remaining is not None:
            self.detail.setdefault("attempts_remaining", attempts_remaining)


class InactiveAccountError(AuthenticationError):
    """Credentials were valid but the account is deactivated (401)."""
    error_code = "account_inactive"


class RefreshTokenError(AuthenticationError):
    """A refresh token could not be exchanged (401).

    ``reason`` is one of ``expired``, ``revoked``, ``session_gone`` or
    ``user_inactive``.
    """

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.detail.setdefault("reason", reason)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TooManyRequestsError(ServiceError):
    """Lockout or rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.detail.setdefault("retry_after", retry_after)


class DependencyUnavailableError(ServiceError):
    """A required backing service is unreachable (503).

    The message is deliberately generic; callers should retry later.
    """
    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self, message: str = "Service temporarily unavailable. Please try again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InactiveAccountError",
    "RefreshTokenError",
    "NotFoundError",
    "ConflictError",
    "TooManyRequestsError",
    "DependencyUnavailableError",
]
