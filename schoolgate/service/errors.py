from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in logs:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - locked (423)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # Render as {"success": false, "message": ...} instead of {"error": ...}
    success_envelope: bool = False

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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, forged, expired or missing its subject (401)."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failed logins (423)."""
    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        limit_type: str,
        limit: int,
        retry_after: int,
        current: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.limit_type = limit_type
        self.limit = limit
        self.retry_after = retry_after
        self.current = current


class OtpNotFoundError(BadRequestError):
    """No live OTP for the phone number (400)."""

    def __init__(self, message: str = "OTP expired or not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OtpMismatchError(BadRequestError):
    """Wrong OTP submitted; carries how many attempts remain (400)."""

    def __init__(self, message: str, *, attempts_remaining: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.attempts_remaining = attempts_remaining


class OtpExhaustedError(BadRequestError):
    """OTP destroyed after too many wrong attempts (400)."""

    def __init__(
        self, message: str = "OTP invalidated due to too many wrong attempts", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ChildIdInvalidError(BadRequestError):
    """Child identifier missing or malformed (400)."""
    success_envelope = True


class ChildAccessDeniedError(ForbiddenError):
    """Child is not linked to the requesting parent (403)."""
    success_envelope = True

    def __init__(self, message: str = "Invalid child ID or access denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DependencyUnavailableError(ServerError):
    """A required backing service (store or OTP cache) failed (500)."""
    error_code = "dependency_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "AccountLockedError",
    "RateLimitedError",
    "OtpNotFoundError",
    "OtpMismatchError",
    "OtpExhaustedError",
    "ChildIdInvalidError",
    "ChildAccessDeniedError",
    "ServerError",
    "DependencyUnavailableError",
]
