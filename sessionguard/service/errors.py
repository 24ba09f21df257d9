from __future__ import annotations

from typing import Optional


class ErrorCode:
    """Stable error codes carried in the HTTP error body."""

    SESSION_EXPIRED = "SESSION_EXPIRED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    AUTH_FAILED = "AUTH_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    ALL = frozenset(
        {SESSION_EXPIRED, TOKEN_EXPIRED, AUTH_FAILED, INTERNAL_ERROR, SERVICE_UNAVAILABLE}
    )


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes the HTTP ``status_code``, the stable ``error_code`` and
    the two client hints: ``requires_logout`` (the client should sign the user
    out) and ``session_expired`` (the server-side session is gone).
    """

    status_code: int = 500
    error_code: str = ErrorCode.INTERNAL_ERROR
    requires_logout: bool = False
    session_expired: bool = False

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


class AuthenticationError(ServiceError):
    """Missing or invalid bearer credential (401)."""
    status_code = 401
    error_code = ErrorCode.AUTH_FAILED


class TokenExpiredServiceError(AuthenticationError):
    """Bearer credential expired; the client should refresh it (401)."""
    error_code = ErrorCode.TOKEN_EXPIRED
    requires_logout = True


class ExpiredSessionError(AuthenticationError):
    """Session timed out from inactivity; the user must re-authenticate (401)."""
    error_code = ErrorCode.SESSION_EXPIRED
    requires_logout = True
    session_expired = True

    def __init__(self, message: str = "Session has expired. Please logout and login again.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RevokedError(ExpiredSessionError):
    """Credential was issued before the subject's last logout (401).

    Never retried: refreshing would only mint a token the same logout revoked.
    """

    def __init__(self, message: str = "Token was issued before logout", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServiceUnavailableError(ServiceError):
    """Durable store unreachable or timed out (503)."""
    status_code = 503
    error_code = ErrorCode.SERVICE_UNAVAILABLE


__all__ = [
    "ErrorCode",
    "ServiceError",
    "AuthenticationError",
    "TokenExpiredServiceError",
    "ExpiredSessionError",
    "RevokedError",
    "ServiceUnavailableError",
]
