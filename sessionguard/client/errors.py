from __future__ import annotations

from typing import Optional

from sessionguard.service.errors import ErrorCode


class ClientAuthError(Exception):
    """Base class for authentication failures surfaced to client callers."""

    code: str = ErrorCode.AUTH_FAILED
    session_expired: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(ClientAuthError):
    """The credential source has no signed-in user to mint a token for."""


class SessionExpiredError(ClientAuthError):
    """The server ended the session; the user has been logged out locally."""

    code = ErrorCode.SESSION_EXPIRED
    session_expired = True

    def __init__(self, message: str = "Session has expired") -> None:
        super().__init__(message)


class TokenRefreshError(ClientAuthError):
    """Refreshing the credential failed or the retry budget ran out."""

    code = ErrorCode.TOKEN_EXPIRED

    def __init__(self, message: str = "Token refresh failed", *, original_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original_error = original_error
