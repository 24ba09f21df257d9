from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import httpx

from sessionguard.client.errors import SessionExpiredError, TokenRefreshError
from sessionguard.client.token_manager import CredentialRefreshCoordinator
from sessionguard.config import DEFAULT_MAX_RETRIES
from sessionguard.logging import get_logger
from sessionguard.service.errors import ErrorCode

logger = get_logger(__name__)

RETRY_COUNT_KEY = "sessionguard_retry_count"

LogoutCallback = Callable[[], Union[None, Awaitable[None]]]


class RequestSender(Protocol):
    async def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response: ...


def error_code_of(response: httpx.Response) -> Optional[str]:
    """Pull ``error.code`` out of a JSON error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict):
        return None
    return error.get("code")


def with_bearer(request: httpx.Request, token: str, retry_count: int) -> httpx.Request:
    """Copy ``request`` with a new bearer token and retry counter."""
    headers = request.headers.copy()
    headers["Authorization"] = f"Bearer {token}"
    extensions = dict(request.extensions)
    extensions[RETRY_COUNT_KEY] = retry_count
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=request.content,
        extensions=extensions,
    )


class RetryDispatcher:
    """Decides what a 401 means for the client.

    ``SESSION_EXPIRED`` ends the local session. ``TOKEN_EXPIRED`` is answered
    with one refresh and one resend. Any other 401 is the caller's problem and
    the response is handed back untouched.
    """

    def __init__(
        self,
        coordinator: CredentialRefreshCoordinator,
        *,
        on_logout: Optional[LogoutCallback] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.coordinator = coordinator
        self.on_logout = on_logout
        self.max_retries = max_retries

    async def perform_logout(self) -> None:
        if self.on_logout is None:
            return
        result = self.on_logout()
        if inspect.isawaitable(result):
            await result

    async def handle_unauthorized(self, response: httpx.Response, client: RequestSender) -> httpx.Response:
        code = error_code_of(response)

        if code == ErrorCode.SESSION_EXPIRED:
            logger.info("session_expired_logout", url=str(response.request.url))
            await self.perform_logout()
            raise SessionExpiredError()

        if code != ErrorCode.TOKEN_EXPIRED:
            return response

        request = response.request
        retry_count = int(request.extensions.get(RETRY_COUNT_KEY, 0))
        if retry_count >= self.max_retries:
            logger.warning("token_retry_budget_exhausted", retry_count=retry_count)
            await self.perform_logout()
            raise TokenRefreshError("Token refresh failed after retries")

        try:
            token = await self.coordinator.refresh_token()
        except Exception as exc:
            await self.perform_logout()
            raise TokenRefreshError("Token refresh failed", original_error=exc) from exc

        logger.debug("request_retry_with_refreshed_token", retry_count=retry_count + 1)
        return await client.send(with_bearer(request, token, retry_count + 1))
