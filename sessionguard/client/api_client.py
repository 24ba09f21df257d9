from __future__ import annotations

from typing import Any, Optional

import httpx

from sessionguard.client.retry import RETRY_COUNT_KEY, LogoutCallback, RetryDispatcher
from sessionguard.client.token_manager import CredentialRefreshCoordinator, CredentialSource
from sessionguard.config import (
    DEFAULT_CLIENT_TIMEOUT_SECONDS,
    DEFAULT_LOGOUT_ENDPOINT,
    DEFAULT_MAX_RETRIES,
    Settings,
)
from sessionguard.logging import get_logger

logger = get_logger(__name__)


class AuthenticatedClient:
    """httpx client that attaches bearer tokens and reacts to session errors.

    Every request carries the coordinator's current token. A 401 goes through
    the :class:`RetryDispatcher`, which may refresh and resend once or sign the
    user out.
    """

    def __init__(
        self,
        base_url: str,
        source: CredentialSource,
        *,
        on_logout: Optional[LogoutCallback] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: float = DEFAULT_CLIENT_TIMEOUT_SECONDS,
        logout_endpoint: str = DEFAULT_LOGOUT_ENDPOINT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.coordinator = CredentialRefreshCoordinator(source)
        self.dispatcher = RetryDispatcher(
            self.coordinator, on_logout=on_logout, max_retries=max_retries
        )
        self.logout_endpoint = logout_endpoint
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        base_url: str,
        source: CredentialSource,
        settings: Settings,
        **kwargs: Any,
    ) -> "AuthenticatedClient":
        return cls(
            base_url,
            source,
            max_retries=settings.client_max_retries,
            timeout=settings.client_timeout_seconds,
            logout_endpoint=settings.logout_endpoint,
            **kwargs,
        )

    async def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response:
        # Resent requests already carry the refreshed token
        if RETRY_COUNT_KEY not in request.extensions:
            token = await self.coordinator.get_token(False)
            if token:
                request.headers["Authorization"] = f"Bearer {token}"
        response = await self._client.send(request, **kwargs)
        if response.status_code == 401:
            return await self.dispatcher.handle_unauthorized(response, self)
        return response

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        request = self._client.build_request(method, url, **kwargs)
        return await self.send(request)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def logout(self) -> None:
        """Clear the server session if possible, then always log out locally."""
        try:
            token = await self.coordinator.get_token(False)
            if token:
                request = self._client.build_request(
                    "POST",
                    self.logout_endpoint,
                    json={},
                    headers={"Authorization": f"Bearer {token}"},
                )
                response = await self._client.send(request)
                if response.status_code >= 400:
                    logger.warning("server_logout_rejected", status_code=response.status_code)
        except Exception as exc:
            logger.warning("server_logout_failed", error_type=type(exc).__name__, error=str(exc))
        await self.dispatcher.perform_logout()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
