from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from sessionguard.client.errors import NotAuthenticatedError
from sessionguard.client.request_queue import RequestQueue
from sessionguard.logging import get_logger

logger = get_logger(__name__)


class CredentialSource(Protocol):
    """Where bearer tokens come from (an identity provider SDK, a token file...)."""

    async def get_token(self, force_refresh: bool = False) -> Optional[str]: ...


class CredentialRefreshCoordinator:
    """Hands out bearer tokens and runs at most one refresh at a time.

    Concurrent ``refresh_token`` callers share a single task; the outcome is
    also fanned out to anyone parked on the request queue.
    """

    def __init__(self, source: CredentialSource, *, queue: Optional[RequestQueue] = None) -> None:
        self.source = source
        self.queue = queue or RequestQueue()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    async def get_token(self, force_refresh: bool = False) -> Optional[str]:
        return await self.source.get_token(force_refresh)

    async def refresh_token(self) -> str:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
        # Shielded so one cancelled caller does not abort the shared refresh
        return await asyncio.shield(self._refresh_task)

    async def wait_for_token(self) -> Optional[str]:
        """Current token, or the refreshed one if a refresh is running."""
        if self._refresh_task is not None:
            return await self.queue.wait()
        return await self.get_token()

    async def _refresh(self) -> str:
        try:
            token = await self.source.get_token(True)
            if not token:
                raise NotAuthenticatedError("No user authenticated")
            released = self.queue.flush(token)
            logger.info("credential_refreshed", released_waiters=released)
            return token
        except Exception as exc:
            rejected = self.queue.reject_all(exc)
            logger.warning(
                "credential_refresh_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                rejected_waiters=rejected,
            )
            raise
        finally:
            self._refresh_task = None
