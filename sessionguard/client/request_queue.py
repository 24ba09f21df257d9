from __future__ import annotations

import asyncio
import threading
from typing import Callable, List, Tuple

from sessionguard.logging import get_logger

logger = get_logger(__name__)

Resolve = Callable[[str], None]
Reject = Callable[[BaseException], None]


class RequestQueue:
    """Callers parked while a credential refresh is running.

    ``flush`` hands every waiter the new token; ``reject_all`` hands them the
    refresh failure. Both empty the queue before calling out, so a waiter that
    enqueues again lands in the next round.
    """

    def __init__(self) -> None:
        self._waiters: List[Tuple[Resolve, Reject]] = []
        self._lock = threading.Lock()

    def enqueue(self, resolve: Resolve, reject: Reject) -> None:
        with self._lock:
            self._waiters.append((resolve, reject))

    def wait(self) -> "asyncio.Future[str]":
        """Return a future settled by the next ``flush`` or ``reject_all``."""
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

        def _resolve(token: str) -> None:
            if not future.done():
                future.set_result(token)

        def _reject(error: BaseException) -> None:
            if not future.done():
                future.set_exception(error)

        self.enqueue(_resolve, _reject)
        return future

    def _drain(self) -> List[Tuple[Resolve, Reject]]:
        with self._lock:
            waiters, self._waiters = self._waiters, []
        return waiters

    def flush(self, token: str) -> int:
        waiters = self._drain()
        for resolve, _ in waiters:
            try:
                resolve(token)
            except Exception as exc:
                logger.error("request_queue_resolve_failed", error=str(exc))
        return len(waiters)

    def reject_all(self, error: BaseException) -> int:
        waiters = self._drain()
        for _, reject in waiters:
            try:
                reject(error)
            except Exception as exc:
                logger.error("request_queue_reject_failed", error=str(exc))
        return len(waiters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._waiters)
