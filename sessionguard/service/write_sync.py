from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import AsyncIterator, Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.common import DocumentStore
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import SessionRecord

logger = get_logger(__name__)


class DurableWriteSynchronizer:
    """Batches per-subject session writes and flushes them to the durable store.

    Only the newest record per subject is kept between flushes: a later
    activity timestamp always dominates an earlier one for the same subject, so
    dropping the older value loses nothing. Creation and deletion do not come
    through here; the engine writes those through directly.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        flush_interval: float = 300.0,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.flush_interval = flush_interval
        self.timeout = timeout
        self._pending: Dict[str, SessionRecord] = {}
        self._pending_lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    def queue_write(self, subject_id: str, record: SessionRecord) -> None:
        with self._pending_lock:
            self._pending[subject_id] = record

    def discard(self, subject_id: str) -> None:
        """Drop any pending write for the subject (used on logout)."""
        with self._pending_lock:
            self._pending.pop(subject_id, None)

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def pending_for(self, subject_id: str) -> Optional[SessionRecord]:
        with self._pending_lock:
            return self._pending.get(subject_id)

    async def flush(self) -> int:
        """Commit every pending write as one batch and return how many were written.

        The queue is only cleared after the batch commits. On failure it is left
        as it was, so a retry resends the same (still newest) data, and the
        error propagates.
        """
        async with self._flush_lock:
            with self._pending_lock:
                snapshot = dict(self._pending)
            if not snapshot:
                return 0

            commit = self.store.commit_sessions(list(snapshot.values()))
            try:
                if self.timeout is not None:
                    await asyncio.wait_for(commit, timeout=self.timeout)
                else:
                    await commit
            except asyncio.TimeoutError as exc:
                logger.error("durable_flush_timeout", pending=len(snapshot), timeout=self.timeout)
                raise StoreUnavailableError(
                    "durable store timed out during flush", detail={"operation": "flush"}
                ) from exc
            except Exception as exc:
                logger.error(
                    "durable_flush_failed",
                    pending=len(snapshot),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

            with self._pending_lock:
                for subject_id, record in snapshot.items():
                    # Keep entries that were replaced while the commit was in flight
                    if self._pending.get(subject_id) is record:
                        del self._pending[subject_id]
            logger.debug("durable_flush_complete", written=len(snapshot))
            return len(snapshot)

    @contextlib.asynccontextmanager
    async def paused(self) -> AsyncIterator[None]:
        """Hold off flushes for the duration of the block.

        A flush already committing finishes first, so deletes made inside the
        block cannot be overwritten by a snapshot taken before them.
        """
        async with self._flush_lock:
            yield

    def start_periodic_flush(self, interval: Optional[float] = None) -> None:
        """Start the recurring flush task; a second call is a no-op."""
        if self._task is not None and not self._task.done():
            logger.warning("periodic_flush_already_running")
            return
        if interval is not None:
            self.flush_interval = interval
        self._task = asyncio.create_task(self._run_loop())
        logger.info("periodic_flush_started", interval_seconds=self.flush_interval)

    async def stop_periodic_flush(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic_flush_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def close(self) -> None:
        """Stop the recurring task and push out whatever is still queued."""
        await self.stop_periodic_flush()
        await self.flush()

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "periodic_flush_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                    pending=self.pending_count,
                )
