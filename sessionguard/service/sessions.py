from __future__ import annotations

import asyncio
import contextlib
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sessionguard.config import DEFAULT_INACTIVITY_TIMEOUT_SECONDS
from sessionguard.logging import get_logger
from sessionguard.service.errors import ExpiredSessionError, RevokedError
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.write_sync import DurableWriteSynchronizer
from sessionguard.storage.activity_cache import ActivityCache
from sessionguard.storage.common import DocumentStore, chunked
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import SessionRecord, SessionStatus, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class WarmupResult:
    loaded: int = 0
    skipped: int = 0
    deleted: int = 0


@dataclass
class _SubjectLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SessionEngine:
    """Decides on every request whether a subject's session is still alive.

    The cache answers the common case without touching the durable store.
    Sessions are looked up by subject id; durable documents are keyed by the
    session id generated at creation, so a new session after logout never
    collides with the remains of an old one.
    """

    def __init__(
        self,
        cache: ActivityCache,
        synchronizer: DurableWriteSynchronizer,
        store: DocumentStore,
        ledger: RevocationLedger,
        *,
        inactivity_timeout: timedelta = timedelta(seconds=DEFAULT_INACTIVITY_TIMEOUT_SECONDS),
        store_timeout: Optional[float] = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.synchronizer = synchronizer
        self.store = store
        self.ledger = ledger
        self.inactivity_timeout = inactivity_timeout
        self.store_timeout = store_timeout
        self._clock = clock
        self._creation_locks: Dict[str, _SubjectLock] = {}
        self._creation_locks_guard = threading.Lock()
        # Logout times seen by this process, so the fast path can reject
        # pre-logout tokens without a ledger read. Each mark carries a serial
        # that changes on every logout, even within one clock tick.
        self._logout_marks: Dict[str, Tuple[datetime, int]] = {}
        self._logout_marks_lock = threading.Lock()
        self._logout_serials = itertools.count(1)

    def _now(self) -> datetime:
        return self._clock()

    def _logout_mark(self, subject_id: str) -> Tuple[Optional[datetime], int]:
        with self._logout_marks_lock:
            mark = self._logout_marks.get(subject_id)
        return mark if mark is not None else (None, 0)

    def _stale_after_logout(
        self, subject_id: str, record: SessionRecord, serial_before: int
    ) -> bool:
        """Whether ``record`` was overtaken by a logout and must not be revived."""
        logged_out_at, serial = self._logout_mark(subject_id)
        if serial != serial_before:
            return True
        return logged_out_at is not None and record.last_activity_at < logged_out_at

    async def _call_store(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a durable-store call, bounded by ``store_timeout``."""
        try:
            if self.store_timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("durable_store_timeout", operation=operation, timeout=self.store_timeout)
            raise StoreUnavailableError(
                f"durable store timed out during {operation}",
                detail={"operation": operation},
            ) from exc

    @contextlib.asynccontextmanager
    async def _creation_lock(self, subject_id: str) -> AsyncIterator[None]:
        with self._creation_locks_guard:
            entry = self._creation_locks.setdefault(subject_id, _SubjectLock())
            entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._creation_locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._creation_locks.pop(subject_id, None)

    async def validate(self, subject_id: str) -> SessionStatus:
        cached = self.cache.get(subject_id)

        if cached is not None and cached.subject_id != subject_id:
            logger.error(
                "session_cache_integrity_error",
                subject_id=subject_id,
                cached_subject_id=cached.subject_id,
            )
            self.cache.clear(subject_id)
            return SessionStatus.DATA_INTEGRITY_ERROR

        _, serial = self._logout_mark(subject_id)
        if cached is not None and self._stale_after_logout(subject_id, cached, serial):
            self.cache.clear(subject_id)
            cached = None

        if cached is not None and not cached.is_expired(self._now()):
            return SessionStatus.VALID

        record = await self._call_store(
            "find_latest_session", self.store.find_latest_session(subject_id)
        )
        if record is None:
            return SessionStatus.NOT_FOUND
        if record.subject_id != subject_id:
            logger.error(
                "session_document_integrity_error",
                subject_id=subject_id,
                session_id=record.session_id,
                document_subject_id=record.subject_id,
            )
            return SessionStatus.DATA_INTEGRITY_ERROR
        if self._stale_after_logout(subject_id, record, serial):
            # Read raced a logout, or the delete behind it has not landed yet
            logger.info(
                "stale_session_ignored",
                subject_id=subject_id,
                session_id=record.session_id,
            )
            return SessionStatus.NOT_FOUND
        if record.is_expired(self._now()):
            return SessionStatus.EXPIRED

        self.cache.set(subject_id, record)
        return SessionStatus.VALID

    async def is_session_valid(self, subject_id: str) -> bool:
        return await self.validate(subject_id) is SessionStatus.VALID

    async def session_exists(self, subject_id: str) -> bool:
        """Whether any durable session document exists, expired or not."""
        records = await self._call_store(
            "list_session_documents", self.store.list_session_documents(subject_id)
        )
        return any(record.subject_id == subject_id for record in records)

    async def ensure_session(self, subject_id: str, issued_at: Optional[datetime] = None) -> bool:
        """Make sure the subject has a live session; return True if one was created.

        Raises:
            RevokedError: ``issued_at`` predates the subject's last logout. Checked
                even when no session exists so a replayed pre-logout token
                cannot open a new one.
            ExpiredSessionError: the session timed out; it is never silently
                recreated.
        """
        if issued_at is not None and await self.was_issued_before_logout(subject_id, issued_at):
            logger.warning(
                "revoked_token_rejected",
                subject_id=subject_id,
                issued_at=issued_at.isoformat(),
            )
            raise RevokedError()

        status = await self.validate(subject_id)
        if status is SessionStatus.VALID:
            return False
        if status is SessionStatus.EXPIRED:
            raise ExpiredSessionError()

        async with self._creation_lock(subject_id):
            # A concurrent request may have created it while we waited
            cached = self.cache.get(subject_id)
            if (
                cached is not None
                and cached.subject_id == subject_id
                and not cached.is_expired(self._now())
            ):
                return False
            await self.create_session(subject_id)
        return True

    async def create_session(self, subject_id: str) -> SessionRecord:
        """Create a fresh session and write it through to cache and durable store."""
        record = SessionRecord.new(subject_id, self.inactivity_timeout, now=self._now())
        self.synchronizer.discard(subject_id)
        self.cache.set(subject_id, record)
        try:
            await self._call_store("put_session", self.store.put_session(record))
        except Exception:
            # Do not leave a session that exists only in memory
            self.cache.clear(subject_id)
            raise
        logger.info(
            "session_created",
            subject_id=subject_id,
            session_id=record.session_id,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    async def update_last_activity(self, subject_id: str) -> Optional[SessionRecord]:
        """Extend a valid session; the durable copy is updated on the next flush."""
        _, serial = self._logout_mark(subject_id)
        if await self.validate(subject_id) is not SessionStatus.VALID:
            return None
        cached = self.cache.get(subject_id)
        if cached is None or self._stale_after_logout(subject_id, cached, serial):
            return None
        updated = cached.touched(self._now(), self.inactivity_timeout)
        self.cache.set(subject_id, updated)
        self.synchronizer.queue_write(subject_id, updated)
        return updated

    async def clear_session(self, subject_id: str) -> None:
        """Log the subject out: revoke earlier tokens and delete its sessions.

        Safe to call repeatedly. The ledger write comes first; if it fails the
        sessions are still deleted and the failure is raised as a critical log.
        The local mark is set before the first await, so a validate or activity
        update already waiting on the store cannot bring the session back.
        """
        logged_out_at = self._now()
        with self._logout_marks_lock:
            self._logout_marks[subject_id] = (logged_out_at, next(self._logout_serials))
        self.cache.clear(subject_id)
        self.synchronizer.discard(subject_id)

        try:
            await self._call_store(
                "record_logout", self.ledger.record_logout(subject_id, at=logged_out_at)
            )
        except Exception as exc:
            logger.critical(
                "logout_ledger_write_failed",
                subject_id=subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
                message="pre-logout tokens may still open new sessions",
            )

        # A flush committing an older snapshot must land before the delete
        async with self.synchronizer.paused():
            self.synchronizer.discard(subject_id)
            records = await self._call_store(
                "list_session_documents", self.store.list_session_documents(subject_id)
            )
            if records:
                await self._call_store(
                    "delete_sessions",
                    self.store.delete_sessions([record.session_id for record in records]),
                )
        logger.info("session_cleared", subject_id=subject_id, deleted=len(records))

    async def was_issued_before_logout(self, subject_id: str, issued_at: datetime) -> bool:
        if self.revoked_locally(subject_id, issued_at):
            return True
        return await self._call_store(
            "get_logout", self.ledger.was_issued_before_logout(subject_id, issued_at)
        )

    def revoked_locally(self, subject_id: str, issued_at: datetime) -> bool:
        """Cache-only revocation check against logouts handled by this process."""
        logged_out_at, _ = self._logout_mark(subject_id)
        return logged_out_at is not None and issued_at < logged_out_at

    async def warmup_cache(self) -> WarmupResult:
        """Load every live durable session into the cache and delete expired ones."""
        result = WarmupResult()
        now = self._now()

        live = await self._call_store(
            "sessions_expiring_after", self.store.sessions_expiring_after(now)
        )
        for key, record in live:
            if record.session_id != key:
                logger.warning(
                    "warmup_session_key_mismatch",
                    document_key=key,
                    session_id=record.session_id,
                )
                result.skipped += 1
                continue
            existing = self.cache.get(record.subject_id)
            if existing is None or record.last_activity_at > existing.last_activity_at:
                self.cache.set(record.subject_id, record)
            result.loaded += 1

        expired = await self._call_store(
            "sessions_expired_at_or_before", self.store.sessions_expired_at_or_before(now)
        )
        for batch in chunked(expired):
            result.deleted += await self._call_store(
                "delete_sessions", self.store.delete_sessions(batch)
            )

        logger.info(
            "session_cache_warmed",
            loaded=result.loaded,
            skipped=result.skipped,
            deleted=result.deleted,
        )
        return result

    async def run_maintenance(self) -> Dict[str, int]:
        """Sweep expired cache entries, prune the logout ledger and local marks.

        Local marks follow the ledger's retention: once a mark is older than
        ``ledger.ttl`` the durable record it shadows is gone too.
        """
        swept = self.cache.clear_expired()
        pruned = await self._call_store("prune_ledger", self.ledger.prune_expired())
        cutoff = self._now() - self.ledger.ttl
        with self._logout_marks_lock:
            stale = [
                subject_id
                for subject_id, (logged_out_at, _) in self._logout_marks.items()
                if logged_out_at <= cutoff
            ]
            for subject_id in stale:
                del self._logout_marks[subject_id]
        return {"cache_swept": swept, "ledger_pruned": pruned, "logout_marks_pruned": len(stale)}

    async def aclose(self) -> None:
        await self.synchronizer.close()
