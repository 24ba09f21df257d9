from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from sessionguard.config import DEFAULT_LOGOUT_TTL_SECONDS
from sessionguard.logging import get_logger
from sessionguard.storage.common import DocumentStore, chunked
from sessionguard.storage.models import LogoutRecord, utcnow

logger = get_logger(__name__)


class RevocationLedger:
    """Durable "logged out at T" record per subject.

    Bearer tokens cannot be revoked, so a token is treated as revoked when it
    was issued before the subject's most recent logout. Each record carries an
    ``expires_at`` for pruning the ledger; the revocation check never reads it.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        ttl: timedelta = timedelta(seconds=DEFAULT_LOGOUT_TTL_SECONDS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock

    async def record_logout(self, subject_id: str, *, at: Optional[datetime] = None) -> LogoutRecord:
        """Overwrite the subject's logout record with ``at`` (default: now)."""
        record = LogoutRecord.new(subject_id, self.ttl, now=at or self._clock())
        await self.store.put_logout(record)
        return record

    async def get(self, subject_id: str) -> Optional[LogoutRecord]:
        return await self.store.get_logout(subject_id)

    async def was_issued_before_logout(self, subject_id: str, issued_at: datetime) -> bool:
        record = await self.store.get_logout(subject_id)
        if record is None:
            return False
        # A stale-but-unpruned record still revokes; expires_at is not consulted.
        return issued_at < record.logged_out_at

    async def prune_expired(self) -> int:
        """Delete ledger records whose retention has lapsed."""
        expired = await self.store.logouts_expired_at_or_before(self._clock())
        removed = 0
        for batch in chunked(expired):
            removed += await self.store.delete_logouts(batch)
        if removed:
            logger.info("logout_ledger_pruned", removed=removed)
        return removed
