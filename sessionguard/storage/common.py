"""Durable document store contract shared by the memory and Redis backends.

Session documents are keyed by ``session_id``; logout-ledger documents are
keyed by ``subject_id``. Range queries exist for cache warmup and pruning and
are not used on the request path.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from sessionguard.storage.models import LogoutRecord, SessionRecord

# Upper bound on documents touched by a single batch delete
DELETE_BATCH_SIZE = 500


class DocumentStore(Protocol):
    async def get_session_document(self, session_id: str) -> Optional[SessionRecord]: ...

    async def find_latest_session(self, subject_id: str) -> Optional[SessionRecord]:
        """Most recently active session for the subject, expired or not."""
        ...

    async def list_session_documents(self, subject_id: str) -> List[SessionRecord]: ...

    async def put_session(self, record: SessionRecord) -> None: ...

    async def commit_sessions(self, records: Sequence[SessionRecord]) -> None:
        """Write every record atomically; all or nothing."""
        ...

    async def delete_sessions(self, session_ids: Iterable[str]) -> int: ...

    async def sessions_expiring_after(
        self, moment: datetime
    ) -> List[Tuple[str, SessionRecord]]:
        """(document key, record) pairs for sessions with ``expires_at > moment``."""
        ...

    async def sessions_expired_at_or_before(self, moment: datetime) -> List[str]:
        """Document keys of sessions whose ``expires_at <= moment``."""
        ...

    async def get_logout(self, subject_id: str) -> Optional[LogoutRecord]: ...

    async def put_logout(self, record: LogoutRecord) -> None: ...

    async def logouts_expired_at_or_before(self, moment: datetime) -> List[str]: ...

    async def delete_logouts(self, subject_ids: Iterable[str]) -> int: ...

    async def close(self) -> None: ...


def chunked(items: Sequence[str], size: int = DELETE_BATCH_SIZE) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def latest_by_activity(records: Iterable[SessionRecord]) -> Optional[SessionRecord]:
    """Pick the record with the newest activity so duplicates resolve deterministically."""
    latest: Optional[SessionRecord] = None
    for record in records:
        if latest is None or record.last_activity_at > latest.last_activity_at:
            latest = record
    return latest
