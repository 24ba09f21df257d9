from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sessionguard.storage.models import SessionRecord, utcnow


class ActivityCache:
    """In-memory map of subject id to its hot session record.

    Expiry is decided by comparison at read time; nothing sweeps in the
    background. Callers that want bounded memory run ``clear_expired()``
    periodically.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def get(self, subject_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(subject_id)

    def set(self, subject_id: str, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[subject_id] = record

    def is_expired(self, subject_id: str) -> bool:
        record = self.get(subject_id)
        if record is None:
            return True
        return record.is_expired(self._clock())

    def clear(self, subject_id: str) -> None:
        with self._lock:
            self._sessions.pop(subject_id, None)

    def clear_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, rec in self._sessions.items() if rec.is_expired(now)]
            for subject_id in expired:
                del self._sessions[subject_id]
        return len(expired)

    def clear_all(self) -> None:
        with self._lock:
            self._sessions.clear()

    def subject_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
