from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.common import latest_by_activity
from sessionguard.storage.models import (
    LogoutRecord,
    SessionRecord,
    logout_from_document,
    logout_to_document,
    session_from_document,
    session_to_document,
    to_datetime,
)


class MemoryDocumentStore:
    """In-process document store for tests and single-node development.

    Documents are kept as plain dicts so that what comes back out goes through
    the same parsing as any other backend. When ``fs_root`` is given the state
    is mirrored to a JSON file and reloaded on construction, which is enough
    to survive a process restart.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.logouts: Dict[str, Dict[str, Any]] = {}
        # RLock so helpers can be called while the lock is held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- sessions -------------------------------------------------------

    async def get_session_document(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            data = self.sessions.get(session_id)
            return session_from_document(data) if data is not None else None

    async def find_latest_session(self, subject_id: str) -> Optional[SessionRecord]:
        return latest_by_activity(await self.list_session_documents(subject_id))

    async def list_session_documents(self, subject_id: str) -> List[SessionRecord]:
        with self._data_lock:
            return [
                session_from_document(doc)
                for doc in self.sessions.values()
                if doc.get("userId") == subject_id
            ]

    async def put_session(self, record: SessionRecord) -> None:
        with self._data_lock:
            self.sessions[record.session_id] = session_to_document(record)
            self._persist_state()

    async def commit_sessions(self, records: Sequence[SessionRecord]) -> None:
        # Build every document first so a bad record leaves the store untouched
        docs = {record.session_id: session_to_document(record) for record in records}
        with self._data_lock:
            self.sessions.update(docs)
            self._persist_state()

    async def delete_sessions(self, session_ids: Iterable[str]) -> int:
        removed = 0
        with self._data_lock:
            for session_id in session_ids:
                if self.sessions.pop(session_id, None) is not None:
                    removed += 1
            if removed:
                self._persist_state()
        return removed

    async def sessions_expiring_after(
        self, moment: datetime
    ) -> List[Tuple[str, SessionRecord]]:
        with self._data_lock:
            items = list(self.sessions.items())
        results = []
        for key, doc in items:
            record = session_from_document(doc)
            if record.expires_at > moment:
                results.append((key, record))
        return results

    async def sessions_expired_at_or_before(self, moment: datetime) -> List[str]:
        with self._data_lock:
            return [
                key
                for key, doc in self.sessions.items()
                if to_datetime(doc["expiresAt"]) <= moment
            ]

    # -- logout ledger --------------------------------------------------

    async def get_logout(self, subject_id: str) -> Optional[LogoutRecord]:
        with self._data_lock:
            data = self.logouts.get(subject_id)
            return logout_from_document(data) if data is not None else None

    async def put_logout(self, record: LogoutRecord) -> None:
        with self._data_lock:
            self.logouts[record.subject_id] = logout_to_document(record)
            self._persist_state()

    async def logouts_expired_at_or_before(self, moment: datetime) -> List[str]:
        with self._data_lock:
            return [
                key
                for key, doc in self.logouts.items()
                if to_datetime(doc["expiresAt"]) <= moment
            ]

    async def delete_logouts(self, subject_ids: Iterable[str]) -> int:
        removed = 0
        with self._data_lock:
            for subject_id in subject_ids:
                if self.logouts.pop(subject_id, None) is not None:
                    removed += 1
            if removed:
                self._persist_state()
        return removed

    async def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- persistence ----------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    @staticmethod
    def _serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in doc.items()
        }

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": {k: self._serialize_doc(v) for k, v in self.sessions.items()},
            "logouts": {k: self._serialize_doc(v) for k, v in self.logouts.items()},
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        # Timestamps stay as ISO strings; the document codec parses them on read
        self.sessions = dict(data.get("sessions", {}))
        self.logouts = dict(data.get("logouts", {}))
        self.logger.info(
            "memory_store_state_loaded",
            sessions=len(self.sessions),
            logouts=len(self.logouts),
        )
        return True
