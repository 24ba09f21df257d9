from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sessionguard.storage.errors import DocumentIntegrityError


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Outcome of a session validity check."""

    VALID = "VALID"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"


@dataclass(frozen=True)
class SessionRecord:
    subject_id: str
    session_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, subject_id: str, timeout: timedelta, *, now: Optional[datetime] = None
    ) -> "SessionRecord":
        now = now or utcnow()
        return cls(
            subject_id=subject_id,
            session_id=str(uuid.uuid4()),
            created_at=now,
            last_activity_at=now,
            expires_at=now + timeout,
        )

    def touched(self, now: datetime, timeout: timedelta) -> "SessionRecord":
        """Return a copy with activity moved to ``now`` and expiry extended."""
        return replace(self, last_activity_at=now, expires_at=now + timeout)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class LogoutRecord:
    subject_id: str
    logged_out_at: datetime
    # Only used to prune the ledger; revocation ignores it.
    expires_at: datetime

    @classmethod
    def new(cls, subject_id: str, ttl: timedelta, *, now: Optional[datetime] = None) -> "LogoutRecord":
        now = now or utcnow()
        return cls(subject_id=subject_id, logged_out_at=now, expires_at=now + ttl)


@dataclass(frozen=True)
class VerifiedIdentity:
    subject_id: str
    issued_at: Optional[datetime] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


def to_datetime(value: Any) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime.

    Accepts native datetimes, ISO-8601 strings, epoch seconds, and store-native
    timestamp objects exposing ``to_datetime()`` or ``ToDatetime()``.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise DocumentIntegrityError(f"invalid timestamp: {value!r}") from exc
    elif isinstance(value, bool):
        raise DocumentIntegrityError(f"invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif hasattr(value, "to_datetime"):
        dt = value.to_datetime()
    elif hasattr(value, "ToDatetime"):
        dt = value.ToDatetime()
    else:
        raise DocumentIntegrityError(f"unsupported timestamp type: {type(value).__name__}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def session_to_document(record: SessionRecord) -> Dict[str, Any]:
    return {
        "sessionId": record.session_id,
        "userId": record.subject_id,
        "createdAt": record.created_at,
        "lastActivityAt": record.last_activity_at,
        "expiresAt": record.expires_at,
    }


def session_from_document(data: Dict[str, Any]) -> SessionRecord:
    try:
        return SessionRecord(
            subject_id=str(data["userId"]),
            session_id=str(data["sessionId"]),
            created_at=to_datetime(data["createdAt"]),
            last_activity_at=to_datetime(data["lastActivityAt"]),
            expires_at=to_datetime(data["expiresAt"]),
        )
    except KeyError as exc:
        raise DocumentIntegrityError(
            "session document missing field", detail={"field": exc.args[0]}
        ) from exc


def logout_to_document(record: LogoutRecord) -> Dict[str, Any]:
    return {
        "userId": record.subject_id,
        "loggedOutAt": record.logged_out_at,
        "expiresAt": record.expires_at,
    }


def logout_from_document(data: Dict[str, Any]) -> LogoutRecord:
    try:
        return LogoutRecord(
            subject_id=str(data["userId"]),
            logged_out_at=to_datetime(data["loggedOutAt"]),
            expires_at=to_datetime(data["expiresAt"]),
        )
    except KeyError as exc:
        raise DocumentIntegrityError(
            "logout document missing field", detail={"field": exc.args[0]}
        ) from exc
