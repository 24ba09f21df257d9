from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionguard.config import DEFAULT_LOGOUTS_NAMESPACE, DEFAULT_SESSIONS_NAMESPACE
from sessionguard.logging import get_logger
from sessionguard.storage.common import latest_by_activity
from sessionguard.storage.errors import DocumentIntegrityError, StoreUnavailableError
from sessionguard.storage.models import (
    LogoutRecord,
    SessionRecord,
    logout_from_document,
    logout_to_document,
    session_from_document,
    session_to_document,
)

logger = get_logger(__name__)


def _encode(doc: Dict[str, Any]) -> str:
    return json.dumps(
        {k: v.isoformat() if isinstance(v, datetime) else v for k, v in doc.items()},
        separators=(",", ":"),
    )


def _decode(raw: str, key: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise DocumentIntegrityError("undecodable document", detail={"key": key}) from exc
    if not isinstance(data, dict):
        raise DocumentIntegrityError("document is not an object", detail={"key": key})
    return data


class RedisDocumentStore:
    """Redis-backed document store for session and logout records.

    Layout per namespace:
    - ``{ns}:doc:{key}`` JSON document
    - ``{ns}:expiry`` sorted set of keys scored by ``expiresAt`` epoch seconds
    - ``{sessions_ns}:by_subject:{subject_id}`` set of session ids

    Batch writes and deletes run inside MULTI/EXEC so they commit all-or-nothing.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        sessions_namespace: str = DEFAULT_SESSIONS_NAMESPACE,
        logouts_namespace: str = DEFAULT_LOGOUTS_NAMESPACE,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.sessions_namespace = sessions_namespace
        self.logouts_namespace = logouts_namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the store."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(
                f"durable store unavailable during {operation}",
                detail={"operation": operation},
            ) from exc

    # -- key helpers ------------------------------------------------------

    def _session_key(self, session_id: str) -> str:
        return f"{self.sessions_namespace}:doc:{session_id}"

    def _subject_index_key(self, subject_id: str) -> str:
        return f"{self.sessions_namespace}:by_subject:{subject_id}"

    def _session_expiry_key(self) -> str:
        return f"{self.sessions_namespace}:expiry"

    def _logout_key(self, subject_id: str) -> str:
        return f"{self.logouts_namespace}:doc:{subject_id}"

    def _logout_expiry_key(self) -> str:
        return f"{self.logouts_namespace}:expiry"

    # -- sessions ---------------------------------------------------------

    async def _load_sessions(self, session_ids: Sequence[str]) -> List[Tuple[str, SessionRecord]]:
        if not session_ids:
            return []
        raws = await self.client.mget([self._session_key(sid) for sid in session_ids])
        loaded = []
        for session_id, raw in zip(session_ids, raws):
            if raw is None:
                # Index entry outlived its document
                continue
            loaded.append(
                (session_id, session_from_document(_decode(raw, self._session_key(session_id))))
            )
        return loaded

    async def get_session_document(self, session_id: str) -> Optional[SessionRecord]:
        async with self._guard("get_session_document"):
            raw = await self.client.get(self._session_key(session_id))
        if raw is None:
            return None
        return session_from_document(_decode(raw, self._session_key(session_id)))

    async def find_latest_session(self, subject_id: str) -> Optional[SessionRecord]:
        return latest_by_activity(await self.list_session_documents(subject_id))

    async def list_session_documents(self, subject_id: str) -> List[SessionRecord]:
        async with self._guard("list_session_documents"):
            session_ids = sorted(await self.client.smembers(self._subject_index_key(subject_id)))
            loaded = await self._load_sessions(session_ids)
        return [record for _, record in loaded]

    async def put_session(self, record: SessionRecord) -> None:
        await self.commit_sessions([record])

    async def commit_sessions(self, records: Sequence[SessionRecord]) -> None:
        if not records:
            return
        async with self._guard("commit_sessions"):
            pipe = self.client.pipeline(transaction=True)
            for record in records:
                pipe.set(self._session_key(record.session_id), _encode(session_to_document(record)))
                pipe.sadd(self._subject_index_key(record.subject_id), record.session_id)
                pipe.zadd(
                    self._session_expiry_key(),
                    {record.session_id: record.expires_at.timestamp()},
                )
            await pipe.execute()

    async def delete_sessions(self, session_ids: Iterable[str]) -> int:
        ids = list(session_ids)
        if not ids:
            return 0
        async with self._guard("delete_sessions"):
            raws = await self.client.mget([self._session_key(sid) for sid in ids])
            pipe = self.client.pipeline(transaction=True)
            removed = 0
            for session_id, raw in zip(ids, raws):
                pipe.delete(self._session_key(session_id))
                pipe.zrem(self._session_expiry_key(), session_id)
                if raw is None:
                    continue
                removed += 1
                try:
                    subject_id = _decode(raw, session_id).get("userId")
                except DocumentIntegrityError:
                    subject_id = None
                if subject_id:
                    pipe.srem(self._subject_index_key(str(subject_id)), session_id)
            await pipe.execute()
        return removed

    async def sessions_expiring_after(
        self, moment: datetime
    ) -> List[Tuple[str, SessionRecord]]:
        async with self._guard("sessions_expiring_after"):
            session_ids = await self.client.zrangebyscore(
                self._session_expiry_key(), f"({moment.timestamp()}", "+inf"
            )
            return await self._load_sessions(list(session_ids))

    async def sessions_expired_at_or_before(self, moment: datetime) -> List[str]:
        async with self._guard("sessions_expired_at_or_before"):
            return list(
                await self.client.zrangebyscore(
                    self._session_expiry_key(), "-inf", moment.timestamp()
                )
            )

    # -- logout ledger ----------------------------------------------------

    async def get_logout(self, subject_id: str) -> Optional[LogoutRecord]:
        async with self._guard("get_logout"):
            raw = await self.client.get(self._logout_key(subject_id))
        if raw is None:
            return None
        return logout_from_document(_decode(raw, self._logout_key(subject_id)))

    async def put_logout(self, record: LogoutRecord) -> None:
        async with self._guard("put_logout"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._logout_key(record.subject_id), _encode(logout_to_document(record)))
            pipe.zadd(
                self._logout_expiry_key(),
                {record.subject_id: record.expires_at.timestamp()},
            )
            await pipe.execute()

    async def logouts_expired_at_or_before(self, moment: datetime) -> List[str]:
        async with self._guard("logouts_expired_at_or_before"):
            return list(
                await self.client.zrangebyscore(
                    self._logout_expiry_key(), "-inf", moment.timestamp()
                )
            )

    async def delete_logouts(self, subject_ids: Iterable[str]) -> int:
        ids = list(subject_ids)
        if not ids:
            return 0
        async with self._guard("delete_logouts"):
            pipe = self.client.pipeline(transaction=True)
            for subject_id in ids:
                pipe.delete(self._logout_key(subject_id))
                pipe.zrem(self._logout_expiry_key(), subject_id)
            results = await pipe.execute()
        # Every other result is a DEL count
        return sum(int(count) for count in results[::2])

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
