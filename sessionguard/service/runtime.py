from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.sessions import SessionEngine
from sessionguard.service.verifier import (
    HS256TokenVerifier,
    StaticTokenVerifier,
    TokenVerifier,
)
from sessionguard.service.write_sync import DurableWriteSynchronizer
from sessionguard.storage.activity_cache import ActivityCache
from sessionguard.storage.memory import MemoryDocumentStore
from sessionguard.storage.models import VerifiedIdentity
from sessionguard.storage.redis_store import RedisDocumentStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Composition root: owns one cache, synchronizer, store, and engine per process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = self._build_store()
        self.cache = ActivityCache()
        self.synchronizer = DurableWriteSynchronizer(
            self.store,
            flush_interval=self.settings.write_throttle_seconds,
            timeout=self.settings.store_timeout_seconds,
        )
        self.ledger = RevocationLedger(self.store, ttl=self.settings.logout_ttl)
        self.engine = SessionEngine(
            self.cache,
            self.synchronizer,
            self.store,
            self.ledger,
            inactivity_timeout=self.settings.inactivity_timeout,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.verifier: TokenVerifier = self._build_verifier()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            inactivity_timeout_seconds=self.settings.inactivity_timeout_seconds,
            write_throttle_seconds=self.settings.write_throttle_seconds,
            verification_skipped=self.settings.skip_token_verification,
        )

    def _build_store(self) -> Union[MemoryDocumentStore, RedisDocumentStore]:
        if self.settings.use_memory_store or not self.settings.redis_url:
            return MemoryDocumentStore()
        try:
            store = RedisDocumentStore(
                self.settings.redis_url,
                sessions_namespace=self.settings.sessions_namespace,
                logouts_namespace=self.settings.logouts_namespace,
                socket_timeout=self.settings.store_timeout_seconds,
            )
            store.verify_connection()
            return store
        except Exception as exc:
            if not self.settings.test_mode:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for durable sessions; start Redis or set "
                    "USE_MEMORY_STORE=true / TEST_MODE=true for local fallback."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                message="Running with the in-memory document store under TEST_MODE.",
            )
            return MemoryDocumentStore()

    def _build_verifier(self) -> TokenVerifier:
        if self.settings.skip_token_verification:
            return StaticTokenVerifier(VerifiedIdentity(subject_id=self.settings.mock_subject_id))
        return HS256TokenVerifier(
            self.settings.jwt_secret or "",
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.token_leeway_seconds,
        )

    async def close(self) -> None:
        try:
            await self.engine.aclose()
        finally:
            await self.store.close()


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
