import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("WARMUP_ON_STARTUP", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.service.revocation import RevocationLedger  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.sessions import SessionEngine  # noqa: E402
from sessionguard.service.write_sync import DurableWriteSynchronizer  # noqa: E402
from sessionguard.storage.activity_cache import ActivityCache  # noqa: E402
from sessionguard.storage.memory import MemoryDocumentStore  # noqa: E402


class FakeClock:
    """Mutable clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def engine(store, clock):
    """Engine with a 60 second inactivity timeout on an in-memory store."""
    cache = ActivityCache(clock=clock)
    synchronizer = DurableWriteSynchronizer(store, flush_interval=60.0)
    ledger = RevocationLedger(store, ttl=timedelta(hours=1), clock=clock)
    return SessionEngine(
        cache,
        synchronizer,
        store,
        ledger,
        inactivity_timeout=timedelta(seconds=60),
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
