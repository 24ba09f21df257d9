"""Tests for session validation, creation, activity, and logout."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from sessionguard.service.errors import ExpiredSessionError, RevokedError
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import SessionRecord, SessionStatus


class TestValidate:
    """validate() against cache and durable store."""

    async def test_unknown_subject_is_not_found(self, engine):
        assert await engine.validate("alice") is SessionStatus.NOT_FOUND

    async def test_created_session_is_valid(self, engine):
        await engine.create_session("alice")
        assert await engine.validate("alice") is SessionStatus.VALID
        assert await engine.is_session_valid("alice")

    async def test_durable_only_session_backfills_cache(self, engine, store, clock):
        """A session the cache has never seen (e.g. after restart) is loaded on demand."""
        record = SessionRecord.new("alice", timedelta(seconds=60), now=clock())
        await store.put_session(record)
        assert engine.cache.get("alice") is None

        assert await engine.validate("alice") is SessionStatus.VALID
        assert engine.cache.get("alice") == record

    async def test_inactivity_past_timeout_is_expired(self, engine, clock):
        await engine.create_session("alice")
        clock.advance(milliseconds=61000)

        assert await engine.validate("alice") is SessionStatus.EXPIRED
        with pytest.raises(ExpiredSessionError):
            await engine.ensure_session("alice")

    async def test_exactly_at_expiry_is_still_valid(self, engine, clock):
        await engine.create_session("alice")
        clock.advance(seconds=60)
        assert await engine.validate("alice") is SessionStatus.VALID

    async def test_cache_subject_mismatch_is_integrity_error(self, engine, clock):
        foreign = SessionRecord.new("bob", timedelta(seconds=60), now=clock())
        engine.cache.set("alice", foreign)

        assert await engine.validate("alice") is SessionStatus.DATA_INTEGRITY_ERROR
        assert engine.cache.get("alice") is None

    async def test_store_timeout_surfaces_as_unavailable(self, engine, store):
        async def hang(subject_id):
            await asyncio.sleep(1)

        store.find_latest_session = hang
        engine.store_timeout = 0.01

        with pytest.raises(StoreUnavailableError):
            await engine.validate("alice")

    async def test_valid_cache_hit_never_reads_store(self, engine, store):
        await engine.create_session("alice")
        store.find_latest_session = AsyncMock(side_effect=AssertionError("store read"))

        assert await engine.validate("alice") is SessionStatus.VALID


class TestEnsureSession:
    """ensure_session() create-once semantics."""

    async def test_first_contact_creates_session(self, engine, store):
        assert await engine.ensure_session("alice") is True
        assert len(await store.list_session_documents("alice")) == 1

    async def test_second_call_is_noop(self, engine, store):
        await engine.ensure_session("alice")
        first = engine.cache.get("alice")

        assert await engine.ensure_session("alice") is False
        assert engine.cache.get("alice") == first
        assert len(await store.list_session_documents("alice")) == 1

    async def test_concurrent_first_contact_creates_one_session(self, engine, store):
        results = await asyncio.gather(*(engine.ensure_session("alice") for _ in range(10)))

        assert results.count(True) == 1
        assert len(await store.list_session_documents("alice")) == 1

    async def test_pre_logout_token_cannot_open_session(self, engine, clock):
        issued_at = clock()
        clock.advance(seconds=5)
        await engine.clear_session("alice")

        with pytest.raises(RevokedError):
            await engine.ensure_session("alice", issued_at)

    async def test_post_logout_token_opens_new_session(self, engine, store, clock):
        await engine.ensure_session("alice")
        old_id = engine.cache.get("alice").session_id
        await engine.clear_session("alice")
        clock.advance(seconds=1)

        assert await engine.ensure_session("alice", clock()) is True
        new_id = engine.cache.get("alice").session_id
        assert new_id != old_id
        assert [r.session_id for r in await store.list_session_documents("alice")] == [new_id]

    async def test_failed_durable_write_rolls_back_cache(self, engine, store):
        store.put_session = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(StoreUnavailableError):
            await engine.ensure_session("alice")
        assert engine.cache.get("alice") is None


class TestUpdateLastActivity:
    """Sliding expiry and write-back."""

    async def test_activity_extends_expiry(self, engine, clock):
        created = await engine.create_session("alice")
        clock.advance(seconds=30)

        updated = await engine.update_last_activity("alice")

        assert updated.last_activity_at == clock()
        assert updated.expires_at == updated.last_activity_at + timedelta(seconds=60)
        assert updated.created_at == created.created_at
        assert updated.session_id == created.session_id

    async def test_activity_is_queued_not_written(self, engine, store, clock):
        created = await engine.create_session("alice")
        clock.advance(seconds=30)
        await engine.update_last_activity("alice")

        stored = await store.get_session_document(created.session_id)
        assert stored.last_activity_at == created.last_activity_at
        assert engine.synchronizer.pending_count == 1

        await engine.synchronizer.flush()
        stored = await store.get_session_document(created.session_id)
        assert stored.last_activity_at == clock()

    async def test_no_update_for_expired_session(self, engine, clock):
        await engine.create_session("alice")
        clock.advance(seconds=120)

        assert await engine.update_last_activity("alice") is None
        assert engine.synchronizer.pending_count == 0

    async def test_no_update_without_session(self, engine):
        assert await engine.update_last_activity("nobody") is None


class TestClearSession:
    """Logout behavior."""

    async def test_clear_then_validate_is_not_found(self, engine):
        await engine.ensure_session("alice")
        await engine.clear_session("alice")

        assert await engine.validate("alice") is SessionStatus.NOT_FOUND

    async def test_clear_is_idempotent(self, engine):
        await engine.clear_session("alice")
        await engine.clear_session("alice")
        assert await engine.validate("alice") is SessionStatus.NOT_FOUND

    async def test_clear_drops_pending_write(self, engine, store, clock):
        await engine.create_session("alice")
        clock.advance(seconds=10)
        await engine.update_last_activity("alice")

        await engine.clear_session("alice")
        await engine.synchronizer.flush()

        assert await store.list_session_documents("alice") == []

    async def test_clear_records_logout(self, engine, clock):
        await engine.clear_session("alice")
        record = await engine.ledger.get("alice")
        assert record.logged_out_at == clock()

    async def test_ledger_failure_still_deletes_sessions(self, engine, store):
        await engine.ensure_session("alice")
        store.put_logout = AsyncMock(side_effect=StoreUnavailableError("down"))

        await engine.clear_session("alice")

        assert await store.list_session_documents("alice") == []

    async def test_local_revocation_mark(self, engine, clock):
        issued_at = clock()
        clock.advance(seconds=1)
        await engine.clear_session("alice")

        assert engine.revoked_locally("alice", issued_at)
        assert not engine.revoked_locally("alice", clock() + timedelta(seconds=1))
        assert not engine.revoked_locally("bob", issued_at)

    async def test_logout_during_slow_activity_read_stays_logged_out(self, engine, store, clock):
        """An activity update stuck on a store read must not resurrect the session."""
        await engine.create_session("alice")
        clock.advance(seconds=1)
        engine.cache.clear("alice")

        original_find = store.find_latest_session

        async def slow_find(subject_id):
            await asyncio.sleep(0.05)
            return await original_find(subject_id)

        store.find_latest_session = slow_find

        activity = asyncio.create_task(engine.update_last_activity("alice"))
        await asyncio.sleep(0.01)
        await engine.clear_session("alice")

        assert await activity is None
        assert engine.cache.get("alice") is None
        assert engine.synchronizer.pending_count == 0
        await engine.synchronizer.flush()

        assert await engine.validate("alice") is SessionStatus.NOT_FOUND
        assert await store.list_session_documents("alice") == []

    async def test_logout_in_same_tick_as_slow_read_stays_logged_out(self, engine, store):
        await engine.create_session("alice")
        engine.cache.clear("alice")
        original_find = store.find_latest_session

        async def slow_find(subject_id):
            await asyncio.sleep(0.05)
            return await original_find(subject_id)

        store.find_latest_session = slow_find

        pending = asyncio.create_task(engine.validate("alice"))
        await asyncio.sleep(0.01)
        await engine.clear_session("alice")

        assert await pending is SessionStatus.NOT_FOUND
        assert engine.cache.get("alice") is None

    async def test_logout_waits_for_in_flight_flush(self, engine, store, clock):
        await engine.create_session("alice")
        clock.advance(seconds=10)
        await engine.update_last_activity("alice")

        original_commit = store.commit_sessions
        commit_started = asyncio.Event()

        async def slow_commit(records):
            commit_started.set()
            await asyncio.sleep(0.05)
            await original_commit(records)

        store.commit_sessions = slow_commit

        flush = asyncio.create_task(engine.synchronizer.flush())
        await commit_started.wait()
        clock.advance(seconds=1)
        await engine.clear_session("alice")
        await flush

        assert await store.list_session_documents("alice") == []
        assert await engine.validate("alice") is SessionStatus.NOT_FOUND

    async def test_stale_durable_record_is_not_revived(self, engine, store, clock):
        """A pre-logout document whose delete never landed reads as absent."""
        record = SessionRecord.new("alice", timedelta(seconds=60), now=clock())
        clock.advance(seconds=1)
        await engine.clear_session("alice")
        await store.put_session(record)

        assert await engine.validate("alice") is SessionStatus.NOT_FOUND
        assert engine.cache.get("alice") is None

    async def test_session_exists_after_expiry(self, engine, clock):
        await engine.create_session("alice")
        clock.advance(seconds=120)
        assert await engine.session_exists("alice")
        await engine.clear_session("alice")
        assert not await engine.session_exists("alice")


class TestWarmupAndMaintenance:
    """Startup warmup and periodic maintenance."""

    async def test_warmup_loads_live_and_deletes_expired(self, engine, store, clock):
        live = SessionRecord.new("alice", timedelta(seconds=60), now=clock())
        stale = SessionRecord.new("bob", timedelta(seconds=60), now=clock() - timedelta(hours=1))
        await store.commit_sessions([live, stale])

        result = await engine.warmup_cache()

        assert (result.loaded, result.deleted) == (1, 1)
        assert engine.cache.get("alice") == live
        assert engine.cache.get("bob") is None
        assert await store.get_session_document(stale.session_id) is None

    async def test_warmup_keeps_most_recent_per_subject(self, engine, store, clock):
        older = SessionRecord.new("alice", timedelta(seconds=60), now=clock() - timedelta(seconds=10))
        newer = SessionRecord.new("alice", timedelta(seconds=60), now=clock())
        await store.commit_sessions([newer, older])

        await engine.warmup_cache()

        assert engine.cache.get("alice") == newer

    async def test_warmup_skips_key_mismatch(self, engine, store, clock):
        record = SessionRecord.new("alice", timedelta(seconds=60), now=clock())
        await store.put_session(record)
        store.sessions["other-key"] = store.sessions.pop(record.session_id)

        result = await engine.warmup_cache()

        assert result.skipped == 1
        assert engine.cache.get("alice") is None

    async def test_maintenance_sweeps_cache_and_ledger(self, engine, clock):
        await engine.create_session("alice")
        await engine.clear_session("bob")
        clock.advance(hours=2)

        result = await engine.run_maintenance()

        assert result == {"cache_swept": 1, "ledger_pruned": 1, "logout_marks_pruned": 1}
        assert engine._logout_marks == {}
        assert not engine.revoked_locally("bob", clock() - timedelta(hours=3))

    async def test_maintenance_keeps_recent_logout_marks(self, engine, clock):
        issued_at = clock()
        clock.advance(seconds=1)
        await engine.clear_session("bob")
        clock.advance(minutes=30)

        result = await engine.run_maintenance()

        assert result["logout_marks_pruned"] == 0
        assert engine.revoked_locally("bob", issued_at)
