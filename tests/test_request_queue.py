"""Tests for the queue of callers parked during a credential refresh."""

import pytest

from sessionguard.client.request_queue import RequestQueue


class TestRequestQueue:
    def test_flush_resolves_all_in_order_and_empties(self):
        queue = RequestQueue()
        received = []
        for n in range(3):
            queue.enqueue(lambda token, n=n: received.append((n, token)), lambda exc: None)

        assert len(queue) == 3
        assert queue.flush("tok") == 3
        assert received == [(0, "tok"), (1, "tok"), (2, "tok")]
        assert len(queue) == 0

    def test_reject_all_rejects_and_empties(self):
        queue = RequestQueue()
        errors = []
        queue.enqueue(lambda token: None, errors.append)
        queue.enqueue(lambda token: None, errors.append)
        failure = RuntimeError("refresh failed")

        assert queue.reject_all(failure) == 2
        assert errors == [failure, failure]
        assert len(queue) == 0

    def test_failing_waiter_does_not_block_others(self):
        queue = RequestQueue()
        received = []

        def broken(token):
            raise ValueError("boom")

        queue.enqueue(broken, lambda exc: None)
        queue.enqueue(received.append, lambda exc: None)

        queue.flush("tok")
        assert received == ["tok"]

    async def test_wait_future_resolves_on_flush(self):
        queue = RequestQueue()
        future = queue.wait()
        queue.flush("tok")
        assert await future == "tok"

    async def test_wait_future_raises_on_reject(self):
        queue = RequestQueue()
        future = queue.wait()
        queue.reject_all(RuntimeError("nope"))
        with pytest.raises(RuntimeError, match="nope"):
            await future
