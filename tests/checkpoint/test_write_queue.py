"""Tests for threadline.checkpoint.queue

Tests cover:
- Per-thread FIFO ordering
- Parallelism across threads
- flush / close / pending
- ThreadLocks fail-fast behaviour
"""

import asyncio

import pytest

from threadline.checkpoint.queue import ThreadLocks, ThreadWriteQueue
from threadline.errors import ConcurrentModificationError


def _make_job(log, label, delay=0.0, fail=False):
    async def job():
        await asyncio.sleep(delay)
        if fail:
            raise RuntimeError(label)
        log.append(label)
        return label
    return job


@pytest.fixture
def queue():
    return ThreadWriteQueue()


class TestThreadWriteQueue:

    async def test_jobs_for_one_thread_run_in_order(self, queue):
        log = []
        queue.submit("t1", _make_job(log, "slow", delay=0.05))
        queue.submit("t1", _make_job(log, "fast"))
        await queue.flush("t1")
        assert log == ["slow", "fast"]

    async def test_threads_run_in_parallel(self, queue):
        log = []
        queue.submit("t1", _make_job(log, "t1-slow", delay=0.05))
        queue.submit("t2", _make_job(log, "t2-fast"))
        await queue.flush()
        assert log == ["t2-fast", "t1-slow"]

    async def test_submit_returns_task_with_result(self, queue):
        task = queue.submit("t1", _make_job([], "done"))
        assert isinstance(task, asyncio.Task)
        assert await task == "done"

    async def test_failed_job_does_not_block_next(self, queue):
        log = []
        failing = queue.submit("t1", _make_job(log, "boom", fail=True))
        queue.submit("t1", _make_job(log, "after"))
        await queue.flush("t1")
        assert log == ["after"]
        with pytest.raises(RuntimeError):
            failing.result()

    async def test_pending_counts(self, queue):
        queue.submit("t1", _make_job([], "a", delay=0.01))
        queue.submit("t1", _make_job([], "b"))
        queue.submit("t2", _make_job([], "c"))
        assert queue.pending("t1") == 2
        assert queue.pending() == 3
        await queue.flush()
        assert queue.pending() == 0

    async def test_flush_waits_for_jobs_added_while_flushing(self, queue):
        log = []

        async def chained():
            queue.submit("t1", _make_job(log, "second"))
            log.append("first")

        queue.submit("t1", chained)
        await queue.flush("t1")
        assert log == ["first", "second"]

    async def test_close_drains_and_rejects_new_jobs(self, queue):
        log = []
        queue.submit("t1", _make_job(log, "queued", delay=0.01))
        await queue.close()
        assert log == ["queued"]
        assert queue.closed
        with pytest.raises(RuntimeError):
            queue.submit("t1", _make_job(log, "late"))


class TestThreadLocks:

    def test_second_hold_on_same_thread_fails(self):
        locks = ThreadLocks()
        with locks.hold("t1"):
            assert locks.is_held("t1")
            with pytest.raises(ConcurrentModificationError):
                with locks.hold("t1"):
                    pass
        assert not locks.is_held("t1")

    def test_different_threads_do_not_conflict(self):
        locks = ThreadLocks()
        with locks.hold("t1"), locks.hold("t2"):
            assert locks.is_held("t1") and locks.is_held("t2")

    def test_released_on_error(self):
        locks = ThreadLocks()
        with pytest.raises(ValueError):
            with locks.hold("t1"):
                raise ValueError("boom")
        assert not locks.is_held("t1")
