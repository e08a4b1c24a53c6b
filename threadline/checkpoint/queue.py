"""
Per-thread concurrency primitives.

- ThreadWriteQueue: background writes, FIFO per thread id, parallel across threads
- ThreadLocks: advisory non-blocking locks for multi-step thread operations
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Set

from ..errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


class ThreadWriteQueue:
    """
    Runs write jobs in the background, one at a time per thread id.

    Each submitted job becomes an asyncio.Task chained behind the previous
    job for the same thread, so writes for one thread land in submission
    order while writes for different threads run concurrently. Submitting
    never awaits I/O.

    Example:
        queue = ThreadWriteQueue()
        task = queue.submit(thread.id, lambda: store.save_thread(thread))
        await queue.flush(thread.id)
    """

    def __init__(self):
        self._tails: Dict[str, asyncio.Task] = {}
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, thread_id: str, job: Callable[[], Awaitable]) -> asyncio.Task:
        """
        Queue a job for a thread.

        Args:
            thread_id: Thread the job writes to
            job: Zero-argument coroutine function

        Returns:
            Task resolving to the job's result
        """
        if self._closed:
            raise RuntimeError("ThreadWriteQueue is closed")

        previous = self._tails.get(thread_id)
        task = asyncio.create_task(self._run_after(previous, job))
        self._tails[thread_id] = task

        tasks = self._tasks.setdefault(thread_id, set())
        tasks.add(task)
        task.add_done_callback(lambda t: self._forget(thread_id, t))
        return task

    @staticmethod
    async def _run_after(previous: Optional[asyncio.Task], job: Callable[[], Awaitable]):
        if previous is not None and not previous.done():
            # Wait for ordering only; the previous job's outcome belongs to its own task
            await asyncio.wait([previous])
        return await job()

    def _forget(self, thread_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(thread_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[thread_id]
        if self._tails.get(thread_id) is task:
            del self._tails[thread_id]

    def pending(self, thread_id: Optional[str] = None) -> int:
        """Number of queued or running jobs"""
        if thread_id is not None:
            return len(self._tasks.get(thread_id, ()))
        return sum(len(tasks) for tasks in self._tasks.values())

    async def flush(self, thread_id: Optional[str] = None) -> None:
        """Wait until every queued job (for one thread, or all) has finished"""
        while True:
            if thread_id is not None:
                tasks: List[asyncio.Task] = list(self._tasks.get(thread_id, ()))
            else:
                tasks = [t for group in self._tasks.values() for t in group]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def close(self) -> None:
        """Stop accepting jobs and drain the ones already queued"""
        self._closed = True
        await self.flush()
        logger.debug("ThreadWriteQueue closed")


class ThreadLocks:
    """
    Advisory per-thread locks that fail instead of waiting.

    A second operation on a thread that is already held raises
    ConcurrentModificationError.
    """

    def __init__(self):
        self._held: Set[str] = set()

    def is_held(self, thread_id: str) -> bool:
        return thread_id in self._held

    @contextmanager
    def hold(self, thread_id: str) -> Iterator[None]:
        if thread_id in self._held:
            raise ConcurrentModificationError(
                f"Another operation is in progress on thread {thread_id}",
                thread_id=thread_id,
            )
        self._held.add(thread_id)
        try:
            yield
        finally:
            self._held.discard(thread_id)
