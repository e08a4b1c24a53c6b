"""
Threadline Durable Execution - Automatic checkpointing and resume

DurableExecution decides when to checkpoint (frequency), what to keep
(retention), resumes interrupted threads, and bridges sub-checkpoint
results through pending writes. Saves run in the background on a
per-thread write queue and never raise into the execution path.
"""

import asyncio
import copy
import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union

from ..checkpoint.models import (
    CheckpointMetadata,
    CheckpointSource,
    PendingWrite,
    select_for_pruning,
)
from ..checkpoint.queue import ThreadWriteQueue
from ..checkpoint.storage import CheckpointStore
from ..conversation.models import ConversationThread, Message, utcnow
from ..errors import ValidationError
from .models import CheckpointFrequency, DurableExecutionConfig, RetentionKind

logger = logging.getLogger(__name__)


@dataclass
class _CheckpointJob:
    """One checkpoint save, possibly carried to the next boundary for a retry"""
    thread: ConversationThread
    metadata: CheckpointMetadata
    seq: int = 0
    attempts: int = 0
    checkpoint_saved: bool = False


def captured_call_ids(thread: ConversationThread) -> Set[str]:
    """Call ids whose results a checkpoint of this thread already holds"""
    call_ids = {m.tool_call_id for m in thread.messages if m.tool_call_id}
    if thread.execution_state is not None:
        call_ids.update(thread.execution_state.pending_results.keys())
    return call_ids


class DurableExecution:
    """
    Durable execution engine.

    Example usage:
        durable = DurableExecution(store, DurableExecutionConfig(
            frequency=CheckpointFrequency.PER_ITERATION,
            retention=RetentionPolicy.last_n(10),
        ))

        # In the agent loop
        if durable.should_checkpoint(iteration, turn_complete):
            durable.save_checkpoint(thread)

        # After a crash
        thread = await durable.resume_from_latest(thread_id)
    """

    def __init__(
        self,
        store: CheckpointStore,
        config: Optional[DurableExecutionConfig] = None,
        queue: Optional[ThreadWriteQueue] = None,
    ):
        self.store = store
        self.config = config or DurableExecutionConfig()
        self._queue = queue or ThreadWriteQueue()
        self._owns_queue = queue is None
        self._failed: Dict[str, List[_CheckpointJob]] = {}
        self._landed: Dict[str, int] = {}
        self._seq = itertools.count(1)

    # =========================================================================
    # Checkpointing
    # =========================================================================

    def should_checkpoint(self, iteration: int, turn_complete: bool) -> bool:
        """Whether the configured frequency asks for a checkpoint at this boundary"""
        if not self.config.enabled:
            return False
        frequency = self.config.frequency
        if frequency == CheckpointFrequency.PER_ITERATION:
            return True
        if frequency == CheckpointFrequency.PER_TURN:
            return turn_complete
        return False

    def save_checkpoint(
        self,
        thread: ConversationThread,
        source: CheckpointSource = CheckpointSource.LOOP,
        step: Optional[int] = None,
    ) -> Optional[asyncio.Task]:
        """
        Checkpoint a thread in the background.

        The thread is copied before this returns, so the caller may keep
        mutating it. The new id becomes the thread's current checkpoint and
        the head of its active branch.

        Returns:
            Task resolving to the stored CheckpointMetadata, or to None if
            the save failed. None when checkpointing is disabled.
        """
        if not self.config.enabled:
            return None

        checkpoint_id = str(uuid.uuid4())
        parent_id = thread.current_checkpoint_id
        thread.current_checkpoint_id = checkpoint_id
        thread.branches[thread.active_branch] = checkpoint_id

        if step is None:
            step = thread.execution_state.iteration if thread.execution_state else -1

        job = _CheckpointJob(
            thread=copy.deepcopy(thread),
            seq=next(self._seq),
            metadata=CheckpointMetadata(
                checkpoint_id=checkpoint_id,
                source=source,
                step=step,
                message_index=thread.message_count,
                branch_name=thread.active_branch,
                parent_checkpoint_id=parent_id,
            ),
        )
        logger.debug(f"Queued checkpoint {checkpoint_id} for thread {thread.id}")
        return self._queue.submit(thread.id, lambda: self._run_checkpoint(job))

    def checkpoint_if_needed(
        self,
        thread: ConversationThread,
        iteration: int,
        turn_complete: bool,
    ) -> Optional[asyncio.Task]:
        """save_checkpoint() when should_checkpoint() says so"""
        if not self.should_checkpoint(iteration, turn_complete):
            return None
        return self.save_checkpoint(thread, step=iteration)

    async def _run_checkpoint(self, job: _CheckpointJob) -> Optional[CheckpointMetadata]:
        thread_id = job.thread.id

        # Retries are taken when the job runs, so they land ahead of it
        for failed in self._failed.pop(thread_id, []):
            if failed.seq < self._landed.get(thread_id, 0):
                logger.warning(
                    f"Dropping checkpoint {failed.metadata.checkpoint_id} for thread {thread_id}: "
                    f"a newer checkpoint already landed"
                )
                continue
            try:
                await self._persist(failed)
            except Exception as e:
                logger.warning(
                    f"Dropping checkpoint {failed.metadata.checkpoint_id} for thread {thread_id} "
                    f"after {failed.attempts} attempts: {e}"
                )
                continue
            logger.info(f"Retried checkpoint {failed.metadata.checkpoint_id} for thread {thread_id}")
            await self._after_save(failed.thread)

        try:
            stored = await self._persist(job)
        except Exception as e:
            logger.error(f"Failed to save checkpoint {job.metadata.checkpoint_id} for thread {thread_id}: {e}")
            if self.config.retry_failed_saves:
                self._failed.setdefault(thread_id, []).append(job)
            else:
                logger.warning(f"Dropping checkpoint {job.metadata.checkpoint_id} for thread {thread_id}")
            return None

        await self._after_save(job.thread)
        return stored

    async def _persist(self, job: _CheckpointJob) -> CheckpointMetadata:
        job.attempts += 1
        if not job.checkpoint_saved:
            job.metadata = await self.store.save_checkpoint(
                job.thread, job.metadata.checkpoint_id, job.metadata
            )
            job.checkpoint_saved = True
        await self.store.save_thread(job.thread)
        self._landed[job.thread.id] = max(self._landed.get(job.thread.id, 0), job.seq)
        logger.debug(f"Saved checkpoint {job.metadata.checkpoint_id} for thread {job.thread.id}")
        return job.metadata

    async def _after_save(self, thread: ConversationThread) -> None:
        """Housekeeping after a successful checkpoint; failures are logged only"""
        call_ids = captured_call_ids(thread)
        if call_ids:
            try:
                await self.store.delete_pending_writes(thread.id, call_ids)
            except Exception as e:
                logger.warning(f"Failed to clear pending writes for thread {thread.id}: {e}")

        if self.config.prune_after_save:
            try:
                await self._prune(thread.id)
            except Exception as e:
                logger.warning(f"Skipped pruning for thread {thread.id}: {e}")

    # =========================================================================
    # Retention
    # =========================================================================

    async def prune_checkpoints(self, thread_id: str, keep_count: Optional[int] = None) -> int:
        """
        Apply retention to a thread's checkpoints.

        Args:
            thread_id: Thread to prune
            keep_count: Override the configured policy with a count

        Returns:
            Number of checkpoints deleted. Branch heads, the current
            checkpoint and fork points are skipped, never forced.
        """
        await self._queue.flush(thread_id)
        return await self._prune(thread_id, keep_count)

    async def _prune(self, thread_id: str, keep_count: Optional[int] = None) -> int:
        policy = self.config.retention
        if keep_count is None and policy.kind == RetentionKind.FULL_HISTORY:
            return 0

        checkpoints = [m for m in await self.store.get_manifest(thread_id) if not m.is_snapshot]
        protected = await self.store.get_protected_ids(thread_id)

        if keep_count is not None:
            doomed = select_for_pruning(checkpoints, keep_count, protected)
        elif policy.kind == RetentionKind.TIME_BASED:
            cutoff = utcnow() - policy.window
            # The newest checkpoint always survives
            doomed = [
                m.checkpoint_id for m in checkpoints[1:]
                if m.created_at < cutoff and m.checkpoint_id not in protected
            ]
        else:
            doomed = select_for_pruning(checkpoints, policy.keep_count, protected)

        if not doomed:
            return 0
        deleted = await self.store.delete_checkpoints(thread_id, doomed)
        logger.debug(f"Pruned {deleted} checkpoints from thread {thread_id}")
        return deleted

    # =========================================================================
    # Resume
    # =========================================================================

    async def get_latest_checkpoint(self, thread_id: str) -> Optional[CheckpointMetadata]:
        """Manifest entry of the newest checkpoint, None if there is none"""
        for entry in await self.store.get_manifest(thread_id):
            if not entry.is_snapshot:
                return entry
        return None

    async def resume_from_latest(
        self,
        thread_id: str,
        new_input: Union[Message, str, None] = None,
    ) -> Optional[ConversationThread]:
        """
        Load the newest checkpoint of a thread.

        Args:
            thread_id: Thread to resume
            new_input: Message to append when the checkpoint is complete

        Returns:
            The restored thread (execution state included), or None when
            the thread has no checkpoint

        Raises:
            ValidationError: The checkpoint is incomplete and new_input was given
        """
        await self._queue.flush(thread_id)

        latest = await self.get_latest_checkpoint(thread_id)
        if latest is None:
            return None

        checkpoint = await self.store.load_checkpoint(thread_id, latest.checkpoint_id)
        if checkpoint.is_incomplete and new_input is not None:
            raise ValidationError(
                f"Thread {thread_id} has an incomplete execution at checkpoint "
                f"{latest.checkpoint_id}; resume it before sending new input"
            )

        thread = ConversationThread.from_execution_checkpoint(checkpoint)
        if new_input is not None:
            if isinstance(new_input, str):
                new_input = Message(role="user", content=new_input)
            thread.add_message(new_input)

        logger.info(
            f"Resumed thread {thread_id} from checkpoint {latest.checkpoint_id}"
            f"{' (incomplete)' if checkpoint.is_incomplete else ''}"
        )
        return thread

    # =========================================================================
    # Pending writes
    # =========================================================================

    def save_pending_write(
        self,
        thread_id: str,
        call_id: str,
        result: Any,
        iteration: Optional[int] = None,
    ) -> asyncio.Task:
        """Record one sub-step result in the background"""
        write = PendingWrite(call_id=call_id, result=copy.deepcopy(result), iteration=iteration)

        async def _save() -> bool:
            try:
                await self.store.save_pending_write(thread_id, write)
                return True
            except Exception as e:
                logger.error(f"Failed to save pending write {call_id} for thread {thread_id}: {e}")
                return False

        return self._queue.submit(thread_id, _save)

    async def load_pending_writes(self, thread_id: str) -> List[PendingWrite]:
        await self._queue.flush(thread_id)
        return await self.store.load_pending_writes(thread_id)

    async def delete_pending_writes(self, thread_id: str) -> int:
        await self._queue.flush(thread_id)
        return await self.store.delete_pending_writes(thread_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def failed_saves(self, thread_id: str) -> int:
        """Checkpoints waiting for their retry at the next boundary"""
        return len(self._failed.get(thread_id, ()))

    async def flush(self, thread_id: Optional[str] = None) -> None:
        """Wait for queued writes to finish"""
        await self._queue.flush(thread_id)

    async def close(self) -> None:
        """Drain queued writes and stop accepting new ones"""
        if self._owns_queue:
            await self._queue.close()
        else:
            await self._queue.flush()
        for thread_id, jobs in self._failed.items():
            for job in jobs:
                logger.warning(
                    f"Dropping checkpoint {job.metadata.checkpoint_id} for thread {thread_id} on close"
                )
        self._failed.clear()
