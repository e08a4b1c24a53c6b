"""
Threadline Checkpoint Storage - Store contract and in-memory backend

This module provides:
- CheckpointStore: Abstract contract every backend implements
- MemoryCheckpointStore: In-memory store for tests and development

Other backends:
- FileCheckpointStore (file_storage.py): JSON files on local disk
- PostgreSQLCheckpointStore (postgres_storage.py): asyncpg with JSONB
"""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from ..conversation.models import (
    ConversationThread,
    ExecutionCheckpoint,
    ThreadSnapshot,
    utcnow,
)
from ..errors import (
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    ThreadNotFoundError,
    ValidationError,
)
from .models import (
    CheckpointMetadata,
    PendingWrite,
    protected_ids,
    select_for_pruning,
)

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """
    Abstract base class for checkpoint stores.

    A store holds, per thread id: the latest thread record, full execution
    checkpoints, lightweight snapshots, an ordered manifest describing both,
    and pending writes. All methods are coroutines. Loads of missing records
    raise NotFoundError subclasses; failed I/O raises StorageError and leaves
    prior state untouched.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _thread_lock(self, thread_id: str) -> asyncio.Lock:
        """Lock guarding manifest read-modify-write for one thread"""
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    # -- Thread records ------------------------------------------------------

    @abstractmethod
    async def save_thread(self, thread: ConversationThread) -> None:
        """Persist the latest state of a thread, replacing any previous record"""
        pass

    @abstractmethod
    async def load_thread(self, thread_id: str) -> ConversationThread:
        """
        Load the latest thread record.

        Raises:
            ThreadNotFoundError: No record for thread_id
        """
        pass

    @abstractmethod
    async def list_thread_ids(self) -> List[str]:
        """Ids of every thread with a record or a manifest"""
        pass

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        """
        Delete a thread record and everything stored under it.

        Returns:
            True if anything was deleted
        """
        pass

    # -- Checkpoints and snapshots -------------------------------------------

    @abstractmethod
    async def save_checkpoint(
        self,
        thread: ConversationThread,
        checkpoint_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        """
        Save a full execution checkpoint and append its manifest entry.

        Returns:
            The stored metadata, with size_bytes filled in
        """
        pass

    @abstractmethod
    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> ExecutionCheckpoint:
        """
        Raises:
            CheckpointNotFoundError: No checkpoint with that id
        """
        pass

    @abstractmethod
    async def save_snapshot(
        self,
        thread: ConversationThread,
        snapshot_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        """Save a snapshot (no execution state) and append its manifest entry"""
        pass

    @abstractmethod
    async def load_snapshot(self, thread_id: str, snapshot_id: str) -> ThreadSnapshot:
        """
        Raises:
            SnapshotNotFoundError: No snapshot with that id
        """
        pass

    @abstractmethod
    async def get_manifest(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        before=None,
    ) -> List[CheckpointMetadata]:
        """
        Manifest entries, newest first.

        Args:
            thread_id: Thread to query. Unknown threads return []
            limit: Maximum number of entries
            before: Only entries created strictly before this datetime
        """
        pass

    @abstractmethod
    async def delete_checkpoints(self, thread_id: str, checkpoint_ids: Iterable[str]) -> int:
        """Delete checkpoints and their manifest entries. Returns count deleted"""
        pass

    @abstractmethod
    async def _delete_snapshot_records(self, thread_id: str, snapshot_ids: set) -> int:
        """Backend removal of snapshots and their manifest entries. Returns count deleted"""
        pass

    @abstractmethod
    async def relabel_branch(
        self,
        thread_id: str,
        old_name: str,
        new_name: Optional[str],
    ) -> int:
        """
        Rewrite the branch label of matching manifest entries.

        Order and all other fields are preserved. Returns count relabeled.
        """
        pass

    # -- Pending writes ------------------------------------------------------

    @abstractmethod
    async def save_pending_write(self, thread_id: str, write: PendingWrite) -> None:
        """Record a pending write. A write with the same call_id is replaced"""
        pass

    @abstractmethod
    async def load_pending_writes(self, thread_id: str) -> List[PendingWrite]:
        """Pending writes in the order they were first recorded"""
        pass

    @abstractmethod
    async def delete_pending_writes(
        self,
        thread_id: str,
        call_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Delete the given pending writes, or all of them when call_ids is None"""
        pass

    # -- Shared behaviour ----------------------------------------------------

    async def close(self) -> None:
        """Release backend resources"""
        pass

    async def get_protected_ids(self, thread_id: str) -> set:
        """Ids retention must skip: branch heads, current checkpoint, fork points"""
        manifest = await self.get_manifest(thread_id)
        try:
            thread = await self.load_thread(thread_id)
        except ThreadNotFoundError:
            return protected_ids(manifest)
        return protected_ids(manifest, thread.branches, thread.current_checkpoint_id)

    async def delete_snapshots(self, thread_id: str, snapshot_ids: Iterable[str]) -> int:
        """
        Delete snapshots and their manifest entries.

        The active branch head and the current checkpoint of the thread are
        skipped with a warning.

        Returns:
            Number of snapshots deleted
        """
        ids = set(snapshot_ids)
        if not ids:
            return 0
        try:
            thread = await self.load_thread(thread_id)
        except ThreadNotFoundError:
            thread = None
        if thread is not None:
            active = {thread.branches.get(thread.active_branch), thread.current_checkpoint_id}
            skipped = ids & active
            if skipped:
                logger.warning(
                    f"Not deleting active head {sorted(skipped)} of thread {thread_id} "
                    f"(branch '{thread.active_branch}')"
                )
                ids -= skipped
        if not ids:
            return 0
        return await self._delete_snapshot_records(thread_id, ids)

    async def prune_snapshots(self, thread_id: str, keep_count: int) -> int:
        """
        Keep the newest keep_count snapshots of a thread.

        Branch heads and fork points are skipped, never forced. Running it
        twice in a row deletes nothing the second time.
        """
        snapshots = [m for m in await self.get_manifest(thread_id) if m.is_snapshot]
        protected = await self.get_protected_ids(thread_id)
        doomed = select_for_pruning(snapshots, keep_count, protected)
        if not doomed:
            return 0
        deleted = await self.delete_snapshots(thread_id, doomed)
        logger.debug(f"Pruned {deleted} snapshots from thread {thread_id}")
        return deleted

    async def delete_inactive_threads(
        self,
        inactivity: timedelta,
        dry_run: bool = False,
    ) -> List[str]:
        """
        Delete threads whose last activity is older than the given window.

        Args:
            inactivity: How long a thread may sit idle
            dry_run: Only report the ids that would be deleted

        Returns:
            Ids of deleted (or, for a dry run, deletable) threads
        """
        cutoff = utcnow() - inactivity
        stale = []
        for thread_id in await self.list_thread_ids():
            try:
                thread = await self.load_thread(thread_id)
            except ThreadNotFoundError:
                continue
            if thread.last_activity < cutoff:
                stale.append(thread_id)

        if not dry_run:
            for thread_id in stale:
                await self.delete_thread(thread_id)
            if stale:
                logger.info(f"Deleted {len(stale)} inactive threads")
        return stale


# ---------------------------------------------------------------------------
# Helpers shared by the concrete backends
# ---------------------------------------------------------------------------

def filter_manifest(
    oldest_first: List[CheckpointMetadata],
    limit: Optional[int] = None,
    before=None,
) -> List[CheckpointMetadata]:
    """Reverse an on-disk manifest to newest first and apply query bounds"""
    entries = [m for m in reversed(oldest_first) if before is None or m.created_at < before]
    if limit is not None:
        entries = entries[:limit]
    return entries


def has_entry(manifest: List[CheckpointMetadata], checkpoint_id: str, is_snapshot: bool) -> bool:
    return any(
        m.checkpoint_id == checkpoint_id and m.is_snapshot == is_snapshot
        for m in manifest
    )


def stamp_metadata(
    metadata: CheckpointMetadata,
    checkpoint_id: str,
    payload: str,
    is_snapshot: bool,
    is_incomplete: bool,
) -> CheckpointMetadata:
    """Copy of caller metadata with the fields the store owns filled in"""
    return dataclasses.replace(
        metadata,
        checkpoint_id=checkpoint_id,
        size_bytes=len(payload.encode("utf-8")),
        is_snapshot=is_snapshot,
        is_incomplete=is_incomplete,
    )


def checkpoint_payload(thread: ConversationThread) -> Tuple[str, bool]:
    """Serialized checkpoint and its incomplete flag"""
    checkpoint = thread.to_execution_checkpoint()
    return checkpoint.to_json(), checkpoint.is_incomplete


class MemoryCheckpointStore(CheckpointStore):
    """
    In-memory checkpoint store for testing and development.

    Records are kept as serialized JSON so every load returns an
    independent copy. All data is lost when the process exits.
    """

    def __init__(self):
        super().__init__()
        self._threads: Dict[str, str] = {}
        self._checkpoints: Dict[Tuple[str, str], str] = {}
        self._snapshots: Dict[Tuple[str, str], str] = {}
        self._manifests: Dict[str, List[CheckpointMetadata]] = {}
        self._pending: Dict[str, Dict[str, PendingWrite]] = {}

    async def save_thread(self, thread: ConversationThread) -> None:
        self._threads[thread.id] = thread.to_execution_checkpoint().to_json()

    async def load_thread(self, thread_id: str) -> ConversationThread:
        data = self._threads.get(thread_id)
        if data is None:
            raise ThreadNotFoundError(f"Thread {thread_id} not found", thread_id=thread_id)
        return ConversationThread.from_execution_checkpoint(ExecutionCheckpoint.from_json(data))

    async def list_thread_ids(self) -> List[str]:
        return sorted(set(self._threads) | set(self._manifests))

    async def delete_thread(self, thread_id: str) -> bool:
        found = thread_id in self._threads or thread_id in self._manifests
        self._threads.pop(thread_id, None)
        self._manifests.pop(thread_id, None)
        self._pending.pop(thread_id, None)
        for key in [k for k in self._checkpoints if k[0] == thread_id]:
            del self._checkpoints[key]
        for key in [k for k in self._snapshots if k[0] == thread_id]:
            del self._snapshots[key]
        return found

    async def save_checkpoint(
        self,
        thread: ConversationThread,
        checkpoint_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        payload, incomplete = checkpoint_payload(thread)
        manifest = self._manifests.setdefault(thread.id, [])
        if has_entry(manifest, checkpoint_id, is_snapshot=False):
            raise ValidationError(f"Checkpoint {checkpoint_id} already exists in thread {thread.id}")

        stored = stamp_metadata(metadata, checkpoint_id, payload, False, incomplete)
        self._checkpoints[(thread.id, checkpoint_id)] = payload
        manifest.append(stored)
        return dataclasses.replace(stored)

    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> ExecutionCheckpoint:
        data = self._checkpoints.get((thread_id, checkpoint_id))
        if data is None:
            raise CheckpointNotFoundError(
                f"Checkpoint {checkpoint_id} not found in thread {thread_id}",
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
            )
        return ExecutionCheckpoint.from_json(data)

    async def save_snapshot(
        self,
        thread: ConversationThread,
        snapshot_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        payload = thread.to_snapshot().to_json()
        manifest = self._manifests.setdefault(thread.id, [])
        if has_entry(manifest, snapshot_id, is_snapshot=True):
            raise ValidationError(f"Snapshot {snapshot_id} already exists in thread {thread.id}")

        stored = stamp_metadata(metadata, snapshot_id, payload, True, False)
        self._snapshots[(thread.id, snapshot_id)] = payload
        manifest.append(stored)
        return dataclasses.replace(stored)

    async def load_snapshot(self, thread_id: str, snapshot_id: str) -> ThreadSnapshot:
        data = self._snapshots.get((thread_id, snapshot_id))
        if data is None:
            raise SnapshotNotFoundError(
                f"Snapshot {snapshot_id} not found in thread {thread_id}",
                thread_id=thread_id,
                checkpoint_id=snapshot_id,
            )
        return ThreadSnapshot.from_json(data)

    async def get_manifest(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        before=None,
    ) -> List[CheckpointMetadata]:
        entries = filter_manifest(self._manifests.get(thread_id, []), limit, before)
        return [dataclasses.replace(m) for m in entries]

    async def delete_checkpoints(self, thread_id: str, checkpoint_ids: Iterable[str]) -> int:
        return self._delete_entries(thread_id, set(checkpoint_ids), is_snapshot=False)

    async def _delete_snapshot_records(self, thread_id: str, snapshot_ids: set) -> int:
        return self._delete_entries(thread_id, snapshot_ids, is_snapshot=True)

    def _delete_entries(self, thread_id: str, ids: set, is_snapshot: bool) -> int:
        payloads = self._snapshots if is_snapshot else self._checkpoints
        manifest = self._manifests.get(thread_id, [])
        kept = [
            m for m in manifest
            if not (m.is_snapshot == is_snapshot and m.checkpoint_id in ids)
        ]
        deleted = len(manifest) - len(kept)
        if thread_id in self._manifests:
            self._manifests[thread_id] = kept
        for record_id in ids:
            payloads.pop((thread_id, record_id), None)
        return deleted

    async def relabel_branch(
        self,
        thread_id: str,
        old_name: str,
        new_name: Optional[str],
    ) -> int:
        count = 0
        for entry in self._manifests.get(thread_id, []):
            if entry.branch_name == old_name:
                entry.branch_name = new_name
                count += 1
        return count

    async def save_pending_write(self, thread_id: str, write: PendingWrite) -> None:
        self._pending.setdefault(thread_id, {})[write.call_id] = PendingWrite.from_dict(write.to_dict())

    async def load_pending_writes(self, thread_id: str) -> List[PendingWrite]:
        return [
            PendingWrite.from_dict(w.to_dict())
            for w in self._pending.get(thread_id, {}).values()
        ]

    async def delete_pending_writes(
        self,
        thread_id: str,
        call_ids: Optional[Iterable[str]] = None,
    ) -> int:
        writes = self._pending.get(thread_id, {})
        if call_ids is None:
            count = len(writes)
            self._pending.pop(thread_id, None)
            return count
        count = 0
        for call_id in call_ids:
            if writes.pop(call_id, None) is not None:
                count += 1
        return count
