"""
Threadline Branching - Fork, copy and navigate conversation timelines

Branching works on snapshots. A fork appends a new snapshot under the same
thread id and moves the thread record to the new branch; a copy seeds a
brand new thread. Neither touches the source records.
"""

import asyncio
import copy
import logging
import uuid
from typing import Dict, List, Optional, Set, Tuple

from ..checkpoint.models import (
    BranchInfo,
    BranchTree,
    CheckpointMetadata,
    CheckpointSource,
    oldest_first,
)
from ..checkpoint.queue import ThreadLocks
from ..checkpoint.storage import CheckpointStore
from ..conversation.models import ConversationThread
from ..errors import (
    BranchingDisabledError,
    BranchNotFoundError,
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    ThreadNotFoundError,
    ValidationError,
)
from .models import (
    BranchCreatedEvent,
    BranchDeletedEvent,
    BranchingConfig,
    BranchRenamedEvent,
    BranchSwitchedEvent,
    CheckpointObserver,
    ThreadCopiedEvent,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


class Branching:
    """
    Branching engine.

    Shares its store with DurableExecution. Every operation holds an
    advisory lock on the thread it touches; a second operation on the same
    thread fails fast with ConcurrentModificationError.

    Example usage:
        branching = Branching(store)

        # Make the current point forkable
        await branching.create_snapshot(thread)

        # Try an alternative answer
        forked, event = await branching.fork_from_checkpoint(
            thread.id, thread.current_checkpoint_id, "shorter-answer"
        )

        # Go back
        thread, _ = await branching.switch_branch(thread.id, "main")
    """

    def __init__(
        self,
        store: CheckpointStore,
        config: Optional[BranchingConfig] = None,
        locks: Optional[ThreadLocks] = None,
    ):
        self.store = store
        self.config = config or BranchingConfig()
        self._locks = locks or ThreadLocks()
        self._observers: List[CheckpointObserver] = []

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    def _ensure_enabled(self) -> None:
        if not self.config.enabled:
            raise BranchingDisabledError("Branching is not enabled")

    # =========================================================================
    # Observers
    # =========================================================================

    def register_observer(self, observer: CheckpointObserver) -> None:
        self._observers.append(observer)

    def unregister_observer(self, observer: CheckpointObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _notify(self, hook: str, event) -> None:
        for observer in list(self._observers):
            try:
                result = getattr(observer, hook)(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Observer {type(observer).__name__}.{hook} failed: {e}")

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def create_snapshot(
        self,
        thread: ConversationThread,
        snapshot_id: Optional[str] = None,
        source: CheckpointSource = CheckpointSource.APPLICATION,
    ) -> CheckpointMetadata:
        """
        Make the thread's current point forkable.

        Args:
            thread: Thread to snapshot
            snapshot_id: Id to store it under. Defaults to the thread's
                current checkpoint, so the snapshot shares its id
            source: Recorded origin of the snapshot

        When the id is new to the thread it becomes the thread's current
        checkpoint and active branch head, and the thread record is saved.

        Raises:
            ValidationError: A snapshot with that id already exists
        """
        self._ensure_enabled()
        with self._locks.hold(thread.id):
            snapshot_id = snapshot_id or thread.current_checkpoint_id or _new_id()
            manifest = await self.store.get_manifest(thread.id)
            existing = next((m for m in manifest if m.checkpoint_id == snapshot_id), None)

            if existing is not None:
                parent_id = existing.parent_checkpoint_id
                branch_name = existing.branch_name or thread.active_branch
            else:
                parent_id = thread.current_checkpoint_id
                branch_name = thread.active_branch
                thread.current_checkpoint_id = snapshot_id
                thread.branches[thread.active_branch] = snapshot_id

            stored = await self.store.save_snapshot(
                thread,
                snapshot_id,
                CheckpointMetadata(
                    checkpoint_id=snapshot_id,
                    source=source,
                    step=thread.execution_state.iteration if thread.execution_state else -1,
                    message_index=thread.message_count,
                    branch_name=branch_name,
                    parent_checkpoint_id=parent_id,
                ),
            )
            if existing is None:
                await self.store.save_thread(thread)

        logger.debug(f"Created snapshot {snapshot_id} for thread {thread.id}")
        return stored

    async def _load_fork_source(self, thread_id: str, checkpoint_id: str):
        """Snapshot at checkpoint_id plus its manifest entry"""
        manifest = await self.store.get_manifest(thread_id)
        try:
            snapshot = await self.store.load_snapshot(thread_id, checkpoint_id)
        except SnapshotNotFoundError:
            if any(m.checkpoint_id == checkpoint_id for m in manifest):
                raise SnapshotNotFoundError(
                    f"Checkpoint {checkpoint_id} in thread {thread_id} has no snapshot; "
                    f"create one before forking or copying",
                    thread_id=thread_id,
                    checkpoint_id=checkpoint_id,
                )
            raise CheckpointNotFoundError(
                f"Checkpoint {checkpoint_id} not found in thread {thread_id}",
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
            )
        entry = next(
            (m for m in manifest if m.checkpoint_id == checkpoint_id and m.is_snapshot),
            None,
        )
        return snapshot, entry, manifest

    async def _load_record(self, thread_id: str) -> Optional[ConversationThread]:
        try:
            return await self.store.load_thread(thread_id)
        except ThreadNotFoundError:
            return None

    # =========================================================================
    # Fork / copy
    # =========================================================================

    async def fork_from_checkpoint(
        self,
        thread_id: str,
        checkpoint_id: str,
        branch_name: Optional[str] = None,
    ) -> Tuple[ConversationThread, BranchCreatedEvent]:
        """
        Fork a new branch inside the same thread.

        Args:
            thread_id: Thread to fork
            checkpoint_id: Snapshot to fork from
            branch_name: Name of the new branch (default "branch-<8 hex>")

        Returns:
            The thread positioned on the new branch (messages up to the
            fork point, no execution state) and the creation event

        Raises:
            SnapshotNotFoundError: Only a full checkpoint exists at checkpoint_id
            CheckpointNotFoundError: Nothing exists at checkpoint_id
            ValidationError: branch_name is already in use
        """
        self._ensure_enabled()
        with self._locks.hold(thread_id):
            snapshot, entry, manifest = await self._load_fork_source(thread_id, checkpoint_id)
            record = await self._load_record(thread_id)

            branch_name = branch_name or f"branch-{uuid.uuid4().hex[:8]}"
            existing_names = {m.branch_name for m in manifest if m.branch_name}
            if record is not None:
                existing_names.update(record.branches)
            if branch_name in existing_names:
                raise ValidationError(f"Branch {branch_name!r} already exists in thread {thread_id}")

            forked = ConversationThread.from_snapshot(snapshot)
            forked.execution_state = None

            # Preserve the path being left
            if record is not None:
                forked.branches = dict(record.branches)
                forked.display_name = record.display_name
                forked.created_at = record.created_at
                previous_branch = record.active_branch
                previous_head = record.current_checkpoint_id or self._latest_id(manifest)
            else:
                previous_branch = None
                previous_head = self._latest_id(manifest)
            if previous_head:
                forked.branches[previous_branch or self.config.default_branch] = previous_head

            fork_index = entry.message_index if entry is not None else snapshot.message_count
            fork_id = _new_id()
            forked.active_branch = branch_name
            forked.current_checkpoint_id = fork_id
            forked.branches[branch_name] = fork_id

            await self.store.save_snapshot(
                forked,
                fork_id,
                CheckpointMetadata(
                    checkpoint_id=fork_id,
                    source=CheckpointSource.FORK,
                    step=-1,
                    message_index=fork_index,
                    branch_name=branch_name,
                    parent_checkpoint_id=checkpoint_id,
                ),
            )
            await self.store.save_thread(forked)

        event = BranchCreatedEvent(
            thread_id=thread_id,
            branch_name=branch_name,
            checkpoint_id=fork_id,
            parent_checkpoint_id=checkpoint_id,
            fork_message_index=fork_index,
        )
        logger.info(f"Created branch {branch_name} in thread {thread_id} from {checkpoint_id}")
        await self._notify("on_branch_created", event)
        return forked, event

    @staticmethod
    def _latest_id(manifest: List[CheckpointMetadata]) -> Optional[str]:
        """Newest non-root entry, falling back to the newest entry"""
        for entry in manifest:
            if entry.source != CheckpointSource.ROOT:
                return entry.checkpoint_id
        return manifest[0].checkpoint_id if manifest else None

    async def copy_from_checkpoint(
        self,
        source_thread_id: str,
        checkpoint_id: str,
        new_display_name: Optional[str] = None,
    ) -> Tuple[ConversationThread, ThreadCopiedEvent]:
        """
        Copy a snapshot into a new, independent thread.

        The copy gets a fresh id and manifest, seeded with one "copy"
        snapshot on the default branch that records its lineage.

        Raises:
            SnapshotNotFoundError: Only a full checkpoint exists at checkpoint_id
            CheckpointNotFoundError: Nothing exists at checkpoint_id
        """
        self._ensure_enabled()
        with self._locks.hold(source_thread_id):
            snapshot, _, _ = await self._load_fork_source(source_thread_id, checkpoint_id)
            source = ConversationThread.from_snapshot(snapshot)

            new_id = _new_id()
            branch = self.config.default_branch
            copied = ConversationThread(
                display_name=new_display_name or f"Copy of {source.get_display_name()}",
                messages=copy.deepcopy(source.messages),
                metadata=copy.deepcopy(source.metadata),
                active_branch=branch,
                branches={branch: new_id},
                current_checkpoint_id=new_id,
            )

            await self.store.save_snapshot(
                copied,
                new_id,
                CheckpointMetadata(
                    checkpoint_id=new_id,
                    source=CheckpointSource.COPY,
                    step=-1,
                    message_index=copied.message_count,
                    branch_name=branch,
                    parent_checkpoint_id=checkpoint_id,
                    parent_thread_id=source_thread_id,
                ),
            )
            await self.store.save_thread(copied)

        event = ThreadCopiedEvent(
            source_thread_id=source_thread_id,
            new_thread_id=copied.id,
            source_checkpoint_id=checkpoint_id,
            new_checkpoint_id=new_id,
            message_index=copied.message_count,
        )
        logger.info(f"Copied thread {source_thread_id}@{checkpoint_id} to {copied.id}")
        await self._notify("on_thread_copied", event)
        return copied, event

    # =========================================================================
    # Navigation
    # =========================================================================

    async def switch_branch(
        self,
        thread_id: str,
        target_branch: str,
    ) -> Tuple[ConversationThread, BranchSwitchedEvent]:
        """
        Make target_branch the active branch.

        Returns:
            The thread loaded at the branch head and the switch event

        Raises:
            BranchNotFoundError: No manifest entry carries that branch label;
                the active branch is left unchanged
        """
        self._ensure_enabled()
        with self._locks.hold(thread_id):
            manifest = await self.store.get_manifest(thread_id)
            record = await self._load_record(thread_id)

            head_id = self._resolve_head(manifest, record, target_branch)
            if head_id is None:
                raise BranchNotFoundError(
                    f"Branch {target_branch!r} not found in thread {thread_id}",
                    thread_id=thread_id,
                    branch_name=target_branch,
                )

            thread = await self._load_head(thread_id, head_id, manifest)

            previous_branch = record.active_branch if record is not None else None
            if record is not None:
                thread.branches = dict(record.branches)
                thread.display_name = record.display_name
                thread.created_at = record.created_at
                if record.current_checkpoint_id:
                    thread.branches[record.active_branch] = record.current_checkpoint_id
            thread.active_branch = target_branch
            thread.current_checkpoint_id = head_id
            thread.branches[target_branch] = head_id

            await self.store.save_thread(thread)

        event = BranchSwitchedEvent(
            thread_id=thread_id,
            previous_branch=previous_branch,
            new_branch=target_branch,
            checkpoint_id=head_id,
        )
        logger.info(f"Switched thread {thread_id} from {previous_branch} to {target_branch}")
        await self._notify("on_branch_switched", event)
        return thread, event

    @staticmethod
    def _resolve_head(
        manifest: List[CheckpointMetadata],
        record: Optional[ConversationThread],
        branch_name: str,
    ) -> Optional[str]:
        labeled = [m for m in manifest if m.branch_name == branch_name]
        if not labeled:
            return None
        known = {m.checkpoint_id for m in manifest}
        if record is not None and record.branches.get(branch_name) in known:
            return record.branches[branch_name]
        return labeled[0].checkpoint_id

    async def _load_head(
        self,
        thread_id: str,
        head_id: str,
        manifest: List[CheckpointMetadata],
    ) -> ConversationThread:
        """Thread at a head id, preferring the full checkpoint over the snapshot"""
        kinds = {m.is_snapshot for m in manifest if m.checkpoint_id == head_id}
        if False in kinds:
            checkpoint = await self.store.load_checkpoint(thread_id, head_id)
            return ConversationThread.from_execution_checkpoint(checkpoint)
        snapshot = await self.store.load_snapshot(thread_id, head_id)
        return ConversationThread.from_snapshot(snapshot)

    async def get_branch_tree(self, thread_id: str) -> BranchTree:
        """
        Tree of every checkpoint and snapshot in a thread, from the manifest only.

        Raises:
            ThreadNotFoundError: The thread has no manifest entries
        """
        self._ensure_enabled()
        manifest = await self.store.get_manifest(thread_id)
        if not manifest:
            raise ThreadNotFoundError(f"Thread {thread_id} has no checkpoints", thread_id=thread_id)
        record = await self._load_record(thread_id)
        return BranchTree.build(
            thread_id,
            manifest,
            active_branch=record.active_branch if record is not None else None,
            branches=record.branches if record is not None else None,
        )

    async def get_variants_at_message(self, thread_id: str, message_index: int) -> List[BranchInfo]:
        """Branches whose divergence point is at or before message_index, oldest first"""
        tree = await self.get_branch_tree(thread_id)
        variants = [
            info for info in tree.named_branches.values()
            if info.fork_message_index <= message_index
        ]
        return sorted(variants, key=lambda info: info.created_at)

    async def get_checkpoints(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        before=None,
    ) -> List[CheckpointMetadata]:
        """Manifest entries of a thread, newest first"""
        self._ensure_enabled()
        return await self.store.get_manifest(thread_id, limit=limit, before=before)

    # =========================================================================
    # Branch management
    # =========================================================================

    async def delete_branch(
        self,
        thread_id: str,
        branch_name: str,
        prune_orphans: Optional[bool] = None,
    ) -> BranchDeletedEvent:
        """
        Remove a branch label, then optionally delete what it orphaned.

        Raises:
            BranchNotFoundError: No manifest entry carries that label
            ValidationError: branch_name is the active branch
        """
        self._ensure_enabled()
        if prune_orphans is None:
            prune_orphans = self.config.prune_orphans_on_delete

        with self._locks.hold(thread_id):
            manifest = await self.store.get_manifest(thread_id)
            if not any(m.branch_name == branch_name for m in manifest):
                raise BranchNotFoundError(
                    f"Branch {branch_name!r} not found in thread {thread_id}",
                    thread_id=thread_id,
                    branch_name=branch_name,
                )

            record = await self._load_record(thread_id)
            if record is not None and record.active_branch == branch_name:
                raise ValidationError(
                    f"Cannot delete the active branch {branch_name!r}; switch branches first"
                )

            await self.store.relabel_branch(thread_id, branch_name, None)
            if record is not None and branch_name in record.branches:
                del record.branches[branch_name]
                await self.store.save_thread(record)

            pruned = await self._prune_orphans(thread_id) if prune_orphans else 0

        event = BranchDeletedEvent(thread_id=thread_id, branch_name=branch_name, checkpoints_pruned=pruned)
        logger.info(f"Deleted branch {branch_name} in thread {thread_id} ({pruned} records pruned)")
        await self._notify("on_branch_deleted", event)
        return event

    async def rename_branch(self, thread_id: str, old_name: str, new_name: str) -> BranchRenamedEvent:
        """
        Raises:
            BranchNotFoundError: old_name has no manifest entry
            ValidationError: new_name already exists
        """
        self._ensure_enabled()
        if not new_name:
            raise ValidationError("New branch name must not be empty")

        with self._locks.hold(thread_id):
            manifest = await self.store.get_manifest(thread_id)
            record = await self._load_record(thread_id)

            names = {m.branch_name for m in manifest if m.branch_name}
            if record is not None:
                names.update(record.branches)
            if new_name in names:
                raise ValidationError(f"Branch {new_name!r} already exists in thread {thread_id}")
            if not any(m.branch_name == old_name for m in manifest):
                raise BranchNotFoundError(
                    f"Branch {old_name!r} not found in thread {thread_id}",
                    thread_id=thread_id,
                    branch_name=old_name,
                )

            await self.store.relabel_branch(thread_id, old_name, new_name)
            if record is not None:
                if old_name in record.branches:
                    record.branches[new_name] = record.branches.pop(old_name)
                if record.active_branch == old_name:
                    record.active_branch = new_name
                await self.store.save_thread(record)

        event = BranchRenamedEvent(thread_id=thread_id, old_name=old_name, new_name=new_name)
        logger.info(f"Renamed branch {old_name} to {new_name} in thread {thread_id}")
        await self._notify("on_branch_renamed", event)
        return event

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def prune_orphaned_checkpoints(self, thread_id: str) -> int:
        """Delete records unreachable from any named branch head through parent links"""
        self._ensure_enabled()
        with self._locks.hold(thread_id):
            return await self._prune_orphans(thread_id)

    async def _prune_orphans(self, thread_id: str) -> int:
        manifest = await self.store.get_manifest(thread_id)
        if not manifest:
            return 0

        parents: Dict[str, Optional[str]] = {}
        for entry in oldest_first(manifest):
            parents.setdefault(entry.checkpoint_id, entry.parent_checkpoint_id)

        heads: Set[str] = {m.checkpoint_id for m in manifest if m.branch_name is not None}
        record = await self._load_record(thread_id)
        if record is not None:
            heads.update(record.branches.values())
            if record.current_checkpoint_id:
                heads.add(record.current_checkpoint_id)

        reachable: Set[str] = set()
        for head in heads:
            current: Optional[str] = head
            while current is not None and current not in reachable and current in parents:
                reachable.add(current)
                current = parents[current]

        orphan_checkpoints = {m.checkpoint_id for m in manifest if not m.is_snapshot and m.checkpoint_id not in reachable}
        orphan_snapshots = {m.checkpoint_id for m in manifest if m.is_snapshot and m.checkpoint_id not in reachable}

        deleted = 0
        if orphan_checkpoints:
            deleted += await self.store.delete_checkpoints(thread_id, orphan_checkpoints)
        if orphan_snapshots:
            deleted += await self.store.delete_snapshots(thread_id, orphan_snapshots)
        if deleted:
            logger.debug(f"Pruned {deleted} orphaned records from thread {thread_id}")
        return deleted
