"""Tests for threadline.branching.service.Branching

Scenario used throughout:

    main:  c1 (1 msg) -> c2 (3 msgs, + snapshot)
    alt:                  \\-> fork snapshot -> a1 (4 msgs)
"""

import asyncio
import re

import pytest

from threadline.branching import (
    BranchCreatedEvent,
    Branching,
    BranchingConfig,
    CheckpointObserver,
)
from threadline.checkpoint.models import CheckpointMetadata, CheckpointSource
from threadline.checkpoint.storage import MemoryCheckpointStore
from threadline.conversation.models import ConversationThread, Message
from threadline.durable import CheckpointFrequency, DurableExecution, DurableExecutionConfig
from threadline.errors import (
    BranchingDisabledError,
    BranchNotFoundError,
    CheckpointNotFoundError,
    ConcurrentModificationError,
    SnapshotNotFoundError,
    ThreadNotFoundError,
    ValidationError,
)


class _SlowStore(MemoryCheckpointStore):
    """Yields to the event loop on every manifest read"""

    async def get_manifest(self, thread_id, limit=None, before=None):
        await asyncio.sleep(0.01)
        return await super().get_manifest(thread_id, limit=limit, before=before)


class _RecordingObserver(CheckpointObserver):

    def __init__(self):
        self.events = []

    def on_branch_created(self, event):
        self.events.append(event)

    def on_branch_switched(self, event):
        self.events.append(event)

    def on_branch_deleted(self, event):
        self.events.append(event)

    def on_branch_renamed(self, event):
        self.events.append(event)

    def on_thread_copied(self, event):
        self.events.append(event)


class _AsyncObserver(CheckpointObserver):

    def __init__(self):
        self.created = []

    async def on_branch_created(self, event):
        await asyncio.sleep(0)
        self.created.append(event.branch_name)


class _BrokenObserver(CheckpointObserver):

    def on_branch_created(self, event):
        raise RuntimeError("observer bug")


class _Conversation:
    """A thread with two checkpoints on main"""

    def __init__(self, store):
        self.store = store
        self.durable = DurableExecution(
            store, DurableExecutionConfig(frequency=CheckpointFrequency.PER_ITERATION)
        )
        self.branching = Branching(store)
        self.thread = ConversationThread(display_name="Trip planning")
        self.c1 = None
        self.c2 = None

    async def build(self):
        self.thread.add_message(Message(role="user", content="Plan a trip"))
        self.c1 = (await self.durable.save_checkpoint(self.thread)).checkpoint_id
        self.thread.add_message(Message(role="assistant", content="How about Paris?"))
        self.thread.add_message(Message(role="user", content="Tell me more"))
        self.c2 = (await self.durable.save_checkpoint(self.thread)).checkpoint_id
        return self

    async def fork_alt(self):
        """Snapshot c2, fork "alt" from it and add one checkpoint on alt"""
        await self.branching.create_snapshot(self.thread)
        forked, event = await self.branching.fork_from_checkpoint(self.thread.id, self.c2, "alt")
        forked.add_message(Message(role="assistant", content="Short version: Paris."))
        a1 = (await self.durable.save_checkpoint(forked)).checkpoint_id
        return forked, event, a1


@pytest.fixture
async def convo(store):
    return await _Conversation(store).build()


async def _labels(store, thread_id):
    return [(m.checkpoint_id, m.branch_name) for m in await store.get_manifest(thread_id)]


class TestCreateSnapshot:

    async def test_shares_id_with_current_checkpoint(self, convo):
        entry = await convo.branching.create_snapshot(convo.thread)
        assert entry.checkpoint_id == convo.c2
        assert entry.is_snapshot is True
        assert entry.parent_checkpoint_id == convo.c1
        assert entry.branch_name == "main"

    async def test_new_id_moves_thread_pointers(self, convo):
        convo.thread.add_message(Message(role="assistant", content="Sure"))
        entry = await convo.branching.create_snapshot(convo.thread, snapshot_id="s-extra")
        assert entry.parent_checkpoint_id == convo.c2
        assert convo.thread.current_checkpoint_id == "s-extra"
        record = await convo.store.load_thread(convo.thread.id)
        assert record.branches["main"] == "s-extra"

    async def test_duplicate_snapshot_rejected(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        with pytest.raises(ValidationError):
            await convo.branching.create_snapshot(convo.thread)


class TestFork:

    async def test_fork_requires_snapshot(self, convo):
        with pytest.raises(SnapshotNotFoundError):
            await convo.branching.fork_from_checkpoint(convo.thread.id, convo.c2, "alt")

    async def test_unknown_checkpoint(self, convo):
        with pytest.raises(CheckpointNotFoundError) as exc_info:
            await convo.branching.fork_from_checkpoint(convo.thread.id, "nope", "alt")
        assert not isinstance(exc_info.value, SnapshotNotFoundError)
        assert exc_info.value.checkpoint_id == "nope"

    async def test_fork_positions_thread_on_new_branch(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        forked, event = await convo.branching.fork_from_checkpoint(convo.thread.id, convo.c2, "alt")

        assert forked.id == convo.thread.id
        assert forked.active_branch == "alt"
        assert forked.message_count == 3
        assert forked.execution_state is None
        assert forked.current_checkpoint_id == event.checkpoint_id
        assert forked.branches == {"main": convo.c2, "alt": event.checkpoint_id}

        assert isinstance(event, BranchCreatedEvent)
        assert event.parent_checkpoint_id == convo.c2
        assert event.fork_message_index == 3

        record = await convo.store.load_thread(convo.thread.id)
        assert record.active_branch == "alt"

    async def test_fork_does_not_touch_existing_entries(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        before = await _labels(convo.store, convo.thread.id)
        _, event = await convo.branching.fork_from_checkpoint(convo.thread.id, convo.c2, "alt")

        after = await _labels(convo.store, convo.thread.id)
        assert after[1:] == before
        assert after[0] == (event.checkpoint_id, "alt")
        newest = (await convo.store.get_manifest(convo.thread.id))[0]
        assert newest.source == CheckpointSource.FORK
        assert newest.is_snapshot is True

    async def test_default_branch_name(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        forked, event = await convo.branching.fork_from_checkpoint(convo.thread.id, convo.c2)
        assert re.fullmatch(r"branch-[0-9a-f]{8}", event.branch_name)
        assert forked.active_branch == event.branch_name

    async def test_duplicate_branch_name(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        with pytest.raises(ValidationError):
            await convo.branching.fork_from_checkpoint(convo.thread.id, convo.c2, "main")

    async def test_fork_without_thread_record_creates_default_branch(self, store):
        thread = ConversationThread()
        thread.add_message(Message(role="user", content="hi"))
        await store.save_snapshot(thread, "s1", CheckpointMetadata(checkpoint_id="s1", branch_name="main"))

        forked, event = await Branching(store).fork_from_checkpoint(thread.id, "s1", "alt")
        assert forked.branches == {"main": "s1", "alt": event.checkpoint_id}


class TestCopy:

    async def test_copy_records_lineage(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        before = await _labels(convo.store, convo.thread.id)

        copied, event = await convo.branching.copy_from_checkpoint(convo.thread.id, convo.c2)

        assert copied.id != convo.thread.id
        assert copied.display_name == "Copy of Trip planning"
        assert copied.message_count == 3
        assert copied.active_branch == "main"
        assert event.new_thread_id == copied.id
        assert event.message_index == 3

        manifest = await convo.store.get_manifest(copied.id)
        assert len(manifest) == 1
        entry = manifest[0]
        assert entry.source == CheckpointSource.COPY
        assert entry.parent_thread_id == convo.thread.id
        assert entry.parent_checkpoint_id == convo.c2
        assert entry.checkpoint_id == event.new_checkpoint_id

        assert await _labels(convo.store, convo.thread.id) == before

    async def test_copy_with_custom_name(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        copied, _ = await convo.branching.copy_from_checkpoint(convo.thread.id, convo.c2, "Rome instead")
        assert (await convo.store.load_thread(copied.id)).display_name == "Rome instead"

    async def test_copy_is_independent(self, convo):
        await convo.branching.create_snapshot(convo.thread)
        copied, _ = await convo.branching.copy_from_checkpoint(convo.thread.id, convo.c2)
        copied.messages[0].content = "edited"
        source = await convo.store.load_snapshot(convo.thread.id, convo.c2)
        assert source.messages[0].content == "Plan a trip"

    async def test_copy_requires_snapshot(self, convo):
        with pytest.raises(SnapshotNotFoundError):
            await convo.branching.copy_from_checkpoint(convo.thread.id, convo.c1)


class TestSwitch:

    async def test_round_trip(self, convo):
        forked, _, a1 = await convo.fork_alt()

        thread, event = await convo.branching.switch_branch(convo.thread.id, "main")
        assert event.previous_branch == "alt"
        assert event.checkpoint_id == convo.c2
        assert thread.active_branch == "main"
        assert thread.message_count == 3
        assert thread.branches["alt"] == a1

        thread, _ = await convo.branching.switch_branch(convo.thread.id, "alt")
        assert thread.current_checkpoint_id == a1
        assert thread.message_count == 4
        assert thread.messages[-1].content == "Short version: Paris."

    async def test_switch_persists_active_branch(self, convo):
        await convo.fork_alt()
        await convo.branching.switch_branch(convo.thread.id, "main")
        record = await convo.store.load_thread(convo.thread.id)
        assert record.active_branch == "main"
        assert record.current_checkpoint_id == convo.c2

    async def test_active_head_survives_snapshot_deletion(self, convo):
        entry = await convo.branching.create_snapshot(convo.thread)
        assert await convo.store.delete_snapshots(convo.thread.id, [entry.checkpoint_id]) == 0
        thread, _ = await convo.branching.switch_branch(convo.thread.id, "main")
        assert thread.current_checkpoint_id == entry.checkpoint_id
        assert thread.message_count == 3

    async def test_unknown_branch_leaves_thread_unchanged(self, convo):
        with pytest.raises(BranchNotFoundError) as exc_info:
            await convo.branching.switch_branch(convo.thread.id, "nonexistent")
        assert exc_info.value.branch_name == "nonexistent"
        record = await convo.store.load_thread(convo.thread.id)
        assert record.active_branch == "main"
        assert record.current_checkpoint_id == convo.c2


class TestTreeAndVariants:

    async def test_tree(self, convo):
        _, event, a1 = await convo.fork_alt()
        tree = await convo.branching.get_branch_tree(convo.thread.id)

        assert tree.root_checkpoint_id == convo.c1
        assert tree.active_branch == "alt"
        assert set(tree.named_branches) == {"main", "alt"}
        assert tree.named_branches["alt"].fork_message_index == 3
        assert tree.named_branches["alt"].head_checkpoint_id == a1
        assert tree.get_path_to_root(a1) == [a1, event.checkpoint_id, convo.c2, convo.c1]
        assert sorted(tree.get_children(convo.c2)) == [event.checkpoint_id]

    async def test_empty_thread(self, store):
        with pytest.raises(ThreadNotFoundError):
            await Branching(store).get_branch_tree("missing")

    async def test_variants_at_message(self, convo):
        await convo.fork_alt()
        at_fork = await convo.branching.get_variants_at_message(convo.thread.id, 3)
        assert [v.name for v in at_fork] == ["main", "alt"]
        before_fork = await convo.branching.get_variants_at_message(convo.thread.id, 2)
        assert [v.name for v in before_fork] == ["main"]

    async def test_get_checkpoints(self, convo):
        entries = await convo.branching.get_checkpoints(convo.thread.id, limit=1)
        assert [e.checkpoint_id for e in entries] == [convo.c2]


class TestDeleteAndRename:

    async def test_cannot_delete_active_branch(self, convo):
        await convo.fork_alt()
        with pytest.raises(ValidationError):
            await convo.branching.delete_branch(convo.thread.id, "alt")

    async def test_delete_prunes_orphans(self, convo):
        _, fork_event, a1 = await convo.fork_alt()
        await convo.branching.switch_branch(convo.thread.id, "main")

        event = await convo.branching.delete_branch(convo.thread.id, "alt")
        assert event.checkpoints_pruned == 2

        ids = {cid for cid, _ in await _labels(convo.store, convo.thread.id)}
        assert ids == {convo.c1, convo.c2}
        record = await convo.store.load_thread(convo.thread.id)
        assert "alt" not in record.branches
        with pytest.raises(BranchNotFoundError):
            await convo.branching.switch_branch(convo.thread.id, "alt")

    async def test_delete_without_pruning_then_prune(self, convo):
        await convo.fork_alt()
        await convo.branching.switch_branch(convo.thread.id, "main")

        event = await convo.branching.delete_branch(convo.thread.id, "alt", prune_orphans=False)
        assert event.checkpoints_pruned == 0
        labels = await _labels(convo.store, convo.thread.id)
        assert sum(1 for _, name in labels if name is None) == 2

        assert await convo.branching.prune_orphaned_checkpoints(convo.thread.id) == 2
        assert await convo.branching.prune_orphaned_checkpoints(convo.thread.id) == 0

    async def test_delete_unknown_branch(self, convo):
        with pytest.raises(BranchNotFoundError):
            await convo.branching.delete_branch(convo.thread.id, "nope")

    async def test_rename_active_branch(self, convo):
        _, _, a1 = await convo.fork_alt()
        await convo.branching.rename_branch(convo.thread.id, "alt", "concise")

        record = await convo.store.load_thread(convo.thread.id)
        assert record.active_branch == "concise"
        assert record.branches["concise"] == a1
        assert "alt" not in record.branches
        names = {name for _, name in await _labels(convo.store, convo.thread.id)}
        assert names == {"main", "concise"}

    @pytest.mark.parametrize("old,new,error", [
        ("main", "", ValidationError),
        ("alt", "main", ValidationError),
        ("missing", "other", BranchNotFoundError),
    ])
    async def test_rename_rejections(self, convo, old, new, error):
        await convo.fork_alt()
        with pytest.raises(error):
            await convo.branching.rename_branch(convo.thread.id, old, new)


class TestObservers:

    async def test_events_delivered(self, convo):
        recorder = _RecordingObserver()
        convo.branching.register_observer(recorder)
        await convo.fork_alt()
        await convo.branching.switch_branch(convo.thread.id, "main")
        await convo.branching.rename_branch(convo.thread.id, "alt", "short")
        await convo.branching.delete_branch(convo.thread.id, "short")
        await convo.branching.copy_from_checkpoint(convo.thread.id, convo.c2)

        kinds = [e.to_dict()["type"] for e in recorder.events]
        assert kinds == [
            "BranchCreatedEvent",
            "BranchSwitchedEvent",
            "BranchRenamedEvent",
            "BranchDeletedEvent",
            "ThreadCopiedEvent",
        ]

    async def test_async_and_broken_observers(self, convo):
        async_observer = _AsyncObserver()
        convo.branching.register_observer(_BrokenObserver())
        convo.branching.register_observer(async_observer)
        forked, _, _ = await convo.fork_alt()
        assert forked.active_branch == "alt"
        assert async_observer.created == ["alt"]

    async def test_unregister(self, convo):
        recorder = _RecordingObserver()
        convo.branching.register_observer(recorder)
        convo.branching.unregister_observer(recorder)
        await convo.fork_alt()
        assert recorder.events == []


class TestGuards:

    async def test_disabled(self, memory_store):
        branching = Branching(memory_store, BranchingConfig(enabled=False))
        assert branching.is_enabled is False
        with pytest.raises(BranchingDisabledError):
            await branching.fork_from_checkpoint("t1", "c1", "alt")
        with pytest.raises(BranchingDisabledError):
            await branching.get_branch_tree("t1")
        with pytest.raises(BranchingDisabledError):
            await branching.create_snapshot(ConversationThread())

    async def test_concurrent_operations_on_one_thread(self):
        convo = await _Conversation(_SlowStore()).build()
        await convo.fork_alt()

        results = await asyncio.gather(
            convo.branching.switch_branch(convo.thread.id, "main"),
            convo.branching.switch_branch(convo.thread.id, "alt"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentModificationError)

    async def test_operations_on_different_threads_do_not_conflict(self):
        store = _SlowStore()
        first = await _Conversation(store).build()
        second = _Conversation(store)
        second.branching = first.branching
        await second.build()

        await first.branching.create_snapshot(first.thread)
        await first.branching.create_snapshot(second.thread)
        results = await asyncio.gather(
            first.branching.fork_from_checkpoint(first.thread.id, first.c2, "a"),
            first.branching.fork_from_checkpoint(second.thread.id, second.c2, "b"),
        )
        assert [forked.active_branch for forked, _ in results] == ["a", "b"]
