"""Tests for threadline.checkpoint.postgres_storage.PostgreSQLCheckpointStore

Runs against a mocked Database; no PostgreSQL server is needed.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from threadline.checkpoint.models import CheckpointMetadata, CheckpointSource, PendingWrite
from threadline.checkpoint.postgres_storage import PostgreSQLCheckpointStore
from threadline.conversation.models import ConversationThread, ExecutionState, Message
from threadline.errors import (
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    StorageError,
    ThreadNotFoundError,
    ValidationError,
)

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_db():
    db = MagicMock()
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="DELETE 0")

    @asynccontextmanager
    async def transaction():
        yield conn

    db.transaction = transaction
    db.conn = conn
    return db


def _make_thread():
    thread = ConversationThread()
    thread.add_message(Message(role="user", content="hello"))
    thread.execution_state = ExecutionState(iteration=1)
    return thread


def _make_row(checkpoint_id="c1", **overrides):
    row = {
        "checkpoint_id": checkpoint_id,
        "is_snapshot": False,
        "source": "loop",
        "step": 2,
        "message_index": 1,
        "branch_name": "main",
        "parent_checkpoint_id": None,
        "parent_thread_id": None,
        "created_at": T0,
        "size_bytes": 100,
        "is_incomplete": True,
    }
    row.update(overrides)
    return row


@pytest.fixture
async def pg_store():
    db = _make_db()
    store = PostgreSQLCheckpointStore(db=db)
    await store.initialize()
    db.execute.reset_mock()
    return store, db


class TestLifecycle:

    def test_requires_db_or_dsn(self):
        with pytest.raises(ValueError):
            PostgreSQLCheckpointStore()

    async def test_use_before_initialize_raises(self):
        store = PostgreSQLCheckpointStore(db=_make_db())
        with pytest.raises(RuntimeError):
            await store.load_thread("t1")

    async def test_initialize_creates_schema_once(self):
        db = _make_db()
        store = PostgreSQLCheckpointStore(db=db)
        await store.initialize()
        await store.initialize()
        statements = [c.args[0] for c in db.execute.call_args_list]
        assert len(statements) == 5
        assert any("threadline_manifest" in s for s in statements)

    async def test_close_leaves_shared_pool_open(self, pg_store):
        store, db = pg_store
        db.close = AsyncMock()
        await store.close()
        db.close.assert_not_called()


class TestThreadRecords:

    async def test_save_thread_upserts_json(self, pg_store):
        store, db = pg_store
        thread = _make_thread()
        await store.save_thread(thread)
        args = db.execute.call_args.args
        assert "ON CONFLICT (thread_id)" in args[0]
        assert args[1] == thread.id
        assert json.loads(args[2])["thread_id"] == thread.id

    async def test_load_thread_missing(self, pg_store):
        store, _ = pg_store
        with pytest.raises(ThreadNotFoundError):
            await store.load_thread("missing")

    async def test_load_thread_parses_text_jsonb(self, pg_store):
        store, db = pg_store
        thread = _make_thread()
        db.fetchrow.return_value = {"data": json.dumps(thread.to_dict())}
        loaded = await store.load_thread(thread.id)
        assert loaded.messages[0].content == "hello"

    async def test_delete_thread_uses_transaction(self, pg_store):
        store, db = pg_store
        db.conn.execute.side_effect = ["DELETE 1", "DELETE 3", "DELETE 0"]
        assert await store.delete_thread("t1") is True
        assert db.conn.execute.await_count == 3

    async def test_delete_missing_thread(self, pg_store):
        store, _ = pg_store
        assert await store.delete_thread("t1") is False


class TestCheckpoints:

    async def test_save_checkpoint_inserts_manifest_row(self, pg_store):
        store, db = pg_store
        thread = _make_thread()
        entry = await store.save_checkpoint(
            thread, "c1", CheckpointMetadata(checkpoint_id="c1", created_at=T0)
        )
        args = db.execute.call_args.args
        assert args[1:4] == (thread.id, "c1", False)
        assert args[4] == "loop"
        assert json.loads(args[13])["execution_state"]["iteration"] == 1
        assert entry.is_incomplete is True
        assert entry.size_bytes == len(args[13].encode("utf-8"))

    async def test_duplicate_maps_to_validation_error(self, pg_store):
        store, db = pg_store
        db.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")
        with pytest.raises(ValidationError):
            await store.save_snapshot(_make_thread(), "s1", CheckpointMetadata(checkpoint_id="s1"))

    async def test_database_error_maps_to_storage_error(self, pg_store):
        store, db = pg_store
        db.execute.side_effect = asyncpg.PostgresError("connection lost")
        with pytest.raises(StorageError):
            await store.save_checkpoint(_make_thread(), "c1", CheckpointMetadata(checkpoint_id="c1"))

    async def test_missing_checkpoint_and_snapshot(self, pg_store):
        store, _ = pg_store
        with pytest.raises(CheckpointNotFoundError):
            await store.load_checkpoint("t1", "c1")
        with pytest.raises(SnapshotNotFoundError):
            await store.load_snapshot("t1", "s1")

    async def test_load_snapshot(self, pg_store):
        store, db = pg_store
        thread = _make_thread()
        db.fetchrow.return_value = {"data": thread.to_snapshot().to_dict()}
        snapshot = await store.load_snapshot(thread.id, "s1")
        assert snapshot.thread_id == thread.id

    async def test_get_manifest_builds_bounded_query(self, pg_store):
        store, db = pg_store
        db.fetch.return_value = [_make_row("c2", parent_checkpoint_id="c1"), _make_row("c1")]
        manifest = await store.get_manifest("t1", limit=2, before=T0)
        query, *args = db.fetch.call_args.args
        assert "created_at < $2" in query
        assert "ORDER BY seq DESC" in query
        assert "LIMIT $3" in query
        assert args == ["t1", T0, 2]
        assert [m.checkpoint_id for m in manifest] == ["c2", "c1"]
        assert manifest[0].source == CheckpointSource.LOOP
        assert manifest[0].parent_checkpoint_id == "c1"

    async def test_delete_checkpoints_counts_rows(self, pg_store):
        store, db = pg_store
        db.execute.return_value = "DELETE 2"
        assert await store.delete_checkpoints("t1", ["c1", "c2"]) == 2
        assert db.execute.call_args.args[2] is False

    async def test_delete_nothing_skips_query(self, pg_store):
        store, db = pg_store
        assert await store.delete_snapshots("t1", []) == 0
        db.execute.assert_not_called()

    async def test_delete_snapshots_skips_active_head(self, pg_store):
        store, db = pg_store
        thread = _make_thread()
        thread.branches = {"main": "s1"}
        db.fetchrow.return_value = {"data": json.dumps(thread.to_dict())}
        db.execute.return_value = "DELETE 1"
        assert await store.delete_snapshots(thread.id, ["s1", "s2"]) == 1
        args = db.execute.call_args.args
        assert args[1:] == (thread.id, True, ["s2"])

    async def test_relabel_branch(self, pg_store):
        store, db = pg_store
        db.execute.return_value = "UPDATE 4"
        assert await store.relabel_branch("t1", "main", None) == 4
        assert db.execute.call_args.args[1:] == ("t1", "main", None)


class TestPendingWrites:

    async def test_save_upserts(self, pg_store):
        store, db = pg_store
        await store.save_pending_write("t1", PendingWrite(call_id="a", result={"x": 1}, created_at=T0))
        args = db.execute.call_args.args
        assert "ON CONFLICT (thread_id, call_id)" in args[0]
        assert args[1:3] == ("t1", "a")
        assert json.loads(args[3]) == {"x": 1}

    async def test_load_in_order(self, pg_store):
        store, db = pg_store
        db.fetch.return_value = [
            {"call_id": "a", "result": "1", "iteration": 0, "created_at": T0},
            {"call_id": "b", "result": '{"y": 2}', "iteration": 1, "created_at": T0},
        ]
        writes = await store.load_pending_writes("t1")
        assert [(w.call_id, w.result) for w in writes] == [("a", 1), ("b", {"y": 2})]

    async def test_delete_selected_vs_all(self, pg_store):
        store, db = pg_store
        db.execute.return_value = "DELETE 1"
        assert await store.delete_pending_writes("t1", ["a"]) == 1
        assert "ANY($2::text[])" in db.execute.call_args.args[0]
        await store.delete_pending_writes("t1")
        assert db.execute.call_args.args[1:] == ("t1",)


class TestHelpers:

    @pytest.mark.parametrize("status,expected", [
        ("DELETE 3", 3),
        ("UPDATE 0", 0),
        ("", 0),
        (None, 0),
    ])
    def test_parse_count(self, status, expected):
        assert PostgreSQLCheckpointStore._parse_count(status) == expected

    def test_parse_json_passthrough(self):
        assert PostgreSQLCheckpointStore._parse_json({"a": 1}) == {"a": 1}
        assert PostgreSQLCheckpointStore._parse_json('{"a": 1}') == {"a": 1}
