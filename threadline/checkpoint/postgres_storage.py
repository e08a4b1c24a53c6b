"""
PostgreSQL checkpoint storage backend.

Uses asyncpg via the shared Database pool. Payloads are stored as JSONB
next to indexed manifest columns, so manifest queries never touch payloads.
"""

import json
import logging
from typing import Any, Iterable, List, Optional

import asyncpg

from ..conversation.models import (
    ConversationThread,
    ExecutionCheckpoint,
    ThreadSnapshot,
)
from ..db.database import Database
from ..errors import (
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    StorageError,
    ThreadNotFoundError,
    ValidationError,
)
from .models import CheckpointMetadata, CheckpointSource, PendingWrite
from .storage import CheckpointStore, checkpoint_payload, stamp_metadata

logger = logging.getLogger(__name__)

CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS threadline_threads (
        thread_id TEXT PRIMARY KEY,
        data JSONB NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS threadline_manifest (
        seq BIGSERIAL PRIMARY KEY,
        thread_id TEXT NOT NULL,
        checkpoint_id TEXT NOT NULL,
        is_snapshot BOOLEAN NOT NULL,
        source TEXT NOT NULL,
        step INTEGER NOT NULL,
        message_index INTEGER NOT NULL,
        branch_name TEXT,
        parent_checkpoint_id TEXT,
        parent_thread_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        size_bytes INTEGER NOT NULL,
        is_incomplete BOOLEAN NOT NULL DEFAULT FALSE,
        data JSONB NOT NULL,
        UNIQUE (thread_id, checkpoint_id, is_snapshot)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS threadline_pending_writes (
        seq BIGSERIAL PRIMARY KEY,
        thread_id TEXT NOT NULL,
        call_id TEXT NOT NULL,
        result JSONB,
        iteration INTEGER,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (thread_id, call_id)
    )
    """,
]

SETUP_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_threadline_manifest_thread ON threadline_manifest(thread_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_threadline_threads_activity ON threadline_threads(last_activity)",
]

MANIFEST_COLUMNS = (
    "checkpoint_id, is_snapshot, source, step, message_index, branch_name, "
    "parent_checkpoint_id, parent_thread_id, created_at, size_bytes, is_incomplete"
)


class PostgreSQLCheckpointStore(CheckpointStore):
    """
    PostgreSQL checkpoint store for production.

    Usage with shared Database pool (recommended):
        db = Database(dsn="postgresql://...")
        await db.initialize()
        store = PostgreSQLCheckpointStore(db=db)
        await store.initialize()

    Usage standalone:
        store = PostgreSQLCheckpointStore(dsn="postgresql://...")
        await store.initialize()
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        dsn: Optional[str] = None,
    ):
        super().__init__()
        if db is None and dsn is None:
            raise ValueError("Either db or dsn must be provided")
        self._db = db
        self._dsn = dsn
        self._owns_db = db is None
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables and indexes. Must be called before use."""
        if self._initialized:
            return

        if self._db is None:
            self._db = Database(dsn=self._dsn)
            await self._db.initialize()

        for sql in CREATE_TABLES_SQL + SETUP_SQL:
            await self._db.execute(sql)

        self._initialized = True
        logger.info("PostgreSQL checkpoint store initialized")

    async def close(self) -> None:
        """Close database connection if we own it."""
        if self._owns_db and self._db is not None:
            await self._db.close()

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "PostgreSQLCheckpointStore not initialized. Call await store.initialize() first."
            )

    # -- Thread records ------------------------------------------------------

    async def save_thread(self, thread: ConversationThread) -> None:
        self._ensure_initialized()
        try:
            await self._db.execute(
                """
                INSERT INTO threadline_threads (thread_id, data, last_activity)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (thread_id) DO UPDATE SET
                    data = EXCLUDED.data,
                    last_activity = EXCLUDED.last_activity,
                    updated_at = NOW()
                """,
                thread.id,
                json.dumps(thread.to_dict()),
                thread.last_activity,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to save thread {thread.id}: {e}") from e

    async def load_thread(self, thread_id: str) -> ConversationThread:
        self._ensure_initialized()
        row = await self._db.fetchrow(
            "SELECT data FROM threadline_threads WHERE thread_id = $1",
            thread_id,
        )
        if row is None:
            raise ThreadNotFoundError(f"Thread {thread_id} not found", thread_id=thread_id)
        return ConversationThread.from_dict(self._parse_json(row["data"]))

    async def list_thread_ids(self) -> List[str]:
        self._ensure_initialized()
        rows = await self._db.fetch(
            """
            SELECT thread_id FROM threadline_threads
            UNION
            SELECT thread_id FROM threadline_manifest
            ORDER BY thread_id
            """
        )
        return [r["thread_id"] for r in rows]

    async def delete_thread(self, thread_id: str) -> bool:
        self._ensure_initialized()
        async with self._thread_lock(thread_id):
            try:
                async with self._db.transaction() as conn:
                    threads = await conn.execute(
                        "DELETE FROM threadline_threads WHERE thread_id = $1", thread_id
                    )
                    entries = await conn.execute(
                        "DELETE FROM threadline_manifest WHERE thread_id = $1", thread_id
                    )
                    await conn.execute(
                        "DELETE FROM threadline_pending_writes WHERE thread_id = $1", thread_id
                    )
            except asyncpg.PostgresError as e:
                raise StorageError(f"Failed to delete thread {thread_id}: {e}") from e
        return self._parse_count(threads) + self._parse_count(entries) > 0

    # -- Checkpoints and snapshots -------------------------------------------

    async def save_checkpoint(
        self,
        thread: ConversationThread,
        checkpoint_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        payload, incomplete = checkpoint_payload(thread)
        entry = stamp_metadata(metadata, checkpoint_id, payload, False, incomplete)
        await self._insert_record(thread.id, entry, payload)
        return entry

    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> ExecutionCheckpoint:
        data = await self._fetch_payload(thread_id, checkpoint_id, is_snapshot=False)
        if data is None:
            raise CheckpointNotFoundError(
                f"Checkpoint {checkpoint_id} not found in thread {thread_id}",
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
            )
        return ExecutionCheckpoint.from_dict(data)

    async def save_snapshot(
        self,
        thread: ConversationThread,
        snapshot_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        payload = thread.to_snapshot().to_json()
        entry = stamp_metadata(metadata, snapshot_id, payload, True, False)
        await self._insert_record(thread.id, entry, payload)
        return entry

    async def load_snapshot(self, thread_id: str, snapshot_id: str) -> ThreadSnapshot:
        data = await self._fetch_payload(thread_id, snapshot_id, is_snapshot=True)
        if data is None:
            raise SnapshotNotFoundError(
                f"Snapshot {snapshot_id} not found in thread {thread_id}",
                thread_id=thread_id,
                checkpoint_id=snapshot_id,
            )
        return ThreadSnapshot.from_dict(data)

    async def get_manifest(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        before=None,
    ) -> List[CheckpointMetadata]:
        self._ensure_initialized()
        query = f"SELECT {MANIFEST_COLUMNS} FROM threadline_manifest WHERE thread_id = $1"
        args: List[Any] = [thread_id]
        if before is not None:
            args.append(before)
            query += f" AND created_at < ${len(args)}"
        query += " ORDER BY seq DESC"
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        rows = await self._db.fetch(query, *args)
        return [self._row_to_metadata(r) for r in rows]

    async def delete_checkpoints(self, thread_id: str, checkpoint_ids: Iterable[str]) -> int:
        return await self._delete_records(thread_id, list(checkpoint_ids), is_snapshot=False)

    async def _delete_snapshot_records(self, thread_id: str, snapshot_ids: set) -> int:
        return await self._delete_records(thread_id, sorted(snapshot_ids), is_snapshot=True)

    async def relabel_branch(
        self,
        thread_id: str,
        old_name: str,
        new_name: Optional[str],
    ) -> int:
        self._ensure_initialized()
        async with self._thread_lock(thread_id):
            result = await self._db.execute(
                """
                UPDATE threadline_manifest SET branch_name = $3
                WHERE thread_id = $1 AND branch_name = $2
                """,
                thread_id,
                old_name,
                new_name,
            )
        return self._parse_count(result)

    # -- Pending writes ------------------------------------------------------

    async def save_pending_write(self, thread_id: str, write: PendingWrite) -> None:
        self._ensure_initialized()
        try:
            await self._db.execute(
                """
                INSERT INTO threadline_pending_writes (thread_id, call_id, result, iteration, created_at)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                ON CONFLICT (thread_id, call_id) DO UPDATE SET
                    result = EXCLUDED.result,
                    iteration = EXCLUDED.iteration,
                    created_at = EXCLUDED.created_at
                """,
                thread_id,
                write.call_id,
                json.dumps(write.result),
                write.iteration,
                write.created_at,
            )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to save pending write {write.call_id}: {e}") from e

    async def load_pending_writes(self, thread_id: str) -> List[PendingWrite]:
        self._ensure_initialized()
        rows = await self._db.fetch(
            """
            SELECT call_id, result, iteration, created_at FROM threadline_pending_writes
            WHERE thread_id = $1
            ORDER BY seq ASC
            """,
            thread_id,
        )
        return [
            PendingWrite(
                call_id=r["call_id"],
                result=self._parse_json(r["result"]),
                iteration=r["iteration"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def delete_pending_writes(
        self,
        thread_id: str,
        call_ids: Optional[Iterable[str]] = None,
    ) -> int:
        self._ensure_initialized()
        if call_ids is None:
            result = await self._db.execute(
                "DELETE FROM threadline_pending_writes WHERE thread_id = $1",
                thread_id,
            )
        else:
            result = await self._db.execute(
                "DELETE FROM threadline_pending_writes WHERE thread_id = $1 AND call_id = ANY($2::text[])",
                thread_id,
                list(call_ids),
            )
        return self._parse_count(result)

    # -- Helpers --------------------------------------------------------------

    async def _insert_record(self, thread_id: str, entry: CheckpointMetadata, payload: str) -> None:
        self._ensure_initialized()
        kind = "Snapshot" if entry.is_snapshot else "Checkpoint"
        async with self._thread_lock(thread_id):
            try:
                await self._db.execute(
                    """
                    INSERT INTO threadline_manifest (
                        thread_id, checkpoint_id, is_snapshot, source, step, message_index,
                        branch_name, parent_checkpoint_id, parent_thread_id, created_at,
                        size_bytes, is_incomplete, data
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
                    """,
                    thread_id,
                    entry.checkpoint_id,
                    entry.is_snapshot,
                    entry.source.value,
                    entry.step,
                    entry.message_index,
                    entry.branch_name,
                    entry.parent_checkpoint_id,
                    entry.parent_thread_id,
                    entry.created_at,
                    entry.size_bytes,
                    entry.is_incomplete,
                    payload,
                )
            except asyncpg.UniqueViolationError as e:
                raise ValidationError(
                    f"{kind} {entry.checkpoint_id} already exists in thread {thread_id}"
                ) from e
            except asyncpg.PostgresError as e:
                raise StorageError(f"Failed to save {kind.lower()} {entry.checkpoint_id}: {e}") from e
        logger.debug(f"Saved {kind.lower()} {entry.checkpoint_id} for thread {thread_id}")

    async def _fetch_payload(self, thread_id: str, record_id: str, is_snapshot: bool):
        self._ensure_initialized()
        row = await self._db.fetchrow(
            """
            SELECT data FROM threadline_manifest
            WHERE thread_id = $1 AND checkpoint_id = $2 AND is_snapshot = $3
            """,
            thread_id,
            record_id,
            is_snapshot,
        )
        if row is None:
            return None
        return self._parse_json(row["data"])

    async def _delete_records(self, thread_id: str, ids: List[str], is_snapshot: bool) -> int:
        self._ensure_initialized()
        if not ids:
            return 0
        async with self._thread_lock(thread_id):
            result = await self._db.execute(
                """
                DELETE FROM threadline_manifest
                WHERE thread_id = $1 AND is_snapshot = $2 AND checkpoint_id = ANY($3::text[])
                """,
                thread_id,
                is_snapshot,
                ids,
            )
        return self._parse_count(result)

    @staticmethod
    def _row_to_metadata(row) -> CheckpointMetadata:
        return CheckpointMetadata(
            checkpoint_id=row["checkpoint_id"],
            source=CheckpointSource(row["source"]),
            step=row["step"],
            message_index=row["message_index"],
            branch_name=row["branch_name"],
            parent_checkpoint_id=row["parent_checkpoint_id"],
            parent_thread_id=row["parent_thread_id"],
            created_at=row["created_at"],
            size_bytes=row["size_bytes"],
            is_snapshot=row["is_snapshot"],
            is_incomplete=row["is_incomplete"],
        )

    @staticmethod
    def _parse_json(data):
        """JSONB comes back as str unless a codec is registered."""
        if isinstance(data, str):
            return json.loads(data)
        return data

    @staticmethod
    def _parse_count(result: str) -> int:
        """Extract row count from asyncpg 'DELETE N' / 'UPDATE N' status string."""
        try:
            return int(result.split()[-1])
        except (ValueError, IndexError, AttributeError):
            return 0
