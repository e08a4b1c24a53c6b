"""
File checkpoint storage backend.

Layout under the store root:

    threads/<thread_id>/thread.json           latest thread record
    threads/<thread_id>/manifest.json         ordered manifest, oldest first
    threads/<thread_id>/ckpt-<id>.json        execution checkpoints
    threads/<thread_id>/snap-<id>.json        snapshots
    threads/<thread_id>/pending-writes.json   pending writes

Every write goes to a temp file in the same directory and is renamed over
the target, so readers see either the old or the new file. Blocking I/O
runs in a worker thread.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Iterable, List, Optional

from ..conversation.models import (
    ConversationThread,
    ExecutionCheckpoint,
    ThreadSnapshot,
)
from ..errors import (
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    StorageError,
    ThreadNotFoundError,
    ValidationError,
)
from .models import CheckpointMetadata, PendingWrite
from .storage import (
    CheckpointStore,
    checkpoint_payload,
    filter_manifest,
    has_entry,
    stamp_metadata,
)

logger = logging.getLogger(__name__)

STORE_VERSION = 1

THREAD_FILE = "thread.json"
MANIFEST_FILE = "manifest.json"
PENDING_WRITES_FILE = "pending-writes.json"
CHECKPOINT_PREFIX = "ckpt-"
SNAPSHOT_PREFIX = "snap-"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_id(value: str, kind: str = "id") -> str:
    """Reject ids that could escape their directory"""
    if not isinstance(value, str) or not _SAFE_ID.match(value) or ".." in value:
        raise ValidationError(f"Invalid {kind}: {value!r}")
    return value


def _read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, None if it does not exist"""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageError(f"Corrupt JSON in {path}: {e}") from e


def _write_json(path: Path, data: Any) -> None:
    """Atomic write: temp file in the same directory, fsync, then rename"""
    content = json.dumps(data, ensure_ascii=False)
    tmp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{path.stem}-", suffix=".tmp", dir=str(path.parent)
        )
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(path))
    except OSError as e:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise StorageError(f"Failed to write {path}: {e}") from e


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageError(f"Failed to delete {path}: {e}") from e


class FileCheckpointStore(CheckpointStore):
    """
    JSON-file checkpoint store for single-process deployments.

    Usage:
        store = FileCheckpointStore("~/.threadline")
        await store.save_thread(thread)
        thread = await store.load_thread(thread.id)
    """

    def __init__(self, root: str = ".threadline"):
        super().__init__()
        self._root = Path(os.path.expanduser(root))
        self._threads_dir = self._root / "threads"

    @property
    def root(self) -> Path:
        return self._root

    def _thread_dir(self, thread_id: str) -> Path:
        return self._threads_dir / validate_id(thread_id, "thread id")

    def _record_path(self, thread_id: str, record_id: str, is_snapshot: bool) -> Path:
        prefix = SNAPSHOT_PREFIX if is_snapshot else CHECKPOINT_PREFIX
        kind = "snapshot id" if is_snapshot else "checkpoint id"
        return self._thread_dir(thread_id) / f"{prefix}{validate_id(record_id, kind)}.json"

    # -- Sync helpers (run in a worker thread) --------------------------------

    def _read_manifest(self, thread_id: str) -> List[CheckpointMetadata]:
        data = _read_json(self._thread_dir(thread_id) / MANIFEST_FILE)
        if data is None:
            return []
        return [CheckpointMetadata.from_dict(e) for e in data.get("entries", [])]

    def _write_manifest(self, thread_id: str, entries: List[CheckpointMetadata]) -> None:
        _write_json(
            self._thread_dir(thread_id) / MANIFEST_FILE,
            {"version": STORE_VERSION, "entries": [e.to_dict() for e in entries]},
        )

    def _read_pending(self, thread_id: str) -> List[PendingWrite]:
        data = _read_json(self._thread_dir(thread_id) / PENDING_WRITES_FILE)
        if data is None:
            return []
        return [PendingWrite.from_dict(w) for w in data.get("writes", [])]

    def _write_pending(self, thread_id: str, writes: List[PendingWrite]) -> None:
        _write_json(
            self._thread_dir(thread_id) / PENDING_WRITES_FILE,
            {"version": STORE_VERSION, "writes": [w.to_dict() for w in writes]},
        )

    def _save_record_sync(
        self,
        thread_id: str,
        record_id: str,
        payload: str,
        entry: CheckpointMetadata,
    ) -> None:
        manifest = self._read_manifest(thread_id)
        if has_entry(manifest, record_id, entry.is_snapshot):
            kind = "Snapshot" if entry.is_snapshot else "Checkpoint"
            raise ValidationError(f"{kind} {record_id} already exists in thread {thread_id}")

        # Payload first: a manifest entry never points at a missing file
        _write_json(self._record_path(thread_id, record_id, entry.is_snapshot), json.loads(payload))
        self._write_manifest(thread_id, manifest + [entry])

    def _delete_records_sync(self, thread_id: str, ids: set, is_snapshot: bool) -> int:
        manifest = self._read_manifest(thread_id)
        kept = [
            m for m in manifest
            if not (m.is_snapshot == is_snapshot and m.checkpoint_id in ids)
        ]
        deleted = len(manifest) - len(kept)
        if deleted:
            self._write_manifest(thread_id, kept)
        for record_id in ids:
            _unlink(self._record_path(thread_id, record_id, is_snapshot))
        return deleted

    # -- Thread records ------------------------------------------------------

    async def save_thread(self, thread: ConversationThread) -> None:
        path = self._thread_dir(thread.id) / THREAD_FILE
        await asyncio.to_thread(_write_json, path, thread.to_dict())

    async def load_thread(self, thread_id: str) -> ConversationThread:
        data = await asyncio.to_thread(_read_json, self._thread_dir(thread_id) / THREAD_FILE)
        if data is None:
            raise ThreadNotFoundError(f"Thread {thread_id} not found", thread_id=thread_id)
        return ConversationThread.from_dict(data)

    async def list_thread_ids(self) -> List[str]:
        def _list() -> List[str]:
            if not self._threads_dir.is_dir():
                return []
            return sorted(p.name for p in self._threads_dir.iterdir() if p.is_dir())

        return await asyncio.to_thread(_list)

    async def delete_thread(self, thread_id: str) -> bool:
        thread_dir = self._thread_dir(thread_id)

        def _delete() -> bool:
            if not thread_dir.exists():
                return False
            try:
                shutil.rmtree(thread_dir)
            except OSError as e:
                raise StorageError(f"Failed to delete thread {thread_id}: {e}") from e
            return True

        async with self._thread_lock(thread_id):
            deleted = await asyncio.to_thread(_delete)
        if deleted:
            logger.debug(f"Deleted thread directory {thread_dir}")
        return deleted

    # -- Checkpoints and snapshots -------------------------------------------

    async def save_checkpoint(
        self,
        thread: ConversationThread,
        checkpoint_id: str,
        metadata: CheckpointMetadata,
    ) -> CheckpointMetadata:
        payload, incomplete = checkpoint_payload(thread)
        entry = stamp_metadata(metadata, checkpoint_id, payload, False, incomplete)
        async with self._thread_lock(thread.id):
            await asyncio.to_thread(self._save_record_sync, thread.id, checkpoint_id, payload, entry)
        return entry

    async def load_checkpoint(self, thread_id: str, checkpoint_id: str) -> ExecutionCheckpoint:
        path = self._record_path(thread_id, checkpoint_id, is_snapshot=False)
        data = await asyncio.to_thread(_read_json, path)
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
        async with self._thread_lock(thread.id):
            await asyncio.to_thread(self._save_record_sync, thread.id, snapshot_id, payload, entry)
        return entry

    async def load_snapshot(self, thread_id: str, snapshot_id: str) -> ThreadSnapshot:
        path = self._record_path(thread_id, snapshot_id, is_snapshot=True)
        data = await asyncio.to_thread(_read_json, path)
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
        entries = await asyncio.to_thread(self._read_manifest, thread_id)
        return filter_manifest(entries, limit, before)

    async def delete_checkpoints(self, thread_id: str, checkpoint_ids: Iterable[str]) -> int:
        ids = set(checkpoint_ids)
        async with self._thread_lock(thread_id):
            return await asyncio.to_thread(self._delete_records_sync, thread_id, ids, False)

    async def _delete_snapshot_records(self, thread_id: str, snapshot_ids: set) -> int:
        async with self._thread_lock(thread_id):
            return await asyncio.to_thread(self._delete_records_sync, thread_id, snapshot_ids, True)

    async def relabel_branch(
        self,
        thread_id: str,
        old_name: str,
        new_name: Optional[str],
    ) -> int:
        def _relabel() -> int:
            manifest = self._read_manifest(thread_id)
            count = 0
            for entry in manifest:
                if entry.branch_name == old_name:
                    entry.branch_name = new_name
                    count += 1
            if count:
                self._write_manifest(thread_id, manifest)
            return count

        async with self._thread_lock(thread_id):
            return await asyncio.to_thread(_relabel)

    # -- Pending writes ------------------------------------------------------

    async def save_pending_write(self, thread_id: str, write: PendingWrite) -> None:
        def _save() -> None:
            writes = self._read_pending(thread_id)
            for i, existing in enumerate(writes):
                if existing.call_id == write.call_id:
                    writes[i] = write
                    break
            else:
                writes.append(write)
            self._write_pending(thread_id, writes)

        async with self._thread_lock(thread_id):
            await asyncio.to_thread(_save)

    async def load_pending_writes(self, thread_id: str) -> List[PendingWrite]:
        return await asyncio.to_thread(self._read_pending, thread_id)

    async def delete_pending_writes(
        self,
        thread_id: str,
        call_ids: Optional[Iterable[str]] = None,
    ) -> int:
        targets = None if call_ids is None else set(call_ids)

        def _delete() -> int:
            writes = self._read_pending(thread_id)
            if targets is None:
                _unlink(self._thread_dir(thread_id) / PENDING_WRITES_FILE)
                return len(writes)
            kept = [w for w in writes if w.call_id not in targets]
            if len(kept) != len(writes):
                self._write_pending(thread_id, kept)
            return len(writes) - len(kept)

        async with self._thread_lock(thread_id):
            return await asyncio.to_thread(_delete)
