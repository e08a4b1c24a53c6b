"""
Threadline Checkpoint - Storage for thread records, checkpoints and snapshots

Provides:
- CheckpointMetadata / CheckpointSource: Manifest entries
- PendingWrite: Sub-checkpoint results recorded between checkpoints
- BranchTree / BranchNode / BranchInfo: Read-only branch view
- CheckpointStore: Store contract
- MemoryCheckpointStore / FileCheckpointStore / PostgreSQLCheckpointStore: Backends
- ThreadWriteQueue / ThreadLocks: Per-thread concurrency primitives
- create_store: Backend factory

Example usage:
    from threadline.checkpoint import create_store, StorageConfig

    store = create_store(StorageConfig(backend="file", path="~/.threadline"))
    await store.save_thread(thread)
    manifest = await store.get_manifest(thread.id)
"""

from .models import (
    BranchInfo,
    BranchNode,
    BranchTree,
    CheckpointMetadata,
    CheckpointSource,
    PendingWrite,
    StorageConfig,
)
from .storage import CheckpointStore, MemoryCheckpointStore
from .file_storage import FileCheckpointStore
from .postgres_storage import PostgreSQLCheckpointStore
from .queue import ThreadLocks, ThreadWriteQueue
from .factory import create_store

__all__ = [
    # Models
    "CheckpointSource",
    "CheckpointMetadata",
    "PendingWrite",
    "BranchNode",
    "BranchInfo",
    "BranchTree",
    "StorageConfig",
    # Stores
    "CheckpointStore",
    "MemoryCheckpointStore",
    "FileCheckpointStore",
    "PostgreSQLCheckpointStore",
    "create_store",
    # Concurrency
    "ThreadWriteQueue",
    "ThreadLocks",
]
