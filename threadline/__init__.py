"""
Threadline - Durable execution and branching for conversational agent sessions

Threadline persists enough state that an interrupted agent session can resume
exactly where it stopped, and lets a caller fork a session into alternate
timelines without disturbing the original.

Key Features:
- Full execution checkpoints and lightweight snapshots of a conversation thread
- Background checkpointing with per-iteration, per-turn or manual frequency
- Retention policies that never prune branch heads or fork points
- Pending writes for sub-checkpoint recovery of completed tool calls
- Git-like branches: fork, copy, switch, rename, delete, branch trees
- Memory, file and PostgreSQL stores

Quick Start:
    from threadline import (
        ConversationThread, Message, DurableExecution, Branching,
        MemoryCheckpointStore,
    )

    store = MemoryCheckpointStore()
    durable = DurableExecution(store)
    branching = Branching(store)

    thread = ConversationThread()
    thread.add_message(Message(role="user", content="Plan a trip to Kyoto"))
    durable.save_checkpoint(thread)
    await durable.flush()

    await branching.create_snapshot(thread)
    forked, event = await branching.fork_from_checkpoint(
        thread.id, thread.current_checkpoint_id, "budget-version"
    )

    # After a crash
    thread = await durable.resume_from_latest(thread.id)
"""

__version__ = "0.1.0"

from .errors import (
    ThreadlineError,
    NotFoundError,
    ThreadNotFoundError,
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    BranchNotFoundError,
    StorageError,
    ValidationError,
    ConcurrentModificationError,
    BranchingDisabledError,
)
from .conversation import (
    DEFAULT_BRANCH,
    Message,
    ExecutionState,
    ConversationThread,
    ThreadSnapshot,
    ExecutionCheckpoint,
)
from .checkpoint import (
    CheckpointSource,
    CheckpointMetadata,
    PendingWrite,
    BranchNode,
    BranchInfo,
    BranchTree,
    StorageConfig,
    CheckpointStore,
    MemoryCheckpointStore,
    FileCheckpointStore,
    PostgreSQLCheckpointStore,
    ThreadWriteQueue,
    ThreadLocks,
    create_store,
)
from .db import Database
from .durable import (
    CheckpointFrequency,
    RetentionPolicy,
    DurableExecutionConfig,
    DurableExecution,
)
from .branching import (
    BranchingConfig,
    Branching,
    CheckpointObserver,
    BranchCreatedEvent,
    BranchSwitchedEvent,
    BranchDeletedEvent,
    BranchRenamedEvent,
    ThreadCopiedEvent,
)
from .app import Threadline, load_config

__all__ = [
    "__version__",
    # Errors
    "ThreadlineError",
    "NotFoundError",
    "ThreadNotFoundError",
    "CheckpointNotFoundError",
    "SnapshotNotFoundError",
    "BranchNotFoundError",
    "StorageError",
    "ValidationError",
    "ConcurrentModificationError",
    "BranchingDisabledError",
    # Conversation
    "DEFAULT_BRANCH",
    "Message",
    "ExecutionState",
    "ConversationThread",
    "ThreadSnapshot",
    "ExecutionCheckpoint",
    # Checkpoint
    "CheckpointSource",
    "CheckpointMetadata",
    "PendingWrite",
    "BranchNode",
    "BranchInfo",
    "BranchTree",
    "StorageConfig",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "FileCheckpointStore",
    "PostgreSQLCheckpointStore",
    "ThreadWriteQueue",
    "ThreadLocks",
    "create_store",
    "Database",
    # Durable
    "CheckpointFrequency",
    "RetentionPolicy",
    "DurableExecutionConfig",
    "DurableExecution",
    # Branching
    "BranchingConfig",
    "Branching",
    "CheckpointObserver",
    "BranchCreatedEvent",
    "BranchSwitchedEvent",
    "BranchDeletedEvent",
    "BranchRenamedEvent",
    "ThreadCopiedEvent",
    # App
    "Threadline",
    "load_config",
]
