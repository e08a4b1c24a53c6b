"""
Threadline Errors - Exception taxonomy

- NotFoundError: thread, checkpoint, snapshot or branch absent (recoverable)
- StorageError: I/O failure in a storage backend
- ValidationError: invalid caller input
- ConcurrentModificationError: conflicting operation on the same thread
- BranchingDisabledError: branching operation while branching is off
"""

from typing import Optional


class ThreadlineError(Exception):
    """Base class for all Threadline errors"""
    pass


class NotFoundError(ThreadlineError):
    """Raised when a thread or one of its records does not exist"""

    def __init__(self, message: str, thread_id: Optional[str] = None):
        super().__init__(message)
        self.thread_id = thread_id


class ThreadNotFoundError(NotFoundError):
    """Raised when no latest-state record exists for a thread"""
    pass


class CheckpointNotFoundError(NotFoundError):
    """Raised when no record exists at a checkpoint id"""

    def __init__(self, message: str, thread_id: Optional[str] = None, checkpoint_id: Optional[str] = None):
        super().__init__(message, thread_id)
        self.checkpoint_id = checkpoint_id


class SnapshotNotFoundError(CheckpointNotFoundError):
    """Raised when a snapshot is required but only a full checkpoint exists"""
    pass


class BranchNotFoundError(NotFoundError):
    """Raised when a branch label has no manifest entry"""

    def __init__(self, message: str, thread_id: Optional[str] = None, branch_name: Optional[str] = None):
        super().__init__(message, thread_id)
        self.branch_name = branch_name


class StorageError(ThreadlineError):
    """Raised when a storage backend fails to read or write"""
    pass


class ValidationError(ThreadlineError, ValueError):
    """Raised when caller input is invalid"""
    pass


class ConcurrentModificationError(ThreadlineError):
    """Raised when another operation already holds the thread"""

    def __init__(self, message: str, thread_id: Optional[str] = None):
        super().__init__(message)
        self.thread_id = thread_id


class BranchingDisabledError(ThreadlineError):
    """Raised when a branching operation is issued while branching is disabled"""
    pass
