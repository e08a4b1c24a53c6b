"""
Threadline Branching Models - Configuration, events and observers

This module defines:
- BranchingConfig: Branching configuration
- BranchCreatedEvent / BranchSwitchedEvent / BranchDeletedEvent /
  BranchRenamedEvent / ThreadCopiedEvent: Results of branching operations
- CheckpointObserver: Base class for event observers
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..conversation.models import DEFAULT_BRANCH, utcnow


@dataclass
class BranchingConfig:
    """
    Configuration for the branching engine.

    Attributes:
        enabled: When False every branching operation raises BranchingDisabledError
        default_branch: Branch created for threads that have none
        prune_orphans_on_delete: Delete unreachable records after delete_branch()
    """
    enabled: bool = True
    default_branch: str = DEFAULT_BRANCH
    prune_orphans_on_delete: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BranchingConfig":
        """Create from dictionary"""
        return cls(
            enabled=data.get("enabled", True),
            default_branch=data.get("default_branch", DEFAULT_BRANCH),
            prune_orphans_on_delete=data.get("prune_orphans_on_delete", True),
        )


def _event_dict(event) -> Dict[str, Any]:
    data = asdict(event)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    data["type"] = type(event).__name__
    return data


@dataclass
class BranchCreatedEvent:
    """A branch was forked inside a thread"""
    thread_id: str
    branch_name: str
    checkpoint_id: str
    parent_checkpoint_id: str
    fork_message_index: int
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _event_dict(self)


@dataclass
class BranchSwitchedEvent:
    """The active branch of a thread changed"""
    thread_id: str
    previous_branch: Optional[str]
    new_branch: str
    checkpoint_id: str
    switched_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _event_dict(self)


@dataclass
class BranchDeletedEvent:
    """A branch label was removed; checkpoints_pruned counts orphans deleted"""
    thread_id: str
    branch_name: str
    checkpoints_pruned: int = 0
    deleted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _event_dict(self)


@dataclass
class BranchRenamedEvent:
    thread_id: str
    old_name: str
    new_name: str
    renamed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _event_dict(self)


@dataclass
class ThreadCopiedEvent:
    """
    A new thread was seeded from another thread's snapshot.

    Unlike a fork, the copy is an independent thread with lineage back
    to its source.
    """
    source_thread_id: str
    new_thread_id: str
    source_checkpoint_id: str
    new_checkpoint_id: str
    message_index: int
    copied_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _event_dict(self)


class CheckpointObserver:
    """
    Receives branching events.

    Override the hooks you care about. Exceptions raised by a hook are
    logged and never break the operation that emitted the event.
    """

    def on_branch_created(self, event: BranchCreatedEvent) -> None:
        pass

    def on_branch_switched(self, event: BranchSwitchedEvent) -> None:
        pass

    def on_branch_deleted(self, event: BranchDeletedEvent) -> None:
        pass

    def on_branch_renamed(self, event: BranchRenamedEvent) -> None:
        pass

    def on_thread_copied(self, event: ThreadCopiedEvent) -> None:
        pass
