"""
Threadline Checkpoint Models - Data structures for the checkpoint store

This module defines:
- CheckpointSource: What produced a checkpoint or snapshot
- CheckpointMetadata: One manifest entry (lightweight, no payload)
- PendingWrite: One sub-checkpoint result recorded between checkpoints
- BranchNode / BranchInfo / BranchTree: Derived read-only branch view
- StorageConfig: Backend selection
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from ..conversation.models import utcnow, _parse_time


class CheckpointSource(str, Enum):
    """
    Origin of a manifest entry.

    - LOOP: Written by the durable engine at an iteration/turn boundary
    - USER: Requested by the end user
    - FORK: Created by forking a branch
    - APPLICATION: Snapshot requested by the application layer
    - MANUAL: Explicit save_checkpoint call under MANUAL frequency
    - ROOT: First record of a thread
    - COPY: First record of a thread copied from another thread
    """
    LOOP = "loop"
    USER = "user"
    FORK = "fork"
    APPLICATION = "application"
    MANUAL = "manual"
    ROOT = "root"
    COPY = "copy"


@dataclass
class CheckpointMetadata:
    """
    Manifest entry for a checkpoint or snapshot.

    Enough to answer "what exists" without loading payloads.
    """
    checkpoint_id: str
    source: CheckpointSource = CheckpointSource.LOOP
    step: int = -1
    message_index: int = 0
    branch_name: Optional[str] = None
    parent_checkpoint_id: Optional[str] = None
    parent_thread_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    size_bytes: int = 0
    is_snapshot: bool = False
    is_incomplete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "source": self.source.value,
            "step": self.step,
            "message_index": self.message_index,
            "branch_name": self.branch_name,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "parent_thread_id": self.parent_thread_id,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "is_snapshot": self.is_snapshot,
            "is_incomplete": self.is_incomplete,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointMetadata":
        return cls(
            checkpoint_id=data["checkpoint_id"],
            source=CheckpointSource(data.get("source", CheckpointSource.LOOP.value)),
            step=data.get("step", -1),
            message_index=data.get("message_index", 0),
            branch_name=data.get("branch_name"),
            parent_checkpoint_id=data.get("parent_checkpoint_id"),
            parent_thread_id=data.get("parent_thread_id"),
            created_at=_parse_time(data.get("created_at")),
            size_bytes=data.get("size_bytes", 0),
            is_snapshot=data.get("is_snapshot", False),
            is_incomplete=data.get("is_incomplete", False),
        )


@dataclass
class PendingWrite:
    """Result of one completed sub-step, recorded between full checkpoints"""
    call_id: str
    result: Any = None
    iteration: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "result": self.result,
            "iteration": self.iteration,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingWrite":
        return cls(
            call_id=data["call_id"],
            result=data.get("result"),
            iteration=data.get("iteration"),
            created_at=_parse_time(data.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------

def oldest_first(entries: Iterable[CheckpointMetadata]) -> List[CheckpointMetadata]:
    """Order entries by creation time, keeping insertion order for ties"""
    return [
        entry for _, entry in sorted(
            enumerate(entries), key=lambda pair: (pair[1].created_at, pair[0])
        )
    ]


def branch_heads(entries: Iterable[CheckpointMetadata]) -> Dict[str, CheckpointMetadata]:
    """Newest entry for each branch label"""
    heads: Dict[str, CheckpointMetadata] = {}
    for entry in oldest_first(entries):
        if entry.branch_name is not None:
            heads[entry.branch_name] = entry
    return heads


def fork_points(entries: Iterable[CheckpointMetadata]) -> Set[str]:
    """Checkpoint ids referenced as the origin of a fork"""
    return {
        entry.parent_checkpoint_id
        for entry in entries
        if entry.source == CheckpointSource.FORK and entry.parent_checkpoint_id
    }


def protected_ids(
    entries: Iterable[CheckpointMetadata],
    branches: Optional[Dict[str, str]] = None,
    current_checkpoint_id: Optional[str] = None,
) -> Set[str]:
    """
    Ids that retention must never remove.

    Branch heads (from the manifest and from the thread's branch map),
    the thread's current checkpoint, and every fork point.
    """
    entries = list(entries)
    protected = {entry.checkpoint_id for entry in branch_heads(entries).values()}
    protected |= fork_points(entries)
    if branches:
        protected |= set(branches.values())
    if current_checkpoint_id:
        protected.add(current_checkpoint_id)
    return protected


def select_for_pruning(
    newest_first: List[CheckpointMetadata],
    keep_count: int,
    protected: Set[str],
) -> List[str]:
    """Ids beyond the newest keep_count entries that are not protected"""
    if keep_count < 0:
        raise ValueError("keep_count must be >= 0")
    return [
        entry.checkpoint_id
        for entry in newest_first[keep_count:]
        if entry.checkpoint_id not in protected
    ]


# ---------------------------------------------------------------------------
# Branch tree
# ---------------------------------------------------------------------------

@dataclass
class BranchNode:
    """One checkpoint id in the branch tree"""
    checkpoint_id: str
    parent_checkpoint_id: Optional[str] = None
    branch_name: Optional[str] = None
    child_checkpoint_ids: List[str] = field(default_factory=list)
    message_index: int = 0
    created_at: datetime = field(default_factory=utcnow)
    has_checkpoint: bool = False
    has_snapshot: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "branch_name": self.branch_name,
            "child_checkpoint_ids": self.child_checkpoint_ids,
            "message_index": self.message_index,
            "created_at": self.created_at.isoformat(),
            "has_checkpoint": self.has_checkpoint,
            "has_snapshot": self.has_snapshot,
        }


@dataclass
class BranchInfo:
    """A named branch, as shown in branch pickers"""
    name: str
    head_checkpoint_id: str
    fork_message_index: int = 0
    parent_checkpoint_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "head_checkpoint_id": self.head_checkpoint_id,
            "fork_message_index": self.fork_message_index,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "message_count": self.message_count,
        }


@dataclass
class BranchTree:
    """
    Read-only view of a thread's checkpoints and branches.

    Built from manifest entries only; never loads payloads.
    """
    thread_id: str
    root_checkpoint_id: str
    active_branch: Optional[str] = None
    nodes: Dict[str, BranchNode] = field(default_factory=dict)
    named_branches: Dict[str, BranchInfo] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        thread_id: str,
        entries: Iterable[CheckpointMetadata],
        active_branch: Optional[str] = None,
        branches: Optional[Dict[str, str]] = None,
    ) -> "BranchTree":
        ordered = oldest_first(entries)
        if not ordered:
            raise ValueError(f"Thread {thread_id} has no manifest entries")

        nodes: Dict[str, BranchNode] = {}
        for entry in ordered:
            node = nodes.get(entry.checkpoint_id)
            if node is None:
                node = BranchNode(
                    checkpoint_id=entry.checkpoint_id,
                    parent_checkpoint_id=entry.parent_checkpoint_id,
                    branch_name=entry.branch_name,
                    message_index=entry.message_index,
                    created_at=entry.created_at,
                )
                nodes[entry.checkpoint_id] = node
            elif entry.branch_name is not None:
                node.branch_name = entry.branch_name
            if entry.is_snapshot:
                node.has_snapshot = True
            else:
                node.has_checkpoint = True

        for node in nodes.values():
            parent = nodes.get(node.parent_checkpoint_id) if node.parent_checkpoint_id else None
            if parent is not None and node.checkpoint_id not in parent.child_checkpoint_ids:
                parent.child_checkpoint_ids.append(node.checkpoint_id)

        # Root: oldest node whose parent is absent from this thread
        root_id = next(
            (
                n.checkpoint_id for n in nodes.values()
                if not n.parent_checkpoint_id or n.parent_checkpoint_id not in nodes
            ),
            ordered[0].checkpoint_id,
        )

        named: Dict[str, BranchInfo] = {}
        for entry in ordered:
            if entry.branch_name is None:
                continue
            info = named.get(entry.branch_name)
            if info is None:
                named[entry.branch_name] = BranchInfo(
                    name=entry.branch_name,
                    head_checkpoint_id=entry.checkpoint_id,
                    fork_message_index=entry.message_index,
                    parent_checkpoint_id=entry.parent_checkpoint_id,
                    created_at=entry.created_at,
                    last_activity=entry.created_at,
                    message_count=entry.message_index,
                )
            else:
                info.head_checkpoint_id = entry.checkpoint_id
                info.last_activity = entry.created_at
                info.message_count = entry.message_index

        # An explicit head pointer wins when it is still in the manifest
        for name, head_id in (branches or {}).items():
            if name in named and head_id in nodes:
                named[name].head_checkpoint_id = head_id
                named[name].message_count = nodes[head_id].message_index

        return cls(
            thread_id=thread_id,
            root_checkpoint_id=root_id,
            active_branch=active_branch,
            nodes=nodes,
            named_branches=named,
        )

    def get_path_to_root(self, checkpoint_id: str) -> List[str]:
        """Path from a checkpoint up to the root"""
        path = []
        current_id: Optional[str] = checkpoint_id
        while current_id and current_id in self.nodes and current_id not in path:
            path.append(current_id)
            current_id = self.nodes[current_id].parent_checkpoint_id
        return path

    def get_children(self, checkpoint_id: str) -> List[str]:
        node = self.nodes.get(checkpoint_id)
        return list(node.child_checkpoint_ids) if node else []

    def get_leaf_nodes(self) -> List[str]:
        return [cid for cid, node in self.nodes.items() if not node.child_checkpoint_ids]

    def get_depth(self, checkpoint_id: str) -> int:
        return len(self.get_path_to_root(checkpoint_id)) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "root_checkpoint_id": self.root_checkpoint_id,
            "active_branch": self.active_branch,
            "nodes": {k: v.to_dict() for k, v in self.nodes.items()},
            "named_branches": {k: v.to_dict() for k, v in self.named_branches.items()},
        }


@dataclass
class StorageConfig:
    """
    Configuration for the checkpoint store.

    Attributes:
        backend: "memory", "file" or "postgres"
        path: Root directory for the file backend
        dsn: Connection string for the postgres backend
    """
    backend: str = "memory"
    path: str = ".threadline"
    dsn: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageConfig":
        return cls(
            backend=data.get("backend", "memory"),
            path=data.get("path", ".threadline"),
            dsn=data.get("dsn"),
        )
