"""
Threadline Conversation Models - The thread aggregate and its persisted forms

This module defines:
- Message: One conversation message
- ExecutionState: Mid-execution state owned by the agent loop
- ConversationThread: The aggregate root, mutated turn by turn
- ThreadSnapshot: Lightweight copy without execution state (fork/copy source)
- ExecutionCheckpoint: Full recoverable copy including execution state
"""

import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ValidationError

SCHEMA_VERSION = 1
DEFAULT_BRANCH = "main"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value)


@dataclass
class Message:
    """
    A single conversation message.

    Content is opaque to Threadline; it only needs to be JSON-serializable.
    """
    role: str
    content: Any = ""
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Content as plain text"""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            data["name"] = self.name
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class ExecutionState:
    """
    State of an in-flight execution.

    Attributes:
        iteration: Agent loop iteration counter
        middleware_state: Opaque middleware blob
        pending_results: Tool-call results (call_id -> result) not yet folded into messages
        turn_complete: True once the turn reached a clean boundary
        run_id: Optional identifier of the run that produced this state
    """
    iteration: int = 0
    middleware_state: Dict[str, Any] = field(default_factory=dict)
    pending_results: Dict[str, Any] = field(default_factory=dict)
    turn_complete: bool = False
    run_id: Optional[str] = None

    @property
    def is_incomplete(self) -> bool:
        return not self.turn_complete

    def next_iteration(self) -> "ExecutionState":
        """Return a copy advanced to the next iteration"""
        state = copy.deepcopy(self)
        state.iteration += 1
        return state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "middleware_state": self.middleware_state,
            "pending_results": self.pending_results,
            "turn_complete": self.turn_complete,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionState":
        return cls(
            iteration=data.get("iteration", 0),
            middleware_state=data.get("middleware_state", {}),
            pending_results=data.get("pending_results", {}),
            turn_complete=data.get("turn_complete", False),
            run_id=data.get("run_id"),
        )


@dataclass
class ThreadSnapshot:
    """
    Lightweight persisted copy of a thread.

    Carries messages, metadata and branch pointers. Execution state is
    never part of a snapshot.
    """
    thread_id: str
    messages: List[Message] = field(default_factory=list)
    display_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    active_branch: str = DEFAULT_BRANCH
    branches: Dict[str, str] = field(default_factory=dict)
    current_checkpoint_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    version: int = SCHEMA_VERSION

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "messages": [m.to_dict() for m in self.messages],
            "display_name": self.display_name,
            "metadata": self.metadata,
            "active_branch": self.active_branch,
            "branches": self.branches,
            "current_checkpoint_id": self.current_checkpoint_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadSnapshot":
        return cls(
            thread_id=data["thread_id"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            display_name=data.get("display_name"),
            metadata=data.get("metadata", {}),
            active_branch=data.get("active_branch") or DEFAULT_BRANCH,
            branches=data.get("branches", {}),
            current_checkpoint_id=data.get("current_checkpoint_id"),
            created_at=_parse_time(data.get("created_at")),
            last_activity=_parse_time(data.get("last_activity")),
            version=data.get("version", SCHEMA_VERSION),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "ThreadSnapshot":
        return cls.from_dict(json.loads(json_str))


@dataclass
class ExecutionCheckpoint(ThreadSnapshot):
    """Full recoverable copy of a thread, including its execution state"""
    execution_state: Optional[ExecutionState] = None

    @property
    def is_incomplete(self) -> bool:
        return self.execution_state is not None and self.execution_state.is_incomplete

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["execution_state"] = (
            self.execution_state.to_dict() if self.execution_state else None
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionCheckpoint":
        snapshot = ThreadSnapshot.from_dict(data)
        state = data.get("execution_state")
        return cls(
            **{f: getattr(snapshot, f) for f in snapshot.__dataclass_fields__},
            execution_state=ExecutionState.from_dict(state) if state else None,
        )


@dataclass
class ConversationThread:
    """
    A conversation thread: the aggregate root.

    Owned by whichever caller holds it in memory. Persisted copies are
    snapshots in time, not live references. Messages are append-only.

    Example:
        thread = ConversationThread(display_name="Trip planning")
        thread.add_message(Message(role="user", content="Find me a flight"))
        snapshot = thread.to_snapshot()
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    display_name: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    active_branch: str = DEFAULT_BRANCH
    branches: Dict[str, str] = field(default_factory=dict)
    current_checkpoint_id: Optional[str] = None
    execution_state: Optional[ExecutionState] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self.last_activity = utcnow()

    def add_messages(self, messages: Iterable[Message]) -> None:
        self.messages.extend(messages)
        self.last_activity = utcnow()

    def get_message(self, index: int) -> Message:
        if index < 0 or index >= len(self.messages):
            raise ValidationError(
                f"Message index {index} out of range for thread {self.id} "
                f"({len(self.messages)} messages)"
            )
        return self.messages[index]

    def get_display_name(self, max_length: int = 30) -> str:
        """
        Name to show in thread pickers.

        Uses the explicit display name, else the first user message
        truncated to max_length, else "New Conversation".
        """
        if self.display_name:
            return self.display_name

        first_user = next((m for m in self.messages if m.role == "user"), None)
        if first_user is None:
            return "New Conversation"

        text = first_user.text
        if len(text) <= max_length:
            return text
        return text[:max_length - 3] + "..."

    def to_snapshot(self) -> ThreadSnapshot:
        """Copy conversation content without execution state"""
        return ThreadSnapshot(
            thread_id=self.id,
            messages=copy.deepcopy(self.messages),
            display_name=self.display_name,
            metadata=copy.deepcopy(self.metadata),
            active_branch=self.active_branch,
            branches=dict(self.branches),
            current_checkpoint_id=self.current_checkpoint_id,
            created_at=self.created_at,
            last_activity=self.last_activity,
        )

    def to_execution_checkpoint(self) -> ExecutionCheckpoint:
        """Copy the full thread, including execution state"""
        return ExecutionCheckpoint(
            thread_id=self.id,
            messages=copy.deepcopy(self.messages),
            display_name=self.display_name,
            metadata=copy.deepcopy(self.metadata),
            active_branch=self.active_branch,
            branches=dict(self.branches),
            current_checkpoint_id=self.current_checkpoint_id,
            created_at=self.created_at,
            last_activity=self.last_activity,
            execution_state=copy.deepcopy(self.execution_state),
        )

    @classmethod
    def from_snapshot(cls, snapshot: ThreadSnapshot) -> "ConversationThread":
        return cls(
            id=snapshot.thread_id,
            display_name=snapshot.display_name,
            messages=copy.deepcopy(snapshot.messages),
            metadata=copy.deepcopy(snapshot.metadata),
            active_branch=snapshot.active_branch,
            branches=dict(snapshot.branches),
            current_checkpoint_id=snapshot.current_checkpoint_id,
            created_at=snapshot.created_at,
            last_activity=snapshot.last_activity,
        )

    @classmethod
    def from_execution_checkpoint(cls, checkpoint: ExecutionCheckpoint) -> "ConversationThread":
        thread = cls.from_snapshot(checkpoint)
        thread.execution_state = copy.deepcopy(checkpoint.execution_state)
        return thread

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the latest state, execution state included"""
        return self.to_execution_checkpoint().to_dict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationThread":
        return cls.from_execution_checkpoint(ExecutionCheckpoint.from_dict(data))
