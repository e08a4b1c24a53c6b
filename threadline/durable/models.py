"""
Threadline Durable Models - Configuration for automatic checkpointing

This module defines:
- CheckpointFrequency: When the engine checkpoints
- RetentionKind / RetentionPolicy: What the engine keeps
- DurableExecutionConfig: Engine configuration
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union


class CheckpointFrequency(str, Enum):
    """
    How often the engine checkpoints.

    - PER_ITERATION: After every agent loop iteration
    - PER_TURN: Only when a turn completes
    - MANUAL: Never on its own; the caller saves explicitly
    """
    PER_ITERATION = "per_iteration"
    PER_TURN = "per_turn"
    MANUAL = "manual"


class RetentionKind(str, Enum):
    LATEST_ONLY = "latest_only"
    FULL_HISTORY = "full_history"
    LAST_N = "last_n"
    TIME_BASED = "time_based"


@dataclass
class RetentionPolicy:
    """
    Which checkpoints survive pruning.

    Build with the constructors rather than the raw fields:
        RetentionPolicy.latest_only()
        RetentionPolicy.full_history()
        RetentionPolicy.last_n(5)
        RetentionPolicy.time_based(timedelta(days=7))
    """
    kind: RetentionKind = RetentionKind.FULL_HISTORY
    count: Optional[int] = None
    window: Optional[timedelta] = None

    def __post_init__(self):
        if self.kind == RetentionKind.LAST_N and (self.count is None or self.count < 1):
            raise ValueError("last_n retention requires count >= 1")
        if self.kind == RetentionKind.TIME_BASED and (self.window is None or self.window <= timedelta(0)):
            raise ValueError("time_based retention requires a positive window")

    @classmethod
    def latest_only(cls) -> "RetentionPolicy":
        return cls(kind=RetentionKind.LATEST_ONLY)

    @classmethod
    def full_history(cls) -> "RetentionPolicy":
        return cls(kind=RetentionKind.FULL_HISTORY)

    @classmethod
    def last_n(cls, count: int) -> "RetentionPolicy":
        return cls(kind=RetentionKind.LAST_N, count=count)

    @classmethod
    def time_based(cls, window: timedelta) -> "RetentionPolicy":
        return cls(kind=RetentionKind.TIME_BASED, window=window)

    @property
    def keep_count(self) -> Optional[int]:
        """Count-based limit, None when the policy is not count-based"""
        if self.kind == RetentionKind.LATEST_ONLY:
            return 1
        if self.kind == RetentionKind.LAST_N:
            return self.count
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"policy": self.kind.value}
        if self.count is not None:
            data["count"] = self.count
        if self.window is not None:
            data["window_seconds"] = int(self.window.total_seconds())
        return data

    @classmethod
    def from_dict(cls, data: Union[str, Dict[str, Any]]) -> "RetentionPolicy":
        """
        Accepts a bare policy name ("latest_only") or a mapping:
            {"policy": "last_n", "count": 5}
            {"policy": "time_based", "window_seconds": 86400}
        """
        if isinstance(data, str):
            data = {"policy": data}
        kind = RetentionKind(data.get("policy", RetentionKind.FULL_HISTORY.value))
        window_seconds = data.get("window_seconds")
        return cls(
            kind=kind,
            count=data.get("count"),
            window=timedelta(seconds=window_seconds) if window_seconds is not None else None,
        )


@dataclass
class DurableExecutionConfig:
    """
    Configuration for the durable execution engine.

    Attributes:
        enabled: Whether checkpoints are written at all
        frequency: When should_checkpoint() says yes
        retention: Which checkpoints survive pruning
        retry_failed_saves: Retry a failed save once at the next boundary
        prune_after_save: Apply retention after every successful checkpoint
    """
    enabled: bool = True
    frequency: CheckpointFrequency = CheckpointFrequency.PER_TURN
    retention: RetentionPolicy = field(default_factory=RetentionPolicy.full_history)
    retry_failed_saves: bool = True
    prune_after_save: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DurableExecutionConfig":
        """Create from dictionary"""
        return cls(
            enabled=data.get("enabled", True),
            frequency=CheckpointFrequency(data.get("frequency", CheckpointFrequency.PER_TURN.value)),
            retention=RetentionPolicy.from_dict(data.get("retention", RetentionKind.FULL_HISTORY.value)),
            retry_failed_saves=data.get("retry_failed_saves", True),
            prune_after_save=data.get("prune_after_save", True),
        )
