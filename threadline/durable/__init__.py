"""
Threadline Durable - Automatic checkpointing, retention and resume

Provides:
- CheckpointFrequency: When to checkpoint
- RetentionPolicy: What to keep
- DurableExecutionConfig: Engine configuration
- DurableExecution: The engine
"""

from .models import (
    CheckpointFrequency,
    DurableExecutionConfig,
    RetentionKind,
    RetentionPolicy,
)
from .engine import DurableExecution, captured_call_ids

__all__ = [
    "CheckpointFrequency",
    "RetentionKind",
    "RetentionPolicy",
    "DurableExecutionConfig",
    "DurableExecution",
    "captured_call_ids",
]
