"""
Threadline Conversation - Thread aggregate and its persisted forms
"""

from .models import (
    DEFAULT_BRANCH,
    Message,
    ExecutionState,
    ConversationThread,
    ThreadSnapshot,
    ExecutionCheckpoint,
)

__all__ = [
    "DEFAULT_BRANCH",
    "Message",
    "ExecutionState",
    "ConversationThread",
    "ThreadSnapshot",
    "ExecutionCheckpoint",
]
