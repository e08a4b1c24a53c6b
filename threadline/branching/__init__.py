"""
Threadline Branching - Alternate timelines for conversation threads

Provides:
- BranchingConfig: Configuration
- Branching: Fork, copy, switch, delete and rename branches
- CheckpointObserver: Base class for branching event observers
- Branch events: BranchCreatedEvent, BranchSwitchedEvent, BranchDeletedEvent,
  BranchRenamedEvent, ThreadCopiedEvent
"""

from .models import (
    BranchCreatedEvent,
    BranchDeletedEvent,
    BranchingConfig,
    BranchRenamedEvent,
    BranchSwitchedEvent,
    CheckpointObserver,
    ThreadCopiedEvent,
)
from .service import Branching

__all__ = [
    "BranchingConfig",
    "Branching",
    "CheckpointObserver",
    "BranchCreatedEvent",
    "BranchSwitchedEvent",
    "BranchDeletedEvent",
    "BranchRenamedEvent",
    "ThreadCopiedEvent",
]
