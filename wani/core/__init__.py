"""
Core Module - Shared domain models and SRS rules.

Components:
- models: Subject, Assignment, ReviewOutcome and the enums around them
- srs: stage transitions and review intervals
"""

from wani.core.models import (
    ALL_PROMPTS,
    Assignment,
    AssignmentUpdate,
    AuxiliaryMeaning,
    Meaning,
    Page,
    PromptType,
    Reading,
    ReviewOutcome,
    SessionKind,
    SourcePriority,
    Subject,
    SubjectKind,
    SyncCursor,
    SyncState,
)

__all__ = [
    "ALL_PROMPTS",
    "Assignment",
    "AssignmentUpdate",
    "AuxiliaryMeaning",
    "Meaning",
    "Page",
    "PromptType",
    "Reading",
    "ReviewOutcome",
    "SessionKind",
    "SourcePriority",
    "Subject",
    "SubjectKind",
    "SyncCursor",
    "SyncState",
]
