# SQLAlchemy models
from .base import Base
from .cache import (
    AssignmentRow,
    OutcomeRow,
    QuarantineRow,
    SubjectRow,
    SyncCursorRow,
)

__all__ = [
    # Base
    "Base",
    # Cache
    "SubjectRow",
    "AssignmentRow",
    "OutcomeRow",
    "SyncCursorRow",
    "QuarantineRow",
]
