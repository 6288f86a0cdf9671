"""Offline lesson and review sessions."""

from wani.session.engine import SessionContext, SessionEngine, SessionError, SessionItem, SessionState
from wani.session.events import (
    Abort,
    Answer,
    AnswerResult,
    HelpRequested,
    ItemPresented,
    ItemRetired,
    SessionAborted,
    SessionCompleted,
    SessionEvent,
    Skip,
    UserInput,
)
from wani.session.grading import Verdict, grade

__all__ = [
    "Abort",
    "Answer",
    "AnswerResult",
    "HelpRequested",
    "ItemPresented",
    "ItemRetired",
    "SessionAborted",
    "SessionCompleted",
    "SessionContext",
    "SessionEngine",
    "SessionError",
    "SessionEvent",
    "SessionItem",
    "SessionState",
    "Skip",
    "UserInput",
    "Verdict",
    "grade",
]
