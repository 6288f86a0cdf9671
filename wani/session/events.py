"""
Messages exchanged between the session engine and the presentation layer.

The presentation layer sends UserInput values to SessionEngine.handle() and
renders the SessionEvent values it gets back. Neither side knows how the
other is implemented.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from wani.core.models import PromptType, ReviewOutcome, SessionKind, Subject
from wani.session.grading import Verdict

# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class Answer:
    text: str


@dataclass(frozen=True)
class Skip:
    """Move the current prompt to the back of the queue, no penalty."""


@dataclass(frozen=True)
class Abort:
    """End the session. Already retired items stay recorded."""


@dataclass(frozen=True)
class HelpRequested:
    """Show the mnemonic and hint for the current prompt."""


UserInput = Answer | Skip | Abort | HelpRequested


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class ItemPresented:
    subject: Subject
    prompt: PromptType
    remaining_items: int
    help: str | None = None


@dataclass(frozen=True)
class AnswerResult:
    """
    Verdict on one answer.

    Ungraded verdicts (see Verdict.is_graded) carry no penalty and are
    followed by the same prompt again.
    """

    subject: Subject
    prompt: PromptType
    answer: str
    verdict: Verdict
    expected: list[str] = field(default_factory=list)

    @property
    def correct(self) -> bool:
        return self.verdict.is_correct


@dataclass(frozen=True)
class ItemRetired:
    subject: Subject
    outcome: ReviewOutcome


@dataclass(frozen=True)
class SessionCompleted:
    kind: SessionKind
    retired: int


@dataclass(frozen=True)
class SessionAborted:
    kind: SessionKind
    retired: int
    discarded: int


SessionEvent = ItemPresented | AnswerResult | ItemRetired | SessionCompleted | SessionAborted
