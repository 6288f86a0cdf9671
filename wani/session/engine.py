"""
Session engine for wani-offline.

Runs one lesson or review session against the local cache as a state
machine:

    IDLE -> LOADED -> PRESENTING -> GRADING -> ADVANCING -> COMPLETED
                                                         \\-> ABORTED

The working set is read from the store once, at load(). Every item must
clear all of its prompts (meaning, and reading where it has one) before it
retires. A retired item is written to the outcome queue at once, so an abort
or crash later in the session never loses it.
"""

from __future__ import annotations

import random
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

from loguru import logger

from config import get_settings
from wani.core import srs
from wani.core.models import (
    Assignment,
    PromptType,
    ReviewOutcome,
    SessionKind,
    SourcePriority,
    Subject,
)
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
from wani.session.grading import accepted_answers, grade
from wani.store.local_store import LocalStore


class SessionState(str, Enum):
    IDLE = "idle"
    LOADED = "loaded"
    PRESENTING = "presenting"
    GRADING = "grading"
    ADVANCING = "advancing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SessionError(Exception):
    """An operation was called in a state that does not allow it."""


@dataclass
class SessionItem:
    """Progress of one subject within the session."""

    subject: Subject
    assignment: Assignment
    required: PromptType
    cleared: PromptType = PromptType(0)
    meaning_correct: int = 0
    reading_correct: int = 0
    meaning_incorrect: int = 0
    reading_incorrect: int = 0
    encounters: int = 0

    @property
    def is_complete(self) -> bool:
        return self.cleared & self.required == self.required

    @property
    def incorrect_total(self) -> int:
        return self.meaning_incorrect + self.reading_incorrect

    def record(self, prompt: PromptType, correct: bool) -> None:
        self.encounters += 1
        if correct:
            self.cleared |= prompt
            if prompt is PromptType.MEANING:
                self.meaning_correct += 1
            else:
                self.reading_correct += 1
        else:
            self.cleared &= ~prompt
            if prompt is PromptType.MEANING:
                self.meaning_incorrect += 1
            else:
                self.reading_incorrect += 1


@dataclass
class SessionContext:
    """All mutable state of a running session."""

    kind: SessionKind
    items: dict[int, SessionItem] = field(default_factory=dict)
    queue: deque[tuple[int, PromptType]] = field(default_factory=deque)
    current: tuple[int, PromptType] | None = None
    retired: list[ReviewOutcome] = field(default_factory=list)
    loaded_at: datetime | None = None

    @property
    def remaining_items(self) -> int:
        return len(self.items)


class SessionEngine:
    """
    Drives a single session.

    Usage:
        engine = SessionEngine(store)
        engine.load(SessionKind.REVIEW)
        events = engine.start()
        events = engine.handle(Answer("tree"))
    """

    def __init__(
        self,
        store: LocalStore,
        batch_size: int | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        on_outcome: Callable[[ReviewOutcome], None] | None = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Local cache to read items from and queue outcomes into
            batch_size: Maximum items per session (default from config)
            clock: Wall clock, injectable for tests
            rng: Random source for prompt order, injectable for tests
            on_outcome: Called after each outcome is durably queued
        """
        self.store = store
        self.batch_size = batch_size or get_settings().session_batch_size
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rng = rng or random.Random()
        self._on_outcome = on_outcome

        self.state = SessionState.IDLE
        self.context: SessionContext | None = None

    # ========================================
    # Lifecycle
    # ========================================

    def load(self, kind: SessionKind, now: datetime | None = None) -> int:
        """
        Build the working set from the store.

        Returns:
            Number of items loaded
        """
        if self.state is not SessionState.IDLE:
            raise SessionError(f"Cannot load a session in state {self.state.value}")

        now = now or self._clock()
        view = self.store.get_due_assignments(now) if kind is SessionKind.REVIEW else self.store.get_lesson_assignments()

        context = SessionContext(kind=kind, loaded_at=now)
        for assignment in view:
            if len(context.items) >= self.batch_size:
                break
            subject = self.store.get_subject(assignment.subject_id)
            if subject is None or subject.hidden_at is not None:
                continue
            context.items[subject.id] = SessionItem(
                subject=subject,
                assignment=assignment,
                required=subject.required_prompts,
            )

        prompts = [
            (subject_id, prompt)
            for subject_id, item in context.items.items()
            for prompt in (PromptType.MEANING, PromptType.READING)
            if item.required & prompt
        ]
        self._rng.shuffle(prompts)
        context.queue.extend(prompts)

        self.context = context
        self.state = SessionState.LOADED
        logger.info("Loaded {} session with {} items", kind.value, len(context.items))
        return len(context.items)

    def start(self) -> list[SessionEvent]:
        if self.state is not SessionState.LOADED:
            raise SessionError(f"Cannot start a session in state {self.state.value}")
        return self._advance([])

    def handle(self, user_input: UserInput) -> list[SessionEvent]:
        """Process one input and return the resulting events, in order."""
        if isinstance(user_input, Abort):
            return self._abort()
        if self.state is not SessionState.PRESENTING:
            raise SessionError(f"Cannot accept input in state {self.state.value}")

        ctx = self._ctx()
        if ctx.current is None:
            raise SessionError("No prompt is being presented")
        subject_id, prompt = ctx.current
        item = ctx.items[subject_id]

        if isinstance(user_input, HelpRequested):
            return [self._presented(item, prompt, help=self._help_text(item.subject, prompt))]

        if isinstance(user_input, Skip):
            ctx.queue.append(ctx.current)
            ctx.current = None
            return self._advance([])

        if isinstance(user_input, Answer):
            return self._grade(item, prompt, user_input.text)

        raise SessionError(f"Unsupported input: {user_input!r}")

    @property
    def is_finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)

    # ========================================
    # Internals
    # ========================================

    def _ctx(self) -> SessionContext:
        if self.context is None:
            raise SessionError("No session loaded")
        return self.context

    def _presented(self, item: SessionItem, prompt: PromptType, help: str | None = None) -> ItemPresented:
        return ItemPresented(
            subject=item.subject,
            prompt=prompt,
            remaining_items=self._ctx().remaining_items,
            help=help,
        )

    @staticmethod
    def _help_text(subject: Subject, prompt: PromptType) -> str:
        if prompt is PromptType.READING:
            parts = [subject.reading_mnemonic, subject.reading_hint]
        else:
            parts = [subject.meaning_mnemonic, subject.meaning_hint]
        return "\n\n".join(p for p in parts if p)

    def _grade(self, item: SessionItem, prompt: PromptType, text: str) -> list[SessionEvent]:
        ctx = self._ctx()
        self.state = SessionState.GRADING
        verdict = grade(item.subject, prompt, text)
        result = AnswerResult(
            subject=item.subject,
            prompt=prompt,
            answer=text,
            verdict=verdict,
            expected=[] if verdict.is_correct else accepted_answers(item.subject, prompt),
        )

        if not verdict.is_graded:
            self.state = SessionState.PRESENTING
            return [result, self._presented(item, prompt)]

        self.state = SessionState.ADVANCING
        item.record(prompt, verdict.is_correct)
        events: list[SessionEvent] = [result]
        ctx.current = None

        if not verdict.is_correct:
            self._requeue((item.subject.id, prompt))
        elif item.is_complete:
            events.append(self._retire(item))

        return self._advance(events)

    def _requeue(self, entry: tuple[int, PromptType]) -> None:
        # Never straight back, unless nothing else is left.
        queue = self._ctx().queue
        position = self._rng.randint(1, len(queue)) if queue else 0
        queue.insert(position, entry)

    def _retire(self, item: SessionItem) -> ItemRetired:
        ctx = self._ctx()
        now = self._clock()
        starting = item.assignment.srs_stage
        outcome = ReviewOutcome(
            subject_id=item.subject.id,
            assignment_id=item.assignment.assignment_id,
            session_kind=ctx.kind,
            completed_at=now,
            idempotency_token=str(uuid.uuid4()),
            starting_srs_stage=starting,
            expected_srs_stage=srs.expected_stage(ctx.kind, starting, item.incorrect_total),
            meaning_correct=item.meaning_correct,
            reading_correct=item.reading_correct,
            meaning_incorrect=item.meaning_incorrect,
            reading_incorrect=item.reading_incorrect,
            encounters=item.encounters,
        )
        local_id = self.store.enqueue_outcome(outcome)
        outcome = replace(outcome, local_id=local_id)

        self.store.apply_assignment_update(
            item.subject.id,
            srs.speculative_fields(item.assignment, outcome),
            SourcePriority.LOCAL,
        )
        del ctx.items[item.subject.id]
        ctx.retired.append(outcome)
        logger.debug(
            "Retired subject {}: stage {} -> {} ({} incorrect)",
            item.subject.id,
            starting,
            outcome.expected_srs_stage,
            item.incorrect_total,
        )

        if self._on_outcome is not None:
            self._on_outcome(outcome)
        return ItemRetired(subject=item.subject, outcome=outcome)

    def _advance(self, events: list[SessionEvent]) -> list[SessionEvent]:
        ctx = self._ctx()
        self.state = SessionState.ADVANCING
        if not ctx.queue:
            self.state = SessionState.COMPLETED
            ctx.current = None
            events.append(SessionCompleted(kind=ctx.kind, retired=len(ctx.retired)))
            logger.info("{} session completed: {} items retired", ctx.kind.value, len(ctx.retired))
            return events

        ctx.current = ctx.queue.popleft()
        subject_id, prompt = ctx.current
        self.state = SessionState.PRESENTING
        events.append(self._presented(ctx.items[subject_id], prompt))
        return events

    def _abort(self) -> list[SessionEvent]:
        if self.is_finished:
            return []
        kind = self.context.kind if self.context else SessionKind.REVIEW
        retired = len(self.context.retired) if self.context else 0
        discarded = self.context.remaining_items if self.context else 0
        if self.context is not None:
            self.context.queue.clear()
            self.context.current = None
        self.state = SessionState.ABORTED
        logger.info("{} session aborted: {} retired, {} discarded", kind.value, retired, discarded)
        return [SessionAborted(kind=kind, retired=retired, discarded=discarded)]
