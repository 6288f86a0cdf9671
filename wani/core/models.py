"""
Domain models shared by the store, the sync coordinator and the session engine.

Subjects are pydantic models: they arrive from the API as JSON, are cached as
JSON, and a payload that no longer validates is how the store recognises a
corrupted record. Assignments and outcomes are plain dataclasses mapped to
table columns.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntFlag
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enums
# =============================================================================


class SubjectKind(str, Enum):
    """Kind of learning unit."""

    RADICAL = "radical"
    KANJI = "kanji"
    VOCABULARY = "vocabulary"
    KANA_VOCABULARY = "kana_vocabulary"


class SessionKind(str, Enum):
    """Type of study session."""

    LESSON = "lesson"
    REVIEW = "review"


class SyncState(str, Enum):
    """Lifecycle of a queued outcome."""

    PENDING = "pending"  # recorded locally, never sent
    SUBMITTED = "submitted"  # sent at least once, result unknown
    CONFIRMED = "confirmed"
    ERRORED = "errored"  # rejected by the server, kept for the user

    @property
    def is_settled(self) -> bool:
        return self in (SyncState.CONFIRMED, SyncState.ERRORED)


class SourcePriority(int, Enum):
    """Who wrote an assignment value. Higher wins."""

    LOCAL = 0  # speculative write from a finished session
    SERVER = 1  # authoritative value from the API


class PromptType(IntFlag):
    """Questions asked about a subject. Used as a bitmask."""

    MEANING = 1
    READING = 2


ALL_PROMPTS = PromptType.MEANING | PromptType.READING


# =============================================================================
# Subjects
# =============================================================================


class Meaning(BaseModel):
    model_config = ConfigDict(frozen=True)

    meaning: str
    primary: bool = False
    accepted_answer: bool = True


class AuxiliaryMeaning(BaseModel):
    model_config = ConfigDict(frozen=True)

    meaning: str
    type: str = "whitelist"  # "whitelist" | "blacklist"

    @property
    def is_whitelisted(self) -> bool:
        return self.type == "whitelist"


class Reading(BaseModel):
    model_config = ConfigDict(frozen=True)

    reading: str
    primary: bool = False
    accepted_answer: bool = True
    type: str | None = None  # onyomi / kunyomi / nanori for kanji


class Subject(BaseModel):
    """A cached learning unit. Never mutated once built."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: SubjectKind
    level: int = 1
    lesson_position: int = 0
    characters: str | None = None
    slug: str = ""
    meanings: list[Meaning] = Field(default_factory=list)
    auxiliary_meanings: list[AuxiliaryMeaning] = Field(default_factory=list)
    readings: list[Reading] = Field(default_factory=list)
    component_subject_ids: list[int] = Field(default_factory=list)
    amalgamation_subject_ids: list[int] = Field(default_factory=list)
    meaning_mnemonic: str = ""
    reading_mnemonic: str | None = None
    meaning_hint: str | None = None
    reading_hint: str | None = None
    hidden_at: datetime | None = None
    data_updated_at: datetime | None = None

    @property
    def required_prompts(self) -> PromptType:
        """Prompts a session must clear before the item retires."""
        if self.kind in (SubjectKind.RADICAL, SubjectKind.KANA_VOCABULARY) or not self.readings:
            return PromptType.MEANING
        return ALL_PROMPTS

    @property
    def primary_meaning(self) -> str:
        for m in self.meanings:
            if m.primary:
                return m.meaning
        return self.meanings[0].meaning if self.meanings else self.slug

    @property
    def display(self) -> str:
        return self.characters or self.slug


# =============================================================================
# Assignments
# =============================================================================

ASSIGNMENT_FIELDS = frozenset({
    "assignment_id",
    "srs_stage",
    "unlocked_at",
    "started_at",
    "available_at",
    "passed_at",
    "burned_at",
    "hidden",
})


@dataclass
class Assignment:
    """Progress record for one subject."""

    subject_id: int
    subject_kind: SubjectKind
    srs_stage: int = 0
    assignment_id: int | None = None
    unlocked_at: datetime | None = None
    started_at: datetime | None = None
    available_at: datetime | None = None
    passed_at: datetime | None = None
    burned_at: datetime | None = None
    hidden: bool = False
    source: SourcePriority = SourcePriority.SERVER
    data_updated_at: datetime | None = None

    @property
    def is_lesson(self) -> bool:
        return self.srs_stage == 0 and self.unlocked_at is not None and self.started_at is None

    def is_due(self, now: datetime) -> bool:
        return (
            1 <= self.srs_stage <= 8
            and not self.hidden
            and self.available_at is not None
            and self.available_at <= now
        )


@dataclass
class AssignmentUpdate:
    """Authoritative assignment state as reported by the server."""

    subject_id: int
    fields: dict[str, Any]
    subject_kind: SubjectKind | None = None
    data_updated_at: datetime | None = None

    @property
    def srs_stage(self) -> int | None:
        return self.fields.get("srs_stage")


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class ReviewOutcome:
    """Result of finishing one item in a session. Append-only once queued."""

    subject_id: int
    session_kind: SessionKind
    completed_at: datetime
    idempotency_token: str
    starting_srs_stage: int
    expected_srs_stage: int
    assignment_id: int | None = None
    meaning_correct: int = 0
    reading_correct: int = 0
    meaning_incorrect: int = 0
    reading_incorrect: int = 0
    encounters: int = 0
    local_id: int | None = None
    sync_state: SyncState = SyncState.PENDING
    submitted_at: datetime | None = None
    error: str | None = None

    @property
    def incorrect_total(self) -> int:
        return self.meaning_incorrect + self.reading_incorrect

    def with_state(self, state: SyncState, **changes: Any) -> ReviewOutcome:
        return replace(self, sync_state=state, **changes)


@dataclass
class Page:
    """One page of a paginated collection."""

    items: list[Any] = field(default_factory=list)
    next_page: str | None = None  # opaque continuation, None on the last page
    etag: str | None = None
    not_modified: bool = False
    skipped: int = 0  # records on this page that could not be parsed


@dataclass
class SyncCursor:
    resource: str
    updated_after: datetime | None = None
    etag: str | None = None
