"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from wani.api.errors import DuplicateSubmissionError
from wani.api.gateway import RemoteGateway
from wani.core.models import (
    AssignmentUpdate,
    AuxiliaryMeaning,
    Meaning,
    Page,
    Reading,
    ReviewOutcome,
    SessionKind,
    SourcePriority,
    Subject,
    SubjectKind,
)
from wani.store.local_store import LocalStore

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (real SQLite cache)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


# =============================================================================
# Builders
# =============================================================================


def make_subject(
    subject_id: int = 1,
    kind: SubjectKind = SubjectKind.KANJI,
    meanings: tuple[str, ...] = ("Tree",),
    readings: tuple[str, ...] = ("き", "もく"),
    characters: str | None = "木",
    level: int = 1,
    lesson_position: int = 0,
    **extra,
) -> Subject:
    """Build a subject. The first meaning and reading are primary."""
    has_readings = kind in (SubjectKind.KANJI, SubjectKind.VOCABULARY)
    return Subject(
        id=subject_id,
        kind=kind,
        level=level,
        lesson_position=lesson_position,
        characters=characters,
        slug=meanings[0].lower() if meanings else str(subject_id),
        meanings=[Meaning(meaning=m, primary=i == 0) for i, m in enumerate(meanings)],
        readings=[Reading(reading=r, primary=i == 0) for i, r in enumerate(readings)] if has_readings else [],
        meaning_mnemonic=extra.pop("meaning_mnemonic", "This looks like a <radical>tree</radical>."),
        reading_mnemonic=extra.pop("reading_mnemonic", "A <reading>key</reading> hangs from the tree."),
        auxiliary_meanings=[AuxiliaryMeaning(**a) for a in extra.pop("auxiliary_meanings", [])],
        data_updated_at=extra.pop("data_updated_at", NOW - timedelta(days=30)),
        **extra,
    )


def make_outcome(
    subject_id: int = 1,
    starting: int = 1,
    expected: int = 2,
    kind: SessionKind = SessionKind.REVIEW,
    token: str | None = None,
    completed_at: datetime = NOW,
    **extra,
) -> ReviewOutcome:
    return ReviewOutcome(
        subject_id=subject_id,
        session_kind=kind,
        completed_at=completed_at,
        idempotency_token=token or f"token-{subject_id}-{starting}-{expected}-{completed_at.timestamp()}",
        starting_srs_stage=starting,
        expected_srs_stage=expected,
        assignment_id=extra.pop("assignment_id", 1000 + subject_id),
        meaning_correct=extra.pop("meaning_correct", 1),
        reading_correct=extra.pop("reading_correct", 1),
        encounters=extra.pop("encounters", 2),
        **extra,
    )


def seed_review(store: LocalStore, subject: Subject, stage: int = 1, available_at: datetime | None = None) -> None:
    """Cache a subject with an assignment due for review."""
    store.upsert_subjects([subject])
    store.apply_assignment_update(
        subject.id,
        {
            "assignment_id": 1000 + subject.id,
            "srs_stage": stage,
            "unlocked_at": NOW - timedelta(days=10),
            "started_at": NOW - timedelta(days=9),
            "available_at": available_at or NOW - timedelta(hours=1),
        },
        SourcePriority.SERVER,
        NOW - timedelta(days=1),
    )


def seed_lesson(store: LocalStore, subject: Subject) -> None:
    """Cache a subject with an unlocked, unstarted assignment."""
    store.upsert_subjects([subject])
    store.apply_assignment_update(
        subject.id,
        {"assignment_id": 1000 + subject.id, "srs_stage": 0, "unlocked_at": NOW - timedelta(days=1)},
        SourcePriority.SERVER,
        NOW - timedelta(days=1),
    )


# =============================================================================
# Fake gateway
# =============================================================================


class FakeGateway(RemoteGateway):
    """
    Scriptable in-memory server.

    Applies each idempotency token at most once and records concurrency per
    subject so tests can check that pushes never overlap.
    """

    def __init__(self):
        self.subject_pages: list[Page] = []
        self.assignment_pages: list[Page] = []
        self.fetch_calls: list[tuple[str, datetime | None, str | None, str | None]] = []
        self.fetch_error: Exception | None = None

        self.submit_errors: list[Exception | None] = []  # consumed one per submit
        self.always_raise: Exception | None = None
        self.submit_delay = 0.0
        self.submitted: list[tuple[str, ReviewOutcome]] = []
        self.applied: dict[str, AssignmentUpdate] = {}
        self.duplicate_is_error = True

        self.in_flight: dict[int, int] = {}
        self.max_in_flight: dict[int, int] = {}
        self.closed = False

    async def _fetch(self, resource, pages, since_cursor, page, etag) -> Page:
        self.fetch_calls.append((resource, since_cursor, page, etag))
        if self.fetch_error is not None:
            raise self.fetch_error
        index = int(page) if page else 0
        if index >= len(pages):
            return Page()
        return pages[index]

    async def fetch_subjects(self, since_cursor, page=None, etag=None) -> Page:
        return await self._fetch("subjects", self.subject_pages, since_cursor, page, etag)

    async def fetch_assignments(self, since_cursor, page=None, etag=None) -> Page:
        return await self._fetch("assignments", self.assignment_pages, since_cursor, page, etag)

    async def submit_outcome(self, idempotency_token, outcome) -> AssignmentUpdate:
        subject_id = outcome.subject_id
        self.in_flight[subject_id] = self.in_flight.get(subject_id, 0) + 1
        self.max_in_flight[subject_id] = max(self.max_in_flight.get(subject_id, 0), self.in_flight[subject_id])
        try:
            self.submitted.append((idempotency_token, outcome))
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.always_raise is not None:
                raise self.always_raise
            if self.submit_errors:
                error = self.submit_errors.pop(0)
                if error is not None:
                    raise error
            if idempotency_token in self.applied:
                if self.duplicate_is_error:
                    raise DuplicateSubmissionError("HTTP 409: already applied")
                return self.applied[idempotency_token]
            update = AssignmentUpdate(
                subject_id=subject_id,
                subject_kind=SubjectKind.KANJI,
                fields={"srs_stage": outcome.expected_srs_stage, "assignment_id": outcome.assignment_id},
                data_updated_at=outcome.completed_at + timedelta(seconds=1),
            )
            self.applied[idempotency_token] = update
            return update
        finally:
            self.in_flight[subject_id] -= 1

    async def close(self) -> None:
        self.closed = True


class LookupGateway(FakeGateway):
    """Fake server that can answer whether a token was applied."""

    supports_token_lookup = True

    def __init__(self):
        super().__init__()
        self.lookups: list[str] = []

    async def lookup_token(self, idempotency_token):
        self.lookups.append(idempotency_token)
        return self.applied.get(idempotency_token)


class ManualClock:
    """Monotonic clock moved by hand."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cache" / "wani_cache.db"


@pytest.fixture
def store(db_path):
    """Fresh local store in a temporary directory."""
    store = LocalStore(db_path=db_path, page_size=3)
    yield store
    store.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def tree():
    """Kanji 木 (tree)."""
    return make_subject(
        1,
        auxiliary_meanings=[
            {"meaning": "Wood", "type": "whitelist"},
            {"meaning": "Lumber", "type": "blacklist"},
        ],
    )


@pytest.fixture
def lookup_gateway():
    return LookupGateway()


@pytest.fixture(name="make_subject")
def make_subject_fixture():
    return make_subject


@pytest.fixture(name="make_outcome")
def make_outcome_fixture():
    return make_outcome


@pytest.fixture(name="seed_review")
def seed_review_fixture():
    return seed_review


@pytest.fixture(name="seed_lesson")
def seed_lesson_fixture():
    return seed_lesson
