"""
Local Store for wani-offline.

Durable SQLite cache of:
- Subjects (catalog) as validated JSON payloads
- Assignments (progress) keyed by subject id
- The append-only queue of review outcomes waiting for the server
- Per-resource sync cursors

Every mutating call commits before it returns. A record that can no longer be
read back is copied to the quarantine table, removed from its live table and
skipped; the rest of the store keeps working.

Database location: ~/.wani/wani_cache.db
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import ColumnElement, func, inspect, select, tuple_
from sqlalchemy.orm import Session

from config import get_settings
from wani.core import srs
from wani.core.models import (
    ASSIGNMENT_FIELDS,
    Assignment,
    ReviewOutcome,
    SessionKind,
    SourcePriority,
    Subject,
    SubjectKind,
    SyncCursor,
    SyncState,
)
from wani.db.database import create_cache_engine, init_db, make_session_factory, session_scope
from wani.db.models import AssignmentRow, OutcomeRow, QuarantineRow, SubjectRow, SyncCursorRow
from wani.store.errors import CorruptRecordError, UnknownSubjectError

UNSETTLED_STATES = (SyncState.PENDING.value, SyncState.SUBMITTED.value)

# Allowed sync_state transitions; anything else is ignored.
_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.PENDING: frozenset({SyncState.SUBMITTED, SyncState.CONFIRMED, SyncState.ERRORED}),
    SyncState.SUBMITTED: frozenset({SyncState.SUBMITTED, SyncState.CONFIRMED, SyncState.ERRORED}),
    SyncState.CONFIRMED: frozenset(),
    SyncState.ERRORED: frozenset(),
}

_DATETIME_FIELDS = frozenset({"unlocked_at", "started_at", "available_at", "passed_at", "burned_at"})


# =============================================================================
# Time helpers
# =============================================================================
# SQLite has no timezone support; everything is stored as naive UTC text.
# Values are parsed by the store, not by SQLAlchemy, so an unreadable one can
# be quarantined with its row.

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value.strftime(_DB_TIME_FORMAT)


def _from_db(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Raises ValueError or TypeError if unreadable."""
    if value is None:
        return None
    return datetime.fromisoformat(value).replace(tzinfo=UTC)


def _row_to_json(row: Any) -> str:
    mapper = inspect(row).mapper
    data = {attr.key: getattr(row, attr.key) for attr in mapper.column_attrs}
    return json.dumps(data, default=str, ensure_ascii=False)


# =============================================================================
# Lazy assignment views
# =============================================================================


class AssignmentView:
    """
    Lazy, finite, restartable sequence of assignments.

    Nothing is read until iteration starts. Rows are fetched in keyset pages,
    each page in its own short transaction, and every new iteration queries
    the store again from the beginning.
    """

    def __init__(
        self,
        store: LocalStore,
        criteria: Callable[[], list[ColumnElement[bool]]],
        order_by: tuple[Any, ...],
        page_size: int,
    ):
        self._store = store
        self._criteria = criteria
        self._order_by = order_by
        self._page_size = page_size

    def __iter__(self) -> Iterator[Assignment]:
        last_key: tuple[Any, ...] | None = None
        while True:
            with self._store._scope() as session:
                stmt = (
                    select(AssignmentRow, *self._order_by)
                    .join(SubjectRow, SubjectRow.id == AssignmentRow.subject_id)
                    .where(*self._criteria())
                )
                if last_key is not None:
                    stmt = stmt.where(tuple_(*self._order_by) > tuple_(*last_key))
                rows = session.execute(
                    stmt.order_by(*self._order_by).limit(self._page_size)
                ).all()
                if not rows:
                    return
                last_key = tuple(rows[-1][1:])
                assignments = []
                for result in rows:
                    assignment = self._store._read_assignment(session, result[0])
                    if assignment is not None:
                        assignments.append(assignment)
            yield from assignments
            if len(rows) < self._page_size:
                return

    def __len__(self) -> int:
        return self.count()

    def count(self) -> int:
        with self._store._scope() as session:
            return session.scalar(
                select(func.count()).select_from(AssignmentRow).where(*self._criteria())
            ) or 0


# =============================================================================
# Local Store
# =============================================================================


class LocalStore:
    """
    SQLite-backed cache of subjects, assignments and queued outcomes.

    All operations are synchronous and short; callers in async code may call
    them directly.
    """

    def __init__(self, db_path: Path | None = None, page_size: int = 200):
        """
        Initialize the local store.

        Args:
            db_path: Custom database path (defaults to settings.database_path)
            page_size: Rows fetched per page by lazy views
        """
        self.db_path = db_path or get_settings().database_path
        self.page_size = page_size
        self._engine = create_cache_engine(self.db_path)
        init_db(self._engine)
        self._factory = make_session_factory(self._engine)

        logger.debug("LocalStore initialized at {}", self.db_path)

    def close(self) -> None:
        self._engine.dispose()

    def _scope(self):
        return session_scope(self._factory)

    # =========================================================================
    # Quarantine
    # =========================================================================

    def _quarantine(self, session: Session, table: str, key: Any, row: Any, error: Exception) -> None:
        logger.warning("Quarantining unreadable {} record {}: {}", table, key, error)
        session.add(
            QuarantineRow(
                table_name=table,
                record_key=str(key),
                raw=_row_to_json(row),
                error=f"{type(error).__name__}: {error}",
            )
        )
        session.delete(row)
        session.flush()

    def list_quarantined(self, table: str | None = None) -> list[dict[str, Any]]:
        with self._scope() as session:
            stmt = select(QuarantineRow).order_by(QuarantineRow.id)
            if table:
                stmt = stmt.where(QuarantineRow.table_name == table)
            return [
                {
                    "id": q.id,
                    "table": q.table_name,
                    "key": q.record_key,
                    "raw": q.raw,
                    "error": q.error,
                    "resolved": q.resolved,
                    "quarantined_at": _from_db(q.quarantined_at),
                }
                for q in session.scalars(stmt)
            ]

    def has_unresolved_quarantine(self, table: str) -> bool:
        """True when records of table were dropped and should be fetched again."""
        with self._scope() as session:
            stmt = select(func.count()).select_from(QuarantineRow).where(
                QuarantineRow.table_name == table,
                QuarantineRow.resolved.is_(False),
            )
            return bool(session.scalar(stmt))

    def resolve_quarantine(self, table: str) -> None:
        """Mark quarantined records of table as re-fetched. The copies are kept."""
        with self._scope() as session:
            for q in session.scalars(
                select(QuarantineRow).where(
                    QuarantineRow.table_name == table, QuarantineRow.resolved.is_(False)
                )
            ):
                q.resolved = True

    # =========================================================================
    # Subjects
    # =========================================================================

    def upsert_subjects(self, batch: Iterable[Subject]) -> int:
        """Insert or refresh subjects. Returns the number written."""
        written = 0
        with self._scope() as session:
            for subject in batch:
                session.merge(
                    SubjectRow(
                        id=subject.id,
                        kind=subject.kind.value,
                        level=subject.level,
                        lesson_position=subject.lesson_position,
                        payload=subject.model_dump_json(),
                        data_updated_at=_to_db(subject.data_updated_at),
                    )
                )
                written += 1
        logger.debug("Upserted {} subjects", written)
        return written

    def _read_subject(self, session: Session, row: SubjectRow) -> Subject | None:
        try:
            return Subject.model_validate_json(row.payload)
        except (ValidationError, ValueError) as exc:
            assignment = session.get(AssignmentRow, row.id)
            if assignment is not None:
                self._quarantine(session, "assignments", row.id, assignment, CorruptRecordError("subject unreadable"))
            self._quarantine(session, "subjects", row.id, row, exc)
            return None

    def get_subject(self, subject_id: int) -> Subject | None:
        with self._scope() as session:
            row = session.get(SubjectRow, subject_id)
            if row is None:
                return None
            return self._read_subject(session, row)

    def count_subjects(self) -> int:
        with self._scope() as session:
            return session.scalar(select(func.count()).select_from(SubjectRow)) or 0

    # =========================================================================
    # Assignments
    # =========================================================================

    def _read_assignment(self, session: Session, row: AssignmentRow) -> Assignment | None:
        try:
            return Assignment(
                subject_id=row.subject_id,
                subject_kind=SubjectKind(row.subject_kind),
                srs_stage=int(row.srs_stage),
                assignment_id=row.assignment_id,
                unlocked_at=_from_db(row.unlocked_at),
                started_at=_from_db(row.started_at),
                available_at=_from_db(row.available_at),
                passed_at=_from_db(row.passed_at),
                burned_at=_from_db(row.burned_at),
                hidden=bool(row.hidden),
                source=SourcePriority(row.source),
                data_updated_at=_from_db(row.data_updated_at),
            )
        except (ValueError, TypeError) as exc:
            self._quarantine(session, "assignments", row.subject_id, row, exc)
            return None

    def get_assignment(self, subject_id: int) -> Assignment | None:
        with self._scope() as session:
            row = session.get(AssignmentRow, subject_id)
            if row is None:
                return None
            return self._read_assignment(session, row)

    def _no_unsettled_outcome(self) -> ColumnElement[bool]:
        unsettled = select(OutcomeRow.subject_id).where(OutcomeRow.sync_state.in_(UNSETTLED_STATES))
        return AssignmentRow.subject_id.not_in(unsettled)

    def get_due_assignments(self, now: datetime) -> AssignmentView:
        """
        Assignments due for review at now.

        Subjects with an outcome still waiting for the server are left out, so
        an item answered offline is not offered again before the server has
        seen the answer.
        """
        cutoff = _to_db(now)

        def criteria() -> list[ColumnElement[bool]]:
            return [
                AssignmentRow.srs_stage.between(srs.FIRST_STAGE, srs.BURNED_STAGE - 1),
                AssignmentRow.hidden.is_(False),
                AssignmentRow.available_at.is_not(None),
                AssignmentRow.available_at <= cutoff,
                self._no_unsettled_outcome(),
            ]

        return AssignmentView(
            self,
            criteria,
            (AssignmentRow.available_at, AssignmentRow.subject_id),
            self.page_size,
        )

    def get_lesson_assignments(self) -> AssignmentView:
        """Unlocked assignments whose lessons have not been started."""

        def criteria() -> list[ColumnElement[bool]]:
            return [
                AssignmentRow.srs_stage == srs.LESSON_STAGE,
                AssignmentRow.hidden.is_(False),
                AssignmentRow.unlocked_at.is_not(None),
                AssignmentRow.started_at.is_(None),
                self._no_unsettled_outcome(),
            ]

        return AssignmentView(
            self,
            criteria,
            (SubjectRow.level, SubjectRow.lesson_position, AssignmentRow.subject_id),
            self.page_size,
        )

    def apply_assignment_update(
        self,
        subject_id: int,
        fields: dict[str, Any],
        source_priority: SourcePriority,
        updated_at: datetime | None = None,
    ) -> bool:
        """
        Write assignment fields with server priority.

        Server writes always replace local speculative values; among server
        writes the newer data_updated_at wins and stale data is ignored.
        Local writes apply on top of whatever is present.

        Returns:
            True if the write was applied

        Raises:
            UnknownSubjectError: the subject is not cached
            ValueError: fields contains names that are not assignment fields
        """
        unknown = set(fields) - ASSIGNMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown assignment fields: {sorted(unknown)}")

        incoming_ts = _to_db(updated_at)
        with self._scope() as session:
            subject = session.get(SubjectRow, subject_id)
            if subject is None:
                raise UnknownSubjectError(subject_id)

            row = session.get(AssignmentRow, subject_id)
            if row is not None and self._read_assignment(session, row) is None:
                row = None  # unreadable, set aside; rebuilt from this write
            if row is None:
                row = AssignmentRow(
                    subject_id=subject_id,
                    subject_kind=subject.kind,
                    srs_stage=0,
                    hidden=False,
                    source=int(source_priority),
                )
                session.add(row)
            elif (
                source_priority is SourcePriority.SERVER
                and row.source == SourcePriority.SERVER
                and incoming_ts is not None
                and row.data_updated_at is not None
                and incoming_ts < row.data_updated_at
            ):
                logger.debug(
                    "Ignoring stale server update for subject {} ({} < {})",
                    subject_id,
                    incoming_ts,
                    row.data_updated_at,
                )
                return False

            for name, value in fields.items():
                setattr(row, name, _to_db(value) if name in _DATETIME_FIELDS else value)
            row.subject_kind = subject.kind
            row.source = int(source_priority)
            if source_priority is SourcePriority.SERVER and incoming_ts is not None:
                row.data_updated_at = incoming_ts
        return True

    # =========================================================================
    # Outcome queue
    # =========================================================================

    def enqueue_outcome(self, outcome: ReviewOutcome) -> int:
        """
        Append an outcome to the queue.

        The row is committed (and fsynced) before the local id is returned.

        Raises:
            UnknownSubjectError: the subject is not cached
        """
        with self._scope() as session:
            if session.get(SubjectRow, outcome.subject_id) is None:
                raise UnknownSubjectError(outcome.subject_id)
            row = OutcomeRow(
                subject_id=outcome.subject_id,
                assignment_id=outcome.assignment_id,
                session_kind=outcome.session_kind.value,
                idempotency_token=outcome.idempotency_token,
                starting_srs_stage=outcome.starting_srs_stage,
                expected_srs_stage=outcome.expected_srs_stage,
                meaning_correct=outcome.meaning_correct,
                reading_correct=outcome.reading_correct,
                meaning_incorrect=outcome.meaning_incorrect,
                reading_incorrect=outcome.reading_incorrect,
                encounters=outcome.encounters,
                completed_at=_to_db(outcome.completed_at),
                sync_state=SyncState.PENDING.value,
            )
            session.add(row)
            session.flush()
            local_id = row.local_id

        logger.debug("Enqueued outcome {} for subject {}", local_id, outcome.subject_id)
        return local_id

    def _read_outcome(self, session: Session, row: OutcomeRow) -> ReviewOutcome | None:
        try:
            return ReviewOutcome(
                local_id=row.local_id,
                subject_id=row.subject_id,
                assignment_id=row.assignment_id,
                session_kind=SessionKind(row.session_kind),
                idempotency_token=row.idempotency_token,
                starting_srs_stage=int(row.starting_srs_stage),
                expected_srs_stage=int(row.expected_srs_stage),
                meaning_correct=int(row.meaning_correct),
                reading_correct=int(row.reading_correct),
                meaning_incorrect=int(row.meaning_incorrect),
                reading_incorrect=int(row.reading_incorrect),
                encounters=int(row.encounters),
                completed_at=_from_db(row.completed_at),
                sync_state=SyncState(row.sync_state),
                submitted_at=_from_db(row.submitted_at),
                error=row.error,
            )
        except (ValueError, TypeError) as exc:
            self._quarantine(session, "review_outcomes", row.local_id, row, exc)
            return None

    def _select_outcomes(self, *criteria: ColumnElement[bool], limit: int | None = None) -> list[ReviewOutcome]:
        with self._scope() as session:
            stmt = select(OutcomeRow).where(*criteria).order_by(OutcomeRow.local_id)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = session.scalars(stmt).all()
            return [o for o in (self._read_outcome(session, r) for r in rows) if o is not None]

    def dequeue_pending_outcomes(self, limit: int = 100) -> list[ReviewOutcome]:
        """
        Oldest unsettled outcomes (pending or submitted) in local id order.

        Non-destructive: an outcome leaves the queue only when it is marked
        confirmed or errored.
        """
        return self._select_outcomes(OutcomeRow.sync_state.in_(UNSETTLED_STATES), limit=limit)

    def unsettled_outcomes_for(self, subject_id: int) -> list[ReviewOutcome]:
        return self._select_outcomes(
            OutcomeRow.subject_id == subject_id,
            OutcomeRow.sync_state.in_(UNSETTLED_STATES),
        )

    def list_outcomes(self, state: SyncState | None = None) -> list[ReviewOutcome]:
        if state is None:
            return self._select_outcomes()
        return self._select_outcomes(OutcomeRow.sync_state == state.value)

    def get_outcome(self, local_id: int) -> ReviewOutcome | None:
        with self._scope() as session:
            row = session.get(OutcomeRow, local_id)
            if row is None:
                return None
            return self._read_outcome(session, row)

    def _transition(self, local_id: int, target: SyncState, **changes: Any) -> bool:
        with self._scope() as session:
            row = session.get(OutcomeRow, local_id)
            if row is None:
                logger.warning("Outcome {} not found for transition to {}", local_id, target.value)
                return False
            outcome = self._read_outcome(session, row)
            if outcome is None:
                return False
            if target not in _TRANSITIONS[outcome.sync_state]:
                logger.debug(
                    "Ignoring transition of outcome {} from {} to {}",
                    local_id,
                    outcome.sync_state.value,
                    target.value,
                )
                return False
            row.sync_state = target.value
            for name, value in changes.items():
                setattr(row, name, value)
        return True

    def mark_outcome_submitted(self, local_id: int, at: datetime | None = None) -> bool:
        return self._transition(
            local_id, SyncState.SUBMITTED, submitted_at=_to_db(at or datetime.now(UTC))
        )

    def mark_outcome_confirmed(self, local_id: int) -> bool:
        return self._transition(local_id, SyncState.CONFIRMED, error=None)

    def mark_outcome_errored(self, local_id: int, message: str) -> bool:
        return self._transition(local_id, SyncState.ERRORED, error=message)

    # =========================================================================
    # Sync cursors
    # =========================================================================

    def _cursor_time(self, row: SyncCursorRow) -> datetime | None:
        try:
            return _from_db(row.updated_after)
        except (ValueError, TypeError) as exc:
            logger.warning("Unreadable {} cursor, pulling everything again: {}", row.resource, exc)
            return None

    def get_cursor(self, resource: str) -> SyncCursor:
        with self._scope() as session:
            row = session.get(SyncCursorRow, resource)
            if row is None:
                return SyncCursor(resource=resource)
            updated_after = self._cursor_time(row)
            return SyncCursor(
                resource=resource,
                updated_after=updated_after,
                etag=row.etag if updated_after is not None else None,
            )

    def advance_cursor(self, resource: str, updated_after: datetime, etag: str | None = None) -> bool:
        """Move a cursor forward. A value older than the stored one is ignored."""
        value = _to_db(updated_after)
        with self._scope() as session:
            row = session.get(SyncCursorRow, resource)
            if row is None:
                session.add(SyncCursorRow(resource=resource, updated_after=value, etag=etag))
                return True
            current = self._cursor_time(row)
            if current is not None and _from_db(value) < current:
                logger.debug("Cursor {} not moved backwards ({} < {})", resource, value, row.updated_after)
                return False
            row.updated_after = value
            row.etag = etag
        return True

    def list_cursors(self) -> list[SyncCursor]:
        with self._scope() as session:
            return [
                SyncCursor(resource=r.resource, updated_after=self._cursor_time(r), etag=r.etag)
                for r in session.scalars(select(SyncCursorRow).order_by(SyncCursorRow.resource))
            ]

    # =========================================================================
    # Summary
    # =========================================================================

    def summary(self, now: datetime) -> dict[str, int]:
        """Counts shown by the summary command."""
        with self._scope() as session:
            pending = session.scalar(
                select(func.count()).select_from(OutcomeRow).where(OutcomeRow.sync_state.in_(UNSETTLED_STATES))
            )
            errored = session.scalar(
                select(func.count()).select_from(OutcomeRow).where(OutcomeRow.sync_state == SyncState.ERRORED.value)
            )
            quarantined = session.scalar(select(func.count()).select_from(QuarantineRow))
        return {
            "lessons": self.get_lesson_assignments().count(),
            "reviews": self.get_due_assignments(now).count(),
            "pending_outcomes": pending or 0,
            "errored_outcomes": errored or 0,
            "quarantined": quarantined or 0,
        }
