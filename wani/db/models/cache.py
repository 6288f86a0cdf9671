"""
Local cache tables.

- subjects: catalog, one JSON payload per subject
- assignments: progress keyed by subject id
- review_outcomes: append-only queue of finished items, keyed by increasing local id
- sync_cursors: last successful pull per resource
- quarantine: copies of records that could not be read back

Enum-like values and timestamps are stored as plain text so that an unreadable
value can be detected and quarantined instead of failing the whole query.
Timestamps are naive UTC in a fixed-width format, so text order is time order.
"""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SubjectRow(Base):
    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    lesson_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    data_updated_at: Mapped[str | None] = mapped_column(Text)
    cached_at: Mapped[str] = mapped_column(Text, default=func.now(), onupdate=func.now())


class AssignmentRow(Base):
    __tablename__ = "assignments"

    subject_id: Mapped[int] = mapped_column(
        ForeignKey("subjects.id", ondelete="RESTRICT"), primary_key=True
    )
    assignment_id: Mapped[int | None] = mapped_column(Integer)
    subject_kind: Mapped[str] = mapped_column(Text, nullable=False)
    srs_stage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlocked_at: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[str | None] = mapped_column(Text)
    available_at: Mapped[str | None] = mapped_column(Text)
    passed_at: Mapped[str | None] = mapped_column(Text)
    burned_at: Mapped[str | None] = mapped_column(Text)
    hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    data_updated_at: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_assignments_due", "srs_stage", "available_at"),
    )


class OutcomeRow(Base):
    __tablename__ = "review_outcomes"

    local_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False)
    assignment_id: Mapped[int | None] = mapped_column(Integer)
    session_kind: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_token: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    starting_srs_stage: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_srs_stage: Mapped[int] = mapped_column(Integer, nullable=False)
    meaning_correct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reading_correct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meaning_incorrect: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reading_incorrect: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    encounters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[str] = mapped_column(Text, nullable=False)
    sync_state: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    submitted_at: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_outcomes_state", "sync_state", "local_id"),
        Index("idx_outcomes_subject", "subject_id", "local_id"),
    )


class SyncCursorRow(Base):
    __tablename__ = "sync_cursors"

    resource: Mapped[str] = mapped_column(Text, primary_key=True)
    updated_after: Mapped[str | None] = mapped_column(Text)
    etag: Mapped[str | None] = mapped_column(Text)


class QuarantineRow(Base):
    __tablename__ = "quarantine"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    record_key: Mapped[str] = mapped_column(Text, nullable=False)
    raw: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quarantined_at: Mapped[str] = mapped_column(Text, default=func.now())
