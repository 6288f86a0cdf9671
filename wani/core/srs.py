"""
SRS stage arithmetic.

Mirrors the platform's published rules so a finished session can update the
local cache speculatively and so the sync coordinator can recognise an
outcome the server already applied.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from wani.core.models import Assignment, ReviewOutcome, SessionKind

LESSON_STAGE = 0
FIRST_STAGE = 1
PASSING_STAGE = 5  # guru
BURNED_STAGE = 9

# Hours until the item is available again after reaching a stage.
STAGE_INTERVAL_HOURS: dict[int, int] = {
    1: 4,
    2: 8,
    3: 23,
    4: 47,
    5: 167,
    6: 335,
    7: 719,
    8: 2879,
}

STAGE_NAMES: dict[int, str] = {
    0: "Lesson",
    1: "Apprentice I",
    2: "Apprentice II",
    3: "Apprentice III",
    4: "Apprentice IV",
    5: "Guru I",
    6: "Guru II",
    7: "Master",
    8: "Enlightened",
    9: "Burned",
}


def next_stage(stage: int, incorrect_answers: int) -> int:
    """
    Stage reached after a review.

    Zero mistakes move the item up one stage. Otherwise it drops by
    ceil(incorrect / 2), doubled from Guru upwards, never below stage 1.
    """
    if incorrect_answers <= 0:
        return min(stage + 1, BURNED_STAGE)

    penalty = 2 if stage >= PASSING_STAGE else 1
    adjustment = math.ceil(incorrect_answers / 2)
    return max(FIRST_STAGE, stage - adjustment * penalty)


def expected_stage(kind: SessionKind, stage: int, incorrect_answers: int) -> int:
    if kind is SessionKind.LESSON:
        return FIRST_STAGE
    return next_stage(stage, incorrect_answers)


def available_after(stage: int, at: datetime) -> datetime | None:
    hours = STAGE_INTERVAL_HOURS.get(stage)
    if hours is None:
        return None
    # The platform schedules on the hour.
    return (at + timedelta(hours=hours)).replace(minute=0, second=0, microsecond=0)


def speculative_fields(assignment: Assignment, outcome: ReviewOutcome) -> dict[str, Any]:
    """Assignment fields implied by an outcome, before the server confirms them."""
    stage = outcome.expected_srs_stage
    at = outcome.completed_at
    fields: dict[str, Any] = {
        "srs_stage": stage,
        "available_at": available_after(stage, at),
    }
    if outcome.session_kind is SessionKind.LESSON and assignment.started_at is None:
        fields["started_at"] = at
    if stage >= PASSING_STAGE and assignment.passed_at is None:
        fields["passed_at"] = at
    if stage == BURNED_STAGE:
        fields["burned_at"] = at
    return fields
