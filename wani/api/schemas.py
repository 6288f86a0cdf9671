"""
Wire schemas for the WaniKani v2 API.

Only the fields the cache needs are modelled; everything else is ignored.
Conversion helpers turn API resources into domain objects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from wani.core.models import (
    AssignmentUpdate,
    AuxiliaryMeaning,
    Meaning,
    Reading,
    Subject,
    SubjectKind,
)

SUBJECT_OBJECTS = frozenset(kind.value for kind in SubjectKind)


class Resource(BaseModel):
    """A single resource: {id, object, url, data_updated_at, data}."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    object: str
    url: str | None = None
    data_updated_at: datetime | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class Pages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    per_page: int | None = None
    next_url: str | None = None
    previous_url: str | None = None


class Collection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: str
    url: str | None = None
    data_updated_at: datetime | None = None
    total_count: int | None = None
    pages: Pages = Field(default_factory=Pages)
    data: list[Resource] = Field(default_factory=list)


class SubjectData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    characters: str | None = None
    slug: str = ""
    level: int = 1
    lesson_position: int = 0
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


class AssignmentData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject_id: int
    subject_type: SubjectKind
    srs_stage: int = 0
    unlocked_at: datetime | None = None
    started_at: datetime | None = None
    available_at: datetime | None = None
    passed_at: datetime | None = None
    burned_at: datetime | None = None
    hidden: bool = False


class ResourcesUpdated(BaseModel):
    model_config = ConfigDict(extra="ignore")

    assignment: Resource | None = None


class ReviewResponse(BaseModel):
    """Body returned by POST /reviews."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    object: str = "review"
    data: dict[str, Any] = Field(default_factory=dict)
    resources_updated: ResourcesUpdated | None = None


def subject_from_resource(resource: Resource) -> Subject | None:
    """Build a Subject, or None for objects that are not subjects."""
    if resource.object not in SUBJECT_OBJECTS or resource.id is None:
        return None
    data = SubjectData.model_validate(resource.data)
    return Subject(
        id=resource.id,
        kind=SubjectKind(resource.object),
        data_updated_at=resource.data_updated_at,
        **data.model_dump(),
    )


def assignment_update_from_resource(resource: Resource) -> AssignmentUpdate:
    data = AssignmentData.model_validate(resource.data)
    fields = data.model_dump(exclude={"subject_id", "subject_type"})
    fields["assignment_id"] = resource.id
    return AssignmentUpdate(
        subject_id=data.subject_id,
        subject_kind=data.subject_type,
        fields=fields,
        data_updated_at=resource.data_updated_at,
    )
