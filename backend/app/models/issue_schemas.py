"""
API schemas — pydantic v2 models serialised with camelCase keys.

Field names stay snake_case in Python; ``by_alias`` output and input
aliases use camelCase (``issueId``, ``locationType``, ``worldPositionX``).
"""
from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.services.issue_lifecycle import DbIdLocation, Issue, location_to_fields
from app.services.photo_evidence import Photo


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Catalog ──────────────────────────────────────────────────────────────────

class ProjectListItem(CamelModel):
    project_id: str
    name: str
    building_id: str
    status: str
    issue_count: int = 0
    start_date: Optional[date] = None
    due_date: Optional[date] = None


class BuildingSummary(CamelModel):
    building_id: str
    name: str
    address: str
    model_urn: str


class ProjectDetail(CamelModel):
    project_id: str
    name: str
    building_id: str
    status: str
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    building: BuildingSummary


class BuildingItem(BuildingSummary):
    latitude: float
    longitude: float


class FloorListItem(CamelModel):
    floor_id: str
    name: str
    floor_number: int
    issue_count: int = 0


# ── Issues / photos ──────────────────────────────────────────────────────────

class PhotoOut(CamelModel):
    photo_id: str
    blob_key: str
    photo_phase: str
    uploaded_at: datetime

    @classmethod
    def from_domain(cls, photo: Photo) -> "PhotoOut":
        return cls(
            photo_id=photo.id,
            blob_key=photo.blob_key,
            photo_phase=photo.phase.value,
            uploaded_at=photo.uploaded_at,
        )


class IssueListItem(CamelModel):
    issue_id: str
    title: str
    issue_type: Optional[str] = None
    status: str
    priority: str
    location_type: str
    db_id: Optional[str] = None
    world_position_x: Optional[float] = None
    world_position_y: Optional[float] = None
    world_position_z: Optional[float] = None
    reported_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def _fields_from(cls, issue: Issue) -> dict:
        loc = location_to_fields(issue.location)
        return {
            "issue_id": issue.id,
            "title": issue.title,
            "issue_type": issue.issue_type,
            "status": issue.status.value,
            "priority": issue.priority.value,
            "location_type": loc["location_type"],
            # dbId travels as a string, matching the creation form field
            "db_id": str(issue.location.db_id) if isinstance(issue.location, DbIdLocation) else None,
            "world_position_x": loc["world_position_x"],
            "world_position_y": loc["world_position_y"],
            "world_position_z": loc["world_position_z"],
            "reported_by": issue.reported_by,
            "created_at": issue.created_at,
            "updated_at": issue.updated_at,
        }

    @classmethod
    def from_domain(cls, issue: Issue) -> "IssueListItem":
        return cls(**cls._fields_from(issue))


class IssueDetail(IssueListItem):
    project_id: str
    floor_id: str
    description: str
    photos: List[PhotoOut] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, issue: Issue, photos: List[Photo] = ()) -> "IssueDetail":
        return cls(
            **cls._fields_from(issue),
            project_id=issue.project_id,
            floor_id=issue.floor_id,
            description=issue.description,
            photos=[PhotoOut.from_domain(p) for p in photos],
        )


class IssueCreated(CamelModel):
    issue_id: str


class IssueStatusUpdate(CamelModel):
    status: str


class IssuePriorityUpdate(CamelModel):
    priority: str


class PhotoCreated(CamelModel):
    photo_id: str
    blob_key: str
    photo_phase: str


class PhotoUrl(CamelModel):
    url: str
    expiration_minutes: int


# ── Viewer ───────────────────────────────────────────────────────────────────

class ViewerToken(BaseModel):
    access_token: str
    expires_in: int


class SnapshotProperty(CamelModel):
    display_name: str
    display_value: Any = None


class SnapshotElement(CamelModel):
    db_id: int
    properties: List[SnapshotProperty] = Field(default_factory=list)


class FloorMappingRequest(CamelModel):
    elements: List[SnapshotElement]
    selected_floor_number: Optional[int] = None


class FloorMappingDiagnostics(CamelModel):
    total_leaves: int
    matched: int
    no_level_property: int
    unmatched_with_level: int
    unmatched_values: dict


class FloorMappingResult(CamelModel):
    status: str
    error: Optional[str] = None
    floors: dict  # floor number (as string key) -> sorted element ids
    floors_with_elements: List[int]
    isolated_db_ids: Optional[List[int]] = None
    diagnostics: FloorMappingDiagnostics
