"""
issue_lifecycle.py — Issue aggregate and its status state machine.

Covers:
  - IssueStatus / IssuePriority enumerations
  - Location: tagged union of an element reference (DbIdLocation) or a free
    3D point (WorldPositionLocation); the variant is fixed at creation
  - Issue: immutable snapshot; every operation returns a new snapshot
  - Legal status edges:
        OPEN        -> IN_PROGRESS   start_work
        IN_PROGRESS -> DONE          complete
        IN_PROGRESS -> OPEN          reject_work
        DONE        -> IN_PROGRESS   reopen_after_completion
    Anything else raises InvalidStatusTransition.

The aggregate knows nothing about photo evidence; that rule lives in
workflow_policy.py.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from app.services.domain_errors import InvalidStatusTransition, ValidationError


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class IssuePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Accepted spellings after stripping separators and upper-casing
_STATUS_ALIASES = {
    "OPEN": IssueStatus.OPEN,
    "INPROGRESS": IssueStatus.IN_PROGRESS,
    "DONE": IssueStatus.DONE,
}


def parse_status(value) -> IssueStatus:
    """
    Normalise a client-supplied status.

    Accepts ``OPEN``, ``Open``, ``IN_PROGRESS``, ``InProgress``,
    ``in-progress``, ``in progress``, ``DONE``, ``Done`` and friends.
    """
    if isinstance(value, IssueStatus):
        return value
    key = re.sub(r"[\s_\-]", "", str(value or "")).upper()
    status = _STATUS_ALIASES.get(key)
    if status is None:
        raise ValidationError(
            f"Invalid status '{value}'. Must be one of: OPEN, IN_PROGRESS, DONE"
        )
    return status


def parse_priority(value) -> IssuePriority:
    if isinstance(value, IssuePriority):
        return value
    try:
        return IssuePriority(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(
            f"Invalid priority '{value}'. Must be one of: LOW, MEDIUM, HIGH, CRITICAL"
        )


# ---------------------------------------------------------------------------
# Location (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DbIdLocation:
    """Issue anchored to a model element."""
    db_id: int

    type = "dbId"

    def __post_init__(self):
        if isinstance(self.db_id, bool) or not isinstance(self.db_id, int) or self.db_id < 0:
            raise ValidationError("dbId must be a non-negative integer")


@dataclass(frozen=True)
class WorldPositionLocation:
    """Issue anchored to a free point in model space."""
    x: float
    y: float
    z: float

    type = "worldPosition"

    def __post_init__(self):
        for axis in (self.x, self.y, self.z):
            if isinstance(axis, bool) or not isinstance(axis, (int, float)) or not math.isfinite(axis):
                raise ValidationError("World position coordinates must be finite numbers")


Location = Union[DbIdLocation, WorldPositionLocation]


def location_from_fields(
    location_type: Optional[str],
    db_id=None,
    x=None,
    y=None,
    z=None,
) -> Location:
    """
    Build a Location from the flat request/persistence representation.

    Exactly the fields of the chosen variant must be usable; anything else is
    a structural error.
    """
    if location_type == DbIdLocation.type:
        if db_id is None or str(db_id).strip() == "":
            raise ValidationError("locationType 'dbId' requires dbId")
        try:
            parsed = int(str(db_id).strip())
        except ValueError:
            raise ValidationError(f"dbId must be an integer, got '{db_id}'")
        return DbIdLocation(parsed)

    if location_type == WorldPositionLocation.type:
        if x is None or y is None or z is None:
            raise ValidationError("worldPosition requires worldPositionX/Y/Z")
        try:
            return WorldPositionLocation(float(x), float(y), float(z))
        except (TypeError, ValueError):
            raise ValidationError("World position coordinates must be finite numbers")

    raise ValidationError(
        f"Invalid locationType '{location_type}'. Must be 'dbId' or 'worldPosition'"
    )


def location_to_fields(location: Location) -> dict:
    """Flatten a Location into nullable columns / DTO fields."""
    if isinstance(location, DbIdLocation):
        return {
            "location_type": DbIdLocation.type,
            "db_id": location.db_id,
            "world_position_x": None,
            "world_position_y": None,
            "world_position_z": None,
        }
    if isinstance(location, WorldPositionLocation):
        return {
            "location_type": WorldPositionLocation.type,
            "db_id": None,
            "world_position_x": location.x,
            "world_position_y": location.y,
            "world_position_z": location.z,
        }
    raise TypeError(f"Unsupported location variant: {type(location).__name__}")


# ---------------------------------------------------------------------------
# Issue aggregate
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Issue {field_name} must not be empty")
    return value


@dataclass(frozen=True)
class Issue:
    id: str
    project_id: str
    floor_id: str
    title: str
    description: str
    location: Location
    priority: IssuePriority = IssuePriority.MEDIUM
    status: IssueStatus = IssueStatus.OPEN
    issue_type: Optional[str] = None
    reported_by: Optional[str] = None
    created_at: datetime = None
    updated_at: datetime = None

    @classmethod
    def create(
        cls,
        issue_id: str,
        project_id: str,
        floor_id: str,
        title: str,
        description: str,
        location: Location,
        priority: IssuePriority = IssuePriority.MEDIUM,
        issue_type: Optional[str] = None,
        reported_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Issue":
        """New issue in OPEN state; created_at == updated_at."""
        _require_text(issue_id, "id")
        _require_text(project_id, "projectId")
        _require_text(floor_id, "floorId")
        _require_text(title, "title")
        _require_text(description, "description")
        if not isinstance(location, (DbIdLocation, WorldPositionLocation)):
            raise ValidationError("Issue location must be a dbId or worldPosition location")

        created = now or _utcnow()
        return cls(
            id=issue_id,
            project_id=project_id,
            floor_id=floor_id,
            title=title,
            description=description,
            location=location,
            priority=parse_priority(priority),
            status=IssueStatus.OPEN,
            issue_type=issue_type or None,
            reported_by=reported_by or None,
            created_at=created,
            updated_at=created,
        )

    # ── Transitions ─────────────────────────────────────────────────────────

    def start_work(self) -> "Issue":
        """OPEN -> IN_PROGRESS."""
        return self._move(IssueStatus.OPEN, IssueStatus.IN_PROGRESS)

    def complete(self) -> "Issue":
        """IN_PROGRESS -> DONE."""
        return self._move(IssueStatus.IN_PROGRESS, IssueStatus.DONE)

    def reject_work(self) -> "Issue":
        """IN_PROGRESS -> OPEN (remediation rejected)."""
        return self._move(IssueStatus.IN_PROGRESS, IssueStatus.OPEN)

    def reopen_after_completion(self) -> "Issue":
        """DONE -> IN_PROGRESS (re-raised after sign-off)."""
        return self._move(IssueStatus.DONE, IssueStatus.IN_PROGRESS)

    def transition_to(self, target: IssueStatus) -> "Issue":
        """Dispatch a requested target status onto the operation legal from the current state."""
        target = parse_status(target)
        operation = _EDGES.get((self.status, target))
        if operation is None:
            raise InvalidStatusTransition(self.status, target)
        return operation(self)

    def change_priority(self, priority: IssuePriority) -> "Issue":
        return replace(self, priority=parse_priority(priority), updated_at=self._touch())

    # ── Queries ─────────────────────────────────────────────────────────────

    def is_open(self) -> bool:
        return self.status == IssueStatus.OPEN

    def is_in_progress(self) -> bool:
        return self.status == IssueStatus.IN_PROGRESS

    def is_done(self) -> bool:
        return self.status == IssueStatus.DONE

    # ── Internals ───────────────────────────────────────────────────────────

    def _move(self, expected: IssueStatus, target: IssueStatus) -> "Issue":
        if self.status != expected:
            raise InvalidStatusTransition(self.status, target)
        return replace(self, status=target, updated_at=self._touch())

    def _touch(self) -> datetime:
        # updated_at never goes backwards, even if the wall clock does
        now = _utcnow()
        if self.updated_at is not None and now < self.updated_at:
            return self.updated_at
        return now


_EDGES = {
    (IssueStatus.OPEN, IssueStatus.IN_PROGRESS): Issue.start_work,
    (IssueStatus.IN_PROGRESS, IssueStatus.DONE): Issue.complete,
    (IssueStatus.IN_PROGRESS, IssueStatus.OPEN): Issue.reject_work,
    (IssueStatus.DONE, IssueStatus.IN_PROGRESS): Issue.reopen_after_completion,
}
