"""
Async SQLAlchemy repositories.

Map ORM rows to the immutable domain values in issue_lifecycle.py and
photo_evidence.py.  Writes only flush; the request-scoped session from
``app.db.get_db`` commits (or rolls back) at the end of the request.
"""
import logging
import uuid
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import orm_models as orm
from app.services.domain_errors import NotFoundError
from app.services.issue_lifecycle import (
    Issue,
    IssuePriority,
    IssueStatus,
    location_from_fields,
    location_to_fields,
)
from app.services.photo_evidence import Photo, PhotoPhase

logger = logging.getLogger("defects-db")


def _uuid_or_none(value) -> Optional[str]:
    """Canonical form of a UUID key, or None when ``value`` cannot be one (no row can match it)."""
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def _issue_from_row(row: orm.Issue) -> Issue:
    return Issue(
        id=row.id,
        project_id=row.project_id,
        floor_id=row.floor_id,
        title=row.title,
        description=row.description,
        location=location_from_fields(
            row.location_type,
            db_id=row.db_id,
            x=row.world_position_x,
            y=row.world_position_y,
            z=row.world_position_z,
        ),
        priority=IssuePriority(row.priority),
        status=IssueStatus(row.status),
        issue_type=row.issue_type,
        reported_by=row.reported_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _photo_from_row(row: orm.Photo) -> Photo:
    return Photo(
        id=row.id,
        issue_id=row.issue_id,
        blob_key=row.blob_key,
        phase=PhotoPhase(row.photo_phase),
        uploaded_at=row.uploaded_at,
    )


class SqlIssueRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, issue: Issue) -> None:
        """Insert or update; only mutable columns change on update."""
        for entity, key in (("Project", issue.project_id), ("Floor", issue.floor_id)):
            if _uuid_or_none(key) is None:
                raise NotFoundError(entity, key)
        row = await self.db.get(orm.Issue, issue.id)
        if row is None:
            row = orm.Issue(
                id=issue.id,
                project_id=issue.project_id,
                floor_id=issue.floor_id,
                title=issue.title,
                description=issue.description,
                issue_type=issue.issue_type,
                reported_by=issue.reported_by,
                created_at=issue.created_at,
                **location_to_fields(issue.location),
            )
            self.db.add(row)
        row.status = issue.status.value
        row.priority = issue.priority.value
        row.updated_at = issue.updated_at
        await self.db.flush()

    async def find_by_id(self, issue_id: str) -> Optional[Issue]:
        key = _uuid_or_none(issue_id)
        if key is None:
            return None
        row = await self.db.get(orm.Issue, key)
        return _issue_from_row(row) if row else None

    async def find_by_project(self, project_id: str, floor_id: Optional[str] = None) -> List[Issue]:
        """Issues of a project, newest first, optionally limited to one floor."""
        project_key = _uuid_or_none(project_id)
        floor_key = _uuid_or_none(floor_id) if floor_id else None
        if project_key is None or (floor_id and floor_key is None):
            return []
        q = select(orm.Issue).where(orm.Issue.project_id == project_key)
        if floor_key:
            q = q.where(orm.Issue.floor_id == floor_key)
        q = q.order_by(orm.Issue.created_at.desc())
        result = await self.db.execute(q)
        return [_issue_from_row(r) for r in result.scalars().all()]

    async def delete(self, issue_id: str) -> None:
        key = _uuid_or_none(issue_id)
        if key is None:
            return
        await self.db.execute(delete(orm.Issue).where(orm.Issue.id == key))
        await self.db.flush()


class SqlPhotoRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, photo: Photo) -> None:
        self.db.add(orm.Photo(
            id=photo.id,
            issue_id=photo.issue_id,
            blob_key=photo.blob_key,
            photo_phase=photo.phase.value,
            uploaded_at=photo.uploaded_at,
        ))
        await self.db.flush()

    async def find_by_id(self, photo_id: str) -> Optional[Photo]:
        key = _uuid_or_none(photo_id)
        if key is None:
            return None
        row = await self.db.get(orm.Photo, key)
        return _photo_from_row(row) if row else None

    async def find_by_issue(self, issue_id: str) -> List[Photo]:
        key = _uuid_or_none(issue_id)
        if key is None:
            return []
        result = await self.db.execute(
            select(orm.Photo)
            .where(orm.Photo.issue_id == key)
            .order_by(orm.Photo.uploaded_at.desc())
        )
        return [_photo_from_row(r) for r in result.scalars().all()]

    async def count_by_phase(self, issue_id: str, phase: PhotoPhase) -> int:
        key = _uuid_or_none(issue_id)
        if key is None:
            return 0
        result = await self.db.execute(
            select(func.count(orm.Photo.id)).where(
                orm.Photo.issue_id == key,
                orm.Photo.photo_phase == PhotoPhase(phase).value,
            )
        )
        return int(result.scalar_one())

    async def delete(self, photo_id: str) -> None:
        key = _uuid_or_none(photo_id)
        if key is None:
            return
        await self.db.execute(delete(orm.Photo).where(orm.Photo.id == key))
        await self.db.flush()


class SqlCatalogRepository:
    """Read-only queries over projects, buildings and floors."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_projects(self) -> List[dict]:
        issue_count = (
            select(func.count(orm.Issue.id))
            .where(orm.Issue.project_id == orm.Project.id)
            .correlate(orm.Project)
            .scalar_subquery()
        )
        result = await self.db.execute(
            select(orm.Project, issue_count.label("issue_count"))
            .order_by(orm.Project.created_at.desc())
        )
        return [
            {
                "project_id": p.id,
                "name": p.name,
                "building_id": p.building_id,
                "status": p.status,
                "issue_count": int(count or 0),
                "start_date": p.start_date,
                "due_date": p.due_date,
            }
            for p, count in result.all()
        ]

    async def get_project(self, project_id: str) -> Optional[dict]:
        key = _uuid_or_none(project_id)
        if key is None:
            return None
        result = await self.db.execute(
            select(orm.Project)
            .options(selectinload(orm.Project.building))
            .where(orm.Project.id == key)
        )
        p = result.scalar_one_or_none()
        if p is None:
            return None
        return {
            "project_id": p.id,
            "name": p.name,
            "building_id": p.building_id,
            "status": p.status,
            "start_date": p.start_date,
            "due_date": p.due_date,
            "building": {
                "building_id": p.building.id,
                "name": p.building.name,
                "address": p.building.address,
                "model_urn": p.building.model_urn,
            },
        }

    async def list_buildings(self) -> List[dict]:
        result = await self.db.execute(select(orm.Building).order_by(orm.Building.name))
        return [
            {
                "building_id": b.id,
                "name": b.name,
                "address": b.address,
                "latitude": b.latitude,
                "longitude": b.longitude,
                "model_urn": b.model_urn,
            }
            for b in result.scalars().all()
        ]

    async def building_exists(self, building_id: str) -> bool:
        key = _uuid_or_none(building_id)
        return key is not None and await self.db.get(orm.Building, key) is not None

    async def list_floors(self, building_id: str) -> List[dict]:
        """Floors of a building ordered by floor number, with issue counts."""
        key = _uuid_or_none(building_id)
        if key is None:
            return []
        issue_count = (
            select(func.count(orm.Issue.id))
            .where(orm.Issue.floor_id == orm.Floor.id)
            .correlate(orm.Floor)
            .scalar_subquery()
        )
        result = await self.db.execute(
            select(orm.Floor, issue_count.label("issue_count"))
            .where(orm.Floor.building_id == key)
            .order_by(orm.Floor.floor_number)
        )
        return [
            {
                "floor_id": f.id,
                "name": f.name,
                "floor_number": f.floor_number,
                "issue_count": int(count or 0),
            }
            for f, count in result.all()
        ]
