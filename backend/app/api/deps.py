"""FastAPI dependency injection — repositories, storage, workflow policy, token provider."""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.services.photo_storage import LocalPhotoStorage
from app.services.repositories import (
    SqlCatalogRepository,
    SqlIssueRepository,
    SqlPhotoRepository,
)
from app.services.viewer_token import ApsTokenProvider
from app.services.workflow_policy import IssueWorkflowPolicy

# Process-wide singletons: storage is stateless, the token provider owns the cache
_storage = LocalPhotoStorage()
_token_provider = ApsTokenProvider()


def get_photo_storage() -> LocalPhotoStorage:
    return _storage


def get_token_provider() -> ApsTokenProvider:
    return _token_provider


def get_issue_repository(db: AsyncSession = Depends(get_db)) -> SqlIssueRepository:
    return SqlIssueRepository(db)


def get_photo_repository(db: AsyncSession = Depends(get_db)) -> SqlPhotoRepository:
    return SqlPhotoRepository(db)


def get_catalog_repository(db: AsyncSession = Depends(get_db)) -> SqlCatalogRepository:
    return SqlCatalogRepository(db)


def get_workflow_policy(
    issues: SqlIssueRepository = Depends(get_issue_repository),
    photos: SqlPhotoRepository = Depends(get_photo_repository),
    storage: LocalPhotoStorage = Depends(get_photo_storage),
) -> IssueWorkflowPolicy:
    return IssueWorkflowPolicy(issues, photos, storage)
