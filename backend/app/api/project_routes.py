"""Catalog API routes — projects, buildings, floors and the floor-mapping preview."""
import logging
from typing import List

from fastapi import APIRouter, Depends

from app.api.deps import get_catalog_repository
from app.models.issue_schemas import (
    BuildingItem,
    FloorListItem,
    FloorMappingRequest,
    FloorMappingResult,
    ProjectDetail,
    ProjectListItem,
)
from app.services.domain_errors import NotFoundError
from app.services.repositories import SqlCatalogRepository
from app.services.viewer.floor_mapper import FloorElementMapper, FloorRef
from app.services.viewer.snapshot_engine import PropertySnapshotEngine

router = APIRouter(prefix="/api", tags=["Catalog"])
logger = logging.getLogger("defects-catalog")


@router.get("/projects", response_model=List[ProjectListItem])
async def list_projects(catalog: SqlCatalogRepository = Depends(get_catalog_repository)):
    return [ProjectListItem(**p) for p in await catalog.list_projects()]


@router.get("/projects/{project_id}", response_model=ProjectDetail)
async def get_project(project_id: str, catalog: SqlCatalogRepository = Depends(get_catalog_repository)):
    project = await catalog.get_project(project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return ProjectDetail(**project)


@router.get("/buildings", response_model=List[BuildingItem])
async def list_buildings(catalog: SqlCatalogRepository = Depends(get_catalog_repository)):
    return [BuildingItem(**b) for b in await catalog.list_buildings()]


@router.get("/buildings/{building_id}/floors", response_model=List[FloorListItem])
async def list_floors(building_id: str, catalog: SqlCatalogRepository = Depends(get_catalog_repository)):
    """Floors ordered by floor number, each with its issue count."""
    if not await catalog.building_exists(building_id):
        raise NotFoundError("Building", building_id)
    return [FloorListItem(**f) for f in await catalog.list_floors(building_id)]


@router.post("/buildings/{building_id}/floor-mapping", response_model=FloorMappingResult)
async def preview_floor_mapping(
    building_id: str,
    req: FloorMappingRequest,
    catalog: SqlCatalogRepository = Depends(get_catalog_repository),
):
    """
    Run the floor element mapper against a posted property snapshot and the
    building's floors.  Lets model authors check level metadata before the
    model is published to site teams.
    """
    if not await catalog.building_exists(building_id):
        raise NotFoundError("Building", building_id)

    floors = [FloorRef(f["name"], f["floor_number"]) for f in await catalog.list_floors(building_id)]
    engine = PropertySnapshotEngine.from_elements(e.model_dump(by_alias=True) for e in req.elements)
    mapper = FloorElementMapper(engine, floors)
    index = await mapper.rebuild() or mapper.index
    isolated = mapper.apply_isolation(req.selected_floor_number)

    logger.info(
        f"Floor mapping preview for building {building_id}: "
        f"{index.diagnostics.matched}/{index.diagnostics.total_leaves} matched"
    )
    return FloorMappingResult(
        status=index.status.value,
        error=index.error,
        floors={str(k): sorted(v) for k, v in sorted(index.elements_by_floor.items())},
        floors_with_elements=sorted(index.floors_with_elements),
        isolated_db_ids=sorted(isolated) if isolated else None,
        diagnostics=index.diagnostics.to_dict(),
    )
