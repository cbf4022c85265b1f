"""Viewer API routes — access token for the 3D viewer."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_token_provider
from app.models.issue_schemas import ViewerToken
from app.services.viewer_token import ApsTokenProvider, ViewerTokenError

router = APIRouter(prefix="/api/viewer", tags=["Viewer"])
logger = logging.getLogger("defects-viewer.api")


@router.get("/token", response_model=ViewerToken)
async def get_viewer_token(provider: ApsTokenProvider = Depends(get_token_provider)):
    try:
        access_token, expires_in = await provider.get_access_token()
    except ViewerTokenError as e:
        logger.error(f"Viewer token unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return ViewerToken(access_token=access_token, expires_in=expires_in)
