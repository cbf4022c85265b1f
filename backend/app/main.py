"""
Site Defect Tracker API
FastAPI backend with async PostgreSQL (SQLAlchemy + asyncpg), photo evidence
storage behind signed URLs, and viewer support endpoints (access token,
floor-mapping preview).
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.config import APP_NAME, APP_VERSION, CORS_ORIGINS, DATABASE_URL, JSON_LOGS, LOG_LEVEL
from app.services.domain_errors import (
    DomainError,
    EvidencePolicyViolation,
    InvalidStatusTransition,
    NotFoundError,
    ValidationError,
)
from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware, SecurityHeadersMiddleware
from app.services.perf_monitor import peak_rss_mb, tracker as perf_tracker

setup_logging(level=LOG_LEVEL, json_output=JSON_LOGS)
logger = logging.getLogger("defects-api")

_PROCESS_START = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import dispose_db, init_db
    await init_db()
    yield
    await dispose_db()


app = FastAPI(
    title=APP_NAME,
    version=APP_VERSION,
    description="Construction-site defect tracking over a 3D building model",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Added last so it is outermost and times the whole stack
app.add_middleware(RequestTimingMiddleware)


# ---------------------------------------------------------------------------
# Domain error -> HTTP mapping
# ---------------------------------------------------------------------------
_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStatusTransition, 409),
    (EvidencePolicyViolation, 422),
)


def status_for(exc: DomainError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    status = status_for(exc)
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, EvidencePolicyViolation):
        body["missingPhase"] = getattr(exc.missing_phase, "value", exc.missing_phase)
    level = logging.INFO if status < 500 else logging.ERROR
    logger.log(level, f"{request.method} {request.url.path} -> {status} {exc.code}: {exc.message}")
    return JSONResponse(status_code=status, content=body)


# Routers
from app.api.issue_routes import router as issue_router  # noqa: E402
from app.api.photo_routes import router as photo_router  # noqa: E402
from app.api.project_routes import router as project_router  # noqa: E402
from app.api.viewer_routes import router as viewer_router  # noqa: E402

app.include_router(project_router)
app.include_router(issue_router)
app.include_router(photo_router)
app.include_router(viewer_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": APP_VERSION,
        "persistence": "postgres" if DATABASE_URL else "dev",
    }


@app.get("/metrics")
async def metrics():
    """Workflow command and floor-mapping timings plus process uptime and peak memory."""
    return {
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        "memory_usage_mb": peak_rss_mb(),
        **perf_tracker.get_metrics(),
    }


if __name__ == "__main__":
    import os

    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
