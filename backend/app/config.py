"""
Runtime configuration — single source of truth for environment settings,
viewer interaction thresholds and floor-mapping constants.

Import from here rather than hardcoding values in services or routes.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


# ── Service ───────────────────────────────────────────────────────────────────
APP_NAME: str = "Site Defect Tracker API"
APP_VERSION: str = "1.0.0"

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
JSON_LOGS: bool = os.getenv("LOG_FORMAT", "json").lower() != "text"

_cors_default = "http://localhost:3000,http://localhost:8000"
CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()
]


# ── Database ──────────────────────────────────────────────────────────────────
# Empty means dev mode: the API runs but init_db() creates nothing
DATABASE_URL: str = os.getenv("DATABASE_URL", "")
DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
DB_RESET_ON_STARTUP: bool = os.getenv("DB_RESET_ON_STARTUP", "").lower() in ("1", "true", "yes")


# ── Photo storage ─────────────────────────────────────────────────────────────
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "uploads")
PHOTO_URL_SECRET: str = os.getenv("PHOTO_URL_SECRET", "changethis_use_a_real_secret_in_production_64chars")
PHOTO_URL_ALGORITHM: str = os.getenv("PHOTO_URL_ALGORITHM", "HS256")
PHOTO_URL_BASE: str = os.getenv("PHOTO_URL_BASE", "/api/photos/content")

# Signed URL lifetime (minutes); requests above the cap are clamped
PHOTO_URL_DEFAULT_MINUTES: int = 60
PHOTO_URL_MAX_MINUTES: int = 7 * 24 * 60

MAX_PHOTO_BYTES: int = 20 * 1024 * 1024


# ── Viewer access token (APS 2-legged OAuth) ──────────────────────────────────
APS_CLIENT_ID: str = os.getenv("APS_CLIENT_ID", "")
APS_CLIENT_SECRET: str = os.getenv("APS_CLIENT_SECRET", "")
APS_TOKEN_URL: str = os.getenv(
    "APS_TOKEN_URL", "https://developer.api.autodesk.com/authentication/v2/token"
)
APS_SCOPE: str = os.getenv("APS_SCOPE", "data:read")

# Cached token is reused until this many seconds before its stated expiry
TOKEN_REFRESH_MARGIN_S: float = 60.0


# ── Floor element mapping ─────────────────────────────────────────────────────
# Property display names (lower-cased) that carry an element's level
LEVEL_PROPERTY_NAMES: tuple[str, ...] = ("level", "building storey", "base constraint")

# Property filter sent with each bulk metadata query
LEVEL_PROPERTY_FILTER: tuple[str, ...] = ("Level", "Building Storey", "Base Constraint")

BULK_PROPERTY_BATCH_SIZE: int = 500


# ── Interaction controller timing (milliseconds / pixels) ─────────────────────
SELECTION_DEBOUNCE_MS: int = 200
LONG_PRESS_MS: int = 500
LONG_PRESS_MOVE_THRESHOLD_PX: float = 5.0
DOUBLE_TAP_THRESHOLD_MS: int = 300
# Second tap must land within this radius of the first to count as a double tap
DOUBLE_TAP_MAX_DISTANCE_PX: float = 30.0


# ── Info panel placement (pixels) ─────────────────────────────────────────────
INFO_PANEL_WIDTH_PX: float = 320.0
INFO_PANEL_MARGIN_PX: float = 16.0
