"""
Spatial Resolver — screen point to model-space hit.

Pure functions over the ViewerEngine surface; no state is kept between
calls.  Resolution order for ``resolve_hit``:

  1. element hit passing the filter  -> exact hit point, else element center
  2. spatial-only                    -> camera ray ∩ plane through the model
                                        bbox center, normal = world up
  3. camera pivot
  4. model bbox center

Only a viewer with no model loaded yields ``None``.  Engine exceptions are
logged and treated as "stage unavailable".
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from app.services.viewer.engine import CameraState, Vec3, ViewerEngine

logger = logging.getLogger("defects-viewer.spatial")

_EPS = 1e-9
DEFAULT_WORLD_UP = Vec3(0.0, 1.0, 0.0)


@dataclass(frozen=True)
class ViewerHit:
    """Resolved interaction target. ``element_id`` is None for spatial-only hits."""
    element_id: Optional[int]
    point: Vec3

    @property
    def is_spatial(self) -> bool:
        return self.element_id is None


# ── Camera math ───────────────────────────────────────────────────────────────

def _normalize(v: np.ndarray) -> Optional[np.ndarray]:
    n = np.linalg.norm(v)
    if n < _EPS:
        return None
    return v / n


def _camera_basis(camera: CameraState) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(forward, right, up) orthonormal basis of the camera."""
    position = np.asarray(camera.position, dtype=float)
    forward = _normalize(np.asarray(camera.target, dtype=float) - position)
    if forward is None:
        raise ValueError("Camera target coincides with camera position")
    right = _normalize(np.cross(forward, np.asarray(camera.up, dtype=float)))
    if right is None:
        raise ValueError("Camera up vector is parallel to the view direction")
    up = np.cross(right, forward)
    return forward, right, up


def _half_extents(camera: CameraState, width: float, height: float) -> Tuple[float, float]:
    """Half width/height of the view frustum at unit depth (perspective) or in world units (ortho)."""
    aspect = width / height
    if camera.is_perspective:
        half_h = math.tan(math.radians(camera.fov_deg) / 2)
    else:
        half_h = (camera.ortho_height or 1.0) / 2
    return half_h * aspect, half_h


def screen_ray(
    camera: CameraState, width: float, height: float, canvas_x: float, canvas_y: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Ray (origin, unit direction) from the camera through a canvas pixel."""
    forward, right, up = _camera_basis(camera)
    half_w, half_h = _half_extents(camera, width, height)
    ndc_x = (canvas_x / width) * 2 - 1
    ndc_y = 1 - (canvas_y / height) * 2
    position = np.asarray(camera.position, dtype=float)

    if camera.is_perspective:
        direction = forward + ndc_x * half_w * right + ndc_y * half_h * up
        return position, direction / np.linalg.norm(direction)

    origin = position + ndc_x * half_w * right + ndc_y * half_h * up
    return origin, forward


def intersect_ray_plane(
    origin, direction, plane_point, plane_normal
) -> Optional[np.ndarray]:
    """Forward intersection of a ray with a plane; None when parallel or behind the origin."""
    o = np.asarray(origin, dtype=float)
    d = np.asarray(direction, dtype=float)
    n = np.asarray(plane_normal, dtype=float)
    denom = float(np.dot(n, d))
    if abs(denom) < _EPS:
        return None
    t = float(np.dot(n, np.asarray(plane_point, dtype=float) - o)) / denom
    if t < 0:
        return None
    return o + t * d


def world_to_client(
    camera: CameraState, width: float, height: float, point: Vec3
) -> Optional[Tuple[float, float]]:
    """Project a world point to canvas pixels; None when it lies behind the camera."""
    forward, right, up = _camera_basis(camera)
    half_w, half_h = _half_extents(camera, width, height)
    v = np.asarray(point, dtype=float) - np.asarray(camera.position, dtype=float)
    depth = float(np.dot(v, forward))
    if depth <= _EPS:
        return None

    if camera.is_perspective:
        ndc_x = float(np.dot(v, right)) / (depth * half_w)
        ndc_y = float(np.dot(v, up)) / (depth * half_h)
    else:
        ndc_x = float(np.dot(v, right)) / half_w
        ndc_y = float(np.dot(v, up)) / half_h

    return (ndc_x + 1) / 2 * width, (1 - ndc_y) / 2 * height


# ── Resolution stages ─────────────────────────────────────────────────────────

def pivot_position(engine: ViewerEngine) -> Optional[Vec3]:
    """Camera pivot, else the model bounding-box center."""
    try:
        pivot = engine.pivot_point()
        if pivot is not None:
            return Vec3(*map(float, pivot))
        box = engine.model_bounding_box()
        return box.center if box is not None else None
    except Exception as e:
        logger.warning(f"Failed to resolve pivot position: {e}")
        return None


def spatial_position(engine: ViewerEngine, canvas_x: float, canvas_y: float) -> Optional[Vec3]:
    """Point on the horizontal reference plane under a canvas pixel."""
    try:
        camera = engine.get_camera()
        size = engine.canvas_size()
        if camera is None or not size or size[0] <= 0 or size[1] <= 0:
            return pivot_position(engine)
        width, height = size

        box = engine.model_bounding_box()
        if box is not None:
            plane_point = box.center
        else:
            plane_point = pivot_position(engine) or Vec3(0.0, 0.0, 0.0)

        normal = _normalize(np.asarray(engine.world_up() or DEFAULT_WORLD_UP, dtype=float))
        if normal is None:
            return pivot_position(engine)

        origin, direction = screen_ray(camera, width, height, canvas_x, canvas_y)
        hit = intersect_ray_plane(origin, direction, plane_point, normal)
        if hit is None:
            return pivot_position(engine)
        return Vec3(*(float(c) for c in hit))
    except Exception as e:
        logger.warning(f"Failed to resolve spatial world position: {e}")
        return pivot_position(engine)


def resolve_element_center(engine: ViewerEngine, element_id: int) -> Optional[Vec3]:
    """Center of the world bounds of the element's first fragment."""
    try:
        fragments = engine.element_fragments(element_id)
        if not fragments:
            return None
        bounds = engine.fragment_world_bounds(fragments[0])
        return bounds.center if bounds is not None else None
    except Exception as e:
        logger.warning(f"Failed to resolve world position of element {element_id}: {e}")
        return None


def resolve_hit(
    engine: ViewerEngine,
    canvas_x: float,
    canvas_y: float,
    element_filter: Optional[Callable[[int], bool]] = None,
) -> Optional[ViewerHit]:
    if not engine.has_model():
        return None

    try:
        hit = engine.hit_test(canvas_x, canvas_y)
    except Exception as e:
        logger.warning(f"Hit test failed at ({canvas_x}, {canvas_y}): {e}")
        hit = None

    if hit is not None and hit.element_id is not None:
        if element_filter is None or element_filter(hit.element_id):
            if hit.point is not None:
                point = Vec3(*map(float, hit.point))
            else:
                point = resolve_element_center(engine, hit.element_id)
            if point is not None:
                return ViewerHit(hit.element_id, point)

    point = spatial_position(engine, canvas_x, canvas_y)
    if point is not None:
        return ViewerHit(None, point)
    return None
