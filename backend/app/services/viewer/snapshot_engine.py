"""
PropertySnapshotEngine — headless ViewerEngine over exported model data.

Built from an element/property snapshot (and optionally per-element world
bounds and a camera), it answers the same capability surface as the live
viewer: hit-testing is a ray/box test against element bounds, projection
uses the pinhole math in spatial_resolver.  Used by the floor-mapping
preview endpoint and for replaying interaction sequences.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from app.services.viewer.engine import (
    CAMERA_CHANGE_EVENT,
    GEOMETRY_LOADED_EVENT,
    SELECTION_CHANGED_EVENT,
    BoundingBox,
    CameraState,
    ElementProperty,
    EngineHit,
    PropertyResult,
    SelectionEvent,
    Vec3,
)
from app.services.viewer.spatial_resolver import screen_ray, world_to_client

logger = logging.getLogger("defects-viewer.snapshot")

SNAPSHOT_ROOT_ID = -1


class SnapshotTree:
    def __init__(self, root_id: int, children: Mapping[int, Sequence[int]]):
        self.root_id = root_id
        self.children = {k: list(v) for k, v in children.items()}

    @classmethod
    def flat(cls, element_ids: Iterable[int]) -> "SnapshotTree":
        """Every element hangs directly under a synthetic root."""
        return cls(SNAPSHOT_ROOT_ID, {SNAPSHOT_ROOT_ID: list(element_ids)})

    def get_root_id(self) -> int:
        return self.root_id

    def get_child_ids(self, node_id: int) -> Sequence[int]:
        return self.children.get(node_id, [])


def _ray_box_distance(origin: np.ndarray, direction: np.ndarray, box: BoundingBox) -> Optional[float]:
    """Slab test; distance along the ray to the first box hit, None on miss."""
    lo = np.asarray(box.min, dtype=float)
    hi = np.asarray(box.max, dtype=float)
    t_near, t_far = -np.inf, np.inf
    for axis in range(3):
        if abs(direction[axis]) < 1e-12:
            if origin[axis] < lo[axis] or origin[axis] > hi[axis]:
                return None
            continue
        t1 = (lo[axis] - origin[axis]) / direction[axis]
        t2 = (hi[axis] - origin[axis]) / direction[axis]
        if t1 > t2:
            t1, t2 = t2, t1
        t_near = max(t_near, t1)
        t_far = min(t_far, t2)
        if t_near > t_far:
            return None
    if t_far < 0:
        return None
    return max(float(t_near), 0.0)


class PropertySnapshotEngine:
    def __init__(
        self,
        tree: Optional[SnapshotTree] = None,
        properties: Optional[Mapping[int, List[ElementProperty]]] = None,
        bounds: Optional[Mapping[int, BoundingBox]] = None,
        camera: Optional[CameraState] = None,
        canvas: Optional[Tuple[float, float]] = None,
        world_up: Optional[Vec3] = Vec3(0.0, 1.0, 0.0),
        pivot: Optional[Vec3] = None,
        model_loaded: bool = True,
    ):
        self.tree = tree
        self.properties = dict(properties or {})
        self.bounds = dict(bounds or {})
        self.camera = camera
        self.canvas = canvas
        self._world_up = world_up
        self.pivot = pivot
        self.model_loaded = model_loaded
        self.isolated: Optional[Tuple[int, ...]] = None
        self.ghosting = False
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}

    @classmethod
    def from_elements(cls, elements: Iterable[dict], **kwargs) -> "PropertySnapshotEngine":
        """
        Build from ``[{"dbId": 12, "properties": [{"displayName": ..., "displayValue": ...}]}]``.
        """
        props: Dict[int, List[ElementProperty]] = {}
        for element in elements:
            props[int(element["dbId"])] = [
                ElementProperty(p.get("displayName", ""), p.get("displayValue"))
                for p in element.get("properties", [])
            ]
        return cls(tree=SnapshotTree.flat(props.keys()), properties=props, **kwargs)

    # ── Model queries ───────────────────────────────────────────────────────

    def has_model(self) -> bool:
        return self.model_loaded

    def get_instance_tree(self) -> Optional[SnapshotTree]:
        return self.tree

    async def get_bulk_properties(
        self, element_ids: Sequence[int], prop_filter: Sequence[str]
    ) -> List[PropertyResult]:
        wanted = {name.lower() for name in prop_filter}
        results = []
        for element_id in element_ids:
            props = self.properties.get(element_id)
            if props is None:
                continue
            results.append(PropertyResult(
                element_id,
                [p for p in props if not wanted or p.display_name.lower() in wanted],
            ))
        return results

    def element_fragments(self, element_id: int) -> Sequence[int]:
        # One fragment per element, sharing its id
        return [element_id] if element_id in self.bounds else []

    def fragment_world_bounds(self, fragment_id: int) -> Optional[BoundingBox]:
        return self.bounds.get(fragment_id)

    def model_bounding_box(self) -> Optional[BoundingBox]:
        if not self.bounds:
            return None
        mins = np.min([b.min for b in self.bounds.values()], axis=0)
        maxs = np.max([b.max for b in self.bounds.values()], axis=0)
        return BoundingBox(Vec3(*map(float, mins)), Vec3(*map(float, maxs)))

    # ── Camera / projection ─────────────────────────────────────────────────

    def get_camera(self) -> Optional[CameraState]:
        return self.camera

    def canvas_size(self) -> Optional[Tuple[float, float]]:
        return self.canvas

    def world_up(self) -> Optional[Vec3]:
        return self._world_up

    def pivot_point(self) -> Optional[Vec3]:
        return self.pivot

    def world_to_client(self, point: Vec3) -> Optional[Tuple[float, float]]:
        if self.camera is None or not self.canvas:
            return None
        return world_to_client(self.camera, self.canvas[0], self.canvas[1], point)

    def hit_test(self, canvas_x: float, canvas_y: float) -> Optional[EngineHit]:
        if self.camera is None or not self.canvas or not self.bounds:
            return None
        origin, direction = screen_ray(self.camera, self.canvas[0], self.canvas[1], canvas_x, canvas_y)
        best: Optional[Tuple[float, int]] = None
        for element_id, box in self.bounds.items():
            t = _ray_box_distance(origin, direction, box)
            if t is not None and (best is None or t < best[0]):
                best = (t, element_id)
        if best is None:
            return None
        t, element_id = best
        return EngineHit(element_id, Vec3(*map(float, origin + t * direction)))

    # ── Notifications ───────────────────────────────────────────────────────

    def add_event_listener(self, event_name: str, listener: Callable[[Any], None]) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def remove_event_listener(self, event_name: str, listener: Callable[[Any], None]) -> None:
        listeners = self._listeners.get(event_name, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, []))

    def emit(self, event_name: str, event: Any = None) -> None:
        for listener in list(self._listeners.get(event_name, [])):
            listener(event)

    def select(self, element_ids: Sequence[int]) -> None:
        self.emit(SELECTION_CHANGED_EVENT, SelectionEvent(tuple(element_ids)))

    def set_camera(self, camera: CameraState) -> None:
        self.camera = camera
        self.emit(CAMERA_CHANGE_EVENT)

    def finish_loading(self) -> None:
        self.model_loaded = True
        self.emit(GEOMETRY_LOADED_EVENT)

    # ── Visibility ──────────────────────────────────────────────────────────

    def isolate(self, element_ids: Sequence[int]) -> None:
        self.isolated = tuple(element_ids)

    def show_all(self) -> None:
        self.isolated = None

    def set_ghosting(self, enabled: bool) -> None:
        self.ghosting = bool(enabled)
