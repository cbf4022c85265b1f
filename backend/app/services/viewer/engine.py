"""
Capability surface of the 3D rendering engine consumed by the viewer core.

Any engine adapter (browser bridge, headless snapshot, test double) must
provide the ViewerEngine methods.  Coordinates passed to ``hit_test`` are
canvas-relative pixels; everything else is in model world space.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, NamedTuple, Optional, Protocol, Sequence, Tuple

# Notification names (match the Forge/APS viewer event identifiers)
SELECTION_CHANGED_EVENT = "selection"
CAMERA_CHANGE_EVENT = "cameraChanged"
GEOMETRY_LOADED_EVENT = "geometryLoaded"


class Vec3(NamedTuple):
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class BoundingBox:
    min: Vec3
    max: Vec3

    @property
    def center(self) -> Vec3:
        return Vec3(
            (self.min.x + self.max.x) / 2,
            (self.min.y + self.max.y) / 2,
            (self.min.z + self.max.z) / 2,
        )


@dataclass(frozen=True)
class CameraState:
    """
    Pinhole camera. ``fov_deg`` is the vertical field of view; orthographic
    cameras use ``ortho_height`` (world units visible vertically) instead.
    """
    position: Vec3
    target: Vec3
    up: Vec3 = Vec3(0.0, 1.0, 0.0)
    fov_deg: float = 45.0
    is_perspective: bool = True
    ortho_height: Optional[float] = None


@dataclass(frozen=True)
class EngineHit:
    element_id: Optional[int]
    point: Optional[Vec3] = None


@dataclass(frozen=True)
class ElementProperty:
    display_name: str
    display_value: Any


@dataclass
class PropertyResult:
    element_id: int
    properties: List[ElementProperty] = field(default_factory=list)


@dataclass(frozen=True)
class SelectionEvent:
    element_ids: Tuple[int, ...] = ()


class InstanceTree(Protocol):
    """Structural tree of the loaded model."""

    def get_root_id(self) -> int: ...

    def get_child_ids(self, node_id: int) -> Sequence[int]: ...


class ViewerEngine(Protocol):
    def has_model(self) -> bool: ...

    def hit_test(self, canvas_x: float, canvas_y: float) -> Optional[EngineHit]: ...

    def get_instance_tree(self) -> Optional[InstanceTree]: ...

    async def get_bulk_properties(
        self, element_ids: Sequence[int], prop_filter: Sequence[str]
    ) -> List[PropertyResult]: ...

    def element_fragments(self, element_id: int) -> Sequence[int]: ...

    def fragment_world_bounds(self, fragment_id: int) -> Optional[BoundingBox]: ...

    def model_bounding_box(self) -> Optional[BoundingBox]: ...

    def get_camera(self) -> Optional[CameraState]: ...

    def canvas_size(self) -> Optional[Tuple[float, float]]: ...

    def world_up(self) -> Optional[Vec3]: ...

    def pivot_point(self) -> Optional[Vec3]: ...

    def world_to_client(self, point: Vec3) -> Optional[Tuple[float, float]]: ...

    def add_event_listener(self, event_name: str, listener: Callable[[Any], None]) -> None: ...

    def remove_event_listener(self, event_name: str, listener: Callable[[Any], None]) -> None: ...

    def isolate(self, element_ids: Sequence[int]) -> None: ...

    def show_all(self) -> None: ...

    def set_ghosting(self, enabled: bool) -> None: ...
