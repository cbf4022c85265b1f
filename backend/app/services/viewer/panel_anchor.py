"""Screen anchor of the element info panel, kept in sync with the camera."""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from app.config import INFO_PANEL_MARGIN_PX, INFO_PANEL_WIDTH_PX
from app.services.viewer.engine import CAMERA_CHANGE_EVENT, ViewerEngine
from app.services.viewer.spatial_resolver import ViewerHit

logger = logging.getLogger("defects-viewer.panel")


@dataclass(frozen=True)
class PanelPosition:
    x: float  # horizontal center of the panel
    y: float  # top edge


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(value, hi))


class InfoPanelAnchor:
    """
    While a panel is open, re-projects its world point on every
    camera-change notification.  ``position`` is None when the point is
    behind the camera.
    """

    def __init__(
        self,
        engine: ViewerEngine,
        panel_width: float = INFO_PANEL_WIDTH_PX,
        margin: float = INFO_PANEL_MARGIN_PX,
        on_move: Optional[Callable[[Optional[PanelPosition]], None]] = None,
    ):
        self.engine = engine
        self.panel_width = panel_width
        self.margin = margin
        self.on_move = on_move
        self.element: Optional[ViewerHit] = None
        self.position: Optional[PanelPosition] = None

    @property
    def is_open(self) -> bool:
        return self.element is not None

    def open(self, element: ViewerHit) -> Optional[PanelPosition]:
        if self.element is None:
            self.engine.add_event_listener(CAMERA_CHANGE_EVENT, self._on_camera_change)
        self.element = element
        return self.update()

    def close(self) -> None:
        if self.element is not None:
            self.engine.remove_event_listener(CAMERA_CHANGE_EVENT, self._on_camera_change)
        self.element = None
        self.position = None

    def update(self) -> Optional[PanelPosition]:
        if self.element is None:
            return None
        self.position = self._project()
        if self.on_move is not None:
            self.on_move(self.position)
        return self.position

    def _on_camera_change(self, event=None) -> None:
        self.update()

    def _project(self) -> Optional[PanelPosition]:
        try:
            client = self.engine.world_to_client(self.element.point)
        except Exception as e:
            logger.warning(f"Failed to project info panel anchor: {e}")
            return None
        if client is None:
            return None

        size = self.engine.canvas_size()
        container_width = size[0] if size else 0.0
        half = self.panel_width / 2
        lo = self.margin + half
        hi = max(lo, container_width - self.margin - half)
        return PanelPosition(x=_clamp(client[0], lo, hi), y=max(self.margin, client[1]))
