"""
Interaction Controller — turns a viewport's pointer stream and the engine's
native selection notifications into two outputs:

  - ``selected_element``: the current ViewerHit (element or spatial-only)
  - quick-register callbacks: double-click, long press, double tap

Gesture state machine::

    IDLE ──selection──▶ PENDING_SELECTION ──debounce──▶ COMMITTED
                              │
                              └──quick register──▶ SUPERSEDED

Timers (selection debounce, long press) have a single owner and are always
cancelled before being re-armed.  A quick register cancels the pending
selection and clears ``selected_element``: one gesture never produces both.

Pointer events flagged ``on_overlay`` (issue markers drawn over the canvas)
are not scene interactions.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

from app.config import (
    DOUBLE_TAP_MAX_DISTANCE_PX,
    DOUBLE_TAP_THRESHOLD_MS,
    LONG_PRESS_MOVE_THRESHOLD_PX,
    LONG_PRESS_MS,
    SELECTION_DEBOUNCE_MS,
)
from app.services.viewer.engine import SELECTION_CHANGED_EVENT, ViewerEngine
from app.services.viewer.spatial_resolver import ViewerHit, resolve_element_center, resolve_hit

logger = logging.getLogger("defects-viewer.interaction")


# ── Scheduling ────────────────────────────────────────────────────────────────

class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


class AsyncioScheduler:
    """Timers on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_s, callback)

    def now(self) -> float:
        return time.monotonic()


# ── Inputs ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PointerEvent:
    client_x: float
    client_y: float
    button: int = 0
    on_overlay: bool = False


@dataclass(frozen=True)
class ViewportRect:
    """Canvas container in client coordinates."""
    left: float
    top: float
    width: float
    height: float

    def to_canvas(self, client_x: float, client_y: float) -> Optional[Tuple[float, float]]:
        x = client_x - self.left
        y = client_y - self.top
        if x < 0 or y < 0 or x > self.width or y > self.height:
            return None
        return x, y


class GestureState(str, Enum):
    IDLE = "IDLE"
    PENDING_SELECTION = "PENDING_SELECTION"
    COMMITTED = "COMMITTED"
    SUPERSEDED = "SUPERSEDED"


# ── Controller ────────────────────────────────────────────────────────────────

class InteractionController:
    def __init__(
        self,
        engine: ViewerEngine,
        viewport: ViewportRect,
        element_filter: Optional[Callable[[int], bool]] = None,
        on_quick_register: Optional[Callable[[ViewerHit], None]] = None,
        on_selection_change: Optional[Callable[[Optional[ViewerHit]], None]] = None,
        scheduler: Optional[Scheduler] = None,
        spatial_tap_selection: bool = False,
        debounce_ms: int = SELECTION_DEBOUNCE_MS,
        long_press_ms: int = LONG_PRESS_MS,
        move_threshold_px: float = LONG_PRESS_MOVE_THRESHOLD_PX,
        double_tap_ms: int = DOUBLE_TAP_THRESHOLD_MS,
        double_tap_distance_px: float = DOUBLE_TAP_MAX_DISTANCE_PX,
    ):
        self.engine = engine
        self.viewport = viewport
        self.element_filter = element_filter
        self.on_quick_register = on_quick_register
        self.on_selection_change = on_selection_change
        self.scheduler = scheduler or AsyncioScheduler()
        # When set, a plain tap on empty space selects the spatial point under it
        self.spatial_tap_selection = spatial_tap_selection
        self.debounce_s = debounce_ms / 1000
        self.long_press_s = long_press_ms / 1000
        self.move_threshold_px = move_threshold_px
        self.double_tap_s = double_tap_ms / 1000
        self.double_tap_distance_px = double_tap_distance_px

        self.selected_element: Optional[ViewerHit] = None
        self.state = GestureState.IDLE
        self._selection_timer: Optional[TimerHandle] = None
        self._long_press_timer: Optional[TimerHandle] = None
        self._pointer_down: Optional[Tuple[float, float]] = None
        self._latest_pointer: Optional[Tuple[float, float]] = None
        self._last_tap_at: Optional[float] = None
        self._last_tap_pos: Optional[Tuple[float, float]] = None
        self._last_quick_register_at: Optional[float] = None
        self._attached = False

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def attach(self) -> None:
        if not self._attached:
            self.engine.add_event_listener(SELECTION_CHANGED_EVENT, self.on_selection_changed)
            self._attached = True

    def teardown(self) -> None:
        self._cancel_pending_selection()
        self._cancel_long_press()
        self._pointer_down = None
        self._latest_pointer = None
        self._last_tap_at = None
        self._last_tap_pos = None
        self._last_quick_register_at = None
        if self._attached:
            self.engine.remove_event_listener(SELECTION_CHANGED_EVENT, self.on_selection_changed)
            self._attached = False
        self.state = GestureState.IDLE

    def clear_selection(self) -> None:
        self._cancel_pending_selection()
        self._set_selected(None)
        self.state = GestureState.IDLE

    @property
    def has_pending_selection(self) -> bool:
        return self._selection_timer is not None

    @property
    def has_long_press_armed(self) -> bool:
        return self._long_press_timer is not None

    # ── Hit resolution ──────────────────────────────────────────────────────

    def hit_at(self, client_x: float, client_y: float) -> Optional[ViewerHit]:
        canvas = self.viewport.to_canvas(client_x, client_y)
        if canvas is None:
            return None
        return resolve_hit(self.engine, canvas[0], canvas[1], self.element_filter)

    def _spatial_fallback(self) -> Optional[ViewerHit]:
        if self._latest_pointer is None:
            return None
        hit = self.hit_at(*self._latest_pointer)
        if hit is not None and hit.is_spatial:
            return hit
        return None

    # ── Native selection ────────────────────────────────────────────────────

    def on_selection_changed(self, event: Any) -> None:
        self._cancel_pending_selection()

        element_ids = getattr(event, "element_ids", None) or ()
        selected_id = element_ids[0] if element_ids else None

        if selected_id is None or (self.element_filter and not self.element_filter(selected_id)):
            # Empty or filtered-out selection still yields the spatial point under the pointer
            self._set_selected(self._spatial_fallback())
            self.state = GestureState.COMMITTED
            return

        self.state = GestureState.PENDING_SELECTION
        self._selection_timer = self.scheduler.call_later(
            self.debounce_s, lambda: self._commit_selection(selected_id)
        )

    def _commit_selection(self, element_id: int) -> None:
        self._selection_timer = None
        from_pointer = self.hit_at(*self._latest_pointer) if self._latest_pointer else None
        if from_pointer is not None and from_pointer.element_id == element_id:
            self._set_selected(from_pointer)
        else:
            center = resolve_element_center(self.engine, element_id)
            self._set_selected(ViewerHit(element_id, center) if center is not None else None)
        self.state = GestureState.COMMITTED

    # ── Pointer stream ──────────────────────────────────────────────────────

    def on_double_click(self, event: PointerEvent) -> None:
        if event.on_overlay:
            return
        # A mouse double-click arrives after its second pointer-down already registered
        if self._quick_registered_within(self.double_tap_s):
            return
        self._cancel_pending_selection()
        self._latest_pointer = (event.client_x, event.client_y)
        hit = self.hit_at(event.client_x, event.client_y)
        if hit is not None:
            self._quick_register(hit)

    def on_pointer_down(self, event: PointerEvent) -> None:
        if event.button != 0 or event.on_overlay:
            return

        now = self.scheduler.now()
        position = (event.client_x, event.client_y)
        is_double_tap = (
            self._last_tap_at is not None
            and now - self._last_tap_at < self.double_tap_s
            and math.dist(position, self._last_tap_pos) <= self.double_tap_distance_px
        )
        self._last_tap_at = now
        self._last_tap_pos = position

        self._latest_pointer = position
        self._cancel_long_press()

        if is_double_tap:
            hit = self.hit_at(*position)
            if hit is not None:
                self._pointer_down = None
                self._last_tap_at = None
                self._last_tap_pos = None
                self._quick_register(hit)
                return

        self._pointer_down = position
        self._long_press_timer = self.scheduler.call_later(self.long_press_s, self._on_long_press)

    def on_pointer_move(self, event: PointerEvent) -> None:
        if event.on_overlay:
            return
        self._latest_pointer = (event.client_x, event.client_y)
        if self._pointer_down is None:
            return
        if self._distance_from_down(event) > self.move_threshold_px:
            self._cancel_long_press()

    def on_pointer_up(self, event: PointerEvent) -> None:
        down = self._pointer_down
        self._pointer_down = None
        self._cancel_long_press()
        if event.on_overlay or down is None:
            return
        if math.hypot(event.client_x - down[0], event.client_y - down[1]) > self.move_threshold_px:
            return

        if self.spatial_tap_selection:
            hit = self.hit_at(event.client_x, event.client_y)
            if hit is not None and hit.is_spatial:
                self._set_selected(hit)
                self.state = GestureState.COMMITTED

    def on_pointer_cancel(self, event: Optional[PointerEvent] = None) -> None:
        self._pointer_down = None
        self._cancel_long_press()

    def on_context_menu(self, event: Optional[PointerEvent] = None) -> bool:
        """Returns True: the native context menu is always suppressed."""
        return True

    # ── Internals ───────────────────────────────────────────────────────────

    def _on_long_press(self) -> None:
        self._long_press_timer = None
        down = self._pointer_down
        if down is None:
            return
        hit = self.hit_at(*down)
        if hit is None:
            return
        # The release that ends this press must not act again
        self._pointer_down = None
        self._quick_register(hit)

    def _quick_register(self, hit: ViewerHit) -> None:
        self._cancel_pending_selection()
        self._set_selected(None)
        self.state = GestureState.SUPERSEDED
        self._last_quick_register_at = self.scheduler.now()
        logger.debug(f"Quick register at {tuple(round(c, 3) for c in hit.point)} element={hit.element_id}")
        if self.on_quick_register is not None:
            self.on_quick_register(hit)

    def _set_selected(self, hit: Optional[ViewerHit]) -> None:
        if hit == self.selected_element:
            return
        self.selected_element = hit
        if self.on_selection_change is not None:
            self.on_selection_change(hit)

    def _quick_registered_within(self, window_s: float) -> bool:
        last = self._last_quick_register_at
        return last is not None and self.scheduler.now() - last < window_s

    def _distance_from_down(self, event: PointerEvent) -> float:
        return math.hypot(event.client_x - self._pointer_down[0], event.client_y - self._pointer_down[1])

    def _cancel_pending_selection(self) -> None:
        if self._selection_timer is not None:
            self._selection_timer.cancel()
            self._selection_timer = None

    def _cancel_long_press(self) -> None:
        if self._long_press_timer is not None:
            self._long_press_timer.cancel()
            self._long_press_timer = None
