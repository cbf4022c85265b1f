"""
Floor Element Mapper — classifies every leaf element of the loaded model
into the floor it belongs to, from "level"-like metadata.

Algorithm:
  1. enumerate leaf elements (no children) of the instance tree
  2. query properties in batches of BULK_PROPERTY_BATCH_SIZE, filtered to
     Level / Building Storey / Base Constraint
  3. first matching property (case-insensitive) is the element's level value
  4. match to a floor: numeric equality -> display name -> first integer
     substring; booleans never match
  5. accumulate floor_number -> frozenset(element ids)

Failures (no tree, query raising) yield an UNAVAILABLE index.  Every consumer
fails open: an element is treated as on the selected floor whenever the
index cannot say otherwise.

Builds run batch by batch on the event loop.  Each build takes a generation
number; a build whose generation is no longer current when it resumes from
an await is discarded, so only the latest build ever commits.
"""
import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from app.config import BULK_PROPERTY_BATCH_SIZE, LEVEL_PROPERTY_FILTER, LEVEL_PROPERTY_NAMES
from app.services.perf_monitor import timed_async
from app.services.viewer.engine import GEOMETRY_LOADED_EVENT, InstanceTree, PropertyResult, ViewerEngine

logger = logging.getLogger("defects-viewer.floors")

_INTEGER_RE = re.compile(r"-?\d+")


@dataclass(frozen=True)
class FloorRef:
    name: str
    floor_number: int


class MappingStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass
class MappingDiagnostics:
    total_leaves: int = 0
    matched: int = 0
    no_level_property: int = 0
    unmatched_with_level: int = 0
    unmatched_values: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "total_leaves": self.total_leaves,
            "matched": self.matched,
            "no_level_property": self.no_level_property,
            "unmatched_with_level": self.unmatched_with_level,
            "unmatched_values": dict(self.unmatched_values),
        }


@dataclass(frozen=True)
class FloorElementIndex:
    status: MappingStatus
    elements_by_floor: Mapping[int, frozenset] = field(default_factory=dict)
    floors_with_elements: frozenset = frozenset()
    diagnostics: MappingDiagnostics = field(default_factory=MappingDiagnostics)
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "FloorElementIndex":
        return cls(MappingStatus.PENDING)

    @classmethod
    def unavailable(cls, error: str, diagnostics: Optional[MappingDiagnostics] = None) -> "FloorElementIndex":
        return cls(MappingStatus.UNAVAILABLE, diagnostics=diagnostics or MappingDiagnostics(), error=error)

    @property
    def ready(self) -> bool:
        return self.status == MappingStatus.READY

    def elements_on(self, floor_number: int) -> frozenset:
        return self.elements_by_floor.get(floor_number, frozenset())

    def is_on_floor(self, floor_number: Optional[int], element_id: int) -> bool:
        """Fail-open membership: no floor selected, index not ready, or empty floor -> True."""
        if floor_number is None or not self.ready:
            return True
        element_ids = self.elements_on(floor_number)
        if not element_ids:
            return True
        return element_id in element_ids

    def floor_for_element(self, element_id: int) -> Optional[int]:
        for floor_number, element_ids in self.elements_by_floor.items():
            if element_id in element_ids:
                return floor_number
        return None


# ── Matching helpers ──────────────────────────────────────────────────────────

def leaf_element_ids(tree: InstanceTree) -> List[int]:
    """Descendants of the root that have no children, in depth-first order."""
    leaves: List[int] = []
    stack = list(reversed(tree.get_child_ids(tree.get_root_id())))
    seen: Set[int] = set()
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        children = tree.get_child_ids(node_id)
        if not children:
            leaves.append(node_id)
        else:
            stack.extend(reversed(children))
    return leaves


def get_level_value(result: PropertyResult) -> Any:
    for prop in result.properties:
        if (prop.display_name or "").lower() in LEVEL_PROPERTY_NAMES:
            return prop.display_value
    return None


def match_floor_number(level_value: Any, floors: Sequence[FloorRef]) -> Optional[int]:
    if level_value is None or isinstance(level_value, bool):
        return None

    if isinstance(level_value, (int, float)):
        for floor in floors:
            if floor.floor_number == level_value:
                return floor.floor_number
        return None

    normalized = str(level_value).strip().lower()
    for floor in floors:
        if floor.name.strip().lower() == normalized:
            return floor.floor_number

    numeric = _INTEGER_RE.search(normalized)
    if numeric:
        parsed = int(numeric.group(0))
        for floor in floors:
            if floor.floor_number == parsed:
                return floor.floor_number
    return None


# ── Build ─────────────────────────────────────────────────────────────────────

def _mapping_unavailable(index: Optional[FloorElementIndex]) -> bool:
    # None is a superseded build, not a failure
    return index is not None and index.status == MappingStatus.UNAVAILABLE


@timed_async("floor_mapping", failed=_mapping_unavailable)
async def build_floor_index(
    engine: ViewerEngine,
    floors: Sequence[FloorRef],
    batch_size: int = BULK_PROPERTY_BATCH_SIZE,
    is_current: Callable[[], bool] = lambda: True,
) -> Optional[FloorElementIndex]:
    """
    Build the index from the engine's metadata.

    Returns None when ``is_current`` turns False after an await (the result
    belongs to a superseded build and must not be committed).
    """
    diagnostics = MappingDiagnostics()
    mapping: Dict[int, Set[int]] = {}
    try:
        if not engine.has_model():
            raise RuntimeError("Viewer model is not ready")
        tree = engine.get_instance_tree()
        if tree is None:
            raise RuntimeError("Instance tree is unavailable")

        leaves = leaf_element_ids(tree)
        diagnostics.total_leaves = len(leaves)

        for start in range(0, len(leaves), batch_size):
            batch = leaves[start:start + batch_size]
            results = await engine.get_bulk_properties(batch, list(LEVEL_PROPERTY_FILTER))
            if not is_current():
                return None

            returned = set()
            for result in results:
                returned.add(result.element_id)
                level_value = get_level_value(result)
                if level_value is None:
                    diagnostics.no_level_property += 1
                    continue
                floor_number = match_floor_number(level_value, floors)
                if floor_number is None:
                    diagnostics.unmatched_with_level += 1
                    diagnostics.unmatched_values[str(level_value)] += 1
                    continue
                diagnostics.matched += 1
                mapping.setdefault(floor_number, set()).add(result.element_id)
            # Elements the query skipped carry none of the filtered properties
            diagnostics.no_level_property += len(set(batch) - returned)
    except Exception as e:
        logger.warning(f"Failed to build floor mapping: {e}")
        return FloorElementIndex.unavailable(str(e), diagnostics)

    _log_diagnostics(diagnostics, mapping)
    return FloorElementIndex(
        status=MappingStatus.READY,
        elements_by_floor={k: frozenset(v) for k, v in mapping.items()},
        floors_with_elements=frozenset(mapping),
        diagnostics=diagnostics,
    )


def _log_diagnostics(diagnostics: MappingDiagnostics, mapping: Dict[int, Set[int]]) -> None:
    logger.info(
        f"Floor mapping: {diagnostics.total_leaves} leaves, {diagnostics.matched} matched, "
        f"{diagnostics.no_level_property} without level, "
        f"{diagnostics.unmatched_with_level} with unmatched level"
    )
    if diagnostics.unmatched_values:
        logger.info(f"Unmatched level values: {dict(diagnostics.unmatched_values)}")
    for floor_number in sorted(mapping):
        logger.debug(f"  floor {floor_number}: {len(mapping[floor_number])} elements")


# ── Isolation ─────────────────────────────────────────────────────────────────

def apply_floor_isolation(
    engine: ViewerEngine, index: FloorElementIndex, floor_number: Optional[int]
) -> Optional[frozenset]:
    """
    Isolate and ghost the selected floor's elements, or show everything
    without ghosting when the index cannot name them.  Returns the isolated
    element set, or None when everything is shown.
    """
    element_ids = index.elements_on(floor_number) if floor_number is not None and index.ready else frozenset()
    if not element_ids:
        try:
            engine.show_all()
            engine.set_ghosting(False)
        except Exception as e:
            logger.warning(f"Failed to apply showAll state: {e}")
        return None

    logger.debug(f"Isolating floor {floor_number}: {len(element_ids)} elements")
    try:
        engine.isolate(sorted(element_ids))
        engine.set_ghosting(True)
    except Exception as e:
        logger.warning(f"Failed to apply isolate state: {e}")
    return element_ids


# ── Session-scoped mapper ─────────────────────────────────────────────────────

class FloorElementMapper:
    """
    Owns the FloorElementIndex for one viewing session.

    The mapper is the only writer of ``index``; readers call ``is_on_floor`` /
    ``floor_for_element`` at any time and get fail-open answers until a build
    has committed.
    """

    def __init__(
        self,
        engine: ViewerEngine,
        floors: Iterable[FloorRef] = (),
        batch_size: int = BULK_PROPERTY_BATCH_SIZE,
        on_index_changed: Optional[Callable[[FloorElementIndex], None]] = None,
    ):
        self.engine = engine
        self.floors = tuple(floors)
        self.batch_size = batch_size
        self.on_index_changed = on_index_changed
        self.index = FloorElementIndex.pending()
        self._generation = 0
        self._attached = False
        self._task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current_build(self) -> Optional[asyncio.Task]:
        return self._task

    async def rebuild(self) -> Optional[FloorElementIndex]:
        """Start a new build; returns the committed index, or None if superseded."""
        return await self._build(self._next_generation())

    def _next_generation(self) -> int:
        self._generation += 1
        self.index = FloorElementIndex.pending()
        return self._generation

    async def _build(self, generation: int) -> Optional[FloorElementIndex]:
        result = await build_floor_index(
            self.engine,
            self.floors,
            batch_size=self.batch_size,
            is_current=lambda: generation == self._generation,
        )
        if result is None or generation != self._generation:
            logger.debug("Discarded stale floor mapping build", extra={"generation": generation})
            return None

        self.index = result
        if self.on_index_changed is not None:
            self.on_index_changed(result)
        return result

    def attach(self) -> None:
        """Rebuild on every geometry-loaded notification (and now, if a model is loaded)."""
        if self._attached:
            return
        self.engine.add_event_listener(GEOMETRY_LOADED_EVENT, self._on_geometry_loaded)
        self._attached = True
        if self.engine.has_model():
            self._spawn_rebuild()

    def set_floors(self, floors: Iterable[FloorRef]) -> None:
        """Replace the floor catalog; invalidates the index and rebuilds when attached."""
        self.floors = tuple(floors)
        self._next_generation()
        if self._attached and self.engine.has_model():
            self._spawn_rebuild()

    def close(self) -> None:
        """End of session: unsubscribe and discard any in-flight build."""
        if self._attached:
            self.engine.remove_event_listener(GEOMETRY_LOADED_EVENT, self._on_geometry_loaded)
            self._attached = False
        self._next_generation()
        self._task = None

    def is_on_floor(self, floor_number: Optional[int], element_id: int) -> bool:
        return self.index.is_on_floor(floor_number, element_id)

    def floor_for_element(self, element_id: int) -> Optional[int]:
        return self.index.floor_for_element(element_id)

    def element_filter(self, floor_number: Optional[int]) -> Callable[[int], bool]:
        """Selection filter bound to a floor; reads the live index on every call."""
        return lambda element_id: self.is_on_floor(floor_number, element_id)

    def apply_isolation(self, floor_number: Optional[int]) -> Optional[frozenset]:
        return apply_floor_isolation(self.engine, self.index, floor_number)

    def _on_geometry_loaded(self, event=None) -> None:
        self._spawn_rebuild()

    def _spawn_rebuild(self) -> None:
        # Generation is claimed now so a close() before the task runs discards it
        self._task = asyncio.get_running_loop().create_task(self._build(self._next_generation()))
