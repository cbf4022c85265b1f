"""
test_floor_mapper.py — Floor Element Mapper.

Tests cover:
  - leaf enumeration over nested instance trees
  - level value matching (numeric, name, integer substring, booleans)
  - index build: batching, diagnostics, UNAVAILABLE on failure
  - fail-open membership and isolation
  - generation handling: only the latest build commits

Engines are PropertySnapshotEngine instances; no viewer required.
"""

import asyncio

import pytest

from app.services.perf_monitor import tracker
from app.services.viewer.engine import GEOMETRY_LOADED_EVENT
from app.services.viewer.floor_mapper import (
    FloorElementIndex,
    FloorElementMapper,
    FloorRef,
    MappingStatus,
    apply_floor_isolation,
    build_floor_index,
    leaf_element_ids,
    match_floor_number,
)
from app.services.viewer.snapshot_engine import PropertySnapshotEngine, SnapshotTree

FLOORS = [FloorRef("Ground Floor", 0), FloorRef("Level 1", 1), FloorRef("Level 2", 2), FloorRef("Basement", -1)]


def _element(db_id, level=None, name="Level"):
    props = [{"displayName": "Category", "displayValue": "Walls"}]
    if level is not None:
        props.append({"displayName": name, "displayValue": level})
    return {"dbId": db_id, "properties": props}


@pytest.fixture
def tower_engine():
    return PropertySnapshotEngine.from_elements([
        _element(10, "Level 1"),
        _element(11, "level 1"),
        _element(12, 2),
        _element(13, "Ground Floor"),
        _element(14, "L2 - Slab", name="Building Storey"),
        _element(15, "Roof"),
        _element(16),
        _element(17, "B-1 Parking", name="BASE CONSTRAINT"),
    ])


class _CountingEngine(PropertySnapshotEngine):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.batches = []

    async def get_bulk_properties(self, element_ids, prop_filter):
        self.batches.append(list(element_ids))
        return await super().get_bulk_properties(element_ids, prop_filter)


class _GatedEngine(PropertySnapshotEngine):
    """Bulk queries block until the test releases them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = None

    async def get_bulk_properties(self, element_ids, prop_filter):
        await self.gate.wait()
        return await super().get_bulk_properties(element_ids, prop_filter)


class _BrokenEngine(PropertySnapshotEngine):
    async def get_bulk_properties(self, element_ids, prop_filter):
        raise RuntimeError("property database not loaded")


# ===========================================================================
# Helpers
# ===========================================================================

class TestLeafEnumeration:
    def test_nested_tree(self):
        tree = SnapshotTree(1, {1: [2, 3], 2: [4, 5], 3: [6], 6: [7]})
        assert leaf_element_ids(tree) == [4, 5, 7]

    def test_root_only_tree_has_no_leaves(self):
        assert leaf_element_ids(SnapshotTree(1, {})) == []


class TestMatchFloorNumber:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (1, 1),
            (2.0, 2),
            ("Level 1", 1),
            ("  ground floor ", 0),
            ("L2 - Slab", 2),
            ("B-1", -1),
            ("Roof", None),
            (7, None),
            (None, None),
            (True, None),
            (False, None),
        ],
    )
    def test_matching(self, value, expected):
        assert match_floor_number(value, FLOORS) == expected

    def test_name_wins_over_digits(self):
        floors = [FloorRef("Level 3", 30), FloorRef("Third", 3)]
        assert match_floor_number("level 3", floors) == 30


# ===========================================================================
# Build
# ===========================================================================

class TestBuildFloorIndex:
    def test_groups_elements_by_floor(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        assert index.status == MappingStatus.READY
        assert index.elements_on(1) == {10, 11}
        assert index.elements_on(2) == {12, 14}
        assert index.elements_on(0) == {13}
        assert index.elements_on(-1) == {17}
        assert index.floors_with_elements == {-1, 0, 1, 2}

    def test_diagnostics(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        d = index.diagnostics
        assert d.total_leaves == 8
        assert d.matched == 6
        assert d.no_level_property == 1
        assert d.unmatched_with_level == 1
        assert dict(d.unmatched_values) == {"Roof": 1}

    def test_batches(self):
        engine = _CountingEngine(
            tree=SnapshotTree.flat(range(1, 8)),
            properties={i: [] for i in range(1, 8)},
        )
        asyncio.run(build_floor_index(engine, FLOORS, batch_size=3))
        assert engine.batches == [[1, 2, 3], [4, 5, 6], [7]]

    def test_elements_missing_from_query_count_as_no_level(self):
        engine = PropertySnapshotEngine(tree=SnapshotTree.flat([1, 2, 3]), properties={})
        index = asyncio.run(build_floor_index(engine, FLOORS))
        assert index.ready
        assert index.diagnostics.no_level_property == 3

    def test_query_failure_is_unavailable(self):
        engine = _BrokenEngine(tree=SnapshotTree.flat([1]), properties={1: []})
        index = asyncio.run(build_floor_index(engine, FLOORS))
        assert index.status == MappingStatus.UNAVAILABLE
        assert "property database" in index.error

    def test_no_model_is_unavailable(self, tower_engine):
        tower_engine.model_loaded = False
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        assert index.status == MappingStatus.UNAVAILABLE

    def test_no_tree_is_unavailable(self):
        index = asyncio.run(build_floor_index(PropertySnapshotEngine(), FLOORS))
        assert index.status == MappingStatus.UNAVAILABLE

    def test_stale_build_returns_none(self, tower_engine):
        assert asyncio.run(build_floor_index(tower_engine, FLOORS, is_current=lambda: False)) is None

    def test_unavailable_build_counts_as_error_in_metrics(self, tower_engine):
        tracker.reset()
        engine = _BrokenEngine(tree=SnapshotTree.flat([1]), properties={1: []})
        asyncio.run(build_floor_index(engine, FLOORS))
        asyncio.run(build_floor_index(tower_engine, FLOORS))
        asyncio.run(build_floor_index(tower_engine, FLOORS, is_current=lambda: False))
        metrics = tracker.get_metrics()
        assert metrics["op_counts"]["floor_mapping"] == 3
        assert metrics["error_count_by_op"] == {"floor_mapping": 1}


# ===========================================================================
# Membership / isolation
# ===========================================================================

class TestFailOpen:
    def test_pending_index_allows_everything(self):
        assert FloorElementIndex.pending().is_on_floor(1, 999)

    def test_unavailable_index_allows_everything(self):
        assert FloorElementIndex.unavailable("boom").is_on_floor(1, 999)

    def test_ready_index(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        assert index.is_on_floor(1, 10)
        assert not index.is_on_floor(1, 12)
        assert index.is_on_floor(None, 12)
        # Floor with no mapped elements fails open
        assert index.is_on_floor(5, 12)

    def test_floor_for_element(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        assert index.floor_for_element(14) == 2
        assert index.floor_for_element(15) is None


class TestIsolation:
    def test_isolates_and_ghosts_floor(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        isolated = apply_floor_isolation(tower_engine, index, 1)
        assert isolated == {10, 11}
        assert tower_engine.isolated == (10, 11)
        assert tower_engine.ghosting is True

    def test_empty_floor_shows_all(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        tower_engine.isolate([1])
        assert apply_floor_isolation(tower_engine, index, 7) is None
        assert tower_engine.isolated is None
        assert tower_engine.ghosting is False

    def test_no_floor_selected_shows_all(self, tower_engine):
        index = asyncio.run(build_floor_index(tower_engine, FLOORS))
        assert apply_floor_isolation(tower_engine, index, None) is None

    def test_pending_index_shows_all(self, tower_engine):
        assert apply_floor_isolation(tower_engine, FloorElementIndex.pending(), 1) is None


# ===========================================================================
# Session mapper
# ===========================================================================

class TestFloorElementMapper:
    def test_rebuild_commits_and_notifies(self, tower_engine):
        seen = []
        mapper = FloorElementMapper(tower_engine, FLOORS, on_index_changed=seen.append)
        index = asyncio.run(mapper.rebuild())
        assert mapper.index is index
        assert seen == [index]
        assert mapper.element_filter(1)(10)
        assert not mapper.element_filter(1)(13)

    def test_only_latest_build_commits(self):
        engine = _GatedEngine.from_elements([_element(1, "Level 1")])
        seen = []
        mapper = FloorElementMapper(engine, FLOORS, on_index_changed=seen.append)

        async def scenario():
            engine.gate = asyncio.Event()
            first = asyncio.ensure_future(mapper.rebuild())
            await asyncio.sleep(0)
            second = asyncio.ensure_future(mapper.rebuild())
            await asyncio.sleep(0)
            engine.gate.set()
            return await first, await second

        first, second = asyncio.run(scenario())
        assert first is None
        assert second is not None and second.ready
        assert seen == [second]
        assert mapper.generation == 2

    def test_attach_rebuilds_on_geometry_loaded(self, tower_engine):
        tower_engine.model_loaded = False
        mapper = FloorElementMapper(tower_engine, FLOORS)

        async def scenario():
            mapper.attach()
            assert tower_engine.listener_count(GEOMETRY_LOADED_EVENT) == 1
            assert mapper.current_build is None
            tower_engine.finish_loading()
            await mapper.current_build
            return mapper.index

        index = asyncio.run(scenario())
        assert index.ready
        assert index.elements_on(1) == {10, 11}

    def test_close_discards_and_unsubscribes(self, tower_engine):
        mapper = FloorElementMapper(tower_engine, FLOORS)

        async def scenario():
            mapper.attach()
            build = mapper.current_build
            mapper.close()
            return await build

        assert asyncio.run(scenario()) is None
        assert tower_engine.listener_count(GEOMETRY_LOADED_EVENT) == 0
        assert mapper.index.status == MappingStatus.PENDING

    def test_set_floors_invalidates(self, tower_engine):
        mapper = FloorElementMapper(tower_engine, FLOORS)
        asyncio.run(mapper.rebuild())
        mapper.set_floors([FloorRef("Level 1", 1)])
        assert mapper.index.status == MappingStatus.PENDING
        assert mapper.is_on_floor(2, 10)


class TestMixedLevelMetadata:
    """Name, numeric and embedded-integer level values side by side."""

    def test_each_rule_maps_and_leftovers_are_counted(self):
        floors = [FloorRef("1F", 1), FloorRef("Second", 2), FloorRef("Third", 3)]
        engine = PropertySnapshotEngine.from_elements([
            _element(1, "1F"),
            _element(2, 2),
            _element(3, "Level 3 (approx)"),
            _element(4, "Roof Deck"),
            _element(5),
        ])
        index = asyncio.run(build_floor_index(engine, floors))
        assert index.elements_on(1) == {1}
        assert index.elements_on(2) == {2}
        assert index.elements_on(3) == {3}
        assert index.diagnostics.unmatched_with_level == 1
        assert index.diagnostics.no_level_property == 1
        assert index.floor_for_element(4) is None
