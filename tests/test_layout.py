"""
Layout engine and force refinement tests.

UMAP itself is exercised once (marked slow); everything else checks the
deterministic parts around it.
"""

import math
import random

import numpy as np
import pytest

from memmesh.layout import (
    FORCE_BOUND_X,
    FORCE_BOUND_Y,
    LayoutEngine,
    epochs_for,
    grid_fallback,
    layout_seed,
    neighbors_for,
    refine_layout,
)
from memmesh.models import EmbeddingPoint, LayoutCoordinate


def _points(n, dims=8, seed=7):
    rng = random.Random(seed)
    return [
        EmbeddingPoint(f"m{i:02d}", "u1", "content", [rng.random() for _ in range(dims)])
        for i in range(n)
    ]


class FixedReducer(LayoutEngine):
    """Skips UMAP; returns the first three vector components."""

    def _reduce(self, matrix, seed):
        return np.asarray(matrix[:, :3], dtype=np.float64)


class TestParameters:

    @pytest.mark.parametrize("n,expected", [
        (3, 50), (200, 50), (201, 100), (501, 75), (1001, 50), (2001, 30),
    ])
    def test_epochs(self, n, expected):
        assert epochs_for(n) == expected

    @pytest.mark.parametrize("n,expected", [
        (3, 2), (4, 3), (9, 3), (25, 5), (400, 10),
    ])
    def test_neighbors(self, n, expected):
        assert neighbors_for(n) == expected

    def test_seed_ignores_order(self):
        assert layout_seed(["b", "a", "c"]) == layout_seed(["c", "b", "a"])
        assert layout_seed(["a", "b"]) != layout_seed(["a", "c"])
        assert 0 <= layout_seed(["a"]) < 2 ** 32


class TestProjection:

    def test_fewer_than_three_points_is_empty(self):
        assert LayoutEngine().project(_points(2)) == {}
        assert LayoutEngine().project([]) == {}

    def test_duplicate_points_count_once(self):
        points = _points(2)
        points.append(EmbeddingPoint("m00", "u1", "content", [0.5] * 8))
        assert FixedReducer().project(points) == {}

    def test_normalized_ranges(self):
        coords = FixedReducer().project(_points(10))
        xs = [c.x for c in coords.values()]
        zs = [c.z for c in coords.values()]
        assert min(xs) == pytest.approx(-600)
        assert max(xs) == pytest.approx(600)
        assert min(zs) == pytest.approx(-360)
        assert max(zs) == pytest.approx(360)

    def test_flat_axis_does_not_divide_by_zero(self):
        points = [EmbeddingPoint(f"m{i}", "u1", "content", [float(i), 1.0, 1.0]) for i in range(4)]
        coords = FixedReducer().project(points)
        assert all(math.isfinite(c.y) for c in coords.values())

    def test_reducer_failure_is_empty(self):
        class Broken(LayoutEngine):
            def _reduce(self, matrix, seed):
                raise ValueError("cannot reduce")

        assert Broken().project(_points(5)) == {}

    @pytest.mark.slow
    def test_umap_is_deterministic(self):
        points = _points(20, dims=16)
        first = LayoutEngine().project(points)
        second = LayoutEngine().project(list(reversed(points)))
        assert set(first) == {p.memory_id for p in points}
        for memory_id, coord in first.items():
            assert coord.x == pytest.approx(second[memory_id].x, abs=1e-3)
            assert coord.y == pytest.approx(second[memory_id].y, abs=1e-3)
            assert coord.z == pytest.approx(second[memory_id].z, abs=1e-3)


class TestGridFallback:

    def test_deterministic(self):
        ids = [f"m{i}" for i in range(7)]
        assert grid_fallback(ids) == grid_fallback(list(ids))

    def test_layout(self):
        coords = grid_fallback([f"m{i}" for i in range(9)])
        # 3x3 grid, 200 apart, jitter under 50 each way
        first, second = coords["m0"], coords["m1"]
        assert -350 <= first.x <= -250
        assert -350 <= first.y <= -250
        assert 100 <= second.x - first.x <= 300
        assert all(-150 <= c.z <= 150 for c in coords.values())

    def test_empty(self):
        assert grid_fallback([]) == {}


class TestForceRefinement:

    def test_stays_in_bounds(self):
        coords = {
            f"n{i}": LayoutCoordinate(1190 if i % 2 else -1190, 790 if i % 3 else -790, 5.0)
            for i in range(12)
        }
        refined = refine_layout(coords, [("n0", "n1"), ("n2", "n3")])
        for coord in refined.values():
            assert -FORCE_BOUND_X <= coord.x <= FORCE_BOUND_X
            assert -FORCE_BOUND_Y <= coord.y <= FORCE_BOUND_Y
            assert coord.z == 5.0

    def test_edges_pull_nodes_together(self):
        coords = {
            "a": LayoutCoordinate(-500, 0),
            "b": LayoutCoordinate(500, 0),
            "c": LayoutCoordinate(0, 600),
        }
        linked = refine_layout(coords, [("a", "b")])
        unlinked = refine_layout(coords, [])
        gap = lambda layout: abs(layout["a"].x - layout["b"].x)
        assert gap(linked) < gap(unlinked)

    def test_deterministic(self):
        coords = {f"n{i}": LayoutCoordinate(i * 10.0, i * -7.0) for i in range(6)}
        assert refine_layout(coords, [("n0", "n5")]) == refine_layout(coords, [("n0", "n5")])

    def test_skipped_above_node_cap(self):
        coords = {f"n{i}": LayoutCoordinate(float(i), 0.0) for i in range(5)}
        assert refine_layout(coords, [], max_nodes=4) == coords

    def test_coincident_nodes_do_not_blow_up(self):
        coords = {"a": LayoutCoordinate(0, 0), "b": LayoutCoordinate(0, 0)}
        refined = refine_layout(coords, [("a", "b")])
        assert all(math.isfinite(c.x) and math.isfinite(c.y) for c in refined.values())

    def test_unknown_edge_endpoints_ignored(self):
        coords = {"a": LayoutCoordinate(0, 0), "b": LayoutCoordinate(100, 0)}
        refined = refine_layout(coords, [("a", "ghost")])
        assert set(refined) == {"a", "b"}
