"""
Cluster Detector - Groups memories that sit close together in the layout.

Single-pass density grouping: a node with at least `min_points` unvisited
neighbours within `epsilon` starts a cluster with those neighbours. Same
input order and coordinates give the same clusters every time.
"""

import math
from typing import Optional

from memmesh.log import get_logger
from memmesh.models import LayoutCoordinate
from memmesh.pruning import SpatialGrid

logger = get_logger("memmesh.clustering")

CLUSTER_EPSILON = 250
CLUSTER_MIN_POINTS = 2


class ClusterDetector:
    """Density clusters over laid-out (x, y) positions."""

    def __init__(self, epsilon: float = CLUSTER_EPSILON, min_points: int = CLUSTER_MIN_POINTS):
        self.epsilon = epsilon
        self.min_points = min_points

    def detect(
        self,
        coords: dict[str, LayoutCoordinate],
        grid: Optional[SpatialGrid] = None,
    ) -> tuple[dict[int, list[str]], dict[str, int]]:
        """Return (cluster id -> member ids, member id -> cluster id)."""
        if not coords:
            return {}, {}
        grid = grid or SpatialGrid(coords)
        reach = grid.cells_for_radius(self.epsilon)

        clusters: dict[int, list[str]] = {}
        assignments: dict[str, int] = {}
        visited: set[str] = set()

        for memory_id, coord in coords.items():
            if memory_id in visited:
                continue
            visited.add(memory_id)

            neighbours = []
            for other_id in grid.nearby(memory_id, reach):
                if other_id in visited:
                    continue
                other = coords[other_id]
                if math.hypot(coord.x - other.x, coord.y - other.y) <= self.epsilon:
                    neighbours.append(other_id)

            if len(neighbours) < self.min_points:
                continue

            cluster_id = len(clusters)
            clusters[cluster_id] = [memory_id] + neighbours
            for member in clusters[cluster_id]:
                visited.add(member)
                assignments[member] = cluster_id

        logger.debug(f"Detected {len(clusters)} clusters over {len(coords)} nodes")
        return clusters, assignments
