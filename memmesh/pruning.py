"""
Graph Pruner - Keeps the mesh readable.

A dense similarity graph is a hairball. Pruning keeps only edges both
endpoints agree on (mutual k-nearest neighbours), caps every node's degree,
then backfills isolated nodes with their nearest neighbours so nothing
floats alone.

Proximity candidates come from the layout itself: memories placed close
together are probably related, with small boosts for a shared source,
domain or capture time.
"""

import math
from datetime import timedelta
from typing import Iterable, Iterator, Optional

import networkx as nx

from memmesh.log import get_logger
from memmesh.models import LayoutCoordinate, MeshEdge, MeshNode, RelationType

logger = get_logger("memmesh.pruning")

GRID_EXTENT = 2000
GRID_ORIGIN = 1000
CANDIDATE_SEARCH_CELLS = 2
DISTANCE_PERCENTILE = 0.95
PROXIMITY_EXPONENT = 1.5

TYPE_BONUS = {
    RelationType.SEMANTIC.value: 0.05,
    RelationType.TOPICAL.value: 0.02,
    RelationType.TEMPORAL.value: 0.0,
}

SAME_SOURCE_BOOST = 0.02
SAME_DOMAIN_BOOST = 0.03
TIME_BOOSTS = (
    (timedelta(hours=1), 0.02),
    (timedelta(days=1), 0.015),
    (timedelta(weeks=1), 0.01),
)


def mesh_k(node_count: int) -> int:
    return max(5, min(15, round(math.sqrt(max(1, node_count)))))


def degree_cap_for(k: int) -> int:
    return max(2, min(5, k + 1))


def min_degree_for(k: int) -> int:
    # Never above the degree cap, or backfill would undo the cap
    return min(5, max(2, k // 2))


def _domain(node: MeshNode) -> str:
    host = node.hostname
    return host[4:] if host.startswith("www.") else host


def _distance(a: LayoutCoordinate, b: LayoutCoordinate, with_z: bool = True) -> float:
    dz = (a.z - b.z) if with_z else 0.0
    return math.sqrt((a.x - b.x) ** 2 + (a.y - b.y) ** 2 + dz ** 2)


# =============================================================================
# SPATIAL GRID
# =============================================================================

class SpatialGrid:
    """Bucket laid-out nodes into square cells over [-1000, 1000].

    Each cell keeps nodes in insertion order, so neighbour scans are
    deterministic.
    """

    def __init__(self, coords: dict[str, LayoutCoordinate]):
        self.coords = coords
        self.size = max(1, math.ceil(math.sqrt(len(coords))))
        self.cell_size = GRID_EXTENT / self.size
        self.cells: dict[tuple[int, int], list[str]] = {}
        for memory_id, coord in coords.items():
            self.cells.setdefault(self.key(coord), []).append(memory_id)

    def key(self, coord: LayoutCoordinate) -> tuple[int, int]:
        return (
            math.floor((coord.x + GRID_ORIGIN) / self.cell_size),
            math.floor((coord.y + GRID_ORIGIN) / self.cell_size),
        )

    def cells_for_radius(self, radius: float) -> int:
        """How many cells out a scan must reach to cover `radius` units."""
        return max(1, math.ceil(radius / self.cell_size))

    def nearby(self, memory_id: str, cells: int) -> Iterator[str]:
        """Other node ids within `cells` cells of this node's cell."""
        gx, gy = self.key(self.coords[memory_id])
        for dx in range(-cells, cells + 1):
            for dy in range(-cells, cells + 1):
                for other_id in self.cells.get((gx + dx, gy + dy), ()):
                    if other_id != memory_id:
                        yield other_id


# =============================================================================
# CANDIDATE EDGES
# =============================================================================

def proximity_boost(a: MeshNode, b: MeshNode) -> float:
    boost = 0.0
    if a.source and a.source == b.source:
        boost += SAME_SOURCE_BOOST
    domain = _domain(a)
    if domain and domain == _domain(b):
        boost += SAME_DOMAIN_BOOST
    if a.created_at and b.created_at:
        gap = abs(a.created_at - b.created_at)
        for window, amount in TIME_BOOSTS:
            if gap <= window:
                boost += amount
                break
    return boost


def proximity_edges(
    nodes: list[MeshNode],
    grid: SpatialGrid,
    k: int,
    min_degree: int,
    threshold: float,
) -> tuple[list[MeshEdge], float]:
    """Edges between nodes placed close together.

    Returns the edges and the 95th-percentile neighbour distance, which
    backfill reuses to turn distances into similarities.
    """
    by_id = {node.id: node for node in nodes if node.id in grid.coords}
    neighbour_distances: dict[str, list[tuple[float, str]]] = {}
    all_distances: list[float] = []

    for memory_id in by_id:
        coord = grid.coords[memory_id]
        distances = [
            (_distance(coord, grid.coords[other_id]), other_id)
            for other_id in grid.nearby(memory_id, CANDIDATE_SEARCH_CELLS)
        ]
        distances.sort(key=lambda item: item[0])
        neighbour_distances[memory_id] = distances
        all_distances.extend(d for d, _ in distances)

    all_distances.sort()
    max_distance = 1.0
    if all_distances:
        max_distance = all_distances[int(len(all_distances) * DISTANCE_PERCENTILE)] or all_distances[-1] or 1.0

    edges = []
    for memory_id, distances in neighbour_distances.items():
        chosen = distances[:k] if len(distances) >= min_degree else distances[:min_degree]
        for distance, other_id in chosen:
            base = (1 - min(1.0, distance / max_distance)) ** PROXIMITY_EXPONENT
            score = max(0.0, min(1.0, base + proximity_boost(by_id[memory_id], by_id[other_id])))
            if score >= threshold:
                edges.append(MeshEdge(memory_id, other_id, score, RelationType.SEMANTIC.value))
    return edges, max_distance


def merge_edges(*groups: Iterable[MeshEdge]) -> list[MeshEdge]:
    """One edge per unordered pair (higher score wins), best first."""
    best: dict[tuple[str, str], MeshEdge] = {}
    for group in groups:
        for edge in group:
            if edge.source == edge.target:
                continue
            key = edge.pair_key()
            current = best.get(key)
            if current is None or edge.similarity_score > current.similarity_score:
                best[key] = edge
    return sorted(best.values(), key=lambda e: e.similarity_score, reverse=True)


# =============================================================================
# PRUNING
# =============================================================================

class GraphPruner:
    """Mutual-KNN pruning with a degree cap, then minimum-degree backfill."""

    def __init__(self, similarity_threshold: float = 0.4):
        self.similarity_threshold = similarity_threshold

    def prune(self, edges: list[MeshEdge], k: int) -> list[MeshEdge]:
        adjacency: dict[str, list[tuple[float, str]]] = {}
        for edge in edges:
            if edge.source == edge.target:
                continue
            weight = edge.similarity_score + TYPE_BONUS.get(edge.relationship_type, 0.0)
            if weight < self.similarity_threshold:
                continue
            adjacency.setdefault(edge.source, []).append((weight, edge.target))
            adjacency.setdefault(edge.target, []).append((weight, edge.source))

        top_k = {}
        for node, neighbours in adjacency.items():
            neighbours.sort(key=lambda item: item[0], reverse=True)
            top_k[node] = {other for _, other in neighbours[:k]}

        kept: dict[tuple[str, str], MeshEdge] = {}
        for edge in edges:
            if edge.source == edge.target:
                continue
            if edge.target not in top_k.get(edge.source, ()) or edge.source not in top_k.get(edge.target, ()):
                continue
            key = edge.pair_key()
            current = kept.get(key)
            if current is None or edge.similarity_score > current.similarity_score:
                kept[key] = edge

        cap = degree_cap_for(k)
        degree: dict[str, int] = {}
        accepted = []
        for edge in sorted(kept.values(), key=lambda e: e.similarity_score, reverse=True):
            if degree.get(edge.source, 0) >= cap or degree.get(edge.target, 0) >= cap:
                continue
            accepted.append(edge)
            degree[edge.source] = degree.get(edge.source, 0) + 1
            degree[edge.target] = degree.get(edge.target, 0) + 1
        return accepted

    def backfill(
        self,
        edges: list[MeshEdge],
        coords: dict[str, LayoutCoordinate],
        min_degree: int,
        max_distance: float,
    ) -> list[MeshEdge]:
        """Connect under-connected laid-out nodes to their nearest neighbours."""
        graph = nx.Graph()
        graph.add_nodes_from(coords)
        graph.add_edges_from((e.source, e.target) for e in edges)

        result = list(edges)
        max_distance = max_distance or 1.0
        for memory_id, coord in coords.items():
            missing = min_degree - graph.degree(memory_id)
            if missing <= 0:
                continue
            candidates = sorted(
                (
                    (_distance(coord, other_coord, with_z=False), other_id)
                    for other_id, other_coord in coords.items()
                    if other_id != memory_id and not graph.has_edge(memory_id, other_id)
                ),
                key=lambda item: item[0],
            )
            for distance, other_id in candidates[:missing]:
                score = max(0.0, 1 - distance / max_distance)
                if score <= self.similarity_threshold:
                    continue
                graph.add_edge(memory_id, other_id)
                result.append(MeshEdge(
                    memory_id, other_id, score, RelationType.SEMANTIC.value, backfill=True,
                ))
        return result

    def build(
        self,
        nodes: list[MeshNode],
        stored_edges: Iterable[MeshEdge] = (),
        k: Optional[int] = None,
    ) -> list[MeshEdge]:
        """Full edge pipeline for laid-out nodes: candidates, prune, backfill."""
        coords = {node.id: LayoutCoordinate(node.x, node.y, node.z) for node in nodes}
        if len(coords) < 2:
            return []
        k = k or mesh_k(len(coords))
        min_degree = min_degree_for(k)

        grid = SpatialGrid(coords)
        candidates, max_distance = proximity_edges(
            nodes, grid, k, min_degree, self.similarity_threshold,
        )
        stored = [e for e in stored_edges if e.source in coords and e.target in coords]
        merged = [
            e for e in merge_edges(candidates, stored)
            if e.similarity_score >= self.similarity_threshold
        ]

        pruned = self.prune(merged, k)
        edges = self.backfill(pruned, coords, min_degree, max_distance)
        logger.debug(
            f"Mesh edges: {len(merged)} candidates, {len(pruned)} after pruning, "
            f"{len(edges) - len(pruned)} backfilled"
        )
        return edges
