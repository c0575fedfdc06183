"""
Layout Engine - Places memories in 3D space.

Two ways to get coordinates:
1. Latent-space projection: UMAP over content embeddings, seeded from the
   ids so the same input always lands in the same place
2. Grid fallback: deterministic grid slots with hashed jitter, for memories
   that have no embedding (or when projection fails)

Force refinement then declutters the projection on (x, y), pulling related
memories together and pushing everything else apart.
"""

import hashlib
import math
from typing import Iterable, Optional

import numpy as np

from memmesh.log import get_logger
from memmesh.models import EmbeddingPoint, LayoutCoordinate

logger = get_logger("memmesh.layout")

MIN_POINTS = 3

# Half-extent of each axis after normalization
NORMALIZED_SCALE = 1200
NORMALIZED_HALF_XY = NORMALIZED_SCALE / 2
NORMALIZED_HALF_Z = NORMALIZED_SCALE * 0.3

GRID_SPACING = 200
GRID_JITTER_XY = 100
GRID_JITTER_Z = 300

FORCE_ITERATIONS = 150
FORCE_SPRING = 400
FORCE_DAMPING = 0.008
FORCE_MAX = 50
FORCE_BOUND_X = 1200
FORCE_BOUND_Y = 800


def layout_seed(memory_ids: Iterable[str]) -> int:
    """Stable 32-bit seed from the sorted id list."""
    joined = ",".join(sorted(memory_ids))
    return int(hashlib.sha256(joined.encode()).hexdigest()[:8], 16)


def epochs_for(n: int) -> int:
    """Fewer optimisation epochs for bigger inputs."""
    if n > 2000:
        return 30
    if n > 1000:
        return 50
    if n > 500:
        return 75
    if n > 200:
        return 100
    return 50


def neighbors_for(n: int) -> int:
    """clamp(round(sqrt(n)), 3, 10), never more than n - 1."""
    k = max(3, min(10, round(math.sqrt(n))))
    return max(2, min(k, n - 1))


def _normalize_axis(values: np.ndarray, half_extent: float) -> np.ndarray:
    low, high = float(values.min()), float(values.max())
    span = high - low or 1.0
    return ((values - low) / span * 2 - 1) * half_extent


def _jitter(memory_id: str, axis: str) -> float:
    """Deterministic offset in [-0.5, 0.5) for one id and axis."""
    digest = hashlib.md5(f"{memory_id}|{axis}".encode()).hexdigest()
    return int(digest[:8], 16) / 0x100000000 - 0.5


def grid_fallback(memory_ids: list[str]) -> dict[str, LayoutCoordinate]:
    """Place memories on a square grid with stable per-id jitter."""
    total = len(memory_ids)
    if total == 0:
        return {}
    grid = math.ceil(math.sqrt(total))
    coords = {}
    for index, memory_id in enumerate(memory_ids):
        row, col = divmod(index, grid)
        coords[memory_id] = LayoutCoordinate(
            x=(col - grid / 2) * GRID_SPACING + _jitter(memory_id, "x") * GRID_JITTER_XY,
            y=(row - grid / 2) * GRID_SPACING + _jitter(memory_id, "y") * GRID_JITTER_XY,
            z=_jitter(memory_id, "z") * GRID_JITTER_Z,
        )
    return coords


class LayoutEngine:
    """Deterministic 3D projection of embedding points."""

    def __init__(self, min_dist: float = 0.1, spread: float = 1.5):
        self.min_dist = min_dist
        self.spread = spread

    def project(self, points: list[EmbeddingPoint]) -> dict[str, LayoutCoordinate]:
        """Coordinates keyed by memory id; empty when there is too little to project."""
        unique: dict[str, EmbeddingPoint] = {}
        for point in points:
            if point.vector:
                unique.setdefault(point.memory_id, point)
        if len(unique) < MIN_POINTS:
            return {}

        ordered = sorted(unique.values(), key=lambda p: p.memory_id)
        ids = [p.memory_id for p in ordered]
        try:
            matrix = np.asarray([p.vector for p in ordered], dtype=np.float32)
            raw = self._reduce(matrix, layout_seed(ids))
        except Exception as e:
            logger.error(f"Latent-space projection failed for {len(ids)} points: {e}", exc_info=True)
            return {}

        xs = _normalize_axis(raw[:, 0], NORMALIZED_HALF_XY)
        ys = _normalize_axis(raw[:, 1], NORMALIZED_HALF_XY)
        zs = _normalize_axis(raw[:, 2], NORMALIZED_HALF_Z)
        return {
            memory_id: LayoutCoordinate(float(x), float(y), float(z))
            for memory_id, x, y, z in zip(ids, xs, ys, zs)
        }

    def _reduce(self, matrix: np.ndarray, seed: int) -> np.ndarray:
        import umap

        n = len(matrix)
        reducer = umap.UMAP(
            n_components=3,
            n_neighbors=neighbors_for(n),
            min_dist=self.min_dist,
            spread=self.spread,
            n_epochs=epochs_for(n),
            random_state=seed,
            # spectral init needs more points than a tiny mesh has
            init="random" if n <= 10 else "spectral",
            verbose=False,
        )
        coords = reducer.fit_transform(matrix)
        logger.info(f"UMAP 3D: {n} memories")
        return np.asarray(coords, dtype=np.float64)


def refine_layout(
    coords: dict[str, LayoutCoordinate],
    edges: Iterable[tuple[str, str]],
    max_nodes: Optional[int] = None,
    iterations: int = FORCE_ITERATIONS,
) -> dict[str, LayoutCoordinate]:
    """Spring/repulsion declutter on (x, y); z is left as projected.

    Returns new coordinates. Skipped (input returned unchanged) when there
    are more than `max_nodes` nodes.
    """
    ids = list(coords)
    n = len(ids)
    if n < 2:
        return dict(coords)
    if max_nodes is not None and n > max_nodes:
        logger.debug(f"Skipping force refinement for {n} nodes (cap {max_nodes})")
        return dict(coords)

    index = {memory_id: i for i, memory_id in enumerate(ids)}
    pairs = [
        (index[a], index[b]) for a, b in edges
        if a in index and b in index and a != b
    ]
    sources = np.array([a for a, _ in pairs], dtype=np.intp)
    targets = np.array([b for _, b in pairs], dtype=np.intp)

    positions = np.array([[coords[i].x, coords[i].y] for i in ids], dtype=np.float64)
    k = FORCE_SPRING

    for iteration in range(iterations):
        # Repulsion between every pair
        delta = positions[:, None, :] - positions[None, :, :]
        distance = np.sqrt((delta ** 2).sum(axis=2))
        distance[distance == 0] = 1.0
        magnitude = np.minimum(k * k / (distance * 1.5), FORCE_MAX)
        np.fill_diagonal(magnitude, 0.0)
        forces = (delta / distance[:, :, None] * magnitude[:, :, None]).sum(axis=1)

        # Attraction along edges
        if len(pairs):
            edge_delta = positions[targets] - positions[sources]
            edge_distance = np.sqrt((edge_delta ** 2).sum(axis=1))
            edge_distance[edge_distance == 0] = 1.0
            edge_magnitude = np.minimum(edge_distance ** 2 / (k * 0.8), FORCE_MAX)
            pull = edge_delta / edge_distance[:, None] * edge_magnitude[:, None]
            np.add.at(forces, sources, pull)
            np.add.at(forces, targets, -pull)

        damping = FORCE_DAMPING * (1 - iteration / iterations)
        positions += np.clip(forces, -FORCE_MAX, FORCE_MAX) * damping
        positions[:, 0] = np.clip(positions[:, 0], -FORCE_BOUND_X, FORCE_BOUND_X)
        positions[:, 1] = np.clip(positions[:, 1], -FORCE_BOUND_Y, FORCE_BOUND_Y)

    return {
        memory_id: LayoutCoordinate(float(positions[i, 0]), float(positions[i, 1]), coords[memory_id].z)
        for i, memory_id in enumerate(ids)
    }
