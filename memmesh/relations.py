"""
Relation Finders - Three independent ways two memories can be related.

1. Semantic: their content embeddings are close
2. Topical:  their extracted metadata overlaps
3. Temporal: they were captured around the same time

Each finder returns candidates sorted best first, same owner only, never the
memory itself. Store failures propagate; the mesh service decides what a
failed finder means.
"""

import asyncio
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from memmesh.errors import UpstreamUnavailable
from memmesh.log import get_logger
from memmesh.models import (
    EmbeddingType,
    Memory,
    RelationCandidate,
    RelationType,
)

logger = get_logger("memmesh.relations")

SEMANTIC_MIN_SCORE = 0.3
SEMANTIC_CONFLICT_PENALTY = 0.4
SEMANTIC_SAME_HOST_BOOST = 0.2

TOPICAL_MIN_SCORE = 0.25
TOPICAL_WEIGHTS = {
    "topics": 0.4,
    "categories": 0.3,
    "key_points": 0.2,
    "searchable_terms": 0.1,
}
TOPICAL_SAME_HOST_BONUS = 0.1

TEMPORAL_MIN_SCORE = 0.2
TEMPORAL_WINDOWS = (timedelta(days=1), timedelta(weeks=1), timedelta(days=30))

# (band width, base score, span) - nearest band first
TEMPORAL_BANDS = (
    (timedelta(hours=1), 0.9, 0.1),
    (timedelta(days=1), 0.7, 0.2),
    (timedelta(weeks=1), 0.4, 0.3),
    (timedelta(days=30), 0.1, 0.3),
)


async def run_blocking(
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    upstream: str,
) -> Any:
    """Run a blocking store call off the event loop with a deadline.

    Raises:
        UpstreamUnavailable: the call did not finish in time
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise UpstreamUnavailable(upstream, f"timed out after {timeout}s") from e


def _sorted_top(candidates: list[RelationCandidate], limit: int) -> list[RelationCandidate]:
    # sort() is stable, so equal scores keep discovery order
    candidates.sort(key=lambda c: c.similarity_score, reverse=True)
    return candidates[:limit]


# =============================================================================
# SCORING
# =============================================================================

def set_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard overlap of the distinct elements; 0 when either side is empty."""
    a, b = set(a), set(b)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _host_matches(host: str, pattern: str) -> bool:
    return host == pattern or host.endswith("." + pattern)


def hosts_conflict(a: Memory, b: Memory, conflicting_hosts: Iterable[tuple]) -> bool:
    """True when the two sides come from a pair of sources known not to mix."""
    host_a, host_b = a.hostname, b.hostname
    if not host_a or not host_b:
        return False
    for first, second in conflicting_hosts:
        if _host_matches(host_a, first) and _host_matches(host_b, second):
            return True
        if _host_matches(host_a, second) and _host_matches(host_b, first):
            return True
    return False


def shares_topic(a: Memory, b: Memory) -> bool:
    """At least one topic in common, ignoring case."""
    topics = {t.lower() for t in a.metadata.topics}
    return any(t.lower() in topics for t in b.metadata.topics)


def semantic_score(
    memory: Memory,
    other: Memory,
    similarity: float,
    conflicting_hosts: Iterable[tuple] = (),
) -> float:
    """Vector similarity adjusted for where the two memories came from."""
    score = max(0.0, min(1.0, similarity))
    if hosts_conflict(memory, other, conflicting_hosts):
        score = max(0.0, score - SEMANTIC_CONFLICT_PENALTY)
    if memory.hostname and memory.hostname == other.hostname and shares_topic(memory, other):
        score = min(1.0, score + SEMANTIC_SAME_HOST_BOOST)
    return score


def topical_score(memory: Memory, other: Memory) -> float:
    """Weighted metadata overlap plus a small same-host bonus, capped at 1."""
    score = 0.0
    for name, weight in TOPICAL_WEIGHTS.items():
        score += weight * set_overlap(
            getattr(memory.metadata, name),
            getattr(other.metadata, name),
        )
    if memory.hostname and memory.hostname == other.hostname:
        score += TOPICAL_SAME_HOST_BONUS
    return min(1.0, score)


def temporal_score(gap: timedelta) -> float:
    """Closer in time scores higher; nothing beyond 30 days."""
    gap = abs(gap)
    for width, base, span in TEMPORAL_BANDS:
        if gap <= width:
            return base + span * (1 - gap / width)
    return 0.0


# =============================================================================
# FINDERS
# =============================================================================

class SemanticFinder:
    """Nearest neighbours in embedding space."""

    relation_type = RelationType.SEMANTIC

    def __init__(
        self,
        vectors,
        store,
        vector_timeout_seconds: float = 10.0,
        db_timeout_seconds: float = 10.0,
        conflicting_hosts: Iterable[tuple] = (("meet.google.com", "github.com"),),
    ):
        self.vectors = vectors
        self.store = store
        self.vector_timeout_seconds = vector_timeout_seconds
        self.db_timeout_seconds = db_timeout_seconds
        self.conflicting_hosts = tuple(conflicting_hosts)

    async def find(self, memory: Memory, user_id: str, limit: int = 12) -> list[RelationCandidate]:
        point = await run_blocking(
            self.vectors.get_embedding, memory.id, EmbeddingType.CONTENT.value,
            timeout=self.vector_timeout_seconds, upstream="vector store",
        )
        if point is None:
            logger.debug(f"No content embedding for memory {memory.id}, skipping semantic search")
            return []

        matches = await run_blocking(
            self.vectors.search, point.vector, user_id, memory.id, limit * 3,
            timeout=self.vector_timeout_seconds, upstream="vector store",
        )
        if not matches:
            return []

        others = await run_blocking(
            self.store.get_memories, [memory_id for memory_id, _ in matches],
            timeout=self.db_timeout_seconds, upstream="relational store",
        )

        candidates = []
        seen = set()
        for memory_id, similarity in matches:
            other = others.get(memory_id)
            if other is None or other.id == memory.id or other.user_id != user_id:
                continue
            if memory_id in seen:
                continue
            seen.add(memory_id)
            score = semantic_score(memory, other, similarity, self.conflicting_hosts)
            if score >= SEMANTIC_MIN_SCORE:
                candidates.append(RelationCandidate(other, score, self.relation_type.value))
        return _sorted_top(candidates, limit)


class TopicalFinder:
    """Shared topics, categories, key points and searchable terms."""

    relation_type = RelationType.TOPICAL

    def __init__(self, store, db_timeout_seconds: float = 10.0):
        self.store = store
        self.db_timeout_seconds = db_timeout_seconds

    async def find(self, memory: Memory, user_id: str, limit: int = 8) -> list[RelationCandidate]:
        if not memory.metadata.topics and not memory.metadata.categories:
            return []

        rows = await run_blocking(
            self.store.find_by_shared_terms, user_id, memory.id, memory.metadata, limit * 3,
            timeout=self.db_timeout_seconds, upstream="relational store",
        )

        candidates = []
        for other in rows:
            if other.id == memory.id or other.user_id != user_id:
                continue
            score = topical_score(memory, other)
            if score >= TOPICAL_MIN_SCORE:
                candidates.append(RelationCandidate(other, score, self.relation_type.value))
        return _sorted_top(candidates, limit)


class TemporalFinder:
    """Memories captured close together in time."""

    relation_type = RelationType.TEMPORAL

    def __init__(self, store, db_timeout_seconds: float = 10.0):
        self.store = store
        self.db_timeout_seconds = db_timeout_seconds

    async def find(self, memory: Memory, user_id: str, limit: int = 5) -> list[RelationCandidate]:
        wanted = limit * 3
        rows: list[Memory] = []
        for window in TEMPORAL_WINDOWS:
            rows = await run_blocking(
                self.store.find_in_window,
                user_id, memory.id,
                memory.created_at - window, memory.created_at + window,
                wanted, memory.created_at,
                timeout=self.db_timeout_seconds, upstream="relational store",
            )
            if len(rows) >= wanted:
                break

        candidates = []
        for other in rows:
            if other.id == memory.id or other.user_id != user_id:
                continue
            score = temporal_score(other.created_at - memory.created_at)
            if score >= TEMPORAL_MIN_SCORE:
                candidates.append(RelationCandidate(other, score, self.relation_type.value))
        return _sorted_top(candidates, limit)


def union_candidates(*groups: Optional[list[RelationCandidate]]) -> list[RelationCandidate]:
    """Concatenate finder results in the order given, skipping missing groups."""
    merged: list[RelationCandidate] = []
    for group in groups:
        if group:
            merged.extend(group)
    return merged
