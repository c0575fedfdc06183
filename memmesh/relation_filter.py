"""
Relation Filter - Turns raw finder output into a short list worth storing.

Confidence tiers:
- >= 0.7       high:   kept as is
- [0.5, 0.7)   medium: kept when a cheap metadata heuristic agrees
- [0.4, 0.5)   low:    a few promising ones go to the AI judge
- below 0.4            dropped (unless nothing else survives)

The result never exceeds `max_relations` entries and is sorted best first.
"""

from datetime import timedelta
from typing import Optional

from memmesh.judge import RelationshipJudge
from memmesh.log import get_logger
from memmesh.models import Memory, RelationCandidate, RelationType

logger = get_logger("memmesh.relation_filter")

HIGH_CONFIDENCE = 0.7
MEDIUM_CONFIDENCE = 0.5
LOW_CONFIDENCE = 0.4

HEURISTIC_MIN_SCORE = 0.3
JUDGE_MIN_RELEVANCE = 0.3
JUDGE_MAX_CANDIDATES = 3
JUDGE_MAX_AGE_GAP = timedelta(days=7)
JUDGE_MIN_TOPICS = 3

FALLBACK_COUNT = 3
FALLBACK_MIN_SCORE = 0.3

SAFETY_NET_MIN_SCORE = 0.6
SAFETY_NET_COUNT = 6


def dedupe_candidates(candidates: list[RelationCandidate]) -> list[RelationCandidate]:
    """One candidate per related memory, in first-seen order.

    A later duplicate replaces the earlier one only if it scores strictly higher.
    """
    best: dict[str, RelationCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.memory_id)
        if current is None or candidate.similarity_score > current.similarity_score:
            best[candidate.memory_id] = candidate
    return list(best.values())


def heuristic_score(memory: Memory, other: Memory) -> float:
    """Cheap agreement check for medium-confidence candidates."""
    topics = set(memory.metadata.topics)
    categories = set(memory.metadata.categories)
    shared_topics = len(topics & set(other.metadata.topics))
    shared_categories = len(categories & set(other.metadata.categories))

    score = 0.6 * shared_topics / max(len(topics), 1)
    score += 0.3 * shared_categories / max(len(categories), 1)
    if memory.hostname and memory.hostname == other.hostname:
        score += 0.1
    return score


def worth_judging(memory: Memory, other: Memory) -> bool:
    """Only close-in-time, topic-rich pairs with a shared topic go to the judge."""
    if len(memory.metadata.topics) < JUDGE_MIN_TOPICS:
        return False
    if len(other.metadata.topics) < JUDGE_MIN_TOPICS:
        return False
    if abs(memory.created_at - other.created_at) > JUDGE_MAX_AGE_GAP:
        return False
    return bool(set(memory.metadata.topics) & set(other.metadata.topics))


def _best_first(candidates: list[RelationCandidate]) -> list[RelationCandidate]:
    return sorted(candidates, key=lambda c: c.similarity_score, reverse=True)


class RelationFilter:
    """Dedup, tier, judge, fall back, cap."""

    def __init__(self, judge: Optional[RelationshipJudge] = None, max_relations: int = 8):
        self.judge = judge
        self.max_relations = max_relations

    async def filter(self, memory: Memory, candidates: list[RelationCandidate]) -> list[RelationCandidate]:
        """Never raises; an unexpected failure keeps only the strongest candidates."""
        try:
            return await self._filter(memory, candidates)
        except Exception as e:
            logger.error(f"Relation filtering failed for memory {memory.id}: {e}", exc_info=True)
            strong = [c for c in candidates if c.similarity_score >= SAFETY_NET_MIN_SCORE]
            return _best_first(dedupe_candidates(strong))[:SAFETY_NET_COUNT]

    async def _filter(self, memory: Memory, candidates: list[RelationCandidate]) -> list[RelationCandidate]:
        unique = dedupe_candidates(candidates)
        if not unique:
            return []

        kept: list[RelationCandidate] = []
        low: list[RelationCandidate] = []
        for candidate in unique:
            score = candidate.similarity_score
            if score >= HIGH_CONFIDENCE:
                kept.append(candidate)
            elif score >= MEDIUM_CONFIDENCE:
                if heuristic_score(memory, candidate.memory) >= HEURISTIC_MIN_SCORE:
                    kept.append(candidate)
            elif score >= LOW_CONFIDENCE:
                if worth_judging(memory, candidate.memory):
                    low.append(candidate)

        if low and self.judge is not None:
            kept.extend(await self._judge(memory, _best_first(low)[:JUDGE_MAX_CANDIDATES]))

        if not kept:
            kept = [c for c in _best_first(unique) if c.similarity_score >= FALLBACK_MIN_SCORE]
            kept = kept[:FALLBACK_COUNT]
            if kept:
                logger.debug(f"No confident relations for memory {memory.id}, kept {len(kept)} fallback candidates")

        return _best_first(kept)[:self.max_relations]

    async def _judge(self, memory: Memory, candidates: list[RelationCandidate]) -> list[RelationCandidate]:
        evaluations = await self.judge.evaluate(memory, [c.memory for c in candidates])

        accepted = []
        for candidate, evaluation in zip(candidates, evaluations):
            if not evaluation.is_relevant or evaluation.relevance_score < JUDGE_MIN_RELEVANCE:
                continue
            judged_type = RelationType.parse(evaluation.relationship_type)
            accepted.append(RelationCandidate(
                memory=candidate.memory,
                similarity_score=min(1.0, candidate.similarity_score * evaluation.relevance_score),
                relation_type=judged_type.value if judged_type else candidate.relation_type,
            ))
        return accepted
