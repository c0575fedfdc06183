"""
Relation Store Writer - Persists filtered relations for one memory.

Cleanup runs before the write so the per-memory cap counts old rows only.
Rows are updated in place when the new score is clearly better, or at least
as good with a more specific type. A uniqueness conflict means a concurrent
writer stored the pair first, which is as good as success.
"""

from datetime import timedelta
from typing import Iterable

from memmesh.errors import ConflictIgnored
from memmesh.log import get_logger
from memmesh.models import (
    RELATION_SPECIFICITY,
    Relation,
    RelationCandidate,
    WriteSummary,
    utcnow,
)

logger = get_logger("memmesh.relation_writer")

CLEANUP_MIN_SCORE = 0.3
STALE_MIN_SCORE = 0.4
STALE_AGE = timedelta(days=30)
UPDATE_MARGIN = 0.05


def should_update(old_score: float, old_type: str, new_score: float, new_type: str) -> bool:
    """Replace a stored relation only for a real improvement."""
    if new_score > old_score + UPDATE_MARGIN:
        return True
    more_specific = RELATION_SPECIFICITY.get(new_type, 0) > RELATION_SPECIFICITY.get(old_type, 0)
    return new_score >= old_score and more_specific


class RelationWriter:
    """Cleanup-then-upsert against the relational store."""

    def __init__(self, store, keep_top: int = 10):
        self.store = store
        self.keep_top = keep_top

    def cleanup(self, memory_id: str) -> int:
        """Drop weak, excess and stale outgoing relations. Returns rows deleted."""
        deleted = self.store.delete_relations_below(memory_id, CLEANUP_MIN_SCORE)
        deleted += self.store.trim_relations(memory_id, self.keep_top)
        deleted += self.store.delete_stale_relations(
            memory_id, STALE_MIN_SCORE, utcnow() - STALE_AGE,
        )
        if deleted:
            logger.debug(f"Cleaned up {deleted} relations for memory {memory_id}")
        return deleted

    def write(self, memory_id: str, candidates: Iterable[RelationCandidate]) -> WriteSummary:
        self.cleanup(memory_id)

        summary = WriteSummary()
        for candidate in candidates:
            related_id = candidate.memory_id
            if related_id == memory_id:
                continue
            score = max(0.0, min(1.0, candidate.similarity_score))

            existing = self.store.get_relation(memory_id, related_id)
            if existing is None:
                try:
                    self.store.insert_relation(Relation(
                        memory_id=memory_id,
                        related_memory_id=related_id,
                        similarity_score=score,
                        relation_type=candidate.relation_type,
                    ))
                    summary.inserted += 1
                except ConflictIgnored:
                    logger.debug(f"Relation {memory_id} -> {related_id} written concurrently, skipping")
                    summary.conflicts += 1
                continue

            if should_update(existing.similarity_score, existing.relation_type, score, candidate.relation_type):
                self.store.update_relation(existing.id, score, candidate.relation_type)
                summary.updated += 1
            else:
                summary.unchanged += 1

        logger.info(
            f"Stored relations for memory {memory_id}: {summary.inserted} inserted, "
            f"{summary.updated} updated, {summary.unchanged} unchanged, {summary.conflicts} conflicts"
        )
        return summary
