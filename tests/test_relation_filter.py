"""
Relation filter tests.

Covers dedup, the three confidence tiers, the judge hand-off, fallback,
the cap, and the safety net.
"""

from datetime import timedelta

import pytest

from memmesh.judge import RelationshipJudge
from memmesh.models import Memory, MemoryMetadata, RelationCandidate
from memmesh.relation_filter import (
    RelationFilter,
    dedupe_candidates,
    heuristic_score,
    worth_judging,
)

from conftest import BASE_TIME, FakeGenerator


def _memory(memory_id, topics=(), categories=(), url=None, days=0):
    return Memory(
        id=memory_id,
        user_id="u1",
        url=url,
        created_at=BASE_TIME + timedelta(days=days),
        metadata=MemoryMetadata(topics=list(topics), categories=list(categories)),
    )


def _candidate(memory, score, rel_type="semantic"):
    return RelationCandidate(memory, score, rel_type)


SOURCE = _memory("src", topics=["a", "b", "c"], categories=["cat"])


class TestHelpers:

    def test_dedupe_keeps_higher_score_first_position(self):
        x = _memory("x")
        y = _memory("y")
        result = dedupe_candidates([
            _candidate(x, 0.5, "semantic"),
            _candidate(y, 0.6, "semantic"),
            _candidate(x, 0.8, "topical"),
            _candidate(y, 0.6, "temporal"),
        ])
        assert [(c.memory_id, c.similarity_score, c.relation_type) for c in result] == [
            ("x", 0.8, "topical"),
            ("y", 0.6, "semantic"),
        ]

    def test_heuristic(self):
        other = _memory("o", topics=["a", "b"], categories=["cat"])
        # 0.6 * 2/3 + 0.3 * 1
        assert heuristic_score(SOURCE, other) == pytest.approx(0.7)
        assert heuristic_score(SOURCE, _memory("none")) == 0.0

    def test_worth_judging(self):
        rich = _memory("r", topics=["a", "x", "y"], days=3)
        assert worth_judging(SOURCE, rich)
        assert not worth_judging(SOURCE, _memory("r", topics=["a", "x"]))
        assert not worth_judging(SOURCE, _memory("r", topics=["x", "y", "z"]))
        assert not worth_judging(SOURCE, _memory("r", topics=["a", "x", "y"], days=8))


class TestRelationFilter:

    @pytest.mark.asyncio
    async def test_tiers_without_judge(self):
        high = _candidate(_memory("high"), 0.75)
        medium_ok = _candidate(_memory("medium_ok", topics=["a", "b"], categories=["cat"]), 0.6)
        medium_bad = _candidate(_memory("medium_bad", topics=["zzz"]), 0.6)
        low = _candidate(_memory("low", topics=["a", "x", "y"]), 0.45)
        tiny = _candidate(_memory("tiny"), 0.2)

        kept = await RelationFilter().filter(SOURCE, [low, medium_bad, high, tiny, medium_ok])
        assert [c.memory_id for c in kept] == ["high", "medium_ok"]

    @pytest.mark.asyncio
    async def test_judge_accepts_and_rescores(self, cache):
        generator = FakeGenerator(
            '[{"isRelevant": true, "relevanceScore": 0.8, "relationshipType": "topical", "reasoning": "r"},'
            ' {"isRelevant": true, "relevanceScore": 0.2, "relationshipType": "semantic", "reasoning": "r"}]'
        )
        relation_filter = RelationFilter(RelationshipJudge(generator, cache))
        first = _candidate(_memory("first", topics=["a", "x", "y"]), 0.48, "semantic")
        second = _candidate(_memory("second", topics=["b", "x", "y"]), 0.45, "temporal")

        kept = await relation_filter.filter(SOURCE, [first, second])
        assert len(kept) == 1
        assert kept[0].memory_id == "first"
        assert kept[0].similarity_score == pytest.approx(0.48 * 0.8)
        assert kept[0].relation_type == "topical"

    @pytest.mark.asyncio
    async def test_judge_type_none_keeps_finder_type(self, cache):
        generator = FakeGenerator(
            '[{"isRelevant": true, "relevanceScore": 0.9, "relationshipType": "none", "reasoning": "r"}]'
        )
        relation_filter = RelationFilter(RelationshipJudge(generator, cache))
        candidate = _candidate(_memory("c", topics=["a", "x", "y"]), 0.45, "temporal")

        kept = await relation_filter.filter(SOURCE, [candidate])
        assert kept[0].relation_type == "temporal"

    @pytest.mark.asyncio
    async def test_at_most_three_go_to_judge(self, cache):
        generator = FakeGenerator("[]")
        relation_filter = RelationFilter(RelationshipJudge(generator, cache))
        low = [
            _candidate(_memory(f"l{i}", topics=["a", "x", "y"]), 0.41 + i * 0.01)
            for i in range(5)
        ]
        await relation_filter.filter(SOURCE, low)
        prompt = generator.prompts[0]
        assert "l4" in prompt and "l3" in prompt and "l2" in prompt
        assert "l1" not in prompt and "l0" not in prompt

    @pytest.mark.asyncio
    async def test_fallback_keeps_top_three_above_floor(self):
        candidates = [
            _candidate(_memory(f"m{i}"), score)
            for i, score in enumerate([0.35, 0.55, 0.31, 0.45, 0.25, 0.5])
        ]
        kept = await RelationFilter().filter(SOURCE, candidates)
        assert [c.similarity_score for c in kept] == [0.55, 0.5, 0.45]

    @pytest.mark.asyncio
    async def test_fallback_can_be_empty(self):
        kept = await RelationFilter().filter(SOURCE, [_candidate(_memory("m"), 0.2)])
        assert kept == []

    @pytest.mark.asyncio
    async def test_capped_and_sorted(self):
        candidates = [_candidate(_memory(f"m{i}"), 0.7 + i * 0.02) for i in range(12)]
        kept = await RelationFilter(max_relations=8).filter(SOURCE, candidates)
        assert len(kept) == 8
        scores = [c.similarity_score for c in kept]
        assert scores == sorted(scores, reverse=True)
        assert kept[0].memory_id == "m11"

    @pytest.mark.asyncio
    async def test_safety_net_on_unexpected_error(self, monkeypatch):
        relation_filter = RelationFilter()

        async def explode(memory, candidates):
            raise RuntimeError("boom")

        monkeypatch.setattr(relation_filter, "_filter", explode)
        candidates = [_candidate(_memory(f"m{i}"), 0.55 + i * 0.05) for i in range(9)]
        kept = await relation_filter.filter(SOURCE, candidates)
        assert len(kept) == 6
        assert all(c.similarity_score >= 0.6 for c in kept)

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await RelationFilter().filter(SOURCE, []) == []
