"""
Relationship Judge - Asks a generative model whether borderline pairs relate.

Only low-confidence candidates reach the judge, at most a handful per memory,
and they go out as one batched prompt. Answers are cached per pair. Anything
that goes wrong (no provider, timeout, unparseable answer) means
"not relevant" for the affected candidates; the judge never raises.
"""

import asyncio
import json
import re
import threading
from typing import Optional

from memmesh.cache import SimilarityCache, make_cache_key
from memmesh.errors import MalformedJudgeOutput, UpstreamUnavailable
from memmesh.generation import TextGenerator
from memmesh.log import get_logger
from memmesh.models import Memory, RelationshipEvaluation

logger = get_logger("memmesh.judge")

JSON_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")

PROMPT_TEMPLATE = """Evaluate relationships between a source memory and multiple candidate memories. Return a JSON array with evaluation results.

CRITICAL: Return ONLY valid JSON. No explanations, no markdown formatting, no code blocks. Just the JSON array.

Source Memory:
Title: {title}
Content: {preview}
Topics: {topics}
Categories: {categories}

Candidate Memories:
{candidates}
Return a JSON array with one object per candidate memory, in the same order:
[
  {{
    "isRelevant": boolean,
    "relevanceScore": number (0-1),
    "relationshipType": "semantic" | "topical" | "temporal" | "none",
    "reasoning": string
  }}
]

Be strict about relevance - only mark as relevant if there's substantial conceptual or topical connection."""

CANDIDATE_TEMPLATE = """
{index}. Memory ID: {id}
   Title: {title}
   Content: {preview}
   Topics: {topics}
   Categories: {categories}
"""


def _join(values: list[str]) -> str:
    return ", ".join(values) if values else "N/A"


def build_prompt(source: Memory, candidates: list[Memory]) -> str:
    """Render the batched evaluation prompt."""
    rendered = "".join(
        CANDIDATE_TEMPLATE.format(
            index=i + 1,
            id=candidate.id,
            title=candidate.title or "N/A",
            preview=candidate.preview() or "N/A",
            topics=_join(candidate.metadata.topics),
            categories=_join(candidate.metadata.categories),
        )
        for i, candidate in enumerate(candidates)
    )
    return PROMPT_TEMPLATE.format(
        title=source.title or "N/A",
        preview=source.preview() or "N/A",
        topics=_join(source.metadata.topics),
        categories=_join(source.metadata.categories),
        candidates=rendered,
    )


def parse_evaluations(response: str, expected: int) -> list[RelationshipEvaluation]:
    """Pull the JSON array out of a model response.

    Missing or non-object entries count as not relevant.

    Raises:
        MalformedJudgeOutput: no JSON array in the response, or it does not parse
    """
    if not response:
        raise MalformedJudgeOutput("empty judge response")
    match = JSON_ARRAY_PATTERN.search(response)
    if not match:
        raise MalformedJudgeOutput("no JSON array in judge response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedJudgeOutput(f"invalid JSON array: {e}") from e
    if not isinstance(parsed, list):
        raise MalformedJudgeOutput("judge response is not a list")

    evaluations = []
    for i in range(expected):
        item = parsed[i] if i < len(parsed) else None
        if isinstance(item, dict):
            evaluations.append(RelationshipEvaluation.from_dict(item))
        else:
            evaluations.append(RelationshipEvaluation.not_relevant("missing evaluation"))
    return evaluations


class RelationshipJudge:
    """Cached, batched, time-bounded relevance judgments."""

    def __init__(
        self,
        generator: Optional[TextGenerator],
        cache: SimilarityCache,
        timeout_seconds: float = 60.0,
        enabled: bool = True,
    ):
        self.generator = generator
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled

        # Shared by the worker loop and the server loop
        self._metrics_lock = threading.Lock()
        self._metrics = {"calls": 0, "cached": 0, "failures": 0}

    @property
    def available(self) -> bool:
        return self.enabled and self.generator is not None

    def get_metrics(self) -> dict:
        with self._metrics_lock:
            return dict(self._metrics)

    def _count(self, name: str) -> None:
        with self._metrics_lock:
            self._metrics[name] += 1

    async def evaluate(
        self,
        source: Memory,
        candidates: list[Memory],
    ) -> list[RelationshipEvaluation]:
        """One evaluation per candidate, in candidate order."""
        if not candidates:
            return []
        if not self.available:
            return [RelationshipEvaluation.not_relevant("AI not available") for _ in candidates]

        results: list[Optional[RelationshipEvaluation]] = [None] * len(candidates)
        uncached: list[tuple[int, Memory, str]] = []

        for i, candidate in enumerate(candidates):
            key = make_cache_key(
                source.id, candidate.id,
                source.metadata.topics, candidate.metadata.topics,
            )
            cached = self.cache.get(key)
            if cached is not None:
                self._count("cached")
                results[i] = cached
            else:
                uncached.append((i, candidate, key))

        if uncached:
            evaluations, ok = await self._call_judge(source, [c for _, c, _ in uncached])
            for (index, _, key), evaluation in zip(uncached, evaluations):
                results[index] = evaluation
                # Degraded answers are not cached so the pair is retried next time
                if ok:
                    self.cache.put(key, evaluation)

        return [r or RelationshipEvaluation.not_relevant("missing evaluation") for r in results]

    async def _call_judge(
        self,
        source: Memory,
        candidates: list[Memory],
    ) -> tuple[list[RelationshipEvaluation], bool]:
        """Ask the model once for the whole batch.

        Returns the evaluations and whether they came from a usable answer.
        """
        self._count("calls")
        prompt = build_prompt(source, candidates)
        try:
            response = await asyncio.wait_for(
                self.generator.generate(prompt),
                timeout=self.timeout_seconds,
            )
            return parse_evaluations(response, len(candidates)), True
        except asyncio.TimeoutError:
            reason = f"timed out after {self.timeout_seconds}s"
            logger.warning(f"Relationship judge {reason} for memory {source.id}")
        except UpstreamUnavailable as e:
            reason = str(e)
            logger.warning(f"Relationship judge unavailable for memory {source.id}: {e}")
        except MalformedJudgeOutput as e:
            reason = str(e)
            logger.warning(f"Malformed judge output for memory {source.id}: {e}")
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"Unexpected judge error for memory {source.id}: {e}", exc_info=True)

        self._count("failures")
        failed = [
            RelationshipEvaluation.not_relevant(f"Evaluation failed: {reason}")
            for _ in candidates
        ]
        return failed, False
