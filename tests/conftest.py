"""
Shared test fixtures - A small, fully local memory mesh.

The relational store is real SQLite in a temp dir. The vector store,
embedder and generator are in-memory stand-ins so tests never download a
model or call a network service.
"""

import asyncio
import math
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from memmesh.cache import SimilarityCache
from memmesh.config import MeshConfig
from memmesh.models import EmbeddingPoint, Memory, MemoryMetadata


BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# FAKES
# =============================================================================

class FakeVectorStore:
    """Dict-backed stand-in with the VectorStore interface."""

    def __init__(self):
        self.points: dict[str, EmbeddingPoint] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def upsert(self, point: EmbeddingPoint) -> str:
        self._check()
        self.points[point.point_id] = point
        return point.point_id

    def add(self, memory_id: str, user_id: str, vector: list[float], embedding_type: str = "content"):
        return self.upsert(EmbeddingPoint(memory_id, user_id, embedding_type, list(vector), "fake"))

    def delete_memory(self, memory_id: str) -> None:
        for key in [k for k, p in self.points.items() if p.memory_id == memory_id]:
            del self.points[key]

    def get_embedding(self, memory_id: str, embedding_type: str = "content"):
        self._check()
        return self.points.get(f"{memory_id}:{embedding_type}")

    def get_embeddings(self, memory_ids, user_id=None, embedding_type="content"):
        self._check()
        wanted = set(memory_ids)
        return [
            p for p in self.points.values()
            if p.memory_id in wanted
            and p.embedding_type == embedding_type
            and (user_id is None or p.user_id == user_id)
        ]

    def search(self, vector, user_id, exclude_memory_id=None, limit=10, embedding_type="content"):
        self._check()
        scored = []
        for point in self.points.values():
            if point.embedding_type != embedding_type or point.user_id != user_id:
                continue
            if point.memory_id == exclude_memory_id:
                continue
            scored.append((point.memory_id, _cosine(vector, point.vector)))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    def count(self) -> int:
        return len(self.points)


def _cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeGenerator:
    """Returns a canned response, raises, or hangs."""

    def __init__(self, response: str = "[]", error: Optional[Exception] = None, delay: float = 0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeEmbedder:
    """Deterministic tiny vectors from character counts."""

    model_name = "fake-embedder"

    def embed(self, text: str):
        if not text or not text.strip():
            return None
        text = text.lower()
        return [float(text.count(c)) + 0.01 for c in "aeiourstn"]


class ManualClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def store(temp_data_dir):
    """Fresh relational store for each test."""
    from memmesh.storage import RelationalStore
    relational = RelationalStore(data_dir=temp_data_dir)
    yield relational
    relational.close()


@pytest.fixture
def vectors():
    return FakeVectorStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return SimilarityCache(clock=clock)


@pytest.fixture
def config(temp_data_dir):
    return MeshConfig(data_dir=temp_data_dir, judge_timeout_seconds=0.5)


@pytest.fixture
def make_memory(store):
    """Factory that builds a Memory and saves it."""

    def _make(
        memory_id: str,
        user_id: str = "u1",
        title: Optional[str] = None,
        url: Optional[str] = None,
        content: Optional[str] = "some captured text",
        minutes: float = 0,
        topics=(),
        categories=(),
        key_points=(),
        terms=(),
        source: Optional[str] = None,
        save: bool = True,
    ) -> Memory:
        memory = Memory(
            id=memory_id,
            user_id=user_id,
            title=title or f"Memory {memory_id}",
            url=url,
            content=content,
            created_at=BASE_TIME + timedelta(minutes=minutes),
            metadata=MemoryMetadata(
                topics=list(topics),
                categories=list(categories),
                key_points=list(key_points),
                searchable_terms=list(terms),
            ),
            source=source,
        )
        if save:
            store.save_memory(memory)
        return memory

    return _make


@pytest.fixture
def mesh(store, vectors, config):
    """Mesh engine over the real store and fake collaborators, judge off."""
    from memmesh.mesh import MemoryMesh
    engine = MemoryMesh(
        store,
        vectors,
        config=config.with_overrides(judge_enabled=False),
        embedder=FakeEmbedder(),
    )
    yield engine
    engine.worker.stop()
    engine.cache.stop()
