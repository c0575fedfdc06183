"""
Vector store tests against a real local Chroma collection.
"""

import pytest

from memmesh.models import EmbeddingPoint
from memmesh.vector_store import VectorStore


@pytest.fixture
def chroma(temp_data_dir):
    return VectorStore(temp_data_dir, collection_name="test_points")


def _point(memory_id, user_id, vector, embedding_type="content"):
    return EmbeddingPoint(memory_id, user_id, embedding_type, vector, "hand-made")


class TestVectorStore:

    def test_upsert_and_get(self, chroma):
        assert chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0])) == "m1:content"
        point = chroma.get_embedding("m1")
        assert point.memory_id == "m1"
        assert point.user_id == "u1"
        assert point.model_name == "hand-made"
        assert point.vector == pytest.approx([1.0, 0.0, 0.0])
        assert chroma.get_embedding("m1", "title") is None
        assert chroma.get_embedding("missing") is None

    def test_upsert_replaces(self, chroma):
        chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0]))
        chroma.upsert(_point("m1", "u1", [0.0, 1.0, 0.0]))
        assert chroma.count() == 1
        assert chroma.get_embedding("m1").vector == pytest.approx([0.0, 1.0, 0.0])

    def test_get_embeddings_filters_owner_and_type(self, chroma):
        chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0]))
        chroma.upsert(_point("m1", "u1", [0.0, 0.0, 1.0], "title"))
        chroma.upsert(_point("m2", "u1", [0.0, 1.0, 0.0]))
        chroma.upsert(_point("m3", "u2", [0.0, 1.0, 0.0]))

        points = chroma.get_embeddings(["m1", "m2", "m3"], user_id="u1")
        assert sorted(p.memory_id for p in points) == ["m1", "m2"]
        assert all(p.embedding_type == "content" for p in points)
        assert chroma.get_embeddings([]) == []

    def test_search_is_owner_scoped_and_excludes_self(self, chroma):
        chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0]))
        chroma.upsert(_point("twin", "u1", [1.0, 0.0, 0.0]))
        chroma.upsert(_point("near", "u1", [0.8, 0.2, 0.0]))
        chroma.upsert(_point("orthogonal", "u1", [0.0, 0.0, 1.0]))
        chroma.upsert(_point("foreign", "u2", [1.0, 0.0, 0.0]))

        matches = chroma.search([1.0, 0.0, 0.0], "u1", exclude_memory_id="m1", limit=3)
        assert [memory_id for memory_id, _ in matches] == ["twin", "near", "orthogonal"]
        assert matches[0][1] == pytest.approx(1.0, abs=1e-4)
        assert matches[2][1] == pytest.approx(0.0, abs=1e-4)

    def test_search_with_zero_limit(self, chroma):
        chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0]))
        assert chroma.search([1.0, 0.0, 0.0], "u1", limit=0) == []

    def test_delete_memory_removes_all_points(self, chroma):
        chroma.upsert(_point("m1", "u1", [1.0, 0.0, 0.0]))
        chroma.upsert(_point("m1", "u1", [0.0, 1.0, 0.0], "title"))
        chroma.upsert(_point("m2", "u1", [0.0, 1.0, 0.0]))
        chroma.delete_memory("m1")
        assert chroma.count() == 1
        assert chroma.get_embedding("m1") is None
