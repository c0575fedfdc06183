"""
Vector Store - The smart index of embedding points.

Every point carries a payload: memory_id, user_id, embedding_type,
model_name, created_at. Searches are always filtered by owner so one user's
memories never surface for another.
"""

from pathlib import Path
from typing import Optional

import chromadb
from chromadb.config import Settings

from memmesh.log import get_logger
from memmesh.models import EmbeddingPoint, EmbeddingType, utcnow

logger = get_logger("memmesh.vector_store")


def _where(*conditions: dict) -> Optional[dict]:
    """Combine metadata filters; Chroma wants $and only for two or more."""
    conditions = [c for c in conditions if c]
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": list(conditions)}


def _as_floats(vector) -> list[float]:
    # Chroma may hand back numpy arrays; callers get plain lists
    return [float(v) for v in vector]


class VectorStore:
    """ChromaDB collection of embedding points (cosine space).

    Usage:
        vectors = VectorStore(Path("/tmp/mesh"))
        vectors.upsert(EmbeddingPoint("m1", "u1", "content", [0.1, 0.2]))
        vectors.search([0.1, 0.2], user_id="u1", exclude_memory_id="m1")
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        collection_name: str = "memmesh_embeddings",
        client=None,
    ):
        if client is None:
            if data_dir is None:
                data_dir = Path.home() / ".memmesh" / "data"
            chroma_path = Path(data_dir) / "chromadb"
            client = chromadb.PersistentClient(
                path=str(chroma_path),
                settings=Settings(
                    anonymized_telemetry=False,
                    allow_reset=True,
                ),
            )
        self.chroma = client
        self.collection = self.chroma.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, point: EmbeddingPoint) -> str:
        """Insert or replace one point. Returns the point id."""
        self.collection.upsert(
            ids=[point.point_id],
            embeddings=[list(point.vector)],
            metadatas=[{
                "memory_id": point.memory_id,
                "user_id": point.user_id,
                "embedding_type": point.embedding_type,
                "model_name": point.model_name or "",
                "created_at": (point.created_at or utcnow()).isoformat(),
            }],
        )
        return point.point_id

    def delete_memory(self, memory_id: str) -> None:
        self.collection.delete(where={"memory_id": memory_id})

    def get_embedding(
        self,
        memory_id: str,
        embedding_type: str = EmbeddingType.CONTENT.value,
    ) -> Optional[EmbeddingPoint]:
        """Fetch one memory's stored vector, or None if it was never embedded."""
        result = self.collection.get(
            where=_where({"memory_id": memory_id}, {"embedding_type": embedding_type}),
            limit=1,
            include=["embeddings", "metadatas"],
        )
        points = self._points_from_get(result)
        return points[0] if points else None

    def get_embeddings(
        self,
        memory_ids: list[str],
        user_id: Optional[str] = None,
        embedding_type: str = EmbeddingType.CONTENT.value,
    ) -> list[EmbeddingPoint]:
        """Fetch vectors for many memories at once (one per memory)."""
        if not memory_ids:
            return []
        result = self.collection.get(
            where=_where(
                {"memory_id": {"$in": list(memory_ids)}},
                {"embedding_type": embedding_type},
                {"user_id": user_id} if user_id else None,
            ),
            include=["embeddings", "metadatas"],
        )
        seen = set()
        points = []
        for point in self._points_from_get(result):
            if point.memory_id in seen:
                continue
            seen.add(point.memory_id)
            points.append(point)
        return points

    def search(
        self,
        vector: list[float],
        user_id: str,
        exclude_memory_id: Optional[str] = None,
        limit: int = 10,
        embedding_type: str = EmbeddingType.CONTENT.value,
    ) -> list[tuple[str, float]]:
        """Nearest neighbours for the owner, as (memory_id, similarity) best first.

        Similarity is 1 - cosine distance.
        """
        if limit <= 0:
            return []
        result = self.collection.query(
            query_embeddings=[list(vector)],
            n_results=limit,
            where=_where(
                {"embedding_type": embedding_type},
                {"user_id": user_id},
                {"memory_id": {"$ne": exclude_memory_id}} if exclude_memory_id else None,
            ),
            include=["metadatas", "distances"],
        )
        if not result["ids"] or not result["ids"][0]:
            return []

        matches = []
        metadatas = result["metadatas"][0]
        distances = result["distances"][0]
        for metadata, distance in zip(metadatas, distances):
            memory_id = (metadata or {}).get("memory_id")
            if not memory_id or memory_id == exclude_memory_id:
                continue
            matches.append((memory_id, 1.0 - float(distance)))
        return matches

    def count(self) -> int:
        return self.collection.count()

    def _points_from_get(self, result: dict) -> list[EmbeddingPoint]:
        ids = result.get("ids") or []
        embeddings = result.get("embeddings")
        metadatas = result.get("metadatas")
        if embeddings is None or metadatas is None:
            return []

        points = []
        for i in range(len(ids)):
            metadata = metadatas[i] or {}
            vector = embeddings[i]
            if vector is None or not metadata.get("memory_id"):
                continue
            points.append(EmbeddingPoint(
                memory_id=metadata["memory_id"],
                user_id=metadata.get("user_id", ""),
                embedding_type=metadata.get("embedding_type", EmbeddingType.CONTENT.value),
                vector=_as_floats(vector),
                model_name=metadata.get("model_name", ""),
            ))
        return points
