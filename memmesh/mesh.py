"""
Memory Mesh - The engine's public face.

Write path (background):
    finders -> filter (judge + cache) -> writer

Read path (per request):
    projection -> force refinement -> pruning -> clusters

Every failure degrades: a finder that fails contributes nothing, a judge
that fails says "not relevant", a mesh without embeddings falls back to a
grid. Nothing here takes the hosting process down.
"""

import asyncio
import sqlite3
from concurrent.futures import Future
from typing import Optional

from memmesh.cache import SimilarityCache
from memmesh.clustering import ClusterDetector
from memmesh.config import MeshConfig, load_config
from memmesh.embeddings import Embedder
from memmesh.errors import NotFound, UpstreamUnavailable
from memmesh.generation import OllamaGenerator, TextGenerator
from memmesh.graph import RelationGraph
from memmesh.judge import RelationshipJudge
from memmesh.layout import LayoutEngine, grid_fallback, refine_layout
from memmesh.log import get_logger
from memmesh.models import (
    EmbeddingPoint,
    EmbeddingType,
    Memory,
    Mesh,
    MeshEdge,
    MeshNode,
    Relation,
    RelatedMemory,
    WriteSummary,
)
from memmesh.pruning import GraphPruner
from memmesh.relation_filter import RelationFilter
from memmesh.relation_writer import RelationWriter
from memmesh.relations import (
    SemanticFinder,
    TemporalFinder,
    TopicalFinder,
    run_blocking,
    union_candidates,
)
from memmesh.storage import RelationalStore
from memmesh.vector_store import VectorStore
from memmesh.worker import BackgroundWorker

logger = get_logger("memmesh.mesh")


class MemoryMesh:
    """
    Relation discovery and mesh layout for one store.

    Usage:
        mesh = MemoryMesh.from_config()
        mesh.start()
        await mesh.discover_and_persist_relations("m1", "u1")
        mesh.get_mesh("u1")
        mesh.close()
    """

    def __init__(
        self,
        store: RelationalStore,
        vectors: VectorStore,
        config: Optional[MeshConfig] = None,
        embedder: Optional[Embedder] = None,
        generator: Optional[TextGenerator] = None,
        cache: Optional[SimilarityCache] = None,
        worker: Optional[BackgroundWorker] = None,
        layout: Optional[LayoutEngine] = None,
    ):
        self.config = config or MeshConfig()
        self.store = store
        self.vectors = vectors
        self.embedder = embedder or Embedder(self.config.embedding_model)

        self.cache = cache or SimilarityCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            sweep_interval_seconds=self.config.cache_sweep_interval_seconds,
        )
        self.judge = RelationshipJudge(
            generator,
            self.cache,
            timeout_seconds=self.config.judge_timeout_seconds,
            enabled=self.config.judge_enabled,
        )

        self.semantic = SemanticFinder(
            vectors,
            store,
            vector_timeout_seconds=self.config.vector_timeout_seconds,
            db_timeout_seconds=self.config.db_timeout_seconds,
            conflicting_hosts=self.config.conflicting_hosts,
        )
        self.topical = TopicalFinder(store, db_timeout_seconds=self.config.db_timeout_seconds)
        self.temporal = TemporalFinder(store, db_timeout_seconds=self.config.db_timeout_seconds)
        self.filter = RelationFilter(self.judge, max_relations=self.config.max_relations)
        self.writer = RelationWriter(store, keep_top=self.config.relation_keep_top)

        self.layout = layout or LayoutEngine()
        self.clusters = ClusterDetector()
        self.graph = RelationGraph(store)
        self.worker = worker or BackgroundWorker()

    @classmethod
    def from_config(cls, config: Optional[MeshConfig] = None) -> "MemoryMesh":
        """Build the engine and its stores from configuration."""
        config = config or load_config()
        store = RelationalStore(config.data_dir)
        vectors = VectorStore(config.data_dir, collection_name=config.collection_name)
        generator = None
        if config.judge_enabled:
            generator = OllamaGenerator(
                base_url=config.generator_url,
                model=config.generator_model,
                timeout_seconds=config.judge_timeout_seconds,
            )
        return cls(
            store,
            vectors,
            config=config,
            embedder=Embedder(config.embedding_model),
            generator=generator,
        )

    def start(self) -> None:
        """Start the cache sweeper and the background worker."""
        self.cache.start()
        self.worker.start()

    def close(self) -> None:
        self.worker.stop()
        self.cache.stop()
        self.store.close()

    async def _db(self, func, *args):
        return await run_blocking(
            func, *args,
            timeout=self.config.db_timeout_seconds,
            upstream="relational store",
        )

    async def _vector(self, func, *args):
        return await run_blocking(
            func, *args,
            timeout=self.config.vector_timeout_seconds,
            upstream="vector store",
        )

    async def _owned_memory(self, memory_id: str, user_id: str) -> Memory:
        """The memory, if it exists and belongs to `user_id`.

        Raises:
            NotFound: absent, or owned by someone else
        """
        memory = await self._db(self.store.get_memory, memory_id)
        if memory is None or memory.user_id != user_id:
            raise NotFound(memory_id)
        return memory

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def discover_and_persist_relations(self, memory_id: str, user_id: str) -> WriteSummary:
        """Find, filter and store relations for one memory."""
        try:
            memory = await self._owned_memory(memory_id, user_id)
        except NotFound:
            logger.debug(f"Memory {memory_id} not found for user {user_id}, skipping relations")
            return WriteSummary()

        if memory.metadata.is_empty() and not memory.text.strip():
            try:
                point = await self._vector(
                    self.vectors.get_embedding, memory.id, EmbeddingType.CONTENT.value,
                )
            except UpstreamUnavailable:
                point = None
            if point is None:
                logger.debug(f"Memory {memory_id} has nothing to relate on, skipping")
                return WriteSummary()

        results = await asyncio.gather(
            self.semantic.find(memory, user_id, self.config.semantic_limit),
            self.topical.find(memory, user_id, self.config.topical_limit),
            self.temporal.find(memory, user_id, self.config.temporal_limit),
            return_exceptions=True,
        )

        groups = []
        for name, result in zip(("semantic", "topical", "temporal"), results):
            if isinstance(result, UpstreamUnavailable):
                logger.warning(f"{name.capitalize()} relations unavailable for memory {memory_id}: {result}")
                groups.append([])
            elif isinstance(result, Exception):
                logger.error(
                    f"{name.capitalize()} relation search failed for memory {memory_id}: {result}",
                    exc_info=result,
                )
                groups.append([])
            else:
                groups.append(result)

        candidates = union_candidates(*groups)
        kept = await self.filter.filter(memory, candidates)
        logger.info(f"Memory {memory_id}: {len(candidates)} candidate relations, {len(kept)} kept")

        # Runs to completion so the summary always matches what was stored
        try:
            return await asyncio.to_thread(self.writer.write, memory.id, kept)
        except sqlite3.Error as e:
            logger.warning(f"Could not store relations for memory {memory_id}: {e}")
            return WriteSummary()

    def schedule_relations(self, memory_id: str, user_id: str) -> Future:
        """Run relation discovery in the background and return immediately."""
        return self.worker.submit(
            self.discover_and_persist_relations(memory_id, user_id),
            name=f"relations:{memory_id}",
        )

    async def index_memory(self, memory_id: str, schedule: bool = True) -> list[str]:
        """Embed a memory's content and title, then (optionally) queue relation discovery.

        Returns the upserted point ids.

        Raises:
            NotFound: no such memory
        """
        memory = await self._db(self.store.get_memory, memory_id)
        if memory is None:
            raise NotFound(memory_id)

        point_ids = []
        for embedding_type, text in (
            (EmbeddingType.CONTENT, memory.text),
            (EmbeddingType.TITLE, memory.title),
        ):
            vector = await asyncio.to_thread(self.embedder.embed, text or "")
            if vector is None:
                continue
            point = EmbeddingPoint(
                memory_id=memory.id,
                user_id=memory.user_id,
                embedding_type=embedding_type.value,
                vector=vector,
                model_name=self.embedder.model_name,
            )
            point_ids.append(await self._vector(self.vectors.upsert, point))

        logger.info(f"Indexed memory {memory_id} ({len(point_ids)} embeddings)")
        if schedule and point_ids:
            self.schedule_relations(memory.id, memory.user_id)
        return point_ids

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def get_related_memories(
        self,
        memory_id: str,
        user_id: str,
        limit: int = 5,
    ) -> list[RelatedMemory]:
        """Stored relations in both directions, strongest first.

        Falls back to a live semantic lookup when nothing is stored yet.
        """
        try:
            memory = await self._owned_memory(memory_id, user_id)
        except NotFound:
            return []

        outgoing = await self._db(self.store.list_relations, memory_id, limit)
        incoming = await self._db(self.store.list_incoming_relations, memory_id, limit)

        merged: dict[str, tuple[float, str, str]] = {}
        for relations, direction, other_of in (
            (outgoing, "outgoing", lambda r: r.related_memory_id),
            (incoming, "incoming", lambda r: r.memory_id),
        ):
            for relation in relations:
                other_id = other_of(relation)
                current = merged.get(other_id)
                if current is None or relation.similarity_score > current[0]:
                    merged[other_id] = (relation.similarity_score, relation.relation_type, direction)

        if merged:
            others = await self._db(self.store.get_memories, list(merged))
            related = [
                RelatedMemory(others[other_id], score, relation_type, direction)
                for other_id, (score, relation_type, direction) in merged.items()
                if other_id in others and others[other_id].user_id == user_id
            ]
            related.sort(key=lambda r: r.similarity_score, reverse=True)
            return related[:limit]

        try:
            live = await self.semantic.find(memory, user_id, limit)
        except UpstreamUnavailable as e:
            logger.warning(f"Live semantic lookup failed for memory {memory_id}: {e}")
            return []
        return [
            RelatedMemory(c.memory, c.similarity_score, c.relation_type, "live")
            for c in live
        ]

    def get_mesh(self, user_id: str, limit: int = 50, similarity_threshold: float = 0.4) -> Mesh:
        """Lay out a user's most recent memories with edges and clusters."""
        try:
            memories = self.store.list_user_memories(user_id, limit)
        except sqlite3.Error as e:
            logger.error(f"Could not load memories for user {user_id}: {e}", exc_info=True)
            return Mesh()
        if not memories:
            return Mesh()
        ids = [m.id for m in memories]

        try:
            points = self.vectors.get_embeddings(ids, user_id, EmbeddingType.CONTENT.value)
        except Exception as e:
            logger.warning(f"Vector store unavailable for mesh of user {user_id}: {e}")
            points = []
        embedded = {p.memory_id for p in points}

        coords = self.layout.project(points) if len(memories) >= 3 else {}

        stored: list[Relation] = []
        if coords:
            try:
                stored = self.store.list_relations_among(list(coords))
            except sqlite3.Error as e:
                logger.warning(f"Could not load stored relations for mesh of user {user_id}: {e}")
            coords = refine_layout(
                coords,
                [(r.memory_id, r.related_memory_id) for r in stored],
                max_nodes=self.config.force_max_nodes,
            )

        fallback = grid_fallback(ids)
        nodes = []
        for memory in memories:
            coord = coords.get(memory.id) or fallback[memory.id]
            nodes.append(MeshNode(
                id=memory.id,
                x=coord.x,
                y=coord.y,
                z=coord.z,
                title=memory.title,
                url=memory.url,
                source=memory.source,
                preview=memory.preview(),
                importance_score=memory.importance_score,
                created_at=memory.created_at,
                has_embedding=memory.id in embedded,
            ))

        if not coords:
            logger.debug(f"Mesh for user {user_id}: {len(nodes)} nodes on grid fallback")
            return Mesh(nodes=nodes)

        laid_out = [n for n in nodes if n.id in coords]
        edges = GraphPruner(similarity_threshold).build(
            laid_out,
            [
                MeshEdge(r.memory_id, r.related_memory_id, r.similarity_score, r.relation_type)
                for r in stored
            ],
        )

        clusters, assignments = self.clusters.detect({n.id: coords[n.id] for n in laid_out})
        for node in nodes:
            node.cluster_id = assignments.get(node.id)

        logger.info(
            f"Mesh for user {user_id}: {len(nodes)} nodes, {len(edges)} edges, {len(clusters)} clusters"
        )
        return Mesh(nodes=nodes, edges=edges, clusters=clusters)

    def get_cluster(
        self,
        user_id: str,
        center_memory_id: str,
        depth: int = 2,
    ) -> tuple[list[Memory], list[Relation]]:
        """Memories reachable from the centre through strong stored relations."""
        center = self.store.get_memory(center_memory_id)
        if center is None or center.user_id != user_id:
            logger.debug(f"Cluster centre {center_memory_id} not found for user {user_id}")
            return [], []
        return self.graph.cluster(center, depth)
