"""
Relation Graph - A traversable view over stored relations.

Stored relations are directed: A -> B says "B is one of A's best matches",
which does not imply the reverse. The graph keeps that direction so a
cluster walk follows each memory's own strongest links outward.
"""

from collections import deque
from typing import Optional

import networkx as nx

from memmesh.log import get_logger
from memmesh.models import Memory, Relation

logger = get_logger("memmesh.graph")

CLUSTER_FANOUT = 5
CLUSTER_MIN_SCORE = 0.3


class RelationGraph:
    """
    Breadth-limited walks over a user's stored relations.

    Node attributes:
    - memory: the Memory object
    - depth: hops from the walk's centre

    Edge attributes:
    - similarity_score, relation_type
    """

    def __init__(self, store, fanout: int = CLUSTER_FANOUT, min_score: float = CLUSTER_MIN_SCORE):
        self.store = store
        self.fanout = fanout
        self.min_score = min_score

    def expand(self, center: Memory, depth: int = 2) -> nx.DiGraph:
        """Walk outward from `center` through strong relations, up to `depth` hops.

        Only memories owned by the centre's owner are included. Each memory
        contributes at most `fanout` relations, strongest first.
        """
        graph = nx.DiGraph()
        graph.add_node(center.id, memory=center, depth=0)
        outgoing: dict[str, list[Relation]] = {}

        queue = deque([(center.id, 0)])
        while queue:
            memory_id, hops = queue.popleft()
            relations = [
                r for r in self.store.list_relations(memory_id, limit=self.fanout)
                if r.similarity_score > self.min_score
            ]
            outgoing[memory_id] = relations
            if hops >= depth:
                continue

            new_ids = [r.related_memory_id for r in relations if r.related_memory_id not in graph]
            found = self.store.get_memories(new_ids)
            for related_id in new_ids:
                related = found.get(related_id)
                if related is None or related.user_id != center.user_id or related_id in graph:
                    continue
                graph.add_node(related_id, memory=related, depth=hops + 1)
                queue.append((related_id, hops + 1))

        for memory_id, relations in outgoing.items():
            for relation in relations:
                if relation.related_memory_id in graph:
                    graph.add_edge(
                        memory_id,
                        relation.related_memory_id,
                        similarity_score=relation.similarity_score,
                        relation_type=relation.relation_type,
                        relation=relation,
                    )

        logger.debug(
            f"Cluster around {center.id}: {graph.number_of_nodes()} memories, "
            f"{graph.number_of_edges()} relations"
        )
        return graph

    def cluster(self, center: Memory, depth: int = 2) -> tuple[list[Memory], list[Relation]]:
        """Memories (walk order) and the relations between them."""
        graph = self.expand(center, depth)
        memories = [graph.nodes[n]["memory"] for n in graph.nodes]
        relations = [data["relation"] for _, _, data in graph.edges(data=True)]
        relations.sort(key=lambda r: r.similarity_score, reverse=True)
        return memories, relations

    @staticmethod
    def depth_of(graph: nx.DiGraph, memory_id: str) -> Optional[int]:
        if memory_id not in graph:
            return None
        return graph.nodes[memory_id]["depth"]
