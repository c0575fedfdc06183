"""
Cluster walk tests over stored relations.
"""

import pytest

from memmesh.graph import RelationGraph
from memmesh.models import Relation


@pytest.fixture
def chain(store, make_memory):
    """a -> b -> c -> d, plus a foreign and a weak link off a."""
    for memory_id in ("a", "b", "c", "d", "weak"):
        make_memory(memory_id)
    make_memory("foreign", user_id="u2")
    store.insert_relation(Relation("a", "b", 0.8, "semantic"))
    store.insert_relation(Relation("b", "c", 0.7, "topical"))
    store.insert_relation(Relation("c", "d", 0.6, "temporal"))
    store.insert_relation(Relation("a", "foreign", 0.9, "semantic"))
    store.insert_relation(Relation("a", "weak", 0.3, "temporal"))
    return store


class TestRelationGraph:

    @pytest.mark.parametrize("depth,expected", [
        (0, {"a"}),
        (1, {"a", "b"}),
        (2, {"a", "b", "c"}),
        (3, {"a", "b", "c", "d"}),
    ])
    def test_depth_limits(self, chain, depth, expected):
        graph = RelationGraph(chain)
        memories, _ = graph.cluster(chain.get_memory("a"), depth)
        assert {m.id for m in memories} == expected

    def test_depths_recorded(self, chain):
        graph = RelationGraph(chain)
        walked = graph.expand(chain.get_memory("a"), depth=3)
        assert RelationGraph.depth_of(walked, "a") == 0
        assert RelationGraph.depth_of(walked, "c") == 2
        assert RelationGraph.depth_of(walked, "weak") is None

    def test_edges_only_between_members(self, chain):
        _, relations = RelationGraph(chain).cluster(chain.get_memory("a"), depth=2)
        assert [(r.memory_id, r.related_memory_id) for r in relations] == [("a", "b"), ("b", "c")]

    def test_weak_and_foreign_excluded(self, chain):
        memories, relations = RelationGraph(chain).cluster(chain.get_memory("a"), depth=3)
        ids = {m.id for m in memories}
        assert "weak" not in ids
        assert "foreign" not in ids
        assert all(r.similarity_score > 0.3 for r in relations)

    def test_fanout_limits_each_step(self, store, make_memory):
        make_memory("hub")
        for i in range(7):
            make_memory(f"s{i}")
            store.insert_relation(Relation("hub", f"s{i}", 0.4 + i * 0.05, "semantic"))

        memories, _ = RelationGraph(store, fanout=5).cluster(store.get_memory("hub"), depth=1)
        assert {m.id for m in memories} == {"hub", "s2", "s3", "s4", "s5", "s6"}

    def test_cycles_visit_once(self, store, make_memory):
        make_memory("x")
        make_memory("y")
        store.insert_relation(Relation("x", "y", 0.8, "semantic"))
        store.insert_relation(Relation("y", "x", 0.8, "semantic"))

        memories, relations = RelationGraph(store).cluster(store.get_memory("x"), depth=5)
        assert [m.id for m in memories] == ["x", "y"]
        assert len(relations) == 2


class TestMeshCluster:

    def test_owner_restricted(self, chain, mesh):
        assert mesh.get_cluster("u2", "a") == ([], [])

    def test_missing_centre(self, chain, mesh):
        assert mesh.get_cluster("u1", "nope") == ([], [])

    def test_walks_from_centre(self, chain, mesh):
        memories, relations = mesh.get_cluster("u1", "b", depth=2)
        assert [m.id for m in memories] == ["b", "c", "d"]
        assert relations[0].similarity_score == pytest.approx(0.7)
