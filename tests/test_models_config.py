"""
Model and configuration tests.

1. Metadata wire format and merge
2. Relation type parsing and specificity
3. Config precedence: defaults < YAML < environment < overrides
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from memmesh.config import MeshConfig, load_config
from memmesh.models import (
    EmbeddingPoint,
    Memory,
    MemoryMetadata,
    MeshEdge,
    RelationType,
    RelationshipEvaluation,
    hostname_of,
)


class TestMemoryMetadata:

    def test_from_dict_reads_wire_keys(self):
        metadata = MemoryMetadata.from_dict({
            "topics": ["rust", "wasm"],
            "categories": ["programming"],
            "keyPoints": ["compile to wasm"],
            "searchableTerms": ["wasm-pack"],
        })
        assert metadata.topics == ["rust", "wasm"]
        assert metadata.key_points == ["compile to wasm"]
        assert metadata.searchable_terms == ["wasm-pack"]
        assert metadata.to_dict()["keyPoints"] == ["compile to wasm"]

    def test_from_dict_tolerates_junk(self):
        metadata = MemoryMetadata.from_dict({"topics": "not a list", "categories": None})
        assert metadata.is_empty()
        assert MemoryMetadata.from_dict(None).is_empty()

    def test_merge_keeps_first_seen_order(self):
        a = MemoryMetadata(topics=["x", "y"], categories=["c1"])
        b = MemoryMetadata(topics=["y", "z"], categories=["c2"], key_points=["k"])
        merged = a.merge(b)
        assert merged.topics == ["x", "y", "z"]
        assert merged.categories == ["c1", "c2"]
        assert merged.key_points == ["k"]


class TestMemory:

    def test_importance_is_clamped(self):
        assert Memory(id="m", user_id="u", importance_score=42).importance_score == 10.0
        assert Memory(id="m", user_id="u", importance_score=-1).importance_score == 0.0

    def test_naive_datetimes_become_utc(self):
        memory = Memory(id="m", user_id="u", created_at=datetime(2026, 1, 1, 12, 0))
        assert memory.created_at.tzinfo == timezone.utc

    def test_text_prefers_canonical(self):
        memory = Memory(id="m", user_id="u", title="T", content="C", canonical_text="Canon")
        assert memory.text == "Canon"
        assert Memory(id="m", user_id="u", title="T").text == "T"

    def test_preview_truncates(self):
        memory = Memory(id="m", user_id="u", content="word " * 100)
        assert memory.preview(20).endswith("...")
        assert len(memory.preview(20)) <= 23

    def test_hostname(self):
        assert hostname_of("https://GitHub.com/a/b") == "github.com"
        assert hostname_of("not a url") == ""
        assert hostname_of(None) == ""


class TestRelationTypes:

    def test_specificity_order(self):
        assert RelationType.SEMANTIC.specificity > RelationType.TOPICAL.specificity
        assert RelationType.TOPICAL.specificity > RelationType.TEMPORAL.specificity

    @pytest.mark.parametrize("value,expected", [
        ("semantic", RelationType.SEMANTIC),
        (" Topical ", RelationType.TOPICAL),
        ("none", None),
        ("causal", None),
        (None, None),
    ])
    def test_parse(self, value, expected):
        assert RelationType.parse(value) == expected

    def test_point_id_includes_type(self):
        point = EmbeddingPoint("m1", "u1", "title", [0.1])
        assert point.point_id == "m1:title"

    def test_edge_pair_key_is_unordered(self):
        assert MeshEdge("b", "a", 0.5).pair_key() == MeshEdge("a", "b", 0.9).pair_key()


class TestRelationshipEvaluation:

    def test_from_dict_clamps_and_coerces(self):
        evaluation = RelationshipEvaluation.from_dict({
            "isRelevant": "true",
            "relevanceScore": 3,
            "relationshipType": "topical",
        })
        assert evaluation.is_relevant is True
        assert evaluation.relevance_score == 1.0
        assert evaluation.relationship_type == "topical"

    def test_bad_score_is_zero(self):
        evaluation = RelationshipEvaluation.from_dict({"isRelevant": True, "relevanceScore": "high"})
        assert evaluation.relevance_score == 0.0


class TestConfig:

    def test_defaults(self, temp_data_dir):
        config = load_config(path=temp_data_dir / "missing.yaml", environ={})
        assert config.semantic_limit == 12
        assert config.topical_limit == 8
        assert config.temporal_limit == 5
        assert config.max_relations == 8
        assert config.force_max_nodes == 400
        assert config.cache_ttl_seconds == 86400

    def test_precedence(self, temp_data_dir):
        path = temp_data_dir / "mesh.yaml"
        path.write_text(yaml.safe_dump({
            "generator_model": "from-yaml",
            "judge_timeout_seconds": 30,
            "force_max_nodes": 100,
        }))
        config = load_config(
            path=path,
            environ={"MEMMESH_GENERATOR_MODEL": "from-env", "MEMMESH_JUDGE_ENABLED": "false"},
            overrides={"force_max_nodes": 50},
        )
        assert config.generator_model == "from-env"
        assert config.judge_timeout_seconds == 30.0
        assert config.judge_enabled is False
        assert config.force_max_nodes == 50

    def test_env_values_are_coerced(self, temp_data_dir):
        config = load_config(
            path=temp_data_dir / "missing.yaml",
            environ={"MEMMESH_FORCE_MAX_NODES": "250", "MEMMESH_DATA_DIR": str(temp_data_dir)},
        )
        assert config.force_max_nodes == 250
        assert config.data_dir == Path(temp_data_dir)

    def test_unknown_keys_are_ignored(self, temp_data_dir):
        path = temp_data_dir / "mesh.yaml"
        path.write_text("not_a_setting: 1\nmax_relations: 4\n")
        config = load_config(path=path, environ={})
        assert config.max_relations == 4

    def test_unreadable_yaml_falls_back_to_defaults(self, temp_data_dir):
        path = temp_data_dir / "mesh.yaml"
        path.write_text("max_relations: [unclosed\n")
        assert load_config(path=path, environ={}).max_relations == 8

    def test_with_overrides_returns_copy(self):
        config = MeshConfig()
        changed = config.with_overrides(max_relations="3")
        assert changed.max_relations == 3
        assert config.max_relations == 8
