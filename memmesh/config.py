"""
Configuration - Every knob the mesh engine reads.

Sources, lowest to highest precedence:
1. Defaults below
2. YAML file (~/.memmesh/config/mesh.yaml, or an explicit path)
3. MEMMESH_* environment variables
4. Overrides passed in code
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from memmesh.log import get_logger

logger = get_logger("memmesh.config")

DEFAULT_CONFIG_PATH = Path.home() / ".memmesh" / "config" / "mesh.yaml"


@dataclass(frozen=True)
class MeshConfig:
    """Thresholds, limits and timeouts for the mesh engine."""

    # Storage
    data_dir: Path = field(default_factory=lambda: Path.home() / ".memmesh" / "data")
    collection_name: str = "memmesh_embeddings"

    # AI providers
    embedding_model: str = "all-mpnet-base-v2"
    generator_url: str = "http://localhost:11434"
    generator_model: str = "llama3.1"
    judge_enabled: bool = True

    # Timeouts (seconds)
    judge_timeout_seconds: float = 60.0
    vector_timeout_seconds: float = 10.0
    db_timeout_seconds: float = 10.0

    # Similarity cache
    cache_ttl_seconds: float = 24 * 60 * 60
    cache_sweep_interval_seconds: float = 60 * 60

    # Relation discovery
    semantic_limit: int = 12
    topical_limit: int = 8
    temporal_limit: int = 5
    max_relations: int = 8
    relation_keep_top: int = 10
    conflicting_hosts: tuple = (("meet.google.com", "github.com"),)

    # Layout
    force_max_nodes: int = 400

    def with_overrides(self, **overrides: Any) -> "MeshConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **_coerce(overrides))


_ENV_VARS = {
    "MEMMESH_DATA_DIR": "data_dir",
    "MEMMESH_COLLECTION": "collection_name",
    "MEMMESH_EMBEDDING_MODEL": "embedding_model",
    "MEMMESH_GENERATOR_URL": "generator_url",
    "MEMMESH_GENERATOR_MODEL": "generator_model",
    "MEMMESH_JUDGE_ENABLED": "judge_enabled",
    "MEMMESH_JUDGE_TIMEOUT": "judge_timeout_seconds",
    "MEMMESH_VECTOR_TIMEOUT": "vector_timeout_seconds",
    "MEMMESH_DB_TIMEOUT": "db_timeout_seconds",
    "MEMMESH_FORCE_MAX_NODES": "force_max_nodes",
}


def _coerce(values: dict) -> dict:
    """Convert raw YAML/env values to the types declared on MeshConfig."""
    types = {f.name: f.type for f in fields(MeshConfig)}
    coerced = {}
    for name, value in values.items():
        if name not in types:
            logger.warning(f"Ignoring unknown config key: {name}")
            continue
        declared = types[name]
        if name == "data_dir":
            value = Path(os.path.expanduser(str(value)))
        elif name == "conflicting_hosts":
            value = tuple(tuple(str(h).lower() for h in pair) for pair in value)
        elif declared in (bool, "bool"):
            if isinstance(value, str):
                value = value.strip().lower() in ("true", "1", "yes")
            else:
                value = bool(value)
        elif declared in (int, "int"):
            value = int(value)
        elif declared in (float, "float"):
            value = float(value)
        coerced[name] = value
    return coerced


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[dict] = None,
    environ: Optional[dict] = None,
) -> MeshConfig:
    """Load configuration from file, environment and explicit overrides."""
    values: dict = {}

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
            if isinstance(file_config, dict):
                values.update(file_config)
            else:
                logger.warning(f"Config file {config_path} is not a mapping, ignoring")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read config file {config_path}: {e}")

    env = os.environ if environ is None else environ
    for var, name in _ENV_VARS.items():
        if env.get(var):
            values[name] = env[var]

    if overrides:
        values.update(overrides)

    return MeshConfig(**_coerce(values))
