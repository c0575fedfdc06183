"""
Data model for the mesh engine.

Memories and embeddings are owned elsewhere; the engine reads them.
Relations are the only thing the engine writes. Layout data never leaves
the request that computed it.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import urlparse


# =============================================================================
# ENUMS
# =============================================================================

class RelationType(str, Enum):
    """The three signals a relation can come from, most specific first."""
    SEMANTIC = "semantic"
    TOPICAL = "topical"
    TEMPORAL = "temporal"

    @property
    def specificity(self) -> int:
        return RELATION_SPECIFICITY[self.value]

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RelationType"]:
        """Return the matching type, or None for anything else (e.g. 'none')."""
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


RELATION_SPECIFICITY = {
    "semantic": 3,
    "topical": 2,
    "temporal": 1,
}


class EmbeddingType(str, Enum):
    """Which text an embedding point was computed from."""
    CONTENT = "content"
    TITLE = "title"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hostname_of(url: Optional[str]) -> str:
    """Lower-cased hostname of a URL, or '' when it does not parse."""
    if not url:
        return ""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _string_list(value) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if v is not None]


def _merge_ordered(first: list[str], second: list[str]) -> list[str]:
    merged = list(first)
    seen = set(first)
    for item in second:
        if item not in seen:
            seen.add(item)
            merged.append(item)
    return merged


# =============================================================================
# MEMORIES
# =============================================================================

@dataclass
class MemoryMetadata:
    """Extracted page metadata: four ordered string lists."""
    topics: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    key_points: list[str] = field(default_factory=list)
    searchable_terms: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "MemoryMetadata":
        """Build from the wire format. Missing or non-list fields become empty."""
        if not isinstance(data, dict):
            return cls()
        return cls(
            topics=_string_list(data.get("topics")),
            categories=_string_list(data.get("categories")),
            key_points=_string_list(data.get("keyPoints")),
            searchable_terms=_string_list(data.get("searchableTerms")),
        )

    def to_dict(self) -> dict:
        return {
            "topics": list(self.topics),
            "categories": list(self.categories),
            "keyPoints": list(self.key_points),
            "searchableTerms": list(self.searchable_terms),
        }

    def merge(self, other: "MemoryMetadata") -> "MemoryMetadata":
        """Union each list, keeping the order items were first seen."""
        return MemoryMetadata(
            topics=_merge_ordered(self.topics, other.topics),
            categories=_merge_ordered(self.categories, other.categories),
            key_points=_merge_ordered(self.key_points, other.key_points),
            searchable_terms=_merge_ordered(self.searchable_terms, other.searchable_terms),
        )

    def is_empty(self) -> bool:
        return not (self.topics or self.categories or self.key_points or self.searchable_terms)

    def all_terms(self) -> list[str]:
        return self.topics + self.categories + self.key_points + self.searchable_terms


@dataclass
class Memory:
    """A captured memory. Read-only to the engine."""
    id: str
    user_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    content: Optional[str] = None
    canonical_text: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    importance_score: float = 5.0
    source: Optional[str] = None

    def __post_init__(self):
        self.created_at = ensure_aware(self.created_at)
        self.importance_score = max(0.0, min(10.0, float(self.importance_score)))

    @property
    def hostname(self) -> str:
        return hostname_of(self.url)

    @property
    def text(self) -> str:
        """Best available text: canonical text, then content, then title."""
        return self.canonical_text or self.content or self.title or ""

    def preview(self, length: int = 200) -> str:
        text = " ".join(self.text.split())
        if len(text) <= length:
            return text
        return text[:length].rstrip() + "..."


@dataclass
class EmbeddingPoint:
    """One vector for one memory. A memory may have a content and a title point."""
    memory_id: str
    user_id: str
    embedding_type: str
    vector: list[float]
    model_name: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def point_id(self) -> str:
        return f"{self.memory_id}:{self.embedding_type}"


# =============================================================================
# RELATIONS
# =============================================================================

@dataclass
class Relation:
    """A stored, directed edge between two memories."""
    memory_id: str
    related_memory_id: str
    similarity_score: float
    relation_type: str
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class RelationCandidate:
    """A relation proposed by a finder, not yet filtered or stored."""
    memory: Memory
    similarity_score: float
    relation_type: str

    @property
    def memory_id(self) -> str:
        return self.memory.id


@dataclass
class RelationshipEvaluation:
    """What the AI judge said about one candidate pair."""
    is_relevant: bool = False
    relevance_score: float = 0.0
    relationship_type: str = "none"
    reasoning: str = ""

    @classmethod
    def not_relevant(cls, reasoning: str) -> "RelationshipEvaluation":
        return cls(False, 0.0, "none", reasoning)

    @classmethod
    def from_dict(cls, data: dict) -> "RelationshipEvaluation":
        """Build from one element of the judge's JSON array."""
        try:
            score = float(data.get("relevanceScore", 0) or 0)
        except (TypeError, ValueError):
            score = 0.0
        is_relevant = data.get("isRelevant", False)
        if isinstance(is_relevant, str):
            is_relevant = is_relevant.strip().lower() == "true"
        return cls(
            is_relevant=bool(is_relevant),
            relevance_score=max(0.0, min(1.0, score)),
            relationship_type=str(data.get("relationshipType") or "none"),
            reasoning=str(data.get("reasoning") or ""),
        )


@dataclass
class WriteSummary:
    """Outcome of one relation write pass."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


@dataclass
class RelatedMemory:
    """A memory related to another, as returned to callers."""
    memory: Memory
    similarity_score: float
    relation_type: str
    direction: str = "outgoing"   # outgoing, incoming, live


# =============================================================================
# LAYOUT
# =============================================================================

@dataclass
class LayoutCoordinate:
    x: float
    y: float
    z: float = 0.0


@dataclass
class MeshNode:
    """A memory placed in the layout."""
    id: str
    x: float
    y: float
    z: float
    title: Optional[str] = None
    url: Optional[str] = None
    source: Optional[str] = None
    preview: str = ""
    importance_score: float = 5.0
    created_at: Optional[datetime] = None
    has_embedding: bool = False
    cluster_id: Optional[int] = None

    @property
    def hostname(self) -> str:
        return hostname_of(self.url)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "title": self.title,
            "url": self.url,
            "source": self.source,
            "preview": self.preview,
            "importance_score": self.importance_score,
            "has_embedding": self.has_embedding,
            "cluster_id": self.cluster_id,
        }


@dataclass
class MeshEdge:
    """An undirected edge in a computed mesh."""
    source: str
    target: str
    similarity_score: float
    relationship_type: str = RelationType.SEMANTIC.value
    backfill: bool = False

    def pair_key(self) -> tuple[str, str]:
        return (self.source, self.target) if self.source < self.target else (self.target, self.source)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Mesh:
    """Nodes, edges and cluster membership for one user."""
    nodes: list[MeshNode] = field(default_factory=list)
    edges: list[MeshEdge] = field(default_factory=list)
    clusters: dict[int, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "clusters": {str(k): v for k, v in self.clusters.items()},
        }
