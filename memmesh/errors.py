"""Error kinds raised inside the mesh engine.

None of these are fatal: each one is caught at the seam that knows how to
degrade (empty result, heuristic result, or "not relevant").
"""


class MeshError(Exception):
    """Base class for all memmesh errors."""


class NotFound(MeshError):
    """A memory does not exist (or belongs to someone else)."""

    def __init__(self, memory_id: str):
        super().__init__(f"Memory {memory_id} not found")
        self.memory_id = memory_id


class UpstreamUnavailable(MeshError):
    """The vector store, AI provider or relational store failed or timed out."""

    def __init__(self, upstream: str, reason: str = ""):
        message = f"{upstream} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.upstream = upstream
        self.reason = reason


class ConflictIgnored(MeshError):
    """A uniqueness conflict on write - another writer got there first."""

    def __init__(self, memory_id: str, related_memory_id: str):
        super().__init__(f"Relation {memory_id} -> {related_memory_id} already exists")
        self.memory_id = memory_id
        self.related_memory_id = related_memory_id


class MalformedJudgeOutput(MeshError):
    """The relationship judge returned something we could not parse."""
