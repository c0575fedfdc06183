"""
Similarity Cache - Remembers what the AI judge said about a pair.

Asking the judge is slow and costs money, and the same pair comes up every
time either memory is re-processed. Entries expire after a day; a sweeper
thread drops expired entries every hour so the map does not grow forever.
"""

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from memmesh.log import get_logger
from memmesh.models import RelationshipEvaluation

logger = get_logger("memmesh.cache")


@dataclass
class CachedEvaluation:
    evaluation: RelationshipEvaluation
    timestamp: float


def make_cache_key(
    memory_id: str,
    related_memory_id: str,
    topics: Iterable[str],
    related_topics: Iterable[str],
) -> str:
    """Stable key from the pair identity and both sides' sorted topics.

    Topics are part of the key so re-extracted metadata invalidates the entry.
    """
    key_parts = [
        memory_id or "unknown",
        related_memory_id or "unknown",
        ",".join(sorted(topics)),
        ",".join(sorted(related_topics)),
    ]
    return hashlib.sha256("|".join(key_parts).encode()).hexdigest()


class SimilarityCache:
    """Thread-safe TTL map of relationship evaluations.

    Usage:
        cache = SimilarityCache()
        cache.start()          # hourly sweep in the background
        cache.put(key, evaluation)
        cache.get(key)
        cache.stop()
    """

    def __init__(
        self,
        ttl_seconds: float = 24 * 60 * 60,
        sweep_interval_seconds: float = 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, CachedEvaluation] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        self._metrics = {"hits": 0, "misses": 0, "swept": 0}

    def get(self, key: str) -> Optional[RelationshipEvaluation]:
        """Cached evaluation, or None when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry.timestamp >= self.ttl_seconds:
                self._metrics["misses"] += 1
                return None
            self._metrics["hits"] += 1
            return entry.evaluation

    def put(self, key: str, evaluation: RelationshipEvaluation) -> None:
        with self._lock:
            self._entries[key] = CachedEvaluation(evaluation, self._clock())

    def sweep(self) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.timestamp >= self.ttl_seconds
            ]
            for key in expired:
                del self._entries[key]
            self._metrics["swept"] += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired relationship evaluations")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_metrics(self) -> dict:
        with self._lock:
            return {**self._metrics, "size": len(self._entries)}

    # =========================================================================
    # SWEEPER LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def start(self) -> None:
        """Start the periodic sweep thread (idempotent)."""
        if self.running:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="memmesh-cache-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweep thread and wait for it to exit."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=timeout)
        self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}", exc_info=True)
