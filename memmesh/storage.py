"""
Relational Store - Where memories and their relations live.

Two tables in one SQLite file:
1. memories         = the captured items (owned by ingestion, read by the engine)
2. memory_relations = directed edges the engine writes

The UNIQUE(memory_id, related_memory_id) constraint is what makes concurrent
relation writers safe without any extra locking on our side.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from memmesh.errors import ConflictIgnored
from memmesh.log import get_logger
from memmesh.models import Memory, MemoryMetadata, Relation, ensure_aware, utcnow

logger = get_logger("memmesh.storage")


def _ts(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp, so string order is time order."""
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return ensure_aware(datetime.fromisoformat(value))


class RelationalStore:
    """SQLite-backed memory and relation tables.

    Usage:
        store = RelationalStore(Path("/tmp/mesh"))
        store.save_memory(Memory(id="m1", user_id="u1", title="Hello"))
        store.list_relations("m1")
    """

    def __init__(self, data_dir: Optional[Path] = None, db_name: str = "memories.db"):
        if data_dir is None:
            data_dir = Path.home() / ".memmesh" / "data"
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / db_name

        # One connection shared across worker threads; every access holds the lock
        self._lock = threading.RLock()
        self.db = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._init_sqlite()

    def _init_sqlite(self):
        """Create tables and indexes."""
        with self._lock:
            self.db.execute("PRAGMA foreign_keys = ON")
            self.db.execute("PRAGMA journal_mode = WAL")

            self.db.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT,
                    url TEXT,
                    content TEXT,
                    canonical_text TEXT,
                    created_at TEXT NOT NULL,
                    metadata TEXT,
                    importance_score REAL DEFAULT 5.0,
                    source TEXT
                )
            """)

            self.db.execute("""
                CREATE TABLE IF NOT EXISTS memory_relations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    memory_id TEXT NOT NULL,
                    related_memory_id TEXT NOT NULL,
                    similarity_score REAL NOT NULL
                        CHECK (similarity_score >= 0 AND similarity_score <= 1),
                    relation_type TEXT NOT NULL DEFAULT 'semantic',
                    created_at TEXT NOT NULL,
                    UNIQUE (memory_id, related_memory_id),
                    CHECK (memory_id != related_memory_id),
                    FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE,
                    FOREIGN KEY (related_memory_id) REFERENCES memories(id) ON DELETE CASCADE
                )
            """)

            self.db.execute("CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id)")
            self.db.execute("CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(user_id, created_at)")
            self.db.execute(
                "CREATE INDEX IF NOT EXISTS idx_relations_score "
                "ON memory_relations(memory_id, similarity_score DESC)"
            )
            self.db.execute(
                "CREATE INDEX IF NOT EXISTS idx_relations_related ON memory_relations(related_memory_id)"
            )
            self.db.commit()

    def close(self):
        with self._lock:
            self.db.close()

    # =========================================================================
    # MEMORIES
    # =========================================================================

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        metadata = None
        if row["metadata"]:
            try:
                metadata = json.loads(row["metadata"])
            except json.JSONDecodeError:
                logger.warning(f"Memory {row['id']} has unreadable metadata, treating as empty")
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            url=row["url"],
            content=row["content"],
            canonical_text=row["canonical_text"],
            created_at=_parse_ts(row["created_at"]),
            metadata=MemoryMetadata.from_dict(metadata),
            importance_score=row["importance_score"] if row["importance_score"] is not None else 5.0,
            source=row["source"],
        )

    def save_memory(self, memory: Memory) -> None:
        """Insert or update a memory (used by ingestion and tests)."""
        with self._lock:
            # ON CONFLICT UPDATE rather than REPLACE: REPLACE would delete the
            # row and cascade away its relations
            self.db.execute(
                """
                INSERT INTO memories
                    (id, user_id, title, url, content, canonical_text,
                     created_at, metadata, importance_score, source)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    title = excluded.title,
                    url = excluded.url,
                    content = excluded.content,
                    canonical_text = excluded.canonical_text,
                    created_at = excluded.created_at,
                    metadata = excluded.metadata,
                    importance_score = excluded.importance_score,
                    source = excluded.source
                """,
                (
                    memory.id,
                    memory.user_id,
                    memory.title,
                    memory.url,
                    memory.content,
                    memory.canonical_text,
                    _ts(memory.created_at),
                    json.dumps(memory.metadata.to_dict()) if not memory.metadata.is_empty() else None,
                    memory.importance_score,
                    memory.source,
                ),
            )
            self.db.commit()

    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory. Its relations go with it (cascade)."""
        with self._lock:
            cursor = self.db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            self.db.commit()
            return cursor.rowcount > 0

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            row = self.db.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return self._row_to_memory(row) if row else None

    def get_memories(self, memory_ids: Iterable[str]) -> dict[str, Memory]:
        """Fetch several memories at once, keyed by id."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            rows = self.db.execute(
                f"SELECT * FROM memories WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: self._row_to_memory(row) for row in rows}

    def list_user_memories(self, user_id: str, limit: Optional[int] = None) -> list[Memory]:
        """Newest first; ties broken by id so the order is stable."""
        sql = "SELECT * FROM memories WHERE user_id = ? ORDER BY created_at DESC, id ASC"
        params: list = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def list_memories(self, limit: Optional[int] = None) -> list[Memory]:
        """Every stored memory regardless of owner, newest first."""
        sql = "SELECT * FROM memories ORDER BY created_at DESC, id ASC"
        params: list = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def find_by_shared_terms(
        self,
        user_id: str,
        exclude_memory_id: str,
        metadata: MemoryMetadata,
        limit: int,
    ) -> list[Memory]:
        """Same-owner memories sharing at least one element in any metadata list."""
        clauses = []
        params: list = [user_id, exclude_memory_id]
        for path, values in (
            ("$.topics", metadata.topics),
            ("$.categories", metadata.categories),
            ("$.keyPoints", metadata.key_points),
            ("$.searchableTerms", metadata.searchable_terms),
        ):
            values = list(dict.fromkeys(values))
            if not values:
                continue
            placeholders = ",".join("?" * len(values))
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each(m.metadata, '{path}') j "
                f"WHERE j.value IN ({placeholders}))"
            )
            params.extend(values)

        if not clauses:
            return []

        params.append(int(limit))
        sql = f"""
            SELECT m.* FROM memories m
            WHERE m.user_id = ? AND m.id != ? AND m.metadata IS NOT NULL
              AND ({" OR ".join(clauses)})
            ORDER BY m.created_at DESC, m.id ASC
            LIMIT ?
        """
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def find_in_window(
        self,
        user_id: str,
        exclude_memory_id: str,
        start: datetime,
        end: datetime,
        limit: int,
        center: Optional[datetime] = None,
    ) -> list[Memory]:
        """Same-owner memories created within [start, end], closest to `center` first.

        `center` defaults to the middle of the window.
        """
        if center is None:
            center = start + (end - start) / 2
        with self._lock:
            rows = self.db.execute(
                """
                SELECT * FROM memories
                WHERE user_id = ? AND id != ? AND created_at >= ? AND created_at <= ?
                ORDER BY ABS(julianday(created_at) - julianday(?)) ASC, created_at DESC, id ASC
                LIMIT ?
                """,
                (user_id, exclude_memory_id, _ts(start), _ts(end), _ts(center), int(limit)),
            ).fetchall()
        return [self._row_to_memory(row) for row in rows]

    # =========================================================================
    # RELATIONS
    # =========================================================================

    def _row_to_relation(self, row: sqlite3.Row) -> Relation:
        return Relation(
            id=row["id"],
            memory_id=row["memory_id"],
            related_memory_id=row["related_memory_id"],
            similarity_score=row["similarity_score"],
            relation_type=row["relation_type"],
            created_at=_parse_ts(row["created_at"]),
        )

    def get_relation(self, memory_id: str, related_memory_id: str) -> Optional[Relation]:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM memory_relations WHERE memory_id = ? AND related_memory_id = ?",
                (memory_id, related_memory_id),
            ).fetchone()
        return self._row_to_relation(row) if row else None

    def insert_relation(self, relation: Relation) -> Relation:
        """Insert a new edge.

        Raises:
            ConflictIgnored: the ordered pair already exists
        """
        with self._lock:
            try:
                cursor = self.db.execute(
                    """
                    INSERT INTO memory_relations
                        (memory_id, related_memory_id, similarity_score, relation_type, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        relation.memory_id,
                        relation.related_memory_id,
                        relation.similarity_score,
                        relation.relation_type,
                        _ts(relation.created_at),
                    ),
                )
                self.db.commit()
            except sqlite3.IntegrityError as e:
                self.db.rollback()
                if "UNIQUE" in str(e):
                    raise ConflictIgnored(relation.memory_id, relation.related_memory_id) from e
                raise
        relation.id = cursor.lastrowid
        return relation

    def update_relation(self, relation_id: int, similarity_score: float, relation_type: str) -> None:
        with self._lock:
            self.db.execute(
                "UPDATE memory_relations SET similarity_score = ?, relation_type = ? WHERE id = ?",
                (similarity_score, relation_type, relation_id),
            )
            self.db.commit()

    def delete_relations_below(self, memory_id: str, floor: float) -> int:
        with self._lock:
            cursor = self.db.execute(
                "DELETE FROM memory_relations WHERE memory_id = ? AND similarity_score < ?",
                (memory_id, floor),
            )
            self.db.commit()
            return cursor.rowcount

    def trim_relations(self, memory_id: str, keep: int) -> int:
        """Delete all but the `keep` highest-scoring outgoing relations."""
        with self._lock:
            cursor = self.db.execute(
                """
                DELETE FROM memory_relations
                WHERE memory_id = ? AND id NOT IN (
                    SELECT id FROM memory_relations
                    WHERE memory_id = ?
                    ORDER BY similarity_score DESC, id ASC
                    LIMIT ?
                )
                """,
                (memory_id, memory_id, int(keep)),
            )
            self.db.commit()
            return cursor.rowcount

    def delete_stale_relations(self, memory_id: str, floor: float, older_than: datetime) -> int:
        """Delete weak relations (score < floor) created before `older_than`."""
        with self._lock:
            cursor = self.db.execute(
                """
                DELETE FROM memory_relations
                WHERE memory_id = ? AND similarity_score < ? AND created_at < ?
                """,
                (memory_id, floor, _ts(older_than)),
            )
            self.db.commit()
            return cursor.rowcount

    def list_relations(
        self,
        memory_id: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> list[Relation]:
        """Outgoing relations, strongest first."""
        sql = "SELECT * FROM memory_relations WHERE memory_id = ?"
        params: list = [memory_id]
        if min_score is not None:
            sql += " AND similarity_score > ?"
            params.append(min_score)
        sql += " ORDER BY similarity_score DESC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [self._row_to_relation(row) for row in rows]

    def list_incoming_relations(self, memory_id: str, limit: Optional[int] = None) -> list[Relation]:
        """Relations pointing at this memory, strongest first."""
        sql = (
            "SELECT * FROM memory_relations WHERE related_memory_id = ? "
            "ORDER BY similarity_score DESC, id ASC"
        )
        params: list = [memory_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.db.execute(sql, params).fetchall()
        return [self._row_to_relation(row) for row in rows]

    def list_relations_among(self, memory_ids: Iterable[str]) -> list[Relation]:
        """Every stored relation whose endpoints are both in `memory_ids`."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            rows = self.db.execute(
                f"""
                SELECT * FROM memory_relations
                WHERE memory_id IN ({placeholders}) AND related_memory_id IN ({placeholders})
                ORDER BY similarity_score DESC, id ASC
                """,
                ids + ids,
            ).fetchall()
        return [self._row_to_relation(row) for row in rows]

    def get_stats(self) -> dict:
        with self._lock:
            memory_count = self.db.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            relation_count = self.db.execute("SELECT COUNT(*) FROM memory_relations").fetchone()[0]
            by_type = {
                row["relation_type"]: row["n"]
                for row in self.db.execute(
                    "SELECT relation_type, COUNT(*) AS n FROM memory_relations GROUP BY relation_type"
                )
            }
        return {
            "memory_count": memory_count,
            "relation_count": relation_count,
            "relation_types": by_type,
        }
