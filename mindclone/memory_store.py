"""
Memory store using SQLite.

The store is the durable source of truth for memories. It keeps:
- Memory identity, type, content and creation time
- Image descriptions, smart summaries and related-memory links
- A multi-valued tag index (``memory_tags``)

The schema is versioned through ``PRAGMA user_version``. Opening a database
written by an older version replays the migration steps in order before any
query runs. Databases written by a newer version are refused.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from .types import (
    IMMUTABLE_FIELDS,
    MUTABLE_FIELDS,
    Memory,
    MemoryType,
    SmartSummary,
    normalize_tags,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4

_COLUMNS = (
    "id, type, content, created_at, description, tags_json, "
    "smart_summary_json, related_ids_json"
)


class StoreError(RuntimeError):
    """The local database rejected an operation."""


class DuplicateMemoryError(StoreError):
    """A memory with this id already exists."""


# -------------------------------------------------------------------------
# Migrations
# -------------------------------------------------------------------------

def _migrate_v0_to_v1(conn: sqlite3.Connection) -> None:
    """Base layout: memories table plus the tag index table."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            tags_json TEXT NOT NULL DEFAULT '[]',
            summary TEXT,
            is_summarizing INTEGER NOT NULL DEFAULT 0
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_memories_created
        ON memories(created_at)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_memories_type
        ON memories(type)
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS memory_tags (
            memory_id TEXT NOT NULL,
            tag TEXT NOT NULL,
            PRIMARY KEY (memory_id, tag)
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_memory_tags_tag
        ON memory_tags(tag)
    """)


def _migrate_v1_to_v2(conn: sqlite3.Connection) -> None:
    """Add image descriptions, indexed for search."""
    if "description" not in _columns(conn, "memories"):
        conn.execute("ALTER TABLE memories ADD COLUMN description TEXT")
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_memories_description
        ON memories(description)
    """)


def _migrate_v2_to_v3(conn: sqlite3.Connection) -> None:
    """Replace ``summary``/``is_summarizing`` with structured smart summaries.

    The table is rebuilt so no record keeps the old columns' data.
    """
    conn.execute("""
        CREATE TABLE memories_new (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            tags_json TEXT NOT NULL DEFAULT '[]',
            description TEXT,
            smart_summary_json TEXT
        )
    """)
    conn.execute("""
        INSERT INTO memories_new
            (id, type, content, created_at, tags_json, description)
        SELECT id, type, content, created_at, tags_json, description
        FROM memories
    """)
    conn.execute("DROP TABLE memories")
    conn.execute("ALTER TABLE memories_new RENAME TO memories")
    # Indexes are dropped with the old table
    conn.execute("CREATE INDEX idx_memories_created ON memories(created_at)")
    conn.execute("CREATE INDEX idx_memories_type ON memories(type)")
    conn.execute("CREATE INDEX idx_memories_description ON memories(description)")


def _migrate_v3_to_v4(conn: sqlite3.Connection) -> None:
    """Add related-memory links."""
    if "related_ids_json" not in _columns(conn, "memories"):
        conn.execute("ALTER TABLE memories ADD COLUMN related_ids_json TEXT")


# (from_version, to_version, step), applied in order
MIGRATIONS: list[tuple[int, int, Callable[[sqlite3.Connection], None]]] = [
    (0, 1, _migrate_v0_to_v1),
    (1, 2, _migrate_v1_to_v2),
    (2, 3, _migrate_v2_to_v3),
    (3, 4, _migrate_v3_to_v4),
]


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


# -------------------------------------------------------------------------
# Store
# -------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed store for memory records.

    Methods are synchronous; callers on an event loop run them in a worker
    thread (see ``MemoryRepository``).
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._in_transaction = False
        self._init_db()

    def _init_db(self) -> None:
        """Open the database and bring its schema up to date."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._migrate()

    def _migrate(self) -> None:
        """Replay migration steps from the on-disk version to SCHEMA_VERSION."""
        version = self.schema_version
        if version > SCHEMA_VERSION:
            raise StoreError(
                f"Database schema version {version} is newer than supported "
                f"({SCHEMA_VERSION}): {self._db_path}"
            )
        for from_version, to_version, step in MIGRATIONS:
            if version != from_version:
                continue
            logger.info("Migrating memory store %s: v%d -> v%d",
                        self._db_path, from_version, to_version)
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                step(self._conn)
                self._conn.execute(f"PRAGMA user_version = {to_version}")
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            version = to_version

    @property
    def schema_version(self) -> int:
        return self._conn.execute("PRAGMA user_version").fetchone()[0]

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Group several writes into one all-or-nothing transaction."""
        if self._in_transaction:
            yield self
            return
        self._conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        summary = json.loads(row["smart_summary_json"]) if row["smart_summary_json"] else None
        related = json.loads(row["related_ids_json"]) if row["related_ids_json"] else None
        return Memory(
            id=row["id"],
            type=MemoryType(row["type"]),
            content=row["content"],
            created_at=row["created_at"],
            description=row["description"],
            smart_summary=SmartSummary.from_dict(summary) if summary else None,
            tags=json.loads(row["tags_json"]),
            related_memory_ids=related,
        )

    @staticmethod
    def _memory_params(memory: Memory) -> tuple:
        related = memory.related_memory_ids
        if related is not None:
            related = [r for r in related if r != memory.id]
        return (
            memory.id,
            memory.type.value,
            memory.content,
            memory.created_at,
            memory.description,
            json.dumps(normalize_tags(memory.tags), ensure_ascii=False),
            json.dumps(memory.smart_summary.to_dict(), ensure_ascii=False)
            if memory.smart_summary else None,
            json.dumps(related) if related is not None else None,
        )

    def _write_tag_index(self, id: str, tags: Iterable[str]) -> None:
        self._conn.execute("DELETE FROM memory_tags WHERE memory_id = ?", (id,))
        self._conn.executemany(
            "INSERT OR IGNORE INTO memory_tags (memory_id, tag) VALUES (?, ?)",
            [(id, tag) for tag in tags],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add(self, memory: Memory) -> Memory:
        """
        Insert a new memory.

        Raises:
            DuplicateMemoryError: If a memory with the same id exists
        """
        with self.transaction():
            try:
                self._conn.execute(
                    f"INSERT INTO memories ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    self._memory_params(memory),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateMemoryError(f"Memory already exists: {memory.id}") from e
            self._write_tag_index(memory.id, normalize_tags(memory.tags))
        return self.get(memory.id)

    def update(self, id: str, fields: dict[str, Any]) -> bool:
        """
        Merge a subset of fields into an existing memory.

        Only the named fields change; everything else is left as stored.

        Args:
            id: Memory identifier
            fields: Mapping of field name to new value

        Returns:
            True if the memory was found and updated, False otherwise

        Raises:
            ValueError: If a field is unknown or immutable
        """
        for name in fields:
            if name in IMMUTABLE_FIELDS:
                raise ValueError(f"Field cannot be changed after creation: {name}")
            if name not in MUTABLE_FIELDS:
                raise ValueError(f"Unknown memory field: {name}")

        with self.transaction():
            existing = self.get(id)
            if existing is None:
                logger.warning("Update skipped, memory not found: %s", id)
                return False

            assignments: list[str] = []
            params: list[Any] = []
            if "content" in fields:
                assignments.append("content = ?")
                params.append(fields["content"])
            if "description" in fields:
                assignments.append("description = ?")
                params.append(fields["description"])
            if "smart_summary" in fields:
                summary = fields["smart_summary"]
                assignments.append("smart_summary_json = ?")
                params.append(
                    json.dumps(summary.to_dict(), ensure_ascii=False) if summary else None
                )
            if "related_memory_ids" in fields:
                related = fields["related_memory_ids"]
                assignments.append("related_ids_json = ?")
                params.append(
                    json.dumps([r for r in related if r != id]) if related is not None else None
                )
            tags = None
            if "tags" in fields:
                tags = normalize_tags(fields["tags"])
                assignments.append("tags_json = ?")
                params.append(json.dumps(tags, ensure_ascii=False))

            if assignments:
                self._conn.execute(
                    f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?",
                    (*params, id),
                )
            if tags is not None:
                self._write_tag_index(id, tags)
        return True

    def bulk_put(self, memories: list[Memory]) -> int:
        """
        Insert or replace memories by id.

        Returns:
            Number of memories written
        """
        with self.transaction():
            for memory in memories:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO memories ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    self._memory_params(memory),
                )
                self._write_tag_index(memory.id, normalize_tags(memory.tags))
        return len(memories)

    def merge_tags(self, ids: list[str], tags: list[str]) -> int:
        """
        Add tags to every listed memory in one read-modify-write transaction.

        Existing tags keep their order; new tags are appended. Ids that do
        not exist are ignored.

        Returns:
            Number of memories updated
        """
        new_tags = normalize_tags(tags)
        with self.transaction():
            found = self.get_many(ids)
            updated = []
            for memory in found.values():
                merged = normalize_tags([*memory.tags, *new_tags])
                updated.append(Memory(
                    id=memory.id,
                    type=memory.type,
                    content=memory.content,
                    created_at=memory.created_at,
                    description=memory.description,
                    smart_summary=memory.smart_summary,
                    tags=merged,
                    related_memory_ids=memory.related_memory_ids,
                ))
            self.bulk_put(updated)
        return len(updated)

    def delete(self, id: str) -> bool:
        """
        Delete a memory.

        Returns:
            True if the memory existed and was deleted
        """
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM memories WHERE id = ?", (id,))
            self._conn.execute("DELETE FROM memory_tags WHERE memory_id = ?", (id,))
        return cursor.rowcount > 0

    def bulk_delete(self, ids: list[str]) -> int:
        """
        Delete several memories. Unknown ids are ignored.

        Returns:
            Number of memories deleted
        """
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with self.transaction():
            cursor = self._conn.execute(
                f"DELETE FROM memories WHERE id IN ({placeholders})", tuple(ids),
            )
            self._conn.execute(
                f"DELETE FROM memory_tags WHERE memory_id IN ({placeholders})", tuple(ids),
            )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Memory]:
        """Get a memory by id, or None."""
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_memory(row)

    def get_many(self, ids: list[str]) -> dict[str, Memory]:
        """
        Get multiple memories by id.

        Returns:
            Dict mapping id -> Memory (missing ids omitted)
        """
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        cursor = self._conn.execute(
            f"SELECT {_COLUMNS} FROM memories WHERE id IN ({placeholders})",
            tuple(ids),
        )
        return {row["id"]: self._row_to_memory(row) for row in cursor}

    def exists(self, id: str) -> bool:
        """Check if a memory exists."""
        row = self._conn.execute(
            "SELECT 1 FROM memories WHERE id = ?", (id,),
        ).fetchone()
        return row is not None

    def query_all(self) -> list[Memory]:
        """All memories, newest first."""
        cursor = self._conn.execute(
            f"SELECT {_COLUMNS} FROM memories ORDER BY created_at DESC, id DESC"
        )
        return [self._row_to_memory(row) for row in cursor]

    def query_range(
        self,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[Memory]:
        """
        Memories created in ``[since, until)``, newest first.

        Args:
            since: Inclusive lower bound in epoch milliseconds
            until: Exclusive upper bound in epoch milliseconds
        """
        clauses = []
        params: list[int] = []
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if until is not None:
            clauses.append("created_at < ?")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self._conn.execute(
            f"SELECT {_COLUMNS} FROM memories {where} "
            "ORDER BY created_at DESC, id DESC",
            tuple(params),
        )
        return [self._row_to_memory(row) for row in cursor]

    def ids_with_tag(self, tag: str) -> list[str]:
        """Ids of memories carrying a tag, via the tag index."""
        cursor = self._conn.execute("""
            SELECT t.memory_id FROM memory_tags t
            JOIN memories m ON m.id = t.memory_id
            WHERE t.tag = ?
            ORDER BY m.created_at DESC
        """, (tag,))
        return [row["memory_id"] for row in cursor]

    def count(self) -> int:
        """Count stored memories."""
        return self._conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
