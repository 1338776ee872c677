"""
Memory Store — SQLite Persistent Backend

Tables:
    memories                - Canonical memory records (current state)
    memory_provenance       - Audit log (append-only, enforced by triggers)
    reconsolidation_events  - Lability windows (one open window per memory)
    memory_links            - Typed relationships between memories
    self_schema             - One identity model per agent (JSON document)
    snapshots               - Registry of exported snapshots

Thread safety: one connection opened with check_same_thread=False, every
statement serialized through a reentrant lock. Writes run inside explicit
``BEGIN IMMEDIATE`` transactions (see transaction()). sqlite3 errors are
surfaced as StorageFailure and never retried here.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sqlite3
import struct
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Sequence, Set

from mnemos.errors import (
    MemoryNotFound,
    StorageFailure,
    ValidationError,
    WindowAlreadyOpen,
)
from mnemos.ids import now_ms
from mnemos.schema import SelfSchema
from mnemos.types import (
    SHARED_FIELDS,
    Memory,
    MemoryLink,
    ProvenanceEntry,
    ReconsolidationEvent,
    plain,
)

if TYPE_CHECKING:
    from mnemos.retrieval import QueryCriteria

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id              TEXT PRIMARY KEY,
    type            TEXT NOT NULL CHECK(type IN ('episodic','semantic','procedural')),
    content         TEXT NOT NULL,
    context         TEXT,
    importance      TEXT NOT NULL DEFAULT 'normal',
    tags            TEXT NOT NULL DEFAULT '[]',       -- JSON array
    detail_json     TEXT NOT NULL DEFAULT '{}',       -- variant fields
    confidence      REAL,                             -- semantic only
    embedding       BLOB,                             -- float64 packed bytes
    embedding_dim   INTEGER,
    created_at      INTEGER NOT NULL,
    access_count    INTEGER NOT NULL DEFAULT 0,
    last_accessed   INTEGER,
    is_consolidated INTEGER NOT NULL DEFAULT 0,
    schema_version  INTEGER NOT NULL DEFAULT 1,
    archived        INTEGER NOT NULL DEFAULT 0,
    content_hash    TEXT NOT NULL DEFAULT '',
    updated_at      INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_provenance (
    id            TEXT PRIMARY KEY,
    memory_id     TEXT NOT NULL,
    event_type    TEXT NOT NULL,
    event_data    TEXT NOT NULL DEFAULT '{}',       -- JSON object
    agent_version TEXT,
    session_id    TEXT,
    created_at    INTEGER NOT NULL
);

CREATE TRIGGER IF NOT EXISTS memory_provenance_no_update
BEFORE UPDATE ON memory_provenance BEGIN
    SELECT RAISE(ABORT, 'memory_provenance is append-only');
END;

CREATE TRIGGER IF NOT EXISTS memory_provenance_no_delete
BEFORE DELETE ON memory_provenance BEGIN
    SELECT RAISE(ABORT, 'memory_provenance is append-only');
END;

CREATE TABLE IF NOT EXISTS reconsolidation_events (
    id              TEXT PRIMARY KEY,
    memory_id       TEXT NOT NULL,
    window_start    INTEGER NOT NULL,
    window_end      INTEGER,
    trigger_json    TEXT NOT NULL DEFAULT '{}',
    updates_json    TEXT NOT NULL DEFAULT '[]',
    final_state     TEXT NOT NULL DEFAULT 'unchanged',
    closed_by       TEXT,
    created_at      INTEGER NOT NULL
);

-- At most one open lability window per memory
CREATE UNIQUE INDEX IF NOT EXISTS idx_events_one_open
    ON reconsolidation_events(memory_id) WHERE window_end IS NULL;

CREATE TABLE IF NOT EXISTS memory_links (
    src_id     TEXT NOT NULL,
    dst_id     TEXT NOT NULL,
    link_type  TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (src_id, dst_id, link_type)
);

CREATE TABLE IF NOT EXISTS self_schema (
    agent_id   TEXT PRIMARY KEY,
    schema_id  TEXT NOT NULL,
    version    INTEGER NOT NULL,
    data_json  TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
    id           TEXT PRIMARY KEY,
    exported_at  INTEGER NOT NULL,
    checksum     TEXT NOT NULL,
    memory_count INTEGER NOT NULL DEFAULT 0,
    format       TEXT NOT NULL DEFAULT 'json',
    path         TEXT
);

-- Schema metadata for forward compatibility
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(importance);
CREATE INDEX IF NOT EXISTS idx_memories_archived ON memories(archived);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_provenance_memory ON memory_provenance(memory_id, created_at);
CREATE INDEX IF NOT EXISTS idx_provenance_type ON memory_provenance(event_type);
CREATE INDEX IF NOT EXISTS idx_events_memory ON reconsolidation_events(memory_id);
CREATE INDEX IF NOT EXISTS idx_links_dst ON memory_links(dst_id);
"""


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: List[float]) -> bytes:
    """Pack float list to bytes (float64, so values survive unchanged)."""
    return struct.pack(f"{len(vec)}d", *vec)


def _unpack_vector(data: bytes, dim: int) -> List[float]:
    """Unpack bytes to float list. Blobs of 4 bytes per value are float32."""
    code = "f" if dim and len(data) == 4 * dim else "d"
    return list(struct.unpack(f"{dim}{code}", data))


# Columns never patched through update_memory()
_FORBIDDEN_PATCH = frozenset({"id", "type", "created_at"})


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for memories and their audit trail.

    Thread-safe via a reentrant lock. Usable as a context manager.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ):
        """Open (and if needed create) a store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            busy_timeout_ms: How long SQLite waits on a locked database.
        """
        self._db_path = db_path
        self._wal_mode = wal_mode
        self._busy_timeout_ms = busy_timeout_ms
        self._lock = threading.RLock()
        self._depth = 0
        self._conn: Optional[sqlite3.Connection] = None
        self.open()

    # -- Lifecycle ---------------------------------------------------------

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> MemoryStore:
        """Connect and apply the schema. No-op if already open."""
        with self._lock:
            if self._conn is not None:
                return self
            try:
                # Auto-create parent directory for disk-backed databases.
                if self._db_path != ":memory:":
                    Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    self._db_path, check_same_thread=False, isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                if self._wal_mode and self._db_path != ":memory:":
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
                self._migrate_v1(conn)
                conn.executescript(_SCHEMA_SQL)
                # Populate schema_meta (idempotent)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'mnemos')",
                )
                conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', ?)",
                    (str(now_ms()),),
                )
            except (sqlite3.Error, OSError) as exc:
                raise StorageFailure(f"cannot open store {self._db_path}: {exc}") from exc
            self._conn = conn
            self._depth = 0
        logger.info(f"MemoryStore opened: {self._db_path}")
        return self

    def close(self) -> None:
        """Close the underlying SQLite connection (idempotent)."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info(f"MemoryStore closed: {self._db_path}")

    def __enter__(self) -> MemoryStore:
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def _migrate_v1(conn: sqlite3.Connection) -> None:
        """Add late columns to pre-existing databases (safe if already present)."""
        for table, col_def in (
            ("memories", "embedding_dim INTEGER"),
            ("memories", "content_hash TEXT NOT NULL DEFAULT ''"),
            ("reconsolidation_events", "closed_by TEXT"),
        ):
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def}")
            except sqlite3.OperationalError:
                pass  # Column already exists or table doesn't exist yet

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and turn sqlite3 errors into StorageFailure."""
        with self._lock:
            if self._conn is None:
                raise StorageFailure(f"store is closed: {self._db_path}")
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StorageFailure(f"{type(exc).__name__}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically.

        Nested calls join the outermost transaction. Any exception rolls
        the whole transaction back and propagates.
        """
        with self._guard() as conn:
            outer = self._depth == 0
            if outer:
                conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                # SQLite may already have rolled back on some errors
                if outer and conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                conn.execute("COMMIT")

    # -- Memories ----------------------------------------------------------

    def create_memory(self, memory: Memory) -> Memory:
        """Insert a new memory. ValidationError if the id already exists."""
        with self.transaction() as conn:
            try:
                conn.execute(
                    """INSERT INTO memories
                       (id, type, content, context, importance, tags, detail_json,
                        confidence, embedding, embedding_dim, created_at,
                        access_count, last_accessed, is_consolidated,
                        schema_version, archived, content_hash, updated_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                    self._memory_params(memory),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError(
                    f"memory id already exists: {memory.id}", "unique-id",
                ) from exc
        logger.debug(f"memory created: {memory.id} ({memory.type})")
        return memory

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Read a single memory by id (archived included). Not an access."""
        with self._guard() as conn:
            row = conn.execute(
                "SELECT * FROM memories WHERE id=?", (memory_id,)
            ).fetchone()
            return self._row_to_memory(row) if row is not None else None

    def require_memory(self, memory_id: str) -> Memory:
        """get_memory() that raises MemoryNotFound instead of returning None."""
        memory = self.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFound(f"no memory with id {memory_id}")
        return memory

    def memory_exists(self, memory_id: str) -> bool:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT 1 FROM memories WHERE id=?", (memory_id,)
            ).fetchone()
            return row is not None

    def memory_ids(self, include_archived: bool = True) -> Set[str]:
        """All memory ids (tombstones included by default)."""
        with self._guard() as conn:
            sql = "SELECT id FROM memories"
            if not include_archived:
                sql += " WHERE archived=0"
            return {r["id"] for r in conn.execute(sql).fetchall()}

    def update_memory(self, memory_id: str, patch: Dict[str, Any]) -> Memory:
        """
        Patch shared or variant fields on an existing memory.
        Does NOT allow changing id, type or created_at.
        """
        bad = _FORBIDDEN_PATCH.intersection(patch)
        if bad:
            raise ValidationError(
                f"cannot patch {', '.join(sorted(bad))} on {memory_id}", "immutable-field",
            )
        with self.transaction() as conn:
            memory = self.require_memory(memory_id)
            detail_updates = {}
            detail_names = {f.name for f in dataclasses.fields(memory.detail)}
            for key, val in patch.items():
                if key in SHARED_FIELDS:
                    setattr(memory, key, val)
                elif key in detail_names:
                    detail_updates[key] = val
                else:
                    raise ValidationError(
                        f"{memory.type} memory has no field {key!r}", "known-field",
                    )
            if detail_updates:
                memory.detail = dataclasses.replace(memory.detail, **detail_updates)
            params = self._memory_params(memory)
            conn.execute(
                """UPDATE memories SET
                   content=?, context=?, importance=?, tags=?, detail_json=?,
                   confidence=?, embedding=?, embedding_dim=?,
                   access_count=?, last_accessed=?, is_consolidated=?,
                   schema_version=?, archived=?, content_hash=?, updated_at=?
                   WHERE id=?""",
                params[2:10] + params[11:] + (memory_id,),
            )
        return memory

    def increment_access(self, memory_id: str, at_ms: Optional[int] = None) -> Memory:
        """Bump access_count and set last_accessed. Returns the updated memory."""
        at = now_ms() if at_ms is None else at_ms
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE memories SET access_count=access_count+1, last_accessed=? WHERE id=?",
                (at, memory_id),
            )
            if cur.rowcount == 0:
                raise MemoryNotFound(f"no memory with id {memory_id}")
            return self.require_memory(memory_id)

    def list_memories(
        self,
        include_archived: bool = True,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """All memories, oldest first."""
        with self._guard() as conn:
            sql = "SELECT * FROM memories"
            params: list = []
            if not include_archived:
                sql += " WHERE archived=0"
            sql += " ORDER BY created_at, id"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            return [self._row_to_memory(r) for r in conn.execute(sql, params).fetchall()]

    def query_memories(self, criteria: QueryCriteria) -> List[Memory]:
        """Candidates matching the structured filters of *criteria*.

        Text matching and ranking are left to the caller; ``limit`` and
        ``offset`` are not applied here.
        """
        conditions: List[str] = []
        params: list = []
        if not criteria.include_archived:
            conditions.append("archived=0")
        if criteria.types:
            conditions.append(f"type IN ({','.join('?' for _ in criteria.types)})")
            params.extend(criteria.types)
        if criteria.importance:
            conditions.append(
                f"importance IN ({','.join('?' for _ in criteria.importance)})"
            )
            params.extend(criteria.importance)
        if criteria.tags:
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(memories.tags) WHERE json_each.value IN "
                f"({','.join('?' for _ in criteria.tags)}))"
            )
            params.extend(criteria.tags)
        if criteria.created_after is not None:
            conditions.append("created_at>=?")
            params.append(criteria.created_after)
        if criteria.created_before is not None:
            conditions.append("created_at<=?")
            params.append(criteria.created_before)
        if criteria.min_confidence is not None:
            conditions.append("(confidence IS NULL OR confidence>=?)")
            params.append(criteria.min_confidence)
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._guard() as conn:
            rows = conn.execute(
                f"SELECT * FROM memories WHERE {where} ORDER BY created_at DESC, id DESC",
                params,
            ).fetchall()
            return [self._row_to_memory(r) for r in rows]

    def count_memories(self, include_archived: bool = False) -> int:
        with self._guard() as conn:
            where = "1=1" if include_archived else "archived=0"
            row = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM memories WHERE {where}"
            ).fetchone()
            return row["cnt"]

    # -- Provenance (append-only) ------------------------------------------

    def append_provenance(self, entry: ProvenanceEntry, ignore_existing: bool = False) -> bool:
        """Insert one provenance entry. The entry must carry id and created_at.

        Returns False only when ``ignore_existing`` is set and the id is
        already stored.
        """
        if not entry.id or not entry.created_at:
            raise ValidationError("provenance entry needs id and created_at", "provenance-entry")
        verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
        with self.transaction() as conn:
            cur = conn.execute(
                f"""{verb} INTO memory_provenance
                   (id, memory_id, event_type, event_data, agent_version,
                    session_id, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (
                    entry.id, entry.memory_id, entry.event_type,
                    json.dumps(plain(entry.data), ensure_ascii=False),
                    entry.agent_version, entry.session_id, entry.created_at,
                ),
            )
            return cur.rowcount > 0

    def last_provenance_at(self, memory_id: str) -> Optional[int]:
        """Timestamp of the latest entry for a memory, or None."""
        with self._guard() as conn:
            row = conn.execute(
                "SELECT MAX(created_at) AS mx FROM memory_provenance WHERE memory_id=?",
                (memory_id,),
            ).fetchone()
            return row["mx"]

    def read_provenance(
        self,
        memory_id: Optional[str] = None,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        memory_ids: Optional[Sequence[str]] = None,
        newest_first: bool = False,
    ) -> List[ProvenanceEntry]:
        """Entries in creation order (insertion order breaks ties).

        ``memory_ids`` restricts to a set of memories (an empty sequence
        matches nothing); ``newest_first`` reverses the order, so that a
        limit keeps the latest entries.
        """
        if memory_ids is not None and not memory_ids:
            return []
        conditions = []
        params: list = []
        if memory_id is not None:
            conditions.append("memory_id=?")
            params.append(memory_id)
        if memory_ids is not None:
            conditions.append(f"memory_id IN ({','.join('?' for _ in memory_ids)})")
            params.extend(memory_ids)
        if event_types:
            conditions.append(f"event_type IN ({','.join('?' for _ in event_types)})")
            params.extend(event_types)
        where = " AND ".join(conditions) if conditions else "1=1"
        order = "created_at DESC, rowid DESC" if newest_first else "created_at, rowid"
        sql = f"SELECT * FROM memory_provenance WHERE {where} ORDER BY {order}"
        if limit is not None or offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset])
        with self._guard() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [
                ProvenanceEntry.from_dict({
                    "id": r["id"],
                    "memory_id": r["memory_id"],
                    "event_type": r["event_type"],
                    "event_data": json.loads(r["event_data"]),
                    "agent_version": r["agent_version"],
                    "session_id": r["session_id"],
                    "created_at": r["created_at"],
                })
                for r in rows
            ]

    def count_provenance(self, memory_id: Optional[str] = None) -> int:
        with self._guard() as conn:
            if memory_id is None:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM memory_provenance").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM memory_provenance WHERE memory_id=?",
                    (memory_id,),
                ).fetchone()
            return row["cnt"]

    # -- Reconsolidation events --------------------------------------------

    def insert_event(self, event: ReconsolidationEvent) -> None:
        """Persist a new event. WindowAlreadyOpen if the memory is labile."""
        with self.transaction() as conn:
            try:
                conn.execute(
                    """INSERT INTO reconsolidation_events
                       (id, memory_id, window_start, window_end, trigger_json,
                        updates_json, final_state, closed_by, created_at)
                       VALUES (?,?,?,?,?,?,?,?,?)""",
                    self._event_params(event),
                )
            except sqlite3.IntegrityError as exc:
                if event.is_open:
                    raise WindowAlreadyOpen(
                        f"memory {event.memory_id} already has an open lability window"
                    ) from exc
                raise ValidationError(f"event id already exists: {event.id}", "unique-id") from exc

    def insert_event_if_absent(self, event: ReconsolidationEvent) -> bool:
        """Import path: insert unless the id is already stored."""
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO reconsolidation_events
                   (id, memory_id, window_start, window_end, trigger_json,
                    updates_json, final_state, closed_by, created_at)
                   VALUES (?,?,?,?,?,?,?,?,?)""",
                self._event_params(event),
            )
            return cur.rowcount > 0

    def update_event(self, event: ReconsolidationEvent) -> bool:
        """Rewrite the mutable parts of an open event (updates, end, final state).

        Only a row whose window is still open is touched. Returns False when
        the event is unknown or was already closed, possibly by another
        process sharing the database.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE reconsolidation_events SET
                   window_end=?, updates_json=?, final_state=?, closed_by=?
                   WHERE id=? AND window_end IS NULL""",
                (
                    event.lability_window_end,
                    json.dumps([u.to_dict() for u in event.updates_applied], ensure_ascii=False),
                    event.final_state, event.closed_by, event.id,
                ),
            )
            return cur.rowcount > 0

    def read_events(self, memory_id: Optional[str] = None) -> List[ReconsolidationEvent]:
        """Events in creation order, optionally for one memory."""
        with self._guard() as conn:
            if memory_id is None:
                rows = conn.execute(
                    "SELECT * FROM reconsolidation_events ORDER BY created_at, rowid"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM reconsolidation_events WHERE memory_id=? "
                    "ORDER BY created_at, rowid",
                    (memory_id,),
                ).fetchall()
            return [self._row_to_event(r) for r in rows]

    def open_events(self) -> List[ReconsolidationEvent]:
        """Events whose window has not been closed."""
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT * FROM reconsolidation_events WHERE window_end IS NULL "
                "ORDER BY window_start"
            ).fetchall()
            return [self._row_to_event(r) for r in rows]

    def open_event(self, memory_id: str) -> Optional[ReconsolidationEvent]:
        """The open event of one memory, or None."""
        with self._guard() as conn:
            row = conn.execute(
                "SELECT * FROM reconsolidation_events WHERE memory_id=? AND window_end IS NULL",
                (memory_id,),
            ).fetchone()
            return self._row_to_event(row) if row is not None else None

    def last_closed_window_end(self, memory_id: str) -> Optional[int]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT MAX(window_end) AS mx FROM reconsolidation_events "
                "WHERE memory_id=? AND window_end IS NOT NULL",
                (memory_id,),
            ).fetchone()
            return row["mx"]

    # -- Links -------------------------------------------------------------

    def write_link(self, link: MemoryLink) -> bool:
        """Create a link. Returns False if the same link already exists."""
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO memory_links
                   (src_id, dst_id, link_type, created_at) VALUES (?,?,?,?)""",
                (link.src_id, link.dst_id, link.link_type, link.created_at),
            )
            return cur.rowcount > 0

    def delete_link(self, src_id: str, dst_id: str, link_type: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM memory_links WHERE src_id=? AND dst_id=? AND link_type=?",
                (src_id, dst_id, link_type),
            )
            return cur.rowcount > 0

    def read_links(
        self,
        memory_id: Optional[str] = None,
        link_type: Optional[str] = None,
        outgoing_only: bool = False,
    ) -> List[MemoryLink]:
        """Links from or to a memory (all links when memory_id is None)."""
        conditions = []
        params: list = []
        if memory_id is not None:
            if outgoing_only:
                conditions.append("src_id=?")
                params.append(memory_id)
            else:
                conditions.append("(src_id=? OR dst_id=?)")
                params.extend([memory_id, memory_id])
        if link_type is not None:
            conditions.append("link_type=?")
            params.append(link_type)
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._guard() as conn:
            rows = conn.execute(
                f"SELECT * FROM memory_links WHERE {where} "
                "ORDER BY created_at, src_id, dst_id",
                params,
            ).fetchall()
            return [
                MemoryLink(
                    src_id=r["src_id"], dst_id=r["dst_id"],
                    link_type=r["link_type"], created_at=r["created_at"],
                )
                for r in rows
            ]

    # -- Self-schema -------------------------------------------------------

    def get_self_schema(self, agent_id: Optional[str] = None) -> Optional[SelfSchema]:
        """The schema for *agent_id* (or the only stored one when omitted)."""
        with self._guard() as conn:
            if agent_id is None:
                row = conn.execute(
                    "SELECT data_json FROM self_schema ORDER BY updated_at LIMIT 1"
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT data_json FROM self_schema WHERE agent_id=?", (agent_id,)
                ).fetchone()
            if row is None:
                return None
            return SelfSchema.from_dict(json.loads(row["data_json"]))

    def put_self_schema(self, schema: SelfSchema) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO self_schema
                   (agent_id, schema_id, version, data_json, updated_at)
                   VALUES (?,?,?,?,?)""",
                (
                    schema.agent_id, schema.id, schema.version,
                    schema.to_json(), schema.updated_at,
                ),
            )

    # -- Snapshots ---------------------------------------------------------

    def record_snapshot(
        self,
        snapshot_id: str,
        exported_at: int,
        checksum: str,
        memory_count: int,
        fmt: str = "json",
        path: Optional[str] = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO snapshots
                   (id, exported_at, checksum, memory_count, format, path)
                   VALUES (?,?,?,?,?,?)""",
                (snapshot_id, exported_at, checksum, memory_count, fmt, path),
            )

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """Recorded exports, newest first."""
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots ORDER BY exported_at DESC, id DESC"
            ).fetchall()
            return [dict(r) for r in rows]

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the memory store."""
        with self._guard() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories"
            ).fetchone()["cnt"]
            archived = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE archived=1"
            ).fetchone()["cnt"]
            by_type = {}
            for row in conn.execute(
                "SELECT type, COUNT(*) AS cnt FROM memories WHERE archived=0 GROUP BY type"
            ).fetchall():
                by_type[row["type"]] = row["cnt"]
            by_importance = {}
            for row in conn.execute(
                "SELECT importance, COUNT(*) AS cnt FROM memories WHERE archived=0 "
                "GROUP BY importance"
            ).fetchall():
                by_importance[row["importance"]] = row["cnt"]
            provenance_count = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memory_provenance"
            ).fetchone()["cnt"]
            events_count = conn.execute(
                "SELECT COUNT(*) AS cnt FROM reconsolidation_events"
            ).fetchone()["cnt"]
            open_windows = conn.execute(
                "SELECT COUNT(*) AS cnt FROM reconsolidation_events WHERE window_end IS NULL"
            ).fetchone()["cnt"]
            links_count = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memory_links"
            ).fetchone()["cnt"]
            snapshots_count = conn.execute(
                "SELECT COUNT(*) AS cnt FROM snapshots"
            ).fetchone()["cnt"]
            meta = conn.execute(
                "SELECT value FROM schema_meta WHERE key='schema_version'"
            ).fetchone()
            return {
                "db_path": self._db_path,
                "schema_version": int(meta["value"]) if meta else SCHEMA_VERSION,
                "total_memories": total,
                "active_memories": total - archived,
                "archived_memories": archived,
                "by_type": by_type,
                "by_importance": by_importance,
                "provenance_count": provenance_count,
                "reconsolidation_events": events_count,
                "open_windows": open_windows,
                "links_count": links_count,
                "snapshots_count": snapshots_count,
            }

    # -- Internal helpers --------------------------------------------------

    @staticmethod
    def _memory_params(memory: Memory) -> tuple:
        """Column values in INSERT order."""
        detail = dataclasses.asdict(memory.detail)
        embedding = memory.embedding
        return (
            memory.id, memory.type, memory.content, memory.context,
            memory.importance, json.dumps(memory.tags, ensure_ascii=False),
            json.dumps(detail, ensure_ascii=False), memory.confidence,
            _pack_vector(embedding) if embedding is not None else None,
            len(embedding) if embedding is not None else None,
            memory.created_at, memory.access_count, memory.last_accessed,
            int(memory.is_consolidated), memory.schema_version,
            int(memory.archived), memory.content_hash, now_ms(),
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        """Convert a SQLite Row to Memory."""
        d: Dict[str, Any] = json.loads(row["detail_json"])
        embedding = None
        if row["embedding"] is not None:
            embedding = _unpack_vector(row["embedding"], row["embedding_dim"])
        d.update(
            id=row["id"],
            type=row["type"],
            content=row["content"],
            context=row["context"],
            importance=row["importance"],
            tags=json.loads(row["tags"]),
            embedding=embedding,
            created_at=row["created_at"],
            access_count=row["access_count"],
            last_accessed=row["last_accessed"],
            is_consolidated=bool(row["is_consolidated"]),
            schema_version=row["schema_version"],
            archived=bool(row["archived"]),
        )
        return Memory.from_dict(d)

    @staticmethod
    def _event_params(event: ReconsolidationEvent) -> tuple:
        return (
            event.id, event.memory_id, event.lability_window_start,
            event.lability_window_end,
            json.dumps(event.trigger_context.to_dict(), ensure_ascii=False),
            json.dumps([u.to_dict() for u in event.updates_applied], ensure_ascii=False),
            event.final_state, event.closed_by, event.created_at,
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ReconsolidationEvent:
        return ReconsolidationEvent.from_dict({
            "id": row["id"],
            "memory_id": row["memory_id"],
            "lability_window_start": row["window_start"],
            "lability_window_end": row["window_end"],
            "trigger_context": json.loads(row["trigger_json"]),
            "updates_applied": json.loads(row["updates_json"]),
            "final_state": row["final_state"],
            "closed_by": row["closed_by"],
            "created_at": row["created_at"],
        })
