"""
Tests for mnemos.store — MemoryStore CRUD, append-only provenance,
reconsolidation events, links, self-schema, transactions.
"""

import sqlite3
import struct

import pytest

from mnemos.errors import (
    MemoryNotFound,
    StorageFailure,
    ValidationError,
    WindowAlreadyOpen,
)
from mnemos.retrieval import QueryCriteria
from mnemos.schema import SelfSchema
from mnemos.store import SCHEMA_VERSION, MemoryStore
from mnemos.types import (
    CreatedData,
    MemoryLink,
    ProvenanceEntry,
    ReconsolidationEvent,
    ReconsolidationUpdate,
    episodic,
    procedural,
    semantic,
)


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Create a disk-backed store for testing."""
    s = MemoryStore(db_path=str(tmp_path / "sub" / "test.db"))
    yield s
    s.close()


def _entry(memory_id, n, at):
    return ProvenanceEntry(
        memory_id=memory_id, data=CreatedData(original_content=f"v{n}"),
        id=f"prov_{n:04d}", created_at=at,
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        assert row["value"] == str(SCHEMA_VERSION)

    def test_schema_created_by(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='created_by'"
        ).fetchone()
        assert row["value"] == "mnemos"

    def test_all_tables_exist(self, store):
        tables = {
            r["name"] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        for name in ("memories", "memory_provenance", "reconsolidation_events",
                     "memory_links", "self_schema", "snapshots", "schema_meta"):
            assert name in tables

    def test_disk_store_creates_parent(self, disk_store, tmp_path):
        assert (tmp_path / "sub" / "test.db").exists()

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "m.db")
        m = semantic("persisted", "d")
        with MemoryStore(path) as s:
            s.create_memory(m)
        with MemoryStore(path) as s:
            assert s.get_memory(m.id) == m

    def test_close_idempotent(self, store):
        store.close()
        store.close()
        assert not store.is_open

    def test_closed_store_raises(self, store):
        store.close()
        with pytest.raises(StorageFailure):
            store.get_memory("mem_x")


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


class TestMemories:
    def test_create_and_get_variants(self, store):
        for m in (
            episodic("e", "meeting", participants=["bob"]),
            semantic("s", "d", confidence=0.5, embedding=[0.5, -1.0, 0.25]),
            procedural("p", "skill", [{"order": 1, "description": "go"}]),
        ):
            store.create_memory(m)
            assert store.get_memory(m.id) == m

    def test_embedding_kept_exactly(self, store):
        vec = [0.1, 1.0 / 3.0, -2.718281828459045, 1e-300]
        m = semantic("precise", "d", embedding=vec)
        store.create_memory(m)
        assert store.get_memory(m.id).embedding == vec

    def test_float32_embedding_still_readable(self, store):
        m = semantic("legacy", "d", embedding=[0.5, -1.0])
        store.create_memory(m)
        store._conn.execute(
            "UPDATE memories SET embedding=? WHERE id=?",
            (struct.pack("2f", 0.5, -1.0), m.id),
        )
        assert store.get_memory(m.id).embedding == [0.5, -1.0]

    def test_duplicate_id(self, store):
        m = semantic("s", "d")
        store.create_memory(m)
        with pytest.raises(ValidationError) as exc:
            store.create_memory(m)
        assert exc.value.invariant == "unique-id"

    def test_get_missing(self, store):
        assert store.get_memory("mem_nope") is None
        assert not store.memory_exists("mem_nope")
        with pytest.raises(MemoryNotFound):
            store.require_memory("mem_nope")

    def test_update_shared_and_variant(self, store):
        m = semantic("s", "d", confidence=0.5)
        store.create_memory(m)
        updated = store.update_memory(m.id, {"importance": "high", "confidence": 0.9})
        assert updated.importance == "high"
        assert updated.confidence == 0.9
        assert store.get_memory(m.id).confidence == 0.9

    def test_update_forbidden(self, store):
        m = semantic("s", "d")
        store.create_memory(m)
        with pytest.raises(ValidationError):
            store.update_memory(m.id, {"type": "episodic"})

    def test_update_unknown_field(self, store):
        m = semantic("s", "d")
        store.create_memory(m)
        with pytest.raises(ValidationError):
            store.update_memory(m.id, {"skill_name": "x"})

    def test_increment_access(self, store):
        m = semantic("s", "d")
        store.create_memory(m)
        store.increment_access(m.id, 1000)
        got = store.increment_access(m.id, 2000)
        assert got.access_count == 2
        assert got.last_accessed == 2000

    def test_increment_missing(self, store):
        with pytest.raises(MemoryNotFound):
            store.increment_access("mem_nope")

    def test_list_and_count(self, store):
        a = semantic("a", "d", created_at=1)
        b = semantic("b", "d", created_at=2, archived=True)
        store.create_memory(b)
        store.create_memory(a)
        assert [m.id for m in store.list_memories()] == [a.id, b.id]
        assert [m.id for m in store.list_memories(include_archived=False)] == [a.id]
        assert store.count_memories() == 1
        assert store.count_memories(include_archived=True) == 2
        assert store.memory_ids() == {a.id, b.id}
        assert store.memory_ids(include_archived=False) == {a.id}


class TestQueryMemories:
    def _seed(self, store):
        ms = [
            semantic("alpha", "d", tags=["x", "y"], importance="high", created_at=10, confidence=0.2),
            semantic("beta", "d", tags=["y"], created_at=20, confidence=0.9),
            episodic("gamma", "t", tags=["z"], created_at=30),
            semantic("delta", "d", created_at=40, archived=True),
        ]
        for m in ms:
            store.create_memory(m)
        return ms

    def test_excludes_archived_by_default(self, store):
        ms = self._seed(store)
        ids = [m.id for m in store.query_memories(QueryCriteria())]
        assert ms[3].id not in ids
        assert len(ids) == 3

    def test_tags_any_match(self, store):
        ms = self._seed(store)
        got = {m.id for m in store.query_memories(QueryCriteria(tags=["x", "z"]))}
        assert got == {ms[0].id, ms[2].id}

    def test_type_importance_time(self, store):
        ms = self._seed(store)
        assert [m.id for m in store.query_memories(QueryCriteria(types="episodic"))] == [ms[2].id]
        assert [m.id for m in store.query_memories(QueryCriteria(importance="high"))] == [ms[0].id]
        got = store.query_memories(QueryCriteria(created_after=15, created_before=30))
        assert {m.id for m in got} == {ms[1].id, ms[2].id}

    def test_min_confidence_semantic_only(self, store):
        ms = self._seed(store)
        got = {m.id for m in store.query_memories(QueryCriteria(min_confidence=0.5))}
        assert got == {ms[1].id, ms[2].id}


# ---------------------------------------------------------------------------
# Provenance (append-only)
# ---------------------------------------------------------------------------


class TestProvenance:
    def test_append_and_read_in_order(self, store):
        for n, at in enumerate([5, 5, 7]):
            store.append_provenance(_entry("mem_a", n, at))
        store.append_provenance(_entry("mem_b", 9, 6))
        got = store.read_provenance("mem_a")
        assert [e.id for e in got] == ["prov_0000", "prov_0001", "prov_0002"]
        assert store.count_provenance("mem_a") == 3
        assert store.count_provenance() == 4
        assert store.last_provenance_at("mem_a") == 7

    def test_requires_id_and_timestamp(self, store):
        with pytest.raises(ValidationError):
            store.append_provenance(ProvenanceEntry(memory_id="mem_a", data=CreatedData()))

    def test_ignore_existing(self, store):
        assert store.append_provenance(_entry("mem_a", 1, 1))
        assert not store.append_provenance(_entry("mem_a", 1, 1), ignore_existing=True)
        with pytest.raises(StorageFailure):
            store.append_provenance(_entry("mem_a", 1, 1))

    def test_update_blocked_by_trigger(self, store):
        store.append_provenance(_entry("mem_a", 1, 1))
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute("UPDATE memory_provenance SET event_type='modified'")

    def test_delete_blocked_by_trigger(self, store):
        store.append_provenance(_entry("mem_a", 1, 1))
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute("DELETE FROM memory_provenance")
        assert store.count_provenance() == 1

    def test_filter_and_page(self, store):
        for n in range(5):
            store.append_provenance(_entry("mem_a", n, n + 1))
        got = store.read_provenance("mem_a", event_types=["created"], limit=2, offset=1)
        assert [e.id for e in got] == ["prov_0001", "prov_0002"]
        assert store.read_provenance("mem_a", event_types=["modified"]) == []

    def test_newest_first_for_memory_set(self, store):
        for n, mid in enumerate(["mem_a", "mem_b", "mem_c", "mem_a", "mem_b"]):
            store.append_provenance(_entry(mid, n, n + 1))
        got = store.read_provenance(memory_ids=["mem_a", "mem_b"], newest_first=True, limit=3)
        assert [e.id for e in got] == ["prov_0004", "prov_0003", "prov_0001"]
        assert store.read_provenance(memory_ids=[]) == []


# ---------------------------------------------------------------------------
# Reconsolidation events
# ---------------------------------------------------------------------------


class TestEvents:
    def test_one_open_window_per_memory(self, store):
        store.insert_event(ReconsolidationEvent(memory_id="mem_a", lability_window_start=1))
        with pytest.raises(WindowAlreadyOpen):
            store.insert_event(ReconsolidationEvent(memory_id="mem_a", lability_window_start=2))
        store.insert_event(ReconsolidationEvent(memory_id="mem_b", lability_window_start=2))
        assert len(store.open_events()) == 2

    def test_close_then_reopen(self, store):
        ev = ReconsolidationEvent(memory_id="mem_a", lability_window_start=1)
        store.insert_event(ev)
        ev.updates_applied.append(ReconsolidationUpdate("confidence", 0.5, 0.6, "r", 2))
        ev.lability_window_end = 3
        ev.final_state = "strengthened"
        ev.closed_by = "caller"
        store.update_event(ev)
        assert store.open_events() == []
        assert store.last_closed_window_end("mem_a") == 3
        store.insert_event(ReconsolidationEvent(memory_id="mem_a", lability_window_start=4))
        events = store.read_events("mem_a")
        assert len(events) == 2
        assert events[0] == ev

    def test_update_missing_event(self, store):
        assert not store.update_event(ReconsolidationEvent(memory_id="mem_a", lability_window_start=1))

    def test_closed_event_not_rewritten(self, store):
        ev = ReconsolidationEvent(memory_id="mem_a", lability_window_start=1)
        store.insert_event(ev)
        assert store.open_event("mem_a") == ev
        ev.lability_window_end = 2
        ev.final_state = "unchanged"
        ev.closed_by = "caller"
        assert store.update_event(ev)
        assert store.open_event("mem_a") is None
        stale = ReconsolidationEvent(memory_id="mem_a", lability_window_start=1, id=ev.id)
        stale.updates_applied.append(ReconsolidationUpdate("content", "a", "b", "", 3))
        assert not store.update_event(stale)
        assert store.read_events("mem_a") == [ev]

    def test_insert_if_absent(self, store):
        ev = ReconsolidationEvent(memory_id="mem_a", lability_window_start=1, lability_window_end=2)
        assert store.insert_event_if_absent(ev)
        assert not store.insert_event_if_absent(ev)


# ---------------------------------------------------------------------------
# Links, self-schema, snapshots, stats
# ---------------------------------------------------------------------------


class TestLinks:
    def test_write_read_delete(self, store):
        assert store.write_link(MemoryLink("a", "b", "supports", 1))
        assert not store.write_link(MemoryLink("a", "b", "supports", 2))
        store.write_link(MemoryLink("c", "a", "derives_from", 3))
        assert len(store.read_links("a")) == 2
        assert len(store.read_links("a", outgoing_only=True)) == 1
        assert [link.src_id for link in store.read_links("a", "derives_from")] == ["c"]
        assert store.delete_link("a", "b", "supports")
        assert not store.delete_link("a", "b", "supports")
        assert len(store.read_links()) == 1


class TestSelfSchemaStorage:
    def test_put_get(self, store):
        assert store.get_self_schema("agent") is None
        schema = SelfSchema(agent_id="agent")
        store.put_self_schema(schema)
        assert store.get_self_schema("agent") == schema
        assert store.get_self_schema() == schema


class TestSnapshotsAndStats:
    def test_record_snapshot(self, store):
        store.record_snapshot("snap_1", 10, "sha256:x", 3, "json", "/tmp/a.json")
        store.record_snapshot("snap_2", 20, "sha256:y", 4, "html", "/tmp/a.html")
        snaps = store.list_snapshots()
        assert [s["id"] for s in snaps] == ["snap_2", "snap_1"]
        assert snaps[0]["format"] == "html"

    def test_stats(self, store):
        store.create_memory(semantic("a", "d", importance="high"))
        store.create_memory(episodic("b", "t", archived=True))
        s = store.stats()
        assert s["total_memories"] == 2
        assert s["active_memories"] == 1
        assert s["archived_memories"] == 1
        assert s["by_type"] == {"semantic": 1}
        assert s["by_importance"] == {"high": 1}
        assert s["schema_version"] == SCHEMA_VERSION


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_rollback_on_error(self, store):
        m = semantic("s", "d")
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_memory(m)
                store.append_provenance(_entry(m.id, 1, 1))
                raise RuntimeError("boom")
        assert store.get_memory(m.id) is None
        assert store.count_provenance() == 0

    def test_nested_joins_outer(self, store):
        a, b = semantic("a", "d"), semantic("b", "d")
        with pytest.raises(ValidationError):
            with store.transaction():
                store.create_memory(a)
                with store.transaction():
                    store.create_memory(b)
                store.create_memory(a)  # duplicate
        assert store.count_memories() == 0

    def test_commit(self, store):
        m = semantic("s", "d")
        with store.transaction():
            store.create_memory(m)
        assert store.memory_exists(m.id)
