"""
Tests for mnemos.engine — the facade wiring store, provenance and windows.
"""

import os

import pytest

from mnemos.config import EngineConfig
from mnemos.engine import MemoryEngine
from mnemos.errors import (
    MemoryNotFound,
    NoActiveLabilityWindow,
    ValidationError,
)
from mnemos.retrieval import QueryCriteria
from mnemos.store import MemoryStore
from mnemos.types import RetrievalContext, episodic, semantic

T0 = 1_700_000_000_000


class Clock:
    def __init__(self):
        self.t = T0

    def __call__(self):
        return self.t


@pytest.fixture
def engine():
    store = MemoryStore(":memory:")
    e = MemoryEngine(store, agent_id="agent-1", session_id="sess-9", clock=Clock())
    yield e
    e.close()
    store.close()


def _types(engine, memory_id):
    return [e.event_type for e in engine.history(memory_id)]


class TestCreate:
    def test_logs_created(self, engine):
        m = engine.create(semantic("Paris is in France", "geography"))
        entries = engine.history(m.id)
        assert [e.event_type for e in entries] == ["created"]
        assert entries[0].data.source == "user_input"
        assert entries[0].data.original_content == "Paris is in France"
        assert entries[0].session_id == "sess-9"
        assert engine.get(m.id).content == "Paris is in France"

    def test_new_memory_must_be_fresh(self, engine):
        with pytest.raises(ValidationError) as exc:
            engine.create(semantic("x", "d", access_count=2))
        assert exc.value.invariant == "fresh-memory"
        with pytest.raises(ValidationError):
            engine.create(semantic("x", "d", archived=True))

    def test_dangling_source_rejected(self, engine):
        with pytest.raises(ValidationError) as exc:
            engine.create(semantic("derived", "d", source_memory_ids=["mem_missing"]))
        assert exc.value.invariant == "reference-resolves"
        assert engine.query(QueryCriteria()) == []

    def test_unknown_source(self, engine):
        with pytest.raises(ValidationError):
            engine.create(semantic("x", "d"), source="dream")

    def test_get_unknown(self, engine):
        with pytest.raises(MemoryNotFound):
            engine.get("mem_nope")


class TestRecallFlow:
    def test_recall_update_close(self, engine):
        m = engine.create(semantic("The office opens at 8", "workplace", confidence=0.6))
        outcome = engine.recall(m.id)
        assert outcome.triggered_reconsolidation
        with pytest.raises(ValidationError):
            engine.update(m.id, "id", "mem_other", "")
        engine.update(m.id, "confidence", 0.9, "confirmed by the receptionist")
        event = engine.close_window(m.id)
        assert event.final_state == "strengthened"
        assert _types(engine, m.id) == ["created", "accessed", "modified", "reconsolidated"]
        assert engine.get(m.id).confidence == 0.9

    def test_update_without_window(self, engine):
        m = engine.create(semantic("fact", "d"))
        with pytest.raises(NoActiveLabilityWindow):
            engine.update(m.id, "content", "changed", "")
        assert engine.get(m.id).content == "fact"

    def test_query_does_not_access(self, engine):
        m = engine.create(semantic("budget meeting notes", "work"))
        assert [x.id for x in engine.query(QueryCriteria(text="budget"))] == [m.id]
        assert engine.get(m.id).access_count == 0
        assert not engine.reconsolidation.is_labile(m.id)

    def test_search_records_accesses(self, engine):
        a = engine.create(semantic("hiking boots", "gear"))
        b = engine.create(episodic("hiking in the alps", "trip"))
        engine.create(semantic("unrelated", "misc"))
        outcomes = engine.search(QueryCriteria(text="hiking"))
        assert {o.memory.id for o in outcomes} == {a.id, b.id}
        assert all(o.triggered_reconsolidation for o in outcomes)
        accessed = engine.history(a.id, event_types=["accessed"])
        assert accessed[0].data.context.trigger == "search"
        assert accessed[0].data.context.query == "hiking"

    def test_open_window_explicit(self, engine):
        m = engine.create(semantic("fact", "d"))
        engine.open_window(m.id, RetrievalContext("associative"))
        engine.update(m.id, "tags", ["checked"], "")
        assert engine.close_window(m.id).final_state == "updated"


class TestLinks:
    def test_link_logs_both_sides(self, engine):
        a = engine.create(semantic("a", "d"))
        b = engine.create(semantic("b", "d"))
        link = engine.link(a.id, b.id, "supports")
        assert link.link_type == "supports"
        assert _types(engine, a.id)[-1] == "linked"
        assert _types(engine, b.id)[-1] == "linked"
        assert engine.history(b.id)[-1].data.other_memory_id == a.id
        assert len(engine.links(a.id)) == 1

    def test_link_idempotent(self, engine):
        a = engine.create(semantic("a", "d"))
        b = engine.create(semantic("b", "d"))
        engine.link(a.id, b.id)
        engine.link(a.id, b.id)
        assert _types(engine, a.id).count("linked") == 1

    def test_self_link_and_unknown(self, engine):
        a = engine.create(semantic("a", "d"))
        with pytest.raises(ValidationError):
            engine.link(a.id, a.id)
        with pytest.raises(MemoryNotFound):
            engine.link(a.id, "mem_missing")

    def test_unlink(self, engine):
        a = engine.create(semantic("a", "d"))
        b = engine.create(semantic("b", "d"))
        engine.link(a.id, b.id, "contradicts")
        assert engine.unlink(a.id, b.id, "contradicts")
        assert not engine.unlink(a.id, b.id, "contradicts")
        assert _types(engine, b.id)[-1] == "unlinked"
        assert engine.links(a.id) == []


class TestLifecycle:
    def test_archive_restore(self, engine):
        m = engine.create(semantic("temporary", "d"))
        assert engine.archive(m.id, details="superseded").archived
        assert engine.query(QueryCriteria()) == []
        engine.archive(m.id)
        assert _types(engine, m.id).count("archived") == 1
        assert not engine.restore(m.id).archived
        assert _types(engine, m.id)[-1] == "restored"
        assert [x.id for x in engine.query(QueryCriteria())] == [m.id]

    def test_archived_still_traceable(self, engine):
        m = engine.create(semantic("old", "d"))
        engine.archive(m.id)
        assert "It is archived." in engine.trace(m.id).summary

    def test_mark_consolidated(self, engine):
        m = engine.create(episodic("standup", "meeting"))
        assert engine.mark_consolidated(m.id).is_consolidated
        assert _types(engine, m.id)[-1] == "consolidated"

    def test_history_unknown(self, engine):
        with pytest.raises(MemoryNotFound):
            engine.history("mem_nope")


class TestStatsAndLifetime:
    def test_stats(self, engine):
        m = engine.create(semantic("x", "d"))
        engine.create(episodic("y", "e"))
        engine.recall(m.id)
        s = engine.stats()
        assert s["active_memories"] == 2
        assert s["by_type"] == {"semantic": 1, "episodic": 1}
        assert s["open_windows"] == 1
        assert s["labile_in_process"] == 1

    def test_context_manager_closes_owned_store(self, tmp_path):
        db = str(tmp_path / "mem.db")
        with MemoryEngine.open(db, EngineConfig(), agent_id="a") as engine:
            engine.create(semantic("persisted", "d"))
        assert not engine.store.is_open
        assert os.path.exists(db)
        with MemoryEngine.open(db) as engine:
            assert [m.content for m in engine.query(QueryCriteria())] == ["persisted"]

    def test_open_window_survives_reopen(self, tmp_path):
        db = str(tmp_path / "mem.db")
        with MemoryEngine.open(db) as engine:
            m = engine.create(semantic("shared", "d"))
            engine.recall(m.id)
        with MemoryEngine.open(db) as engine:
            assert engine.reconsolidation.is_labile(m.id)
            engine.update(m.id, "content", "shared twice", "")
            assert engine.close_window(m.id).final_state == "updated"
