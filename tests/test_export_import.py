"""
Tests for mnemos.export_import — checksummed snapshots, HTML view, import.
"""

import json
import re

import pytest

from mnemos.engine import MemoryEngine
from mnemos.errors import IntegrityError, ValidationError
from mnemos.export_import import (
    compute_checksum,
    export_to_file,
    import_snapshot,
    render_html,
    verify_snapshot,
)
from mnemos.store import MemoryStore
from mnemos.types import RetrievalContext, episodic, procedural, semantic


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    e = MemoryEngine(MemoryStore(":memory:"), agent_id="agent-x")
    yield e
    e.close()
    e.store.close()


@pytest.fixture
def populated(engine):
    """Three live memories, one archived, a link and a self-schema."""
    ep = engine.create(episodic("Shipped v2 with the team", "release", importance="high"))
    fact = engine.create(semantic("v2 uses SQLite", "project", confidence=0.9,
                                  source_memory_ids=[ep.id]), source="inference")
    engine.create(procedural("How to release", "release", [
        {"order": 1, "description": "tag"}, {"order": 2, "description": "publish"},
    ]))
    old = engine.create(semantic("v1 used flat files", "project"))
    engine.archive(old.id)
    engine.link(fact.id, ep.id, "derives_from")
    engine.self_schema.initialize("Release helper")
    engine.self_schema.add_capability("shipping", [ep.id])
    return engine


@pytest.fixture
def fresh():
    e = MemoryEngine(MemoryStore(":memory:"), agent_id="agent-x")
    yield e
    e.close()
    e.store.close()


# ---------------------------------------------------------------------------
# Snapshot and checksum
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_contents(self, populated):
        snap = populated.snapshot()
        assert snap.agent_id == "agent-x"
        assert len(snap.memories) == 4
        assert snap.self_schema is not None
        assert len(snap.links) == 1
        assert any(e.event_type == "archived" for e in snap.provenance)

    def test_checksum_format(self, populated):
        snap = populated.snapshot()
        assert re.fullmatch(r"sha256:[0-9a-f]{64}", snap.checksum)
        assert compute_checksum(snap) == snap.checksum
        assert verify_snapshot(snap.to_dict()) == snap.checksum

    def test_tampering_detected(self, populated):
        d = populated.snapshot().to_dict()
        d["memories"][0]["content"] = "forged"
        with pytest.raises(IntegrityError):
            verify_snapshot(d)

    def test_missing_checksum(self, populated):
        d = populated.snapshot().to_dict(include_checksum=False)
        with pytest.raises(IntegrityError):
            verify_snapshot(d)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    def test_json_file_and_registry(self, populated, tmp_path):
        out = tmp_path / "snap.json"
        snap = populated.export(str(out))
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["checksum"] == snap.checksum
        assert len(data["memories"]) == 4
        recorded = populated.store.list_snapshots()
        assert recorded[0]["checksum"] == snap.checksum
        assert recorded[0]["format"] == "json"
        assert recorded[0]["memory_count"] == 4

    def test_unknown_format(self, populated, tmp_path):
        with pytest.raises(ValidationError) as exc:
            populated.export(str(tmp_path / "x.xml"), "xml")
        assert exc.value.invariant == "export-format"

    def test_export_is_not_an_access(self, populated, tmp_path):
        populated.export(str(tmp_path / "snap.json"))
        assert all(m.access_count == 0 for m in populated.store.list_memories(include_archived=True))


class TestHtml:
    def test_self_contained(self, populated, tmp_path):
        out = tmp_path / "view.html"
        snap = export_to_file(populated.store, str(out), "html", agent_id="agent-x",
                              log=lambda msg: None)
        text = out.read_text(encoding="utf-8")
        assert text.startswith("<!DOCTYPE html>")
        assert snap.checksum in text
        assert "Shipped v2 with the team" in text
        assert "<script src" not in text
        assert "<link " not in text

    def test_script_breakout_escaped(self, engine):
        engine.create(semantic("</script><b>bold</b>", "xss"))
        text = render_html(engine.snapshot())
        assert "</script><b>" not in text
        assert "\\u003c/script\\u003e" in text

    def test_records_exclude_archived(self, populated):
        text = render_html(populated.snapshot())
        match = re.search(r'<script type="application/json" id="mnemos-data">(.*?)</script>',
                          text, re.S)
        assert match
        payload = json.loads(match.group(1))
        contents = [r["content"] for r in payload["records"]]
        assert "v1 used flat files" not in contents
        assert len(contents) == 3
        assert len(payload["snapshot"]["memories"]) == 4


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    def test_round_trip(self, populated, fresh, tmp_path):
        out = tmp_path / "snap.json"
        snap = populated.export(str(out))
        result = fresh.import_snapshot(str(out), log=lambda msg: None)
        assert result.memories_imported == 4
        assert result.self_schema_imported
        assert fresh.store.memory_ids() == {m.id for m in snap.memories}
        assert fresh.store.count_provenance() == len(snap.provenance)
        assert len(fresh.store.read_links()) == 1
        again = fresh.snapshot()
        assert {m.id: m.content for m in again.memories} == {m.id: m.content for m in snap.memories}

    def test_existing_ids_skipped(self, populated, tmp_path):
        out = tmp_path / "snap.json"
        populated.export(str(out))
        result = import_snapshot(populated.store, str(out), log=lambda msg: None)
        assert result.memories_imported == 0
        assert result.memories_skipped == 4
        assert result.provenance_imported == 0
        assert not result.self_schema_imported

    def test_dry_run_writes_nothing(self, populated, fresh, tmp_path):
        out = tmp_path / "snap.json"
        populated.export(str(out))
        result = fresh.import_snapshot(str(out), dry_run=True, log=lambda msg: None)
        assert result.dry_run
        assert result.memories_imported == 4
        assert fresh.store.memory_ids() == set()

    def test_tampered_file_rejected(self, populated, fresh, tmp_path):
        out = tmp_path / "snap.json"
        populated.export(str(out))
        data = json.loads(out.read_text(encoding="utf-8"))
        data["memories"][0]["importance"] = "critical"
        out.write_text(json.dumps(data), encoding="utf-8")
        with pytest.raises(IntegrityError):
            fresh.import_snapshot(str(out), log=lambda msg: None)
        assert fresh.store.memory_ids() == set()

    def test_not_json(self, fresh, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError):
            fresh.import_snapshot(str(bad), log=lambda msg: None)

    def test_open_window_adopted(self, engine, fresh):
        m = engine.create(semantic("Lunch is at noon", "team"))
        engine.recall(m.id, RetrievalContext("explicit_recall"))
        data = engine.snapshot().to_dict()
        engine.reconsolidation.shutdown()
        result = fresh.import_snapshot(data, log=lambda msg: None)
        assert result.events_imported == 1
        assert fresh.reconsolidation.is_labile(m.id)
        fresh.update(m.id, "content", "Lunch is at 12:30", "moved")
        assert fresh.close_window(m.id).final_state == "updated"
