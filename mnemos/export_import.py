"""
Export/Import — Snapshots, Offline View, Checksum-Verified Restore

A MemorySystemSnapshot carries every memory (tombstones included), the
self-schema, the full provenance log, reconsolidation events and links,
plus a checksum over the canonical serialization of all of it:

    sha256 over json.dumps(snapshot minus "checksum",
                           sort_keys=True, separators=(",", ":"))

Two output formats: a JSON document, and a self-contained HTML document
that embeds the same payload inline and renders it with the filtering
rules of mnemos.view (no network access needed to open it).

Import recomputes the checksum before touching the store, then inserts
everything in one transaction, skipping ids that already exist.

stdout purity: nothing here prints to stdout. Progress goes to stderr.
"""

from __future__ import annotations

import html
import json
import sys
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Dict, List, Optional, Union

from mnemos.errors import IntegrityError, ValidationError
from mnemos.ids import generate, now_ms
from mnemos.schema import SelfSchema
from mnemos.store import MemoryStore
from mnemos.types import (
    CURRENT_SCHEMA_VERSION,
    Memory,
    MemoryLink,
    ProvenanceEntry,
    ReconsolidationEvent,
    content_hash,
)
from mnemos.validation import validate, validate_self_schema
from mnemos.view import DEFAULT_PAGE_SIZE, project

EXPORT_FORMATS = ("json", "html")


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass
class MemorySystemSnapshot:
    """Everything needed to rebuild a memory system elsewhere."""

    exported_at: int
    agent_id: str
    schema_version: int = CURRENT_SCHEMA_VERSION
    memories: List[Memory] = field(default_factory=list)
    self_schema: Optional[SelfSchema] = None
    provenance: List[ProvenanceEntry] = field(default_factory=list)
    reconsolidation_events: List[ReconsolidationEvent] = field(default_factory=list)
    links: List[MemoryLink] = field(default_factory=list)
    checksum: str = ""

    def to_dict(self, include_checksum: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "exported_at": self.exported_at,
            "agent_id": self.agent_id,
            "schema_version": self.schema_version,
            "memories": [m.to_dict() for m in self.memories],
            "self_schema": self.self_schema.to_dict() if self.self_schema else None,
            "provenance": [e.to_dict() for e in self.provenance],
            "reconsolidation_events": [e.to_dict() for e in self.reconsolidation_events],
            "links": [link.to_dict() for link in self.links],
        }
        if include_checksum:
            d["checksum"] = self.checksum
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemorySystemSnapshot:
        schema = d.get("self_schema")
        return cls(
            exported_at=int(d["exported_at"]),
            agent_id=d["agent_id"],
            schema_version=int(d.get("schema_version", CURRENT_SCHEMA_VERSION)),
            memories=[Memory.from_dict(m) for m in d.get("memories", [])],
            self_schema=SelfSchema.from_dict(schema) if schema else None,
            provenance=[ProvenanceEntry.from_dict(e) for e in d.get("provenance", [])],
            reconsolidation_events=[
                ReconsolidationEvent.from_dict(e) for e in d.get("reconsolidation_events", [])
            ],
            links=[MemoryLink.from_dict(link) for link in d.get("links", [])],
            checksum=d.get("checksum", ""),
        )


def _canonical(d: Dict[str, Any]) -> str:
    body = {k: v for k, v in d.items() if k != "checksum"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(snapshot: Union[MemorySystemSnapshot, Dict[str, Any]]) -> str:
    """``sha256:<hex>`` over the canonical serialization (checksum excluded)."""
    d = snapshot.to_dict(include_checksum=False) if isinstance(snapshot, MemorySystemSnapshot) else snapshot
    return content_hash(_canonical(d))


def build_snapshot(
    store: MemoryStore,
    agent_id: Optional[str] = None,
    *,
    clock: Callable[[], int] = now_ms,
) -> MemorySystemSnapshot:
    """Read the whole store into a checksummed snapshot."""
    with store.transaction():
        schema = store.get_self_schema(agent_id)
        snapshot = MemorySystemSnapshot(
            exported_at=clock(),
            agent_id=agent_id or (schema.agent_id if schema else "default"),
            memories=store.list_memories(include_archived=True),
            self_schema=schema,
            provenance=store.read_provenance(),
            reconsolidation_events=store.read_events(),
            links=store.read_links(),
        )
    snapshot.checksum = compute_checksum(snapshot)
    return snapshot


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


def export_json(snapshot: MemorySystemSnapshot) -> str:
    return json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2)


def _inline_json(payload: Any) -> str:
    """JSON safe to embed in a <script> element."""
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<style>
body {{ font-family: system-ui, sans-serif; margin: 0 auto; max-width: 860px; padding: 24px; color: #1d1d1f; }}
header .meta {{ color: #666; font-size: 13px; }}
.search-input {{ width: 100%; padding: 8px; font-size: 14px; box-sizing: border-box; margin: 12px 0; }}
.filter-row button {{ margin: 0 4px 8px 0; padding: 4px 10px; border: 1px solid #ccc; background: #fff; border-radius: 12px; cursor: pointer; }}
.filter-row button.active {{ background: #1d1d1f; color: #fff; }}
.memory-card {{ border: 1px solid #e3e3e3; border-radius: 8px; padding: 12px; margin-bottom: 10px; }}
.badge {{ font-size: 11px; padding: 2px 6px; border-radius: 6px; background: #eee; margin-right: 4px; }}
.memory-context {{ color: #555; font-size: 13px; margin-top: 6px; }}
.tag {{ font-size: 11px; color: #335; margin-right: 6px; }}
.memory-meta {{ color: #888; font-size: 12px; margin-top: 6px; }}
.empty-state {{ color: #888; padding: 24px; text-align: center; }}
#show-more {{ display: none; margin: 12px auto; padding: 6px 16px; }}
</style>
</head>
<body>
<header>
<h1>{title}</h1>
<div class="meta">{summary}</div>
<div class="meta">checksum: <code>{checksum}</code></div>
</header>
<input type="text" class="search-input" id="search-input" placeholder="Search memories..." autocomplete="off">
<div class="filter-row" id="type-row">
<button class="active" data-type="all">All</button><button data-type="episodic">Episodic</button><button data-type="semantic">Semantic</button><button data-type="procedural">Procedural</button>
</div>
<div class="filter-row" id="importance-row">
<button class="active" data-importance="all">Any importance</button><button data-importance="critical">Critical</button><button data-importance="high">High</button><button data-importance="normal">Normal</button><button data-importance="low">Low</button>
</div>
<div id="count"></div>
<div id="memory-list"></div>
<button id="show-more">Show more</button>
<script type="application/json" id="mnemos-data">{payload}</script>
<script>
(function() {{
  var data = JSON.parse(document.getElementById("mnemos-data").textContent);
  var PAGE_SIZE = {page_size};
  var records = data.records.slice().sort(function(a, b) {{
    if (a.created_at !== b.created_at) return b.created_at - a.created_at;
    return a.id < b.id ? 1 : (a.id > b.id ? -1 : 0);
  }});
  var state = {{ type: "all", importance: "all", search: "", visible: PAGE_SIZE }};

  function esc(s) {{
    return String(s == null ? "" : s).replace(/&/g, "&amp;").replace(/</g, "&lt;")
      .replace(/>/g, "&gt;").replace(/"/g, "&quot;");
  }}

  function matches(r) {{
    if (state.type !== "all" && r.type !== state.type) return false;
    if (state.importance !== "all" && r.importance !== state.importance) return false;
    if (state.search) {{
      var q = state.search.toLowerCase();
      var content = (r.content || "").toLowerCase();
      var context = (r.context || "").toLowerCase();
      var tags = (r.tags || []).join(" ").toLowerCase();
      if (content.indexOf(q) === -1 && context.indexOf(q) === -1 && tags.indexOf(q) === -1) return false;
    }}
    return true;
  }}

  function render() {{
    var list = document.getElementById("memory-list");
    var more = document.getElementById("show-more");
    var matched = records.filter(matches);
    var visible = matched.slice(0, state.visible);
    document.getElementById("count").textContent = matched.length + " matching";
    if (matched.length === 0) {{
      list.innerHTML = '<div class="empty-state">No memories match your search.</div>';
      more.style.display = "none";
      return;
    }}
    var out = "";
    for (var i = 0; i < visible.length; i++) {{
      var r = visible[i];
      out += '<div class="memory-card"><span class="badge">' + esc(r.type) + '</span>';
      out += '<span class="badge">' + esc(r.importance) + '</span>';
      out += '<div>' + esc(r.content) + '</div>';
      if (r.context) out += '<div class="memory-context">' + esc(r.context) + '</div>';
      for (var j = 0; j < (r.tags || []).length; j++) out += '<span class="tag">#' + esc(r.tags[j]) + '</span>';
      out += '<div class="memory-meta">' + esc(new Date(r.created_at).toISOString().slice(0, 10));
      out += ' &middot; accessed ' + (r.access_count || 0) + 'x</div></div>';
    }}
    list.innerHTML = out;
    more.style.display = matched.length > visible.length ? "inline-block" : "none";
  }}

  function bindRow(rowId, attr, key) {{
    var buttons = document.querySelectorAll("#" + rowId + " button");
    for (var i = 0; i < buttons.length; i++) {{
      buttons[i].addEventListener("click", function() {{
        for (var k = 0; k < buttons.length; k++) buttons[k].classList.remove("active");
        this.classList.add("active");
        state[key] = this.getAttribute(attr);
        state.visible = PAGE_SIZE;
        render();
      }});
    }}
  }}

  bindRow("type-row", "data-type", "type");
  bindRow("importance-row", "data-importance", "importance");
  var timer = null;
  document.getElementById("search-input").addEventListener("input", function() {{
    var value = this.value;
    clearTimeout(timer);
    timer = setTimeout(function() {{
      state.search = value;
      state.visible = PAGE_SIZE;
      render();
    }}, 150);
  }});
  document.getElementById("show-more").addEventListener("click", function() {{
    state.visible += PAGE_SIZE;
    render();
  }});
  render();
}})();
</script>
</body>
</html>
"""


def render_html(
    snapshot: MemorySystemSnapshot,
    *,
    title: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> str:
    """Self-contained offline document for *snapshot*.

    The inline payload holds the full snapshot plus the view records
    (archived memories excluded) that the script filters and pages.
    """
    records = project(snapshot.memories)
    by_type: Dict[str, int] = {}
    for r in records:
        by_type[r.type] = by_type.get(r.type, 0) + 1
    summary = ", ".join(f"{n} {t}" for t, n in sorted(by_type.items())) or "0 memories"
    payload = {
        "snapshot": snapshot.to_dict(),
        "records": [r.to_dict() for r in records],
    }
    return _HTML_TEMPLATE.format(
        title=html.escape(title or f"Memories of {snapshot.agent_id}"),
        summary=html.escape(summary),
        checksum=html.escape(snapshot.checksum),
        payload=_inline_json(payload),
        page_size=int(page_size),
    )


def export_to_file(
    store: MemoryStore,
    path: str,
    fmt: str = "json",
    *,
    agent_id: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    log: Callable[[str], None] = _default_log,
) -> MemorySystemSnapshot:
    """Write a snapshot to *path* and record it in the snapshot registry."""
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"unknown export format {fmt!r} (expected json or html)", "export-format")
    snapshot = build_snapshot(store, agent_id)
    text = export_json(snapshot) if fmt == "json" else render_html(snapshot, page_size=page_size)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    store.record_snapshot(
        generate("snap", at_ms=snapshot.exported_at), snapshot.exported_at,
        snapshot.checksum, len(snapshot.memories), fmt, path,
    )
    log(f"[export] {len(snapshot.memories)} memories -> {path} ({fmt})")
    return snapshot


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    memories_imported: int = 0
    memories_skipped: int = 0
    provenance_imported: int = 0
    provenance_skipped: int = 0
    events_imported: int = 0
    events_skipped: int = 0
    links_imported: int = 0
    links_skipped: int = 0
    self_schema_imported: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memories_imported": self.memories_imported,
            "memories_skipped": self.memories_skipped,
            "provenance_imported": self.provenance_imported,
            "provenance_skipped": self.provenance_skipped,
            "events_imported": self.events_imported,
            "events_skipped": self.events_skipped,
            "links_imported": self.links_imported,
            "links_skipped": self.links_skipped,
            "self_schema_imported": self.self_schema_imported,
            "dry_run": self.dry_run,
        }


def load_snapshot_dict(source: Union[str, IO[str], Dict[str, Any]]) -> Dict[str, Any]:
    """Read a snapshot document from a path, a stream or an already parsed dict."""
    if isinstance(source, dict):
        return source
    try:
        if isinstance(source, str):
            with open(source, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        else:
            data = json.load(source)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"snapshot is not valid JSON: {exc}", "snapshot-format") from exc
    if not isinstance(data, dict):
        raise ValidationError("snapshot must be a JSON object", "snapshot-format")
    return data


def verify_snapshot(data: Dict[str, Any]) -> str:
    """Recompute the checksum of a snapshot dict; IntegrityError on mismatch."""
    recorded = data.get("checksum")
    if not recorded:
        raise IntegrityError("snapshot has no checksum")
    computed = compute_checksum(data)
    if computed != recorded:
        raise IntegrityError(f"checksum mismatch: recorded {recorded}, computed {computed}")
    return computed


def import_snapshot(
    store: MemoryStore,
    source: Union[str, IO[str], Dict[str, Any]],
    *,
    dry_run: bool = False,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Restore a snapshot into *store*, skipping ids that already exist.

    Raises:
        IntegrityError: Checksum missing or not matching the contents.
        ValidationError: A record in the snapshot is malformed.
        StorageFailure: The store failed; nothing is imported.
    """
    data = load_snapshot_dict(source)
    verify_snapshot(data)
    snapshot = MemorySystemSnapshot.from_dict(data)
    for memory in snapshot.memories:
        validate(memory)

    result = ImportResult(dry_run=dry_run)
    if dry_run:
        existing = store.memory_ids()
        for memory in snapshot.memories:
            if memory.id in existing:
                result.memories_skipped += 1
            else:
                result.memories_imported += 1
        log(f"[import] (dry run) {result.memories_imported} memories would be imported")
        return result

    with store.transaction():
        for memory in snapshot.memories:
            if store.memory_exists(memory.id):
                result.memories_skipped += 1
                continue
            store.create_memory(memory)
            result.memories_imported += 1
        for entry in snapshot.provenance:
            if store.append_provenance(entry, ignore_existing=True):
                result.provenance_imported += 1
            else:
                result.provenance_skipped += 1
        for event in snapshot.reconsolidation_events:
            if store.insert_event_if_absent(event):
                result.events_imported += 1
            else:
                result.events_skipped += 1
        for link in snapshot.links:
            if store.write_link(link):
                result.links_imported += 1
            else:
                result.links_skipped += 1
        schema = snapshot.self_schema
        if schema is not None and store.get_self_schema(schema.agent_id) is None:
            validate_self_schema(schema, store.memory_ids())
            store.put_self_schema(schema)
            result.self_schema_imported = True

    log(
        f"[import] {result.memories_imported} memories imported, "
        f"{result.memories_skipped} skipped, "
        f"{result.provenance_imported} provenance entries, "
        f"{result.events_imported} events, {result.links_imported} links"
    )
    return result
