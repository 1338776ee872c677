"""
mnemos CLI — Memory Engine Commands

Commands:
    mnemos init    [PATH]                         — scaffold store + config + .gitignore
    mnemos add     TYPE "content" [--tags T ...]  — create a memory
    mnemos show    <id>                           — display one memory (not an access)
    mnemos query   ["text"] [--budget N ...]      — ranked retrieval → stdout
    mnemos recall  <id> [--trigger T]             — explicit recall (may open a window)
    mnemos update  <id> FIELD VALUE [--reason R]  — change a field of a labile memory
    mnemos close   <id>                           — close the open lability window
    mnemos history <id>                           — provenance log of one memory
    mnemos trace   <id> [--depth N]               — why does this belief exist
    mnemos link    <src> <dst> [--type T]         — typed link between memories
    mnemos archive <id> / restore <id>            — logical delete / undo
    mnemos export  -o FILE [--format json|html]   — checksummed snapshot
    mnemos import  FILE [--dry-run]               — verified restore
    mnemos stats                                  — store metrics

Environment variables:
    MNEMOS_DB       Path to SQLite database (default: .mnemos/memory.db)
    MNEMOS_BUDGET   Token budget for `query --budget` (default: 2000)
    MNEMOS_CONFIG   Path to config.json (default: config.json beside the DB)
    MNEMOS_SESSION  Optional session ID stamped on provenance entries
    MNEMOS_AGENT    Agent owning the self-schema (default: default)

Precedence (invariant):
    CLI --flag  >  MNEMOS_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, unknown id, engine rule violated)
    2  Internal failure (unexpected exception)

Every command is one process: a window opened by `recall` stays recorded
in the store, and the next command adopts it until it expires.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from mnemos.config import EngineConfig, load_config
from mnemos.engine import MemoryEngine
from mnemos.errors import MnemosError, ValidationError
from mnemos.retrieval import VALID_SORT_KEYS, QueryCriteria
from mnemos.types import (
    VALID_CREATION_SOURCES,
    VALID_IMPORTANCE,
    VALID_LINK_TYPES,
    VALID_MEMORY_TYPES,
    VALID_TRIGGERS,
    RetrievalContext,
    episodic,
    procedural,
    semantic,
)

logger = logging.getLogger(__name__)

DEFAULT_DB = ".mnemos/memory.db"
DEFAULT_BUDGET = 2000


# ---------------------------------------------------------------------------
# Env parsing (bad values fall back to defaults)
# ---------------------------------------------------------------------------


def _env_int(name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > MNEMOS_DB > .mnemos/memory.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("MNEMOS_DB", DEFAULT_DB)


def _resolve_budget(args: Optional[argparse.Namespace] = None) -> int:
    """Resolve token budget: CLI --budget > MNEMOS_BUDGET > 2000."""
    if args and getattr(args, "budget", None) is not None:
        return args.budget
    return _env_int("MNEMOS_BUDGET", DEFAULT_BUDGET)


def _resolve_config(db_path: str, args: Optional[argparse.Namespace] = None) -> EngineConfig:
    """Resolve config: CLI --config > MNEMOS_CONFIG > config.json beside the DB."""
    path = getattr(args, "config", None) if args else None
    path = path or _env_str("MNEMOS_CONFIG", "")
    if not path:
        candidate = Path(db_path).parent / "config.json"
        path = str(candidate) if candidate.exists() else ""
    return load_config(path or None, strict=True)


def _open_engine(args: argparse.Namespace) -> MemoryEngine:
    """Open the engine over the resolved database. Creates it if needed."""
    db_path = _resolve_db(args)
    config = _resolve_config(db_path, args)
    return MemoryEngine.open(
        db_path,
        config,
        agent_id=_env_str("MNEMOS_AGENT", "default"),
        session_id=_env_str("MNEMOS_SESSION", "") or None,
    )


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _fmt_ts(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _split(value: Optional[str]) -> List[str]:
    """Comma-separated list → stripped non-empty items."""
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_value(raw: str) -> Any:
    """Field value from the command line: JSON when it parses, else text."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_steps(raw: str) -> List[Any]:
    """Procedure steps: a JSON list, or descriptions separated by ';'."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = [s.strip() for s in raw.split(";") if s.strip()]
    if not isinstance(data, list):
        raise ValidationError("--steps must be a JSON list or ';'-separated text", "cli-args")
    return [
        {"order": i, "description": s} if isinstance(s, str) else s
        for i, s in enumerate(data, start=1)
    ]


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize a new memory workspace directory."""
    target = Path(args.path).resolve()
    db_path = target / "memory.db"

    if db_path.exists() and not args.force:
        # Idempotent: print paths, exit 0 (not error)
        _info(f"Workspace exists: {target}")
        _info(f"  Database:  {db_path}")
        print(f'export MNEMOS_DB="{db_path}"')
        return

    if args.force and db_path.exists():
        db_path.unlink()
        for suffix in ("-wal", "-shm"):
            p = db_path.parent / (db_path.name + suffix)
            if p.exists():
                p.unlink()

    target.mkdir(parents=True, exist_ok=True)

    config = EngineConfig()
    config.store.db_path = str(db_path)
    engine = MemoryEngine(None, config, agent_id=_env_str("MNEMOS_AGENT", "default"))
    try:
        if engine.self_schema.get() is None:
            engine.self_schema.initialize()
    finally:
        engine.close()

    config_path = target / "config.json"
    if not config_path.exists():
        defaults = dataclasses.asdict(EngineConfig())
        defaults.pop("store")  # the database path comes from --db / MNEMOS_DB
        config_path.write_text(
            json.dumps(defaults, indent=2) + "\n", encoding="utf-8"
        )

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text(
            "*.db\n*.db-wal\n*.db-shm\n", encoding="utf-8"
        )

    _info(f"Memory workspace initialized: {target}")
    _info(f"  Database:  {db_path}")
    _info(f"  Config:    {config_path}")
    _info(f"  .gitignore: {gitignore_path}")
    print(f'export MNEMOS_DB="{db_path}"')


# ===========================================================================
# Command: add
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Create one memory from flags."""
    shared = {
        "importance": args.importance,
        "tags": _split(args.tags),
        "context": args.context,
    }
    if args.type == "episodic":
        if not args.event_type:
            raise ValidationError("episodic memories need --event-type", "cli-args")
        memory = episodic(
            args.content, args.event_type, args.event_time,
            participants=_split(args.participants), location=args.location,
            emotional_valence=args.valence, **shared,
        )
    elif args.type == "semantic":
        if not args.domain:
            raise ValidationError("semantic memories need --domain", "cli-args")
        memory = semantic(
            args.content, args.domain, args.confidence,
            source_memory_ids=_split(args.sources), **shared,
        )
    else:
        if not args.skill or not args.steps:
            raise ValidationError("procedural memories need --skill and --steps", "cli-args")
        memory = procedural(args.content, args.skill, _parse_steps(args.steps), **shared)

    with _open_engine(args) as engine:
        created = engine.create(memory, source=args.source)

    if getattr(args, "json", False):
        _print_json(created.to_dict())
    else:
        print(created.id)
    _info(f"[add] {created.type} memory {created.id} ({created.importance})")


# ===========================================================================
# Command: show  (display single memory, not an access)
# ===========================================================================


def cmd_show(args: argparse.Namespace) -> None:
    """Show a memory by ID."""
    with _open_engine(args) as engine:
        memory = engine.get(args.id)
        labile = engine.reconsolidation.is_labile(memory.id)

    if getattr(args, "json", False):
        d = memory.to_dict()
        d["labile"] = labile
        _print_json(d)
        return

    print(f"ID:          {memory.id}")
    print(f"Type:        {memory.type}")
    print(f"Importance:  {memory.importance}")
    if memory.confidence is not None:
        print(f"Confidence:  {memory.confidence:.2f}")
    print(f"Tags:        {', '.join(memory.tags) if memory.tags else '(none)'}")
    print(f"Created:     {_fmt_ts(memory.created_at)}")
    print(f"Accessed:    {memory.access_count} (last {_fmt_ts(memory.last_accessed)})")
    print(f"State:       {'archived' if memory.archived else 'labile' if labile else 'stable'}")
    if memory.context:
        print(f"Context:     {memory.context}")
    detail = dataclasses.asdict(memory.detail)
    for key, value in detail.items():
        if value in (None, [], {}):
            continue
        print(f"{key + ':':13s}{json.dumps(value, ensure_ascii=False)}")
    print(f"\n--- Content ---\n{memory.content}")


# ===========================================================================
# Command: query
# ===========================================================================


def _criteria(args: argparse.Namespace) -> QueryCriteria:
    return QueryCriteria(
        text=args.text,
        types=_split(args.type) or None,
        importance=_split(args.importance) or None,
        tags=_split(args.tags) or None,
        min_confidence=args.min_confidence,
        include_archived=args.include_archived,
        limit=args.limit,
        sort_by=args.sort,
    )


def cmd_query(args: argparse.Namespace) -> None:
    """Ranked retrieval. Never counts as an access."""
    criteria = _criteria(args)
    use_budget = args.budget is not None or "MNEMOS_BUDGET" in os.environ
    with _open_engine(args) as engine:
        if criteria.limit is None and not use_budget:
            criteria.limit = engine.config.retrieval.default_limit
        if use_budget:
            budget = _resolve_budget(args)
            results, used = engine.query_within_budget(criteria, budget)
            _info(f"[query] {len(results)} memories, {used}/{budget} tokens")
        else:
            results = engine.query_scored(criteria)
            _info(f"[query] {len(results)} memories")

    if getattr(args, "json", False):
        _print_json([r.to_dict() for r in results])
        return
    if not results:
        _info("No matching memories.")
        return
    for r in results:
        m = r.memory
        snippet = m.content.replace("\n", " ")
        if len(snippet) > 80:
            snippet = snippet[:77] + "..."
        print(f"{m.id}  {r.score:6.3f}  {m.type:10s}  {m.importance:8s}  {snippet}")


# ===========================================================================
# Command: recall / update / close  (reconsolidation)
# ===========================================================================


def cmd_recall(args: argparse.Namespace) -> None:
    """Explicit recall: counts an access and may open a lability window."""
    context = RetrievalContext(
        trigger=args.trigger, query=args.query, task_context=args.task,
    )
    with _open_engine(args) as engine:
        outcome = engine.recall(args.id, context)

    if getattr(args, "json", False):
        _print_json({
            "memory": outcome.memory.to_dict(),
            "triggered_reconsolidation": outcome.triggered_reconsolidation,
            "event": outcome.event.to_dict() if outcome.event else None,
            "skipped_reason": outcome.skipped_reason,
        })
        return
    print(outcome.memory.content)
    if outcome.event is not None:
        _info(f"[recall] lability window opened ({outcome.event.id})")
    else:
        _info(f"[recall] no window: {outcome.skipped_reason}")


def cmd_update(args: argparse.Namespace) -> None:
    """Change one field inside an open window (--open forces one)."""
    value = _parse_value(args.value)
    with _open_engine(args) as engine:
        if args.open and not engine.reconsolidation.is_labile(args.id):
            event = engine.open_window(args.id)
            _info(f"[update] lability window opened ({event.id})")
        update = engine.update(args.id, args.field, value, args.reason or "")
        if args.close:
            closed = engine.close_window(args.id)
            _info(f"[update] window closed: {closed.final_state}")

    if getattr(args, "json", False):
        _print_json(update.to_dict())
    else:
        _info(
            f"[update] {args.id}.{update.field}: "
            f"{json.dumps(update.previous_value)} -> {json.dumps(update.new_value)}"
        )


def cmd_close(args: argparse.Namespace) -> None:
    """Close the open lability window of a memory."""
    with _open_engine(args) as engine:
        event = engine.close_window(args.id)

    if getattr(args, "json", False):
        _print_json(event.to_dict())
    else:
        print(event.final_state)
        _info(f"[close] {event.id}: {len(event.updates_applied)} update(s)")


# ===========================================================================
# Command: history / trace
# ===========================================================================


def cmd_history(args: argparse.Namespace) -> None:
    """Provenance entries of one memory, oldest first."""
    with _open_engine(args) as engine:
        entries = engine.history(
            args.id, event_types=_split(args.events) or None, limit=args.limit,
        )

    if getattr(args, "json", False):
        _print_json([e.to_dict() for e in entries])
        return
    for e in entries:
        data = json.dumps(e.to_dict()["event_data"], ensure_ascii=False)
        print(f"{_fmt_ts(e.created_at)}  {e.event_type:18s}  {data}")


def cmd_trace(args: argparse.Namespace) -> None:
    """Explain why a belief exists."""
    with _open_engine(args) as engine:
        result = engine.trace(
            args.id,
            max_depth=args.depth,
            include_access_history=args.accesses,
        )

    if getattr(args, "json", False):
        _print_json(result.to_dict())
        return
    print(result.summary)
    if result.derivation_chain:
        more = " (truncated)" if result.truncated else ""
        print(f"Derived from: {', '.join(result.derivation_chain)}{more}")
    for e in result.modifications:
        print(f"  {_fmt_ts(e.created_at)}  {e.event_type}")
    for ev in result.reconsolidations:
        end = _fmt_ts(ev.lability_window_end) if ev.lability_window_end else "open"
        print(f"  window {ev.id}: {_fmt_ts(ev.lability_window_start)} -> {end}  {ev.final_state}")


# ===========================================================================
# Command: link / archive / restore
# ===========================================================================


def cmd_link(args: argparse.Namespace) -> None:
    """Create a typed link between two memories."""
    with _open_engine(args) as engine:
        link = engine.link(args.src, args.dst, args.type)
    if getattr(args, "json", False):
        _print_json(link.to_dict())
    else:
        _info(f"[link] {link.src_id} --{link.link_type}--> {link.dst_id}")


def cmd_archive(args: argparse.Namespace) -> None:
    """Archive (logically delete) a memory."""
    with _open_engine(args) as engine:
        memory = engine.archive(args.id, args.details)
    _info(f"[archive] {memory.id} archived")


def cmd_restore(args: argparse.Namespace) -> None:
    """Restore an archived memory."""
    with _open_engine(args) as engine:
        memory = engine.restore(args.id, args.details)
    _info(f"[restore] {memory.id} restored")


# ===========================================================================
# Command: export / import
# ===========================================================================


def cmd_export(args: argparse.Namespace) -> None:
    """Write a checksummed snapshot (JSON or offline HTML)."""
    with _open_engine(args) as engine:
        snapshot = engine.export(args.output, args.format, log=_info)
    if getattr(args, "json", False):
        _print_json({
            "path": args.output,
            "format": args.format,
            "memories": len(snapshot.memories),
            "checksum": snapshot.checksum,
        })
    else:
        print(snapshot.checksum)


def cmd_import(args: argparse.Namespace) -> None:
    """Verify and restore a snapshot (existing ids are skipped)."""
    with _open_engine(args) as engine:
        result = engine.import_snapshot(args.file, dry_run=args.dry_run, log=_info)
    if getattr(args, "json", False):
        _print_json(result.to_dict())


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory store statistics."""
    with _open_engine(args) as engine:
        stats = engine.stats()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
        return
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Memories (active):   {stats['active_memories']}")
    print(f"  Memories (archived): {stats['archived_memories']}")
    print("  By type:")
    for typ, count in sorted(stats.get("by_type", {}).items()):
        print(f"    {typ:12s}: {count}")
    print("  By importance:")
    for imp, count in sorted(stats.get("by_importance", {}).items()):
        print(f"    {imp:12s}: {count}")
    print(f"  Provenance entries:  {stats['provenance_count']}")
    print(f"  Reconsolidations:    {stats['reconsolidation_events']}")
    print(f"  Open windows:        {stats['open_windows']}")
    print(f"  Links:               {stats['links_count']}")
    print(f"  Snapshots:           {stats['snapshots_count']}")


# ===========================================================================
# Main
# ===========================================================================


def main() -> None:
    """CLI entry point: mnemos <command> [args]."""
    global _quiet

    # Shared parent with flags that work on all subcommands.
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _db_default = _env_str("MNEMOS_DB", DEFAULT_DB)
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to config.json (default: MNEMOS_CONFIG or beside the DB)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="mnemos",
        description="mnemos — agent memory with provenance and reconsolidation",
        parents=[_common],
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Initialize a memory workspace")
    p_init.add_argument(
        "path", nargs="?", default=".mnemos",
        help="Workspace directory (default: .mnemos)",
    )
    p_init.add_argument("--force", action="store_true", help="Reinitialize existing workspace")
    p_init.set_defaults(func=cmd_init)

    # -- add ---------------------------------------------------------------
    p_add = sub.add_parser("add", parents=[_common], help="Create a memory")
    p_add.add_argument("type", choices=VALID_MEMORY_TYPES, help="Memory type")
    p_add.add_argument("content", help="Memory content")
    p_add.add_argument("--importance", default="normal", choices=VALID_IMPORTANCE)
    p_add.add_argument("--tags", default=None, help="Comma-separated tags")
    p_add.add_argument("--context", default=None, help="Situational context")
    p_add.add_argument(
        "--source", default="user_input", choices=VALID_CREATION_SOURCES,
        help="Creation source recorded in provenance (default: user_input)",
    )
    p_add.add_argument("--event-type", default=None, help="[episodic] kind of event")
    p_add.add_argument("--event-time", type=int, default=None, help="[episodic] event time (ms)")
    p_add.add_argument("--participants", default=None, help="[episodic] comma-separated")
    p_add.add_argument("--location", default=None, help="[episodic] where it happened")
    p_add.add_argument("--valence", type=float, default=None, help="[episodic] emotional valence in [-1, 1]")
    p_add.add_argument("--domain", default=None, help="[semantic] knowledge domain")
    p_add.add_argument("--confidence", type=float, default=1.0, help="[semantic] confidence in [0, 1]")
    p_add.add_argument("--sources", default=None, help="[semantic] comma-separated source memory ids")
    p_add.add_argument("--skill", default=None, help="[procedural] skill name")
    p_add.add_argument("--steps", default=None, help="[procedural] JSON list or 'a; b; c'")
    p_add.set_defaults(func=cmd_add)

    # -- show --------------------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show memory details (not an access)")
    p_show.add_argument("id", help="Memory ID")
    p_show.set_defaults(func=cmd_show)

    # -- query -------------------------------------------------------------
    p_query = sub.add_parser("query", parents=[_common], help="Ranked retrieval (not an access)")
    p_query.add_argument("text", nargs="?", default=None, help="Text to match")
    p_query.add_argument("--type", default=None, help="Comma-separated memory types")
    p_query.add_argument("--importance", default=None, help="Comma-separated importance levels")
    p_query.add_argument("--tags", default=None, help="Comma-separated tags (any match)")
    p_query.add_argument("--min-confidence", type=float, default=None)
    p_query.add_argument("--include-archived", action="store_true")
    p_query.add_argument("--sort", default="relevance", choices=VALID_SORT_KEYS)
    p_query.add_argument("-k", "--limit", type=int, default=None, help="Max results")
    p_query.add_argument(
        "--budget", type=int, default=None,
        help=f"Token budget (default: MNEMOS_BUDGET or {DEFAULT_BUDGET} when set)",
    )
    p_query.set_defaults(func=cmd_query)

    # -- recall ------------------------------------------------------------
    p_recall = sub.add_parser("recall", parents=[_common], help="Recall a memory (may open a window)")
    p_recall.add_argument("id", help="Memory ID")
    p_recall.add_argument("--trigger", default="explicit_recall", choices=VALID_TRIGGERS)
    p_recall.add_argument("--query", default=None, help="Query that led to the recall")
    p_recall.add_argument("--task", default=None, help="Task context")
    p_recall.set_defaults(func=cmd_recall)

    # -- update ------------------------------------------------------------
    p_update = sub.add_parser("update", parents=[_common], help="Update a field of a labile memory")
    p_update.add_argument("id", help="Memory ID")
    p_update.add_argument("field", help="Field name (shared or type-specific)")
    p_update.add_argument("value", help="New value (JSON, or plain text)")
    p_update.add_argument("--reason", default=None, help="Why the memory changes")
    p_update.add_argument("--open", action="store_true", help="Open a window first if none is open")
    p_update.add_argument("--close", action="store_true", help="Close the window after the update")
    p_update.set_defaults(func=cmd_update)

    # -- close -------------------------------------------------------------
    p_close = sub.add_parser("close", parents=[_common], help="Close the lability window")
    p_close.add_argument("id", help="Memory ID")
    p_close.set_defaults(func=cmd_close)

    # -- history -----------------------------------------------------------
    p_hist = sub.add_parser("history", parents=[_common], help="Provenance log of a memory")
    p_hist.add_argument("id", help="Memory ID")
    p_hist.add_argument("--events", default=None, help="Comma-separated event types")
    p_hist.add_argument("--limit", type=int, default=None)
    p_hist.set_defaults(func=cmd_history)

    # -- trace -------------------------------------------------------------
    p_trace = sub.add_parser("trace", parents=[_common], help="Trace the provenance of a belief")
    p_trace.add_argument("id", help="Memory ID")
    p_trace.add_argument("--depth", type=int, default=5, help="Max derivation depth (default: 5)")
    p_trace.add_argument("--accesses", action="store_true", help="Include access history")
    p_trace.set_defaults(func=cmd_trace)

    # -- link --------------------------------------------------------------
    p_link = sub.add_parser("link", parents=[_common], help="Link two memories")
    p_link.add_argument("src", help="Source memory ID")
    p_link.add_argument("dst", help="Target memory ID")
    p_link.add_argument("--type", default="related_to", choices=VALID_LINK_TYPES)
    p_link.set_defaults(func=cmd_link)

    # -- archive / restore -------------------------------------------------
    p_arch = sub.add_parser("archive", parents=[_common], help="Archive a memory")
    p_arch.add_argument("id", help="Memory ID")
    p_arch.add_argument("--details", default=None)
    p_arch.set_defaults(func=cmd_archive)

    p_rest = sub.add_parser("restore", parents=[_common], help="Restore an archived memory")
    p_rest.add_argument("id", help="Memory ID")
    p_rest.add_argument("--details", default=None)
    p_rest.set_defaults(func=cmd_restore)

    # -- export ------------------------------------------------------------
    p_exp = sub.add_parser("export", parents=[_common], help="Export a checksummed snapshot")
    p_exp.add_argument("-o", "--output", required=True, help="Output file")
    p_exp.add_argument("--format", default="json", choices=("json", "html"))
    p_exp.set_defaults(func=cmd_export)

    # -- import ------------------------------------------------------------
    p_imp = sub.add_parser("import", parents=[_common], help="Import a snapshot")
    p_imp.add_argument("file", help="Snapshot JSON file")
    p_imp.add_argument("--dry-run", action="store_true", help="Count without writing")
    p_imp.set_defaults(func=cmd_import)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except MnemosError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. mnemos query | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
