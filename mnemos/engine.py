"""
Memory Engine — Facade

Wires the components over one store handle:

    create   -> validation, reference check, store, ``created`` entry
    query    -> RetrievalEngine (never an access)
    recall   -> ReconsolidationEngine.access (explicit_recall)
    update   -> ReconsolidationEngine.apply_update (open window required)
    link / archive / restore / consolidate -> store + provenance entry
    trace    -> ProvenanceLog.trace_provenance
    export / import -> export_import

Use as a context manager: timers are cancelled and the store closed on
exit, error paths included.
"""

from __future__ import annotations

import logging
from typing import IO, Any, Callable, Dict, List, Optional, Tuple, Union

from mnemos.config import EngineConfig
from mnemos.errors import MemoryNotFound, ValidationError
from mnemos.export_import import (
    ImportResult,
    MemorySystemSnapshot,
    build_snapshot,
    export_to_file,
    import_snapshot,
)
from mnemos.ids import now_ms
from mnemos.provenance import BeliefProvenanceResult, ProvenanceLog
from mnemos.reconsolidation import AccessOutcome, ReconsolidationEngine
from mnemos.retrieval import QueryCriteria, RetrievalEngine, ScoredMemory, estimate_tokens
from mnemos.selfschema import SelfSchemaManager
from mnemos.store import MemoryStore
from mnemos.types import (
    ArchivedData,
    ConsolidatedData,
    CreatedData,
    LinkedData,
    Memory,
    MemoryLink,
    ProvenanceEntry,
    ReconsolidationEvent,
    ReconsolidationUpdate,
    RestoredData,
    RetrievalContext,
    UnlinkedData,
    VALID_CREATION_SOURCES,
)
from mnemos.validation import check_references, validate

logger = logging.getLogger(__name__)


class MemoryEngine:
    """One agent's memory system over one store."""

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        config: Optional[EngineConfig] = None,
        *,
        agent_id: str = "default",
        session_id: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Build the engine.

        Args:
            store: An open store. When omitted, one is opened at
                ``config.store.db_path`` and owned (closed) by the engine.
            config: Engine configuration (defaults when omitted).
            agent_id: Owner of the self-schema.
            session_id: Stamped on every provenance entry.
            clock: Millisecond clock, injectable for tests.
        """
        self.config = config or EngineConfig()
        self._owns_store = store is None
        if store is None:
            sc = self.config.store
            store = MemoryStore(sc.db_path, wal_mode=sc.wal_mode, busy_timeout_ms=sc.busy_timeout_ms)
        self.store = store
        self.agent_id = agent_id
        self._clock = clock
        self.log = ProvenanceLog(store, self.config.agent_version, session_id, clock)
        self.reconsolidation = ReconsolidationEngine(
            store, self.log, self.config.reconsolidation, clock,
        )
        self.retrieval = RetrievalEngine(store, self.config.retrieval, clock)
        self.self_schema = SelfSchemaManager(store, self.log, agent_id, clock)

    @classmethod
    def open(cls, db_path: str, config: Optional[EngineConfig] = None, **kwargs: Any) -> MemoryEngine:
        """Engine over a store at *db_path* (created if missing)."""
        config = config or EngineConfig()
        config.store.db_path = db_path
        return cls(None, config, **kwargs)

    def close(self) -> None:
        self.reconsolidation.shutdown()
        if self._owns_store:
            self.store.close()

    def __enter__(self) -> MemoryEngine:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Creation and reads ------------------------------------------------

    def create(self, memory: Memory, source: str = "user_input") -> Memory:
        """Validate and store a new memory with its ``created`` entry.

        Raises:
            ValidationError / SchemaViolation: Malformed memory or dangling
                source/contradiction reference.
        """
        if source not in VALID_CREATION_SOURCES:
            raise ValidationError(f"unknown creation source {source!r}", "creation-source")
        validate(memory)
        check_references(memory, self.store.memory_exists)
        if memory.access_count or memory.last_accessed is not None or memory.archived:
            raise ValidationError(
                "a new memory starts unaccessed and not archived", "fresh-memory",
            )
        with self.store.transaction():
            self.store.create_memory(memory)
            self.log.record(memory.id, CreatedData(
                source=source,
                original_content=memory.content,
                initial_importance=memory.importance,
            ))
        logger.info(f"memory created: {memory.id} ({memory.type}, {memory.importance})")
        return memory.copy()

    def get(self, memory_id: str) -> Memory:
        """Read a memory without counting an access."""
        return self.store.require_memory(memory_id)

    def query(self, criteria: Optional[QueryCriteria] = None) -> List[Memory]:
        return self.retrieval.query(criteria)

    def query_scored(self, criteria: Optional[QueryCriteria] = None) -> List[ScoredMemory]:
        return self.retrieval.query_scored(criteria)

    def query_within_budget(
        self,
        criteria: Optional[QueryCriteria],
        budget: float,
        cost_fn: Callable[[Memory], float] = estimate_tokens,
    ) -> Tuple[List[ScoredMemory], float]:
        return self.retrieval.query_within_budget(criteria, budget, cost_fn)

    # -- Access and reconsolidation ----------------------------------------

    def recall(
        self, memory_id: str, context: Optional[RetrievalContext] = None,
    ) -> AccessOutcome:
        """Explicit recall: counts an access and may open a window."""
        return self.reconsolidation.access(memory_id, context or RetrievalContext("explicit_recall"))

    def search(
        self, criteria: QueryCriteria, context: Optional[RetrievalContext] = None,
    ) -> List[AccessOutcome]:
        """Query, then record a ``search`` access on every result."""
        context = context or RetrievalContext("search", query=criteria.text)
        return [self.reconsolidation.access(m.id, context) for m in self.retrieval.query(criteria)]

    def open_window(
        self, memory_id: str, context: Optional[RetrievalContext] = None,
    ) -> ReconsolidationEvent:
        return self.reconsolidation.open_window(memory_id, context)

    def update(
        self, memory_id: str, field: str, new_value: Any, reason: str = "",
    ) -> ReconsolidationUpdate:
        return self.reconsolidation.apply_update(memory_id, field, new_value, reason)

    def close_window(self, memory_id: str) -> ReconsolidationEvent:
        return self.reconsolidation.close_window(memory_id)

    # -- Links -------------------------------------------------------------

    def link(self, src_id: str, dst_id: str, link_type: str = "related_to") -> MemoryLink:
        """Link two memories; logs ``linked`` on both. Idempotent."""
        if src_id == dst_id:
            raise ValidationError("a memory cannot link to itself", "link-endpoints")
        link = MemoryLink(src_id=src_id, dst_id=dst_id, link_type=link_type, created_at=self._clock())
        for mid in (src_id, dst_id):
            if not self.store.memory_exists(mid):
                raise MemoryNotFound(f"no memory with id {mid}")
        with self.store.transaction():
            if self.store.write_link(link):
                self.log.record(src_id, LinkedData(other_memory_id=dst_id, link_type=link_type))
                self.log.record(dst_id, LinkedData(other_memory_id=src_id, link_type=link_type))
        return link

    def unlink(self, src_id: str, dst_id: str, link_type: str = "related_to") -> bool:
        with self.store.transaction():
            removed = self.store.delete_link(src_id, dst_id, link_type)
            if removed:
                self.log.record(src_id, UnlinkedData(other_memory_id=dst_id, link_type=link_type))
                self.log.record(dst_id, UnlinkedData(other_memory_id=src_id, link_type=link_type))
        return removed

    def links(self, memory_id: str) -> List[MemoryLink]:
        return self.store.read_links(memory_id)

    # -- Lifecycle ---------------------------------------------------------

    def _lifecycle(self, memory_id: str, patch: Dict[str, Any], data) -> Memory:
        with self.reconsolidation.locked(memory_id):
            memory = self.store.require_memory(memory_id)
            if all(getattr(memory, k) == v for k, v in patch.items()):
                return memory
            with self.store.transaction():
                memory = self.store.update_memory(memory_id, patch)
                self.log.record(memory_id, data)
        logger.info(f"memory {data.event_type}: {memory_id}")
        return memory

    def archive(self, memory_id: str, details: Optional[str] = None) -> Memory:
        """Tombstone a memory (reversible). No-op when already archived."""
        return self._lifecycle(memory_id, {"archived": True}, ArchivedData(details=details))

    def restore(self, memory_id: str, details: Optional[str] = None) -> Memory:
        return self._lifecycle(memory_id, {"archived": False}, RestoredData(details=details))

    def mark_consolidated(self, memory_id: str, details: Optional[str] = None) -> Memory:
        return self._lifecycle(
            memory_id, {"is_consolidated": True}, ConsolidatedData(details=details),
        )

    # -- Provenance --------------------------------------------------------

    def history(self, memory_id: str, **kwargs: Any) -> List[ProvenanceEntry]:
        if not self.store.memory_exists(memory_id):
            raise MemoryNotFound(f"no memory with id {memory_id}")
        return self.log.history(memory_id, **kwargs)

    def trace(self, memory_id: str, **kwargs: Any) -> BeliefProvenanceResult:
        return self.log.trace_provenance(memory_id, **kwargs)

    # -- Export / import ---------------------------------------------------

    def snapshot(self) -> MemorySystemSnapshot:
        return build_snapshot(self.store, self.agent_id, clock=self._clock)

    def export(self, path: str, fmt: str = "json", **kwargs: Any) -> MemorySystemSnapshot:
        kwargs.setdefault("page_size", self.config.view.page_size)
        return export_to_file(self.store, path, fmt, agent_id=self.agent_id, **kwargs)

    def import_snapshot(
        self, source: Union[str, IO[str], Dict[str, Any]], **kwargs: Any,
    ) -> ImportResult:
        result = import_snapshot(self.store, source, **kwargs)
        if result.events_imported:
            self.reconsolidation.recover()
        return result

    def stats(self) -> Dict[str, Any]:
        s = self.store.stats()
        s["labile_in_process"] = len(self.reconsolidation.open_windows())
        return s
