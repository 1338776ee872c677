"""
Provenance Log — Append-Only Memory History

Every change to a memory leaves one ProvenanceEntry. Entries are never
updated or deleted (the store enforces this with triggers); the log of a
memory, read in creation order, is the only answer to "why does this
belief exist".

trace_provenance() assembles that answer: the creation entry, the chain
of memories the belief was derived from, its modifications, accesses and
reconsolidation windows, and a one-paragraph summary.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from mnemos.errors import InvalidQuery, MemoryNotFound
from mnemos.ids import generate, now_ms
from mnemos.store import MemoryStore
from mnemos.types import (
    Memory,
    ProvenanceEntry,
    ProvenancePayload,
    ReconsolidationEvent,
    SemanticDetail,
)

logger = logging.getLogger(__name__)

# Events that count as a modification in a trace
_MODIFICATION_EVENTS = ("modified", "importance_changed", "reconsolidated",
                        "consolidated", "archived", "restored")


@dataclass
class BeliefProvenanceResult:
    """Answer to trace_provenance()."""
    memory: Memory
    creation: Optional[ProvenanceEntry]
    derivation_chain: List[str] = field(default_factory=list)
    truncated: bool = False
    modifications: List[ProvenanceEntry] = field(default_factory=list)
    accesses: List[ProvenanceEntry] = field(default_factory=list)
    reconsolidations: List[ReconsolidationEvent] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict:
        return {
            "memory": self.memory.to_dict(),
            "creation": self.creation.to_dict() if self.creation else None,
            "derivation_chain": list(self.derivation_chain),
            "truncated": self.truncated,
            "modifications": [e.to_dict() for e in self.modifications],
            "accesses": [e.to_dict() for e in self.accesses],
            "reconsolidations": [e.to_dict() for e in self.reconsolidations],
            "summary": self.summary,
        }


def _fmt_day(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _times(n: int) -> str:
    if n == 1:
        return "once"
    if n == 2:
        return "twice"
    return f"{n} times"


class ProvenanceLog:
    """Append-only history over a MemoryStore."""

    def __init__(
        self,
        store: MemoryStore,
        agent_version: Optional[str] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self.agent_version = agent_version
        self.session_id = session_id
        self._clock = clock

    # -- Writing -----------------------------------------------------------

    def append(self, entry: ProvenanceEntry) -> str:
        """Assign id and timestamp, then store the entry.

        The timestamp never precedes the memory's previous entry, so the
        per-memory order by created_at is the append order.

        Raises:
            StorageFailure: The entry could not be stored. Never swallowed.
        """
        with self._store.transaction():
            at = self._clock()
            last = self._store.last_provenance_at(entry.memory_id)
            if last is not None and at < last:
                logger.debug(f"provenance clock for {entry.memory_id} clamped {at} -> {last}")
                at = last
            entry.created_at = at
            entry.id = generate("prov", at_ms=at)
            if entry.agent_version is None:
                entry.agent_version = self.agent_version
            if entry.session_id is None:
                entry.session_id = self.session_id
            self._store.append_provenance(entry)
        logger.debug(f"provenance {entry.event_type} appended for {entry.memory_id}")
        return entry.id

    def record(self, memory_id: str, data: ProvenancePayload) -> ProvenanceEntry:
        """Build and append an entry for *memory_id*."""
        entry = ProvenanceEntry(memory_id=memory_id, data=data)
        self.append(entry)
        return entry

    # -- Reading -----------------------------------------------------------

    def history(
        self,
        memory_id: str,
        *,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ProvenanceEntry]:
        """Entries for one memory in creation order."""
        if offset < 0 or (limit is not None and limit < 0):
            raise InvalidQuery(f"limit/offset must be >= 0 (limit={limit}, offset={offset})")
        return self._store.read_provenance(
            memory_id, event_types=event_types, limit=limit, offset=offset,
        )

    def recent(self, limit: int = 20, memory_ids: Optional[Sequence[str]] = None) -> List[ProvenanceEntry]:
        """Latest entries across memories (optionally restricted), newest last."""
        if not limit:
            return []
        entries = self._store.read_provenance(
            limit=limit, memory_ids=memory_ids, newest_first=True,
        )
        entries.reverse()
        return entries

    def count(self, memory_id: Optional[str] = None) -> int:
        return self._store.count_provenance(memory_id)

    # -- Tracing -----------------------------------------------------------

    def _parents(self, memory: Memory) -> List[str]:
        """Memories *memory* was derived from (sources, then derives_from links)."""
        parents: List[str] = []
        if isinstance(memory.detail, SemanticDetail):
            parents.extend(memory.detail.source_memory_ids)
        for link in self._store.read_links(memory.id, "derives_from", outgoing_only=True):
            parents.append(link.dst_id)
        return list(dict.fromkeys(parents))

    def derivation_chain(self, memory: Memory, max_depth: int = 5):
        """Breadth-first walk over derivation parents.

        Returns:
            (ids in visit order excluding *memory*, truncated flag). The flag
            is set when unvisited parents remained beyond ``max_depth``.
        """
        chain: List[str] = []
        visited = {memory.id}
        truncated = False
        queue = deque([(memory, 0)])
        while queue:
            node, depth = queue.popleft()
            pending = [p for p in self._parents(node) if p not in visited]
            if not pending:
                continue
            if depth >= max_depth:
                truncated = True
                continue
            for pid in pending:
                visited.add(pid)
                chain.append(pid)
                parent = self._store.get_memory(pid)
                if parent is not None:
                    queue.append((parent, depth + 1))
        return chain, truncated

    def trace_provenance(
        self,
        memory_id: str,
        max_depth: int = 5,
        include_access_history: bool = False,
        include_reconsolidations: bool = True,
    ) -> BeliefProvenanceResult:
        """Explain why a belief exists and how it has evolved.

        Raises:
            MemoryNotFound: No memory (not even a tombstone) with this id.
            InvalidQuery: Negative max_depth.
        """
        if max_depth < 0:
            raise InvalidQuery(f"max_depth must be >= 0, got {max_depth}")
        memory = self._store.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFound(f"no memory with id {memory_id}")

        entries = self._store.read_provenance(memory_id)
        creation = next((e for e in entries if e.event_type == "created"), None)
        modifications = [e for e in entries if e.event_type in _MODIFICATION_EVENTS]
        accesses = [e for e in entries if e.event_type == "accessed"]
        n_accesses = len(accesses)
        chain, truncated = self.derivation_chain(memory, max_depth)
        reconsolidations = self._store.read_events(memory_id) if include_reconsolidations else []

        result = BeliefProvenanceResult(
            memory=memory,
            creation=creation,
            derivation_chain=chain,
            truncated=truncated,
            modifications=modifications,
            accesses=accesses if include_access_history else [],
            reconsolidations=reconsolidations,
        )
        result.summary = self._summarize(result, n_accesses)
        return result

    @staticmethod
    def _summarize(result: BeliefProvenanceResult, n_accesses: int) -> str:
        memory = result.memory
        parts: List[str] = []
        if result.creation is not None:
            source = getattr(result.creation.data, "source", "unknown").replace("_", " ")
            parts.append(
                f"This {memory.type} memory was created from {source} "
                f"on {_fmt_day(result.creation.created_at)}."
            )
        else:
            parts.append(f"This {memory.type} memory has no recorded creation.")
        if result.derivation_chain:
            more = " (chain truncated)" if result.truncated else ""
            parts.append(
                f"It derives from {len(result.derivation_chain)} other "
                f"memor{'y' if len(result.derivation_chain) == 1 else 'ies'}{more}."
            )
        n_recon = sum(1 for e in result.modifications if e.event_type == "reconsolidated")
        if n_accesses or n_recon:
            recon = f" and reconsolidated {_times(n_recon)}" if n_recon else ""
            parts.append(f"It has been accessed {_times(n_accesses) if n_accesses else '0 times'}{recon}.")
        last_change = next(
            (e for e in reversed(result.modifications) if e.event_type == "modified"), None,
        )
        if last_change is not None:
            fields = ", ".join(c.field for c in last_change.data.changes) or "nothing"
            reason = f": {last_change.data.reason}" if last_change.data.reason else ""
            parts.append(f"Most recently modified {fields}{reason}.")
        if memory.archived:
            parts.append("It is archived.")
        return " ".join(parts)
