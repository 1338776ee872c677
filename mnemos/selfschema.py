"""
Self-Schema Manager

Owns the single SelfSchema of an agent. Every change goes through
update(): the mutator works on a deep copy, the result is validated
(bounds, evidence, reference resolution against the store) and only then
persisted with a bumped version. A rejected update leaves the stored
schema untouched.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mnemos.errors import SchemaNotInitialized, ValidationError
from mnemos.ids import now_ms
from mnemos.provenance import ProvenanceLog
from mnemos.schema import (
    AgentState,
    Capability,
    FutureAnticipation,
    IdentityStatement,
    Limitation,
    Milestone,
    NarrativeChapter,
    NarrativeRevision,
    NarrativeTheme,
    PhaseDescription,
    Relationship,
    SelfSchema,
    TimeSpan,
    TrajectoryPattern,
    Value,
)
from mnemos.store import MemoryStore
from mnemos.types import Memory, ProvenanceEntry
from mnemos.validation import validate_self_schema

logger = logging.getLogger(__name__)

Mutator = Callable[[SelfSchema], Optional[SelfSchema]]


@dataclass
class HydratedSelfSchema:
    """A self-schema with every cited memory resolved."""
    schema: SelfSchema
    linked_memories: Dict[str, Memory] = field(default_factory=dict)
    recent_provenance: List[ProvenanceEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema.to_dict(),
            "linked_memories": {k: m.to_dict() for k, m in self.linked_memories.items()},
            "recent_provenance": [e.to_dict() for e in self.recent_provenance],
        }


class SelfSchemaManager:
    """Validated read-modify-write access to one agent's self-schema."""

    def __init__(
        self,
        store: MemoryStore,
        log: Optional[ProvenanceLog] = None,
        agent_id: str = "default",
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._log = log or ProvenanceLog(store)
        self.agent_id = agent_id
        self._clock = clock
        self._lock = threading.Lock()

    # -- Core --------------------------------------------------------------

    def get(self) -> Optional[SelfSchema]:
        return self._store.get_self_schema(self.agent_id)

    def require(self) -> SelfSchema:
        schema = self.get()
        if schema is None:
            raise SchemaNotInitialized(f"no self-schema for agent {self.agent_id}")
        return schema

    def initialize(self, core_summary: str = "", phase: Optional[str] = None) -> SelfSchema:
        """Create and store an empty schema for this agent.

        Raises:
            ValidationError: A schema already exists.
        """
        with self._lock:
            if self.get() is not None:
                raise ValidationError(
                    f"self-schema for {self.agent_id} already exists", "single-self-schema",
                )
            at = self._clock()
            schema = SelfSchema(agent_id=self.agent_id, created_at=at, updated_at=at)
            schema.autobiographical_narrative.core_summary = core_summary
            schema.autobiographical_narrative.last_synthesized_at = at
            if phase:
                schema.temporal_trajectory.present_phase = PhaseDescription(name=phase, started_at=at)
            validate_self_schema(schema)
            self._store.put_self_schema(schema)
        logger.info(f"self-schema initialized for {self.agent_id}")
        return schema.copy()

    def update(self, mutator: Mutator, reason: Optional[str] = None) -> SelfSchema:
        """Apply *mutator* to a copy, validate, bump version and persist.

        The mutator may modify its argument in place or return a new schema.

        Raises:
            SchemaNotInitialized: initialize() was never called.
            MissingEvidence: A claim cites no memory.
            ValidationError: Bounds or dangling references.
        """
        with self._lock:
            current = self.require()
            draft = current.copy()
            result = mutator(draft)
            if result is None:
                result = draft
            if result.agent_id != current.agent_id or result.id != current.id:
                raise ValidationError("self-schema identity cannot change", "immutable-field")
            validate_self_schema(result, self._store.memory_ids(include_archived=True))
            result.created_at = current.created_at
            result.version = current.version + 1
            result.updated_at = max(self._clock(), current.updated_at)
            self._store.put_self_schema(result)
        logger.info(
            f"self-schema updated: {self.agent_id} v{result.version}"
            f"{' (' + reason + ')' if reason else ''}"
        )
        return result.copy()

    # -- Present self ------------------------------------------------------

    def add_identity(
        self, statement: str, source_memory_ids: List[str],
        centrality: float = 0.5, confidence: float = 0.5,
    ) -> IdentityStatement:
        item = IdentityStatement(
            statement=statement, source_memory_ids=list(source_memory_ids),
            centrality=centrality, confidence=confidence, established_at=self._clock(),
        )
        self.update(lambda s: s.present_self.core_identity.append(item), "add identity")
        return item

    def reinforce_identity(self, statement_id: str, confidence: Optional[float] = None) -> SelfSchema:
        def mutate(s: SelfSchema) -> None:
            for ident in s.present_self.core_identity:
                if ident.id == statement_id:
                    ident.last_reinforced_at = self._clock()
                    if confidence is not None:
                        ident.confidence = confidence
                    return
            raise ValidationError(f"no identity statement {statement_id}", "reference-resolves")
        return self.update(mutate, "reinforce identity")

    def add_capability(
        self, name: str, evidence_memory_ids: List[str], **kwargs: Any,
    ) -> Capability:
        item = Capability(
            name=name, evidence_memory_ids=list(evidence_memory_ids),
            recognized_at=self._clock(), **kwargs,
        )
        self.update(lambda s: s.present_self.capabilities.append(item), "add capability")
        return item

    def add_relationship(
        self, entity_id: str, nature: str, key_memory_ids: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> Relationship:
        item = Relationship(
            entity_id=entity_id, nature=nature, key_memory_ids=list(key_memory_ids or []),
            established_at=self._clock(), **kwargs,
        )
        self.update(lambda s: s.present_self.relationships.append(item), "add relationship")
        return item

    def add_value(
        self, statement: str, importance: int = 5, examples: Optional[List[str]] = None,
    ) -> Value:
        item = Value(statement=statement, importance=importance,
                     examples=list(examples or []), established_at=self._clock())
        self.update(lambda s: s.present_self.values.append(item), "add value")
        return item

    def add_limitation(
        self, description: str, type: str = "capability",
        discovery_context: Optional[str] = None,
    ) -> Limitation:
        item = Limitation(description=description, type=type,
                          discovery_context=discovery_context, discovered_at=self._clock())
        self.update(lambda s: s.present_self.limitations.append(item), "add limitation")
        return item

    def set_state(self, **fields: Any) -> SelfSchema:
        """Replace fields of the current agent state (mood, energy_level, ...)."""
        def mutate(s: SelfSchema) -> None:
            state = s.present_self.current_state
            for key, value in fields.items():
                if not hasattr(state, key) or key == "updated_at":
                    raise ValidationError(f"agent state has no field {key!r}", "known-field")
                setattr(state, key, value)
            state.updated_at = self._clock()
        return self.update(mutate, "set state")

    # -- Trajectory --------------------------------------------------------

    def add_milestone(
        self, title: str, related_memory_ids: List[str], **kwargs: Any,
    ) -> Milestone:
        item = Milestone(title=title, related_memory_ids=list(related_memory_ids), **kwargs)
        self.update(lambda s: s.temporal_trajectory.past_milestones.append(item), "add milestone")
        return item

    def set_phase(
        self, name: str, description: str = "",
        themes: Optional[List[str]] = None, active_goals: Optional[List[str]] = None,
    ) -> SelfSchema:
        phase = PhaseDescription(
            name=name, description=description, started_at=self._clock(),
            themes=list(themes or []), active_goals=list(active_goals or []),
        )

        def mutate(s: SelfSchema) -> None:
            s.temporal_trajectory.present_phase = phase
        return self.update(mutate, f"enter phase {name}")

    def add_anticipation(self, description: str, **kwargs: Any) -> FutureAnticipation:
        item = FutureAnticipation(description=description, **kwargs)
        self.update(lambda s: s.temporal_trajectory.anticipated_future.append(item), "add anticipation")
        return item

    def add_pattern(self, name: str, **kwargs: Any) -> TrajectoryPattern:
        item = TrajectoryPattern(name=name, **kwargs)
        self.update(lambda s: s.temporal_trajectory.patterns.append(item), "add pattern")
        return item

    # -- Narrative ---------------------------------------------------------

    def add_chapter(
        self, title: str, narrative: str, source_memory_ids: List[str],
        start: Optional[int] = None, end: Optional[int] = None,
        emotional_arc: Optional[str] = None,
    ) -> NarrativeChapter:
        item = NarrativeChapter(
            title=title, narrative=narrative,
            time_span=TimeSpan(start=self._clock() if start is None else start, end=end),
            source_memory_ids=list(source_memory_ids), emotional_arc=emotional_arc,
        )
        self.update(lambda s: s.autobiographical_narrative.chapters.append(item), "add chapter")
        return item

    def add_theme(
        self, name: str, manifestation: str = "",
        chapter_ids: Optional[List[str]] = None, centrality: int = 5,
    ) -> NarrativeTheme:
        item = NarrativeTheme(name=name, manifestation=manifestation,
                              chapter_ids=list(chapter_ids or []), centrality=centrality)
        self.update(lambda s: s.autobiographical_narrative.themes.append(item), "add theme")
        return item

    def revise_narrative(
        self, core_summary: str, reason: str,
        trigger_memory_ids: Optional[List[str]] = None,
    ) -> SelfSchema:
        """Rewrite the core summary, recording the revision and its triggers."""
        def mutate(s: SelfSchema) -> None:
            narrative = s.autobiographical_narrative
            at = self._clock()
            narrative.narrative_evolution.append(NarrativeRevision(
                changes=f"core summary: {narrative.core_summary!r} -> {core_summary!r}",
                reason=reason,
                trigger_memory_ids=list(trigger_memory_ids or []),
                revised_at=at,
            ))
            narrative.core_summary = core_summary
            narrative.last_synthesized_at = at
        return self.update(mutate, reason)

    # -- Hydration ---------------------------------------------------------

    def hydrate(self, recent_limit: int = 20) -> HydratedSelfSchema:
        """Resolve every cited memory and attach their latest provenance."""
        schema = self.require()
        linked: Dict[str, Memory] = {}
        for mid in schema.all_memory_ids():
            memory = self._store.get_memory(mid)
            if memory is not None:
                linked[mid] = memory
            else:
                logger.warning(f"self-schema cites missing memory {mid}")
        recent = self._log.recent(recent_limit, memory_ids=list(linked))
        return HydratedSelfSchema(schema=schema, linked_memories=linked, recent_provenance=recent)
