"""
Memory Data Model — First-Class Objects

Defines the canonical memory record, its three variant payloads, the
typed provenance payloads, and the reconsolidation records.

A Memory is one record type carrying the shared fields plus a ``detail``
payload. The payload class is the discriminant: ``memory.type`` is read
from it, never stored separately, so a record cannot claim one variant
while carrying another's fields. Serialized form is flat (shared fields,
``type``, then the variant fields) for portability.

Provenance payloads follow the same pattern: one dataclass per event
type, selected through PAYLOAD_TYPES.
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, Type, Union

from mnemos.errors import SchemaViolation, ValidationError
from mnemos.ids import generate, now_ms

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Timestamp = int
Importance = Literal["critical", "high", "normal", "low"]
MemoryType = Literal["episodic", "semantic", "procedural"]
RetrievalTrigger = Literal[
    "explicit_recall", "associative", "cue_match", "search", "random",
]
ProvenanceEventType = Literal[
    "created", "accessed", "modified", "reconsolidated", "linked",
    "unlinked", "importance_changed", "consolidated", "archived", "restored",
]
CreationSource = Literal[
    "user_input", "inference", "consolidation", "import", "migration",
]
FinalState = Literal["updated", "unchanged", "strengthened", "weakened"]
LinkType = Literal["supports", "contradicts", "derives_from", "related_to"]

# Valid values for runtime checks
VALID_IMPORTANCE: Tuple[str, ...] = ("critical", "high", "normal", "low")
IMPORTANCE_RANK: Dict[str, int] = {"low": 0, "normal": 1, "high": 2, "critical": 3}
VALID_MEMORY_TYPES: Tuple[str, ...] = ("episodic", "semantic", "procedural")
VALID_TRIGGERS: Tuple[str, ...] = (
    "explicit_recall", "associative", "cue_match", "search", "random",
)
VALID_EVENT_TYPES: Tuple[str, ...] = (
    "created", "accessed", "modified", "reconsolidated", "linked",
    "unlinked", "importance_changed", "consolidated", "archived", "restored",
)
VALID_CREATION_SOURCES: Tuple[str, ...] = (
    "user_input", "inference", "consolidation", "import", "migration",
)
VALID_FINAL_STATES: Tuple[str, ...] = ("updated", "unchanged", "strengthened", "weakened")
VALID_LINK_TYPES: Tuple[str, ...] = ("supports", "contradicts", "derives_from", "related_to")

CURRENT_SCHEMA_VERSION = 1

# Fields that no update (reconsolidation or patch) may change
IMMUTABLE_FIELDS = frozenset({
    "id", "type", "created_at", "access_count", "last_accessed",
    "schema_version", "archived",
})


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def plain(value: Any) -> Any:
    """Convert dataclasses (and containers of them) to JSON-safe values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    return value


def _known(cls, d: Dict[str, Any]) -> Dict[str, Any]:
    """Filter a dict to the dataclass fields of *cls*."""
    names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in d.items() if k in names}


# ---------------------------------------------------------------------------
# Procedural building blocks
# ---------------------------------------------------------------------------

@dataclass
class FailureMode:
    """A known failure pattern and how to recover from it."""

    pattern: str = ""
    recovery: str = ""


@dataclass
class ProceduralStep:
    """A single step of a procedure (``order`` is 1-indexed)."""

    order: int
    description: str
    command: Optional[str] = None
    expected_outcome: Optional[str] = None
    failure_modes: List[FailureMode] = field(default_factory=list)

    def __post_init__(self):
        self.failure_modes = [
            FailureMode(**_known(FailureMode, fm)) if isinstance(fm, dict) else fm
            for fm in self.failure_modes
        ]


@dataclass
class TriggerConditions:
    """When a procedure applies."""

    keywords: List[str] = field(default_factory=list)
    required_context: Dict[str, str] = field(default_factory=dict)
    request_patterns: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Variant payloads
# ---------------------------------------------------------------------------

@dataclass
class EpisodicDetail:
    """What happened: a timestamped event from the agent's experience."""

    kind: ClassVar[str] = "episodic"
    required: ClassVar[Tuple[str, ...]] = ("event_timestamp", "event_type")

    event_timestamp: Timestamp
    event_type: str
    participants: List[str] = field(default_factory=list)
    location: Optional[str] = None
    emotional_valence: Optional[float] = None
    emotional_tags: List[str] = field(default_factory=list)
    source_conversation_id: Optional[str] = None
    source_message_ids: List[str] = field(default_factory=list)


@dataclass
class SemanticDetail:
    """What is known: a fact, preference, or piece of knowledge."""

    kind: ClassVar[str] = "semantic"
    required: ClassVar[Tuple[str, ...]] = ("domain",)

    domain: str
    confidence: float = 1.0
    source_memory_ids: List[str] = field(default_factory=list)
    contradicts_ids: List[str] = field(default_factory=list)
    valid_from: Optional[Timestamp] = None
    valid_until: Optional[Timestamp] = None


@dataclass
class ProceduralDetail:
    """How to do something: an ordered list of steps with a track record."""

    kind: ClassVar[str] = "procedural"
    required: ClassVar[Tuple[str, ...]] = ("skill_name", "steps")

    skill_name: str
    steps: List[ProceduralStep]
    trigger_conditions: Optional[TriggerConditions] = None
    success_count: int = 0
    failure_count: int = 0
    last_success: Optional[Timestamp] = None
    last_failure: Optional[Timestamp] = None
    avg_duration_ms: Optional[float] = None

    def __post_init__(self):
        """Coerce dict steps and trigger conditions."""
        self.steps = [
            ProceduralStep(**_known(ProceduralStep, s)) if isinstance(s, dict) else s
            for s in self.steps
        ]
        if isinstance(self.trigger_conditions, dict):
            self.trigger_conditions = TriggerConditions(
                **_known(TriggerConditions, self.trigger_conditions)
            )


MemoryDetail = Union[EpisodicDetail, SemanticDetail, ProceduralDetail]

DETAIL_TYPES: Dict[str, Type] = {
    "episodic": EpisodicDetail,
    "semantic": SemanticDetail,
    "procedural": ProceduralDetail,
}


def detail_kind(detail: Any) -> str:
    """Return the discriminant of a payload; SchemaViolation if unknown."""
    for kind, cls in DETAIL_TYPES.items():
        if type(detail) is cls:
            return kind
    raise SchemaViolation(
        f"unknown memory payload: {type(detail).__name__}", "memory-variant",
    )


def detail_from_dict(kind: Optional[str], d: Dict[str, Any]) -> MemoryDetail:
    """Build the variant payload for *kind* from a flat dict."""
    cls = DETAIL_TYPES.get(kind or "")
    if cls is None:
        raise SchemaViolation(f"unknown memory type: {kind!r}", "memory-variant")
    missing = [name for name in cls.required if d.get(name) is None]
    if missing:
        raise SchemaViolation(
            f"{kind} memory missing required field(s): {', '.join(missing)}",
            "variant-required-fields",
        )
    try:
        return cls(**_known(cls, d))
    except TypeError as exc:
        raise SchemaViolation(f"malformed {kind} payload: {exc}", "memory-variant")


# ---------------------------------------------------------------------------
# Memory (canonical)
# ---------------------------------------------------------------------------

SHARED_FIELDS: Tuple[str, ...] = (
    "id", "content", "context", "importance", "tags", "embedding",
    "created_at", "access_count", "last_accessed", "is_consolidated",
    "schema_version", "archived",
)


@dataclass
class Memory:
    """
    Canonical memory record.

    Rules:
    - content is never empty.
    - the variant is carried by ``detail``; ``type`` is derived.
    - deletion is logical (``archived``); records are never removed.
    """

    content: str
    detail: MemoryDetail
    id: str = field(default_factory=lambda: generate("mem"))
    context: Optional[str] = None
    importance: Importance = "normal"
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    created_at: Timestamp = field(default_factory=now_ms)
    access_count: int = 0
    last_accessed: Optional[Timestamp] = None
    is_consolidated: bool = False
    schema_version: int = CURRENT_SCHEMA_VERSION
    archived: bool = False

    @property
    def type(self) -> str:
        """Variant discriminant, read from the payload."""
        return detail_kind(self.detail)

    @property
    def confidence(self) -> Optional[float]:
        """Confidence of a semantic memory; None for other variants."""
        if isinstance(self.detail, SemanticDetail):
            return self.detail.confidence
        return None

    @property
    def content_hash(self) -> str:
        """Hash of the canonical content."""
        return content_hash(self.content)

    def references(self) -> List[str]:
        """Memory ids this record points at (derivation and contradiction)."""
        if isinstance(self.detail, SemanticDetail):
            return list(self.detail.source_memory_ids) + list(self.detail.contradicts_ids)
        return []

    def get_field(self, name: str) -> Any:
        """Read a shared or variant field by name."""
        if name == "type":
            return self.type
        if name in SHARED_FIELDS:
            return getattr(self, name)
        if name in {f.name for f in dataclasses.fields(self.detail)}:
            return getattr(self.detail, name)
        raise ValidationError(
            f"{self.type} memory has no field {name!r}", "known-field",
        )

    def with_field(self, name: str, value: Any) -> Memory:
        """Return a copy with one shared or variant field replaced."""
        if name in IMMUTABLE_FIELDS:
            raise ValidationError(f"field {name!r} is immutable", "immutable-field")
        clone = self.copy()
        if name in SHARED_FIELDS:
            setattr(clone, name, copy.deepcopy(value))
            return clone
        self.get_field(name)  # raises on unknown names
        try:
            clone.detail = dataclasses.replace(clone.detail, **{name: copy.deepcopy(value)})
        except TypeError as exc:
            raise ValidationError(f"invalid value for {name!r}: {exc}", "field-type")
        return clone

    def copy(self) -> Memory:
        """Deep copy (no shared mutable state with the original)."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a flat dict (JSON-safe)."""
        d: Dict[str, Any] = {name: copy.deepcopy(getattr(self, name)) for name in SHARED_FIELDS}
        d["type"] = self.type
        d.update(asdict(self.detail))
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Memory:
        """Deserialize from a flat dict; SchemaViolation on a bad variant."""
        if "content" not in d:
            raise SchemaViolation("memory missing required field: content", "memory-fields")
        detail = detail_from_dict(d.get("type"), d)
        shared = {k: d[k] for k in SHARED_FIELDS if k in d and d[k] is not None}
        if "context" in d:
            shared["context"] = d["context"]
        return cls(detail=detail, **shared)

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


# ---------------------------------------------------------------------------
# Typed constructors
# ---------------------------------------------------------------------------

def _build(detail_cls: Type, content: str, kwargs: Dict[str, Any]) -> Memory:
    names = {f.name for f in dataclasses.fields(detail_cls)}
    detail_kwargs = {k: kwargs.pop(k) for k in list(kwargs) if k in names}
    unknown = set(kwargs) - set(SHARED_FIELDS)
    if unknown:
        raise ValidationError(
            f"unknown field(s) for {detail_cls.kind} memory: {', '.join(sorted(unknown))}",
            "known-field",
        )
    return Memory(content=content, detail=detail_cls(**detail_kwargs), **kwargs)


def episodic(
    content: str, event_type: str, event_timestamp: Optional[int] = None, **kwargs: Any,
) -> Memory:
    """Create an episodic memory (event time defaults to now)."""
    kwargs["event_type"] = event_type
    kwargs["event_timestamp"] = now_ms() if event_timestamp is None else event_timestamp
    return _build(EpisodicDetail, content, kwargs)


def semantic(content: str, domain: str, confidence: float = 1.0, **kwargs: Any) -> Memory:
    """Create a semantic memory."""
    kwargs["domain"] = domain
    kwargs["confidence"] = confidence
    return _build(SemanticDetail, content, kwargs)


def procedural(
    content: str, skill_name: str, steps: List[Any], **kwargs: Any,
) -> Memory:
    """Create a procedural memory; steps may be dicts or ProceduralStep."""
    kwargs["skill_name"] = skill_name
    kwargs["steps"] = list(steps)
    return _build(ProceduralDetail, content, kwargs)


# ---------------------------------------------------------------------------
# Retrieval context
# ---------------------------------------------------------------------------

@dataclass
class RetrievalContext:
    """Why a memory was retrieved."""

    trigger: RetrievalTrigger = "explicit_recall"
    query: Optional[str] = None
    conversation_id: Optional[str] = None
    task_context: Optional[str] = None
    emotional_state: Optional[str] = None

    def __post_init__(self):
        if self.trigger not in VALID_TRIGGERS:
            raise ValidationError(f"invalid retrieval trigger: {self.trigger!r}", "trigger")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RetrievalContext:
        return cls(**_known(cls, d))


# ---------------------------------------------------------------------------
# Provenance payloads (one class per event type)
# ---------------------------------------------------------------------------

@dataclass
class CreatedData:
    event_type: ClassVar[str] = "created"

    source: CreationSource = "user_input"
    original_content: str = ""
    initial_importance: Importance = "normal"


@dataclass
class AccessedData:
    event_type: ClassVar[str] = "accessed"

    context: RetrievalContext = field(default_factory=RetrievalContext)
    triggered_reconsolidation: bool = False

    def __post_init__(self):
        if isinstance(self.context, dict):
            self.context = RetrievalContext.from_dict(self.context)


@dataclass
class FieldChange:
    field: str
    old_value: Any = None
    new_value: Any = None


@dataclass
class ModifiedData:
    event_type: ClassVar[str] = "modified"

    changes: List[FieldChange] = field(default_factory=list)
    reason: str = ""
    reconsolidation_event_id: Optional[str] = None

    def __post_init__(self):
        self.changes = [
            FieldChange(**_known(FieldChange, c)) if isinstance(c, dict) else c
            for c in self.changes
        ]


@dataclass
class ReconsolidatedData:
    event_type: ClassVar[str] = "reconsolidated"

    reconsolidation_event_id: str = ""
    change_summary: str = ""
    final_state: FinalState = "unchanged"


@dataclass
class LinkedData:
    event_type: ClassVar[str] = "linked"

    other_memory_id: str = ""
    link_type: LinkType = "related_to"


@dataclass
class UnlinkedData:
    event_type: ClassVar[str] = "unlinked"

    other_memory_id: str = ""
    link_type: LinkType = "related_to"


@dataclass
class ImportanceChangedData:
    event_type: ClassVar[str] = "importance_changed"

    previous_importance: Importance = "normal"
    new_importance: Importance = "normal"
    reason: str = ""


@dataclass
class ConsolidatedData:
    event_type: ClassVar[str] = "consolidated"

    details: Optional[str] = None


@dataclass
class ArchivedData:
    event_type: ClassVar[str] = "archived"

    details: Optional[str] = None


@dataclass
class RestoredData:
    event_type: ClassVar[str] = "restored"

    details: Optional[str] = None


ProvenancePayload = Union[
    CreatedData, AccessedData, ModifiedData, ReconsolidatedData, LinkedData,
    UnlinkedData, ImportanceChangedData, ConsolidatedData, ArchivedData,
    RestoredData,
]

PAYLOAD_TYPES: Dict[str, Type] = {
    cls.event_type: cls
    for cls in (
        CreatedData, AccessedData, ModifiedData, ReconsolidatedData,
        LinkedData, UnlinkedData, ImportanceChangedData, ConsolidatedData,
        ArchivedData, RestoredData,
    )
}


def payload_from_dict(event_type: str, d: Dict[str, Any]) -> ProvenancePayload:
    """Build the typed payload for *event_type*."""
    cls = PAYLOAD_TYPES.get(event_type)
    if cls is None:
        raise SchemaViolation(f"unknown provenance event type: {event_type!r}", "event-type")
    try:
        return cls(**_known(cls, d))
    except TypeError as exc:
        raise SchemaViolation(f"malformed {event_type} payload: {exc}", "event-payload")


@dataclass
class ProvenanceEntry:
    """One immutable audit record. ``id``/``created_at`` are set on append."""

    memory_id: str
    data: ProvenancePayload
    id: str = ""
    agent_version: Optional[str] = None
    session_id: Optional[str] = None
    created_at: Timestamp = 0

    @property
    def event_type(self) -> str:
        return self.data.event_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "event_type": self.event_type,
            "event_data": plain(self.data),
            "agent_version": self.agent_version,
            "session_id": self.session_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ProvenanceEntry:
        return cls(
            id=d.get("id", ""),
            memory_id=d["memory_id"],
            data=payload_from_dict(d["event_type"], d.get("event_data") or {}),
            agent_version=d.get("agent_version"),
            session_id=d.get("session_id"),
            created_at=int(d.get("created_at") or 0),
        )


# ---------------------------------------------------------------------------
# Reconsolidation records
# ---------------------------------------------------------------------------

@dataclass
class ReconsolidationUpdate:
    """A single field change applied during a lability window."""

    field: str
    previous_value: Any = None
    new_value: Any = None
    reason: str = ""
    applied_at: Timestamp = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconsolidationEvent:
    """One lability window on one memory."""

    memory_id: str
    lability_window_start: Timestamp
    trigger_context: RetrievalContext = field(default_factory=RetrievalContext)
    id: str = field(default_factory=lambda: generate("recon"))
    lability_window_end: Optional[Timestamp] = None
    updates_applied: List[ReconsolidationUpdate] = field(default_factory=list)
    final_state: FinalState = "unchanged"
    closed_by: Optional[str] = None  # "caller" or "timeout"
    created_at: Timestamp = field(default_factory=now_ms)

    def __post_init__(self):
        if isinstance(self.trigger_context, dict):
            self.trigger_context = RetrievalContext.from_dict(self.trigger_context)
        self.updates_applied = [
            ReconsolidationUpdate(**_known(ReconsolidationUpdate, u)) if isinstance(u, dict) else u
            for u in self.updates_applied
        ]

    @property
    def is_open(self) -> bool:
        return self.lability_window_end is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "memory_id": self.memory_id,
            "lability_window_start": self.lability_window_start,
            "lability_window_end": self.lability_window_end,
            "trigger_context": self.trigger_context.to_dict(),
            "updates_applied": [u.to_dict() for u in self.updates_applied],
            "final_state": self.final_state,
            "closed_by": self.closed_by,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ReconsolidationEvent:
        return cls(**_known(cls, d))


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------

@dataclass
class MemoryLink:
    """Typed link between two memories (``src`` relates to ``dst``)."""

    src_id: str = ""
    dst_id: str = ""
    link_type: LinkType = "related_to"
    created_at: Timestamp = field(default_factory=now_ms)

    def __post_init__(self):
        if self.link_type not in VALID_LINK_TYPES:
            raise ValidationError(f"invalid link type: {self.link_type!r}", "link-type")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryLink:
        return cls(**_known(cls, d))
