"""
Self-Schema Data Model

The agent's structured model of itself, in three parts:

    PresentSelf                who I am now: identity, capabilities,
                               relationships, state, values, limitations
    TemporalTrajectory         milestones, current phase, anticipated
                               futures, detected patterns
    AutobiographicalNarrative  chapters, themes, revision history

Every element that makes a claim about the agent cites the memories it
rests on. Those citations are checked by validation.validate_self_schema().
"""

from __future__ import annotations

import copy
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from mnemos.ids import generate, now_ms
from mnemos.types import Timestamp, _known

Trajectory = Literal["improving", "stable", "declining"]
EntityType = Literal["user", "agent", "system"]
LimitationType = Literal["technical", "ethical", "knowledge", "capability"]
MilestoneCategory = Literal[
    "learning", "achievement", "relationship", "challenge", "growth", "setback",
]
Horizon = Literal["near", "medium", "far"]
Desirability = Literal["desired", "neutral", "concerning"]

VALID_TRAJECTORIES = ("improving", "stable", "declining")
VALID_ENTITY_TYPES = ("user", "agent", "system")
VALID_LIMITATION_TYPES = ("technical", "ethical", "knowledge", "capability")
VALID_MILESTONE_CATEGORIES = (
    "learning", "achievement", "relationship", "challenge", "growth", "setback",
)
VALID_HORIZONS = ("near", "medium", "far")
VALID_DESIRABILITY = ("desired", "neutral", "concerning")


def _build_list(cls, items: List[Any]) -> List[Any]:
    return [cls.from_dict(i) if isinstance(i, dict) else i for i in items or []]


# ---------------------------------------------------------------------------
# Present self
# ---------------------------------------------------------------------------

@dataclass
class IdentityStatement:
    statement: str
    source_memory_ids: List[str] = field(default_factory=list)
    centrality: float = 0.5
    confidence: float = 0.5
    id: str = field(default_factory=lambda: generate("ident"))
    established_at: Timestamp = field(default_factory=now_ms)
    last_reinforced_at: Optional[Timestamp] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> IdentityStatement:
        return cls(**_known(cls, d))


@dataclass
class Capability:
    name: str
    evidence_memory_ids: List[str] = field(default_factory=list)
    description: str = ""
    domain: str = "general"
    proficiency: float = 0.5
    trajectory: Trajectory = "stable"
    id: str = field(default_factory=lambda: generate("cap"))
    recognized_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Capability:
        return cls(**_known(cls, d))


@dataclass
class Relationship:
    entity_id: str
    nature: str = ""
    entity_type: EntityType = "user"
    strength: float = 0.5
    key_memory_ids: List[str] = field(default_factory=list)
    history_summary: Optional[str] = None
    id: str = field(default_factory=lambda: generate("rel"))
    established_at: Timestamp = field(default_factory=now_ms)
    last_interaction_at: Optional[Timestamp] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Relationship:
        return cls(**_known(cls, d))


@dataclass
class AgentState:
    mood: str = "neutral"
    energy_level: float = 0.5
    current_focus: Optional[str] = None
    active_concerns: List[str] = field(default_factory=list)
    updated_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AgentState:
        return cls(**_known(cls, d))


@dataclass
class Value:
    statement: str
    importance: int = 5  # 1-10
    examples: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate("val"))
    established_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Value:
        return cls(**_known(cls, d))


@dataclass
class Limitation:
    description: str
    type: LimitationType = "capability"
    discovery_context: Optional[str] = None
    id: str = field(default_factory=lambda: generate("lim"))
    discovered_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Limitation:
        return cls(**_known(cls, d))


@dataclass
class PresentSelf:
    core_identity: List[IdentityStatement] = field(default_factory=list)
    capabilities: List[Capability] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    current_state: AgentState = field(default_factory=AgentState)
    values: List[Value] = field(default_factory=list)
    limitations: List[Limitation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PresentSelf:
        state = d.get("current_state")
        return cls(
            core_identity=_build_list(IdentityStatement, d.get("core_identity")),
            capabilities=_build_list(Capability, d.get("capabilities")),
            relationships=_build_list(Relationship, d.get("relationships")),
            current_state=AgentState.from_dict(state) if isinstance(state, dict) else AgentState(),
            values=_build_list(Value, d.get("values")),
            limitations=_build_list(Limitation, d.get("limitations")),
        )


# ---------------------------------------------------------------------------
# Temporal trajectory
# ---------------------------------------------------------------------------

@dataclass
class Milestone:
    title: str
    related_memory_ids: List[str] = field(default_factory=list)
    description: str = ""
    occurred_at: Timestamp = field(default_factory=now_ms)
    significance: int = 5  # 1-10
    impact: str = ""
    category: MilestoneCategory = "achievement"
    id: str = field(default_factory=lambda: generate("mile"))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Milestone:
        return cls(**_known(cls, d))


@dataclass
class PhaseDescription:
    name: str = "initial"
    description: str = ""
    started_at: Timestamp = field(default_factory=now_ms)
    themes: List[str] = field(default_factory=list)
    active_goals: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PhaseDescription:
        return cls(**_known(cls, d))


@dataclass
class FutureAnticipation:
    description: str
    horizon: Horizon = "near"
    likelihood: float = 0.5
    desirability: Desirability = "neutral"
    prerequisites: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate("fut"))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FutureAnticipation:
        return cls(**_known(cls, d))


@dataclass
class TrajectoryPattern:
    name: str
    description: str = ""
    instances: List[Timestamp] = field(default_factory=list)
    confidence: float = 0.5
    id: str = field(default_factory=lambda: generate("pat"))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TrajectoryPattern:
        return cls(**_known(cls, d))


@dataclass
class TemporalTrajectory:
    past_milestones: List[Milestone] = field(default_factory=list)
    present_phase: PhaseDescription = field(default_factory=PhaseDescription)
    anticipated_future: List[FutureAnticipation] = field(default_factory=list)
    patterns: List[TrajectoryPattern] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TemporalTrajectory:
        phase = d.get("present_phase")
        return cls(
            past_milestones=_build_list(Milestone, d.get("past_milestones")),
            present_phase=(
                PhaseDescription.from_dict(phase) if isinstance(phase, dict) else PhaseDescription()
            ),
            anticipated_future=_build_list(FutureAnticipation, d.get("anticipated_future")),
            patterns=_build_list(TrajectoryPattern, d.get("patterns")),
        )


# ---------------------------------------------------------------------------
# Autobiographical narrative
# ---------------------------------------------------------------------------

@dataclass
class TimeSpan:
    start: Timestamp
    end: Optional[Timestamp] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TimeSpan:
        return cls(**_known(cls, d))


@dataclass
class NarrativeChapter:
    title: str
    narrative: str
    time_span: TimeSpan
    source_memory_ids: List[str] = field(default_factory=list)
    emotional_arc: Optional[str] = None
    id: str = field(default_factory=lambda: generate("chap"))

    def __post_init__(self):
        if isinstance(self.time_span, dict):
            self.time_span = TimeSpan.from_dict(self.time_span)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> NarrativeChapter:
        return cls(**_known(cls, d))


@dataclass
class NarrativeTheme:
    name: str
    manifestation: str = ""
    chapter_ids: List[str] = field(default_factory=list)
    centrality: int = 5  # 1-10
    id: str = field(default_factory=lambda: generate("theme"))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> NarrativeTheme:
        return cls(**_known(cls, d))


@dataclass
class NarrativeRevision:
    changes: str
    reason: str
    trigger_memory_ids: List[str] = field(default_factory=list)
    revised_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> NarrativeRevision:
        return cls(**_known(cls, d))


@dataclass
class AutobiographicalNarrative:
    core_summary: str = ""
    chapters: List[NarrativeChapter] = field(default_factory=list)
    themes: List[NarrativeTheme] = field(default_factory=list)
    narrative_evolution: List[NarrativeRevision] = field(default_factory=list)
    last_synthesized_at: Timestamp = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AutobiographicalNarrative:
        return cls(
            core_summary=d.get("core_summary", ""),
            chapters=_build_list(NarrativeChapter, d.get("chapters")),
            themes=_build_list(NarrativeTheme, d.get("themes")),
            narrative_evolution=_build_list(NarrativeRevision, d.get("narrative_evolution")),
            last_synthesized_at=d.get("last_synthesized_at") or now_ms(),
        )


# ---------------------------------------------------------------------------
# Self-schema (one per agent)
# ---------------------------------------------------------------------------

@dataclass
class SelfSchema:
    agent_id: str
    present_self: PresentSelf = field(default_factory=PresentSelf)
    temporal_trajectory: TemporalTrajectory = field(default_factory=TemporalTrajectory)
    autobiographical_narrative: AutobiographicalNarrative = field(
        default_factory=AutobiographicalNarrative
    )
    id: str = field(default_factory=lambda: generate("schema"))
    created_at: Timestamp = field(default_factory=now_ms)
    updated_at: Timestamp = field(default_factory=now_ms)
    version: int = 1

    def referenced_memory_ids(self) -> Dict[str, List[str]]:
        """Map each citing element (``kind:id``) to the memory ids it cites."""
        refs: Dict[str, List[str]] = {}
        ps = self.present_self
        for s in ps.core_identity:
            refs[f"identity:{s.id}"] = list(s.source_memory_ids)
        for c in ps.capabilities:
            refs[f"capability:{c.id}"] = list(c.evidence_memory_ids)
        for r in ps.relationships:
            refs[f"relationship:{r.id}"] = list(r.key_memory_ids)
        for m in self.temporal_trajectory.past_milestones:
            refs[f"milestone:{m.id}"] = list(m.related_memory_ids)
        narrative = self.autobiographical_narrative
        for ch in narrative.chapters:
            refs[f"chapter:{ch.id}"] = list(ch.source_memory_ids)
        for i, rev in enumerate(narrative.narrative_evolution):
            refs[f"revision:{i}"] = list(rev.trigger_memory_ids)
        return refs

    def all_memory_ids(self) -> List[str]:
        """Every memory id cited anywhere in the schema, deduplicated."""
        seen: Dict[str, None] = {}
        for ids in self.referenced_memory_ids().values():
            for mid in ids:
                seen.setdefault(mid, None)
        return list(seen)

    def copy(self) -> SelfSchema:
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SelfSchema:
        return cls(
            agent_id=d["agent_id"],
            present_self=PresentSelf.from_dict(d.get("present_self") or {}),
            temporal_trajectory=TemporalTrajectory.from_dict(d.get("temporal_trajectory") or {}),
            autobiographical_narrative=AutobiographicalNarrative.from_dict(
                d.get("autobiographical_narrative") or {}
            ),
            id=d.get("id") or generate("schema"),
            created_at=d.get("created_at") or now_ms(),
            updated_at=d.get("updated_at") or now_ms(),
            version=d.get("version", 1),
        )
