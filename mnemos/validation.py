"""
Model Validation

validate(memory) enforces the record invariants before anything is
written: bounds, orderings, and variant consistency. It raises on the
first group of violations (all messages joined) and returns None.

validate_self_schema(schema, known_memory_ids) checks bounds, evidence
presence and that every cited memory id resolves.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, List, Optional, Set

from mnemos.errors import MissingEvidence, SchemaViolation, ValidationError
from mnemos.schema import (
    VALID_DESIRABILITY,
    VALID_ENTITY_TYPES,
    VALID_HORIZONS,
    VALID_LIMITATION_TYPES,
    VALID_MILESTONE_CATEGORIES,
    VALID_TRAJECTORIES,
    SelfSchema,
)
from mnemos.types import (
    VALID_IMPORTANCE,
    EpisodicDetail,
    Memory,
    ProceduralDetail,
    SemanticDetail,
    detail_kind,
)


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and not (isinstance(value, float) and math.isnan(value))
    )


def _check_range(errors: List[str], name: str, value, lo, hi) -> None:
    """Append an error message if value is not a number in [lo, hi]."""
    if not _is_number(value):
        errors.append(f"{name}: expected a number, got {value!r}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_non_negative(errors: List[str], name: str, value) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        errors.append(f"{name}: expected a non-negative integer, got {value!r}")


def _check_str_list(errors: List[str], name: str, values) -> None:
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        errors.append(f"{name}: expected a list of strings")


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------

def _episodic_errors(d: EpisodicDetail) -> List[str]:
    errors: List[str] = []
    if not isinstance(d.event_timestamp, int) or isinstance(d.event_timestamp, bool):
        errors.append(f"event_timestamp: expected an integer, got {d.event_timestamp!r}")
    if not isinstance(d.event_type, str) or not d.event_type.strip():
        errors.append("event_type: must be a non-empty string")
    if d.emotional_valence is not None:
        _check_range(errors, "emotional_valence", d.emotional_valence, -1.0, 1.0)
    _check_str_list(errors, "participants", d.participants)
    _check_str_list(errors, "emotional_tags", d.emotional_tags)
    _check_str_list(errors, "source_message_ids", d.source_message_ids)
    return errors


def _semantic_errors(d: SemanticDetail) -> List[str]:
    errors: List[str] = []
    if not isinstance(d.domain, str) or not d.domain.strip():
        errors.append("domain: must be a non-empty string")
    _check_range(errors, "confidence", d.confidence, 0.0, 1.0)
    _check_str_list(errors, "source_memory_ids", d.source_memory_ids)
    _check_str_list(errors, "contradicts_ids", d.contradicts_ids)
    if (
        d.valid_from is not None
        and d.valid_until is not None
        and _is_number(d.valid_from)
        and _is_number(d.valid_until)
        and d.valid_from > d.valid_until
    ):
        errors.append(
            f"valid_from ({d.valid_from}) must not be after valid_until ({d.valid_until})"
        )
    return errors


def _procedural_errors(d: ProceduralDetail) -> List[str]:
    errors: List[str] = []
    if not isinstance(d.skill_name, str) or not d.skill_name.strip():
        errors.append("skill_name: must be a non-empty string")
    if not d.steps:
        errors.append("steps: a procedure needs at least one step")
    previous: Optional[int] = None
    seen: Set[int] = set()
    for i, step in enumerate(d.steps):
        if not isinstance(step.order, int) or isinstance(step.order, bool):
            errors.append(f"steps[{i}].order: expected an integer, got {step.order!r}")
            continue
        if step.order in seen:
            errors.append(f"steps[{i}].order: duplicate order {step.order}")
        elif previous is not None and step.order <= previous:
            errors.append(
                f"steps[{i}].order: {step.order} does not follow {previous} (must be strictly increasing)"
            )
        seen.add(step.order)
        previous = step.order
        if not isinstance(step.description, str) or not step.description.strip():
            errors.append(f"steps[{i}].description: must be a non-empty string")
    _check_non_negative(errors, "success_count", d.success_count)
    _check_non_negative(errors, "failure_count", d.failure_count)
    if d.avg_duration_ms is not None and (not _is_number(d.avg_duration_ms) or d.avg_duration_ms < 0):
        errors.append(f"avg_duration_ms: expected a non-negative number, got {d.avg_duration_ms!r}")
    return errors


_DETAIL_CHECKS: dict = {
    "episodic": _episodic_errors,
    "semantic": _semantic_errors,
    "procedural": _procedural_errors,
}


def validate(memory: Memory) -> None:
    """Raise ValidationError/SchemaViolation unless *memory* is well formed."""
    if not isinstance(memory, Memory):
        raise SchemaViolation(f"expected a Memory, got {type(memory).__name__}")
    kind = detail_kind(memory.detail)

    errors: List[str] = []
    if not isinstance(memory.id, str) or not memory.id:
        errors.append("id: must be a non-empty string")
    if not isinstance(memory.content, str) or not memory.content.strip():
        errors.append("content: must be non-empty text")
    if memory.context is not None and not isinstance(memory.context, str):
        errors.append("context: must be text when present")
    if memory.importance not in VALID_IMPORTANCE:
        errors.append(f"importance: {memory.importance!r} not in {', '.join(VALID_IMPORTANCE)}")
    _check_str_list(errors, "tags", memory.tags)
    if memory.embedding is not None and (
        not isinstance(memory.embedding, list)
        or not all(_is_number(x) for x in memory.embedding)
    ):
        errors.append("embedding: expected a list of numbers")
    if not isinstance(memory.created_at, int) or memory.created_at < 0:
        errors.append(f"created_at: expected a non-negative integer, got {memory.created_at!r}")
    _check_non_negative(errors, "access_count", memory.access_count)
    if not isinstance(memory.schema_version, int) or memory.schema_version < 1:
        errors.append(f"schema_version: expected an integer >= 1, got {memory.schema_version!r}")

    errors.extend(_DETAIL_CHECKS[kind](memory.detail))
    if errors:
        raise ValidationError(f"{kind} memory {memory.id}: " + "; ".join(errors))


def is_valid(memory: Memory) -> bool:
    """Boolean form of validate()."""
    try:
        validate(memory)
    except ValidationError:
        return False
    return True


def check_references(
    memory: Memory, exists: Callable[[str], bool],
) -> None:
    """Raise ValidationError if any memory id cited by *memory* is dangling."""
    dangling = [mid for mid in memory.references() if mid != memory.id and not exists(mid)]
    if dangling:
        raise ValidationError(
            f"memory {memory.id} cites unknown memories: {', '.join(dangling)}",
            "reference-resolves",
        )


# ---------------------------------------------------------------------------
# Self-schema
# ---------------------------------------------------------------------------

def _check_enum(errors: List[str], name: str, value, allowed: Iterable[str]) -> None:
    allowed = tuple(allowed)
    if value not in allowed:
        errors.append(f"{name}: {value!r} not in {', '.join(allowed)}")


def validate_self_schema(
    schema: SelfSchema, known_memory_ids: Optional[Set[str]] = None,
) -> None:
    """Validate a self-schema.

    Args:
        schema: The schema to check.
        known_memory_ids: Ids of existing or tombstoned memories. When
            given, every cited id must be in it.

    Raises:
        MissingEvidence: An identity statement, capability or chapter
            cites no memory.
        ValidationError: Out-of-range fields or dangling references.
    """
    ps = schema.present_self
    narrative = schema.autobiographical_narrative
    trajectory = schema.temporal_trajectory

    missing: List[str] = []
    for s in ps.core_identity:
        if not s.source_memory_ids:
            missing.append(f"identity statement {s.id} ({s.statement!r})")
    for c in ps.capabilities:
        if not c.evidence_memory_ids:
            missing.append(f"capability {c.id} ({c.name!r})")
    for ch in narrative.chapters:
        if not ch.source_memory_ids:
            missing.append(f"chapter {ch.id} ({ch.title!r})")
    if missing:
        raise MissingEvidence("no supporting memory cited for: " + "; ".join(missing))

    errors: List[str] = []
    if not schema.agent_id:
        errors.append("agent_id: must be non-empty")
    if not isinstance(schema.version, int) or schema.version < 1:
        errors.append(f"version: expected an integer >= 1, got {schema.version!r}")
    for s in ps.core_identity:
        if not s.statement.strip():
            errors.append(f"identity {s.id}: statement must be non-empty")
        _check_range(errors, f"identity {s.id}.centrality", s.centrality, 0.0, 1.0)
        _check_range(errors, f"identity {s.id}.confidence", s.confidence, 0.0, 1.0)
    for c in ps.capabilities:
        _check_range(errors, f"capability {c.id}.proficiency", c.proficiency, 0.0, 1.0)
        _check_enum(errors, f"capability {c.id}.trajectory", c.trajectory, VALID_TRAJECTORIES)
    for r in ps.relationships:
        _check_range(errors, f"relationship {r.id}.strength", r.strength, 0.0, 1.0)
        _check_enum(errors, f"relationship {r.id}.entity_type", r.entity_type, VALID_ENTITY_TYPES)
    _check_range(errors, "current_state.energy_level", ps.current_state.energy_level, 0.0, 1.0)
    for v in ps.values:
        _check_range(errors, f"value {v.id}.importance", v.importance, 1, 10)
    for lim in ps.limitations:
        _check_enum(errors, f"limitation {lim.id}.type", lim.type, VALID_LIMITATION_TYPES)
    for m in trajectory.past_milestones:
        _check_range(errors, f"milestone {m.id}.significance", m.significance, 1, 10)
        _check_enum(errors, f"milestone {m.id}.category", m.category, VALID_MILESTONE_CATEGORIES)
    for f in trajectory.anticipated_future:
        _check_range(errors, f"anticipation {f.id}.likelihood", f.likelihood, 0.0, 1.0)
        _check_enum(errors, f"anticipation {f.id}.horizon", f.horizon, VALID_HORIZONS)
        _check_enum(errors, f"anticipation {f.id}.desirability", f.desirability, VALID_DESIRABILITY)
    for p in trajectory.patterns:
        _check_range(errors, f"pattern {p.id}.confidence", p.confidence, 0.0, 1.0)
    chapter_ids = {ch.id for ch in narrative.chapters}
    for ch in narrative.chapters:
        span = ch.time_span
        if span.end is not None and span.end < span.start:
            errors.append(f"chapter {ch.id}: time span ends before it starts")
    for t in narrative.themes:
        _check_range(errors, f"theme {t.id}.centrality", t.centrality, 1, 10)
        unknown = [cid for cid in t.chapter_ids if cid not in chapter_ids]
        if unknown:
            errors.append(f"theme {t.id}: unknown chapter(s) {', '.join(unknown)}")
    if errors:
        raise ValidationError(f"self-schema {schema.id}: " + "; ".join(errors))

    if known_memory_ids is not None:
        dangling = []
        for owner, ids in schema.referenced_memory_ids().items():
            for mid in ids:
                if mid not in known_memory_ids:
                    dangling.append(f"{owner} -> {mid}")
        if dangling:
            raise ValidationError(
                "self-schema cites unknown memories: " + "; ".join(dangling),
                "reference-resolves",
            )
