"""
Retrieval — Hybrid Ranking and Budget Packing

Candidates come from MemoryStore.query_memories() (structured filters in
SQL); ranking is applied here:

    score = w_text * text_match
          + w_recency * 0.5 ** (age / half_life)
          + w_importance * importance_weight
          + w_frequency * log(1 + access_count)

Ordering is total: ties break by created_at descending, then id
descending. Queries never count as accesses.

query_within_budget() packs results greedily in score order and stops at
the first memory that would overflow the budget, so the selection is
always a prefix of the ranked list and never exceeds the budget.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from mnemos.config import RetrievalConfig
from mnemos.errors import InvalidQuery
from mnemos.ids import now_ms
from mnemos.store import MemoryStore
from mnemos.types import IMPORTANCE_RANK, VALID_IMPORTANCE, VALID_MEMORY_TYPES, Memory

logger = logging.getLogger(__name__)

VALID_SORT_KEYS = ("relevance", "recency", "importance", "access_count")

# text_match tiers: content hits outrank context hits outrank tag hits
_EXACT_CONTENT = 1.0
_CONTENT_SUBSTRING = 0.8
_CONTEXT_SUBSTRING = 0.6
_TAG_EXACT = 0.5
_TAG_SUBSTRING = 0.4
_TERM_COVERAGE = 0.3


def _as_list(value: Union[None, str, List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


@dataclass
class QueryCriteria:
    """Structured retrieval request. Every filter is optional."""
    text: Optional[str] = None
    types: Optional[List[str]] = None
    importance: Optional[List[str]] = None
    tags: Optional[List[str]] = None  # any-match
    created_after: Optional[int] = None
    created_before: Optional[int] = None
    min_confidence: Optional[float] = None  # semantic memories only
    include_archived: bool = False
    limit: Optional[int] = None
    offset: int = 0
    sort_by: str = "relevance"

    def __post_init__(self):
        self.types = _as_list(self.types)
        self.importance = _as_list(self.importance)
        self.tags = _as_list(self.tags)

    def validate(self) -> None:
        """Raise InvalidQuery on malformed criteria."""
        errors: List[str] = []
        if not isinstance(self.offset, int) or self.offset < 0:
            errors.append(f"offset must be a non-negative integer, got {self.offset!r}")
        if self.limit is not None and (not isinstance(self.limit, int) or self.limit < 0):
            errors.append(f"limit must be a non-negative integer, got {self.limit!r}")
        if self.sort_by not in VALID_SORT_KEYS:
            errors.append(f"unknown sort key {self.sort_by!r} (expected one of {', '.join(VALID_SORT_KEYS)})")
        for t in self.types or []:
            if t not in VALID_MEMORY_TYPES:
                errors.append(f"unknown memory type {t!r}")
        for imp in self.importance or []:
            if imp not in VALID_IMPORTANCE:
                errors.append(f"unknown importance {imp!r}")
        if (
            self.created_after is not None
            and self.created_before is not None
            and self.created_after > self.created_before
        ):
            errors.append("created_after is later than created_before")
        if self.min_confidence is not None and not 0.0 <= self.min_confidence <= 1.0:
            errors.append(f"min_confidence {self.min_confidence} not in [0, 1]")
        if errors:
            raise InvalidQuery("; ".join(errors))


@dataclass
class ScoredMemory:
    """A memory with its ranking score and the components behind it."""
    memory: Memory
    score: float
    components: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "memory": self.memory.to_dict(),
            "score": self.score,
            "components": dict(self.components),
        }


# ---------------------------------------------------------------------------
# Scoring primitives
# ---------------------------------------------------------------------------

def text_match(memory: Memory, query: Optional[str]) -> float:
    """Case-insensitive relevance of *memory* to *query*, in [0, 1].

    An empty query matches everything with score 1.0.
    """
    q = (query or "").strip().lower()
    if not q:
        return 1.0
    content = memory.content.lower()
    context = (memory.context or "").lower()
    tags = [t.lower() for t in memory.tags]
    if content == q:
        return _EXACT_CONTENT
    if q in content:
        return _CONTENT_SUBSTRING
    if q in context:
        return _CONTEXT_SUBSTRING
    if q in tags:
        return _TAG_EXACT
    if any(q in t for t in tags):
        return _TAG_SUBSTRING
    terms = q.split()
    if len(terms) > 1:
        haystack = " ".join([content, context] + tags)
        found = sum(1 for t in terms if t in haystack)
        if found:
            return _TERM_COVERAGE * found / len(terms)
    return 0.0


def recency_decay(age_ms: int, half_life_ms: int) -> float:
    """Exponential half-life decay; 1.0 for a memory created now."""
    return 0.5 ** (max(age_ms, 0) / half_life_ms)


def estimate_tokens(memory: Memory) -> int:
    """Rough token cost of a memory (~4 characters per token)."""
    chars = len(memory.content) + len(memory.context or "") + sum(len(t) for t in memory.tags)
    return max(1, chars // 4)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RetrievalEngine:
    """Scores and orders candidate memories from a store."""

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[RetrievalConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self.config = config or RetrievalConfig()
        self._clock = clock

    def score(self, memory: Memory, text: Optional[str], at_ms: int) -> ScoredMemory:
        cfg = self.config
        components = {
            "text": text_match(memory, text),
            "recency": recency_decay(at_ms - memory.created_at, cfg.recency_half_life_ms),
            "importance": cfg.importance_weights.get(memory.importance, 0.0),
            "frequency": math.log1p(memory.access_count),
        }
        total = (
            cfg.text_weight * components["text"]
            + cfg.recency_weight * components["recency"]
            + cfg.importance_weight * components["importance"]
            + cfg.frequency_weight * components["frequency"]
        )
        return ScoredMemory(memory=memory, score=total, components=components)

    @staticmethod
    def _sort_key(sort_by: str) -> Callable[[ScoredMemory], tuple]:
        if sort_by == "recency":
            return lambda s: (s.memory.created_at, s.memory.id)
        if sort_by == "importance":
            return lambda s: (IMPORTANCE_RANK[s.memory.importance], s.score,
                              s.memory.created_at, s.memory.id)
        if sort_by == "access_count":
            return lambda s: (s.memory.access_count, s.score,
                              s.memory.created_at, s.memory.id)
        return lambda s: (s.score, s.memory.created_at, s.memory.id)

    def query_scored(self, criteria: Optional[QueryCriteria] = None) -> List[ScoredMemory]:
        """Matching memories with scores, ranked, then offset/limit applied.

        Raises:
            InvalidQuery: Malformed criteria.
        """
        criteria = criteria or QueryCriteria()
        criteria.validate()
        at = self._clock()
        scored = [self.score(m, criteria.text, at) for m in self._store.query_memories(criteria)]
        if criteria.text and criteria.text.strip():
            scored = [s for s in scored if s.components["text"] > 0.0]
        scored.sort(key=self._sort_key(criteria.sort_by), reverse=True)
        end = None if criteria.limit is None else criteria.offset + criteria.limit
        page = scored[criteria.offset:end]
        logger.debug(
            f"query matched {len(scored)} memories, returning {len(page)} "
            f"(sort={criteria.sort_by})"
        )
        return page

    def query(self, criteria: Optional[QueryCriteria] = None) -> List[Memory]:
        """Ranked memories matching *criteria*. Not an access."""
        return [s.memory for s in self.query_scored(criteria)]

    def query_within_budget(
        self,
        criteria: Optional[QueryCriteria],
        budget: float,
        cost_fn: Callable[[Memory], float] = estimate_tokens,
    ) -> Tuple[List[ScoredMemory], float]:
        """Highest-ranked memories whose summed cost stays within *budget*.

        Returns:
            (selected memories in rank order, total cost).

        Raises:
            InvalidQuery: Negative budget, negative cost or malformed criteria.
        """
        if budget is None or budget < 0:
            raise InvalidQuery(f"budget must be >= 0, got {budget!r}")
        selected: List[ScoredMemory] = []
        total = 0
        for item in self.query_scored(criteria):
            cost = cost_fn(item.memory)
            if cost < 0:
                raise InvalidQuery(f"negative cost {cost} for memory {item.memory.id}")
            if total + cost > budget:
                break
            selected.append(item)
            total += cost
        return selected, total
