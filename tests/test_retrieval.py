"""
Tests for mnemos.retrieval — scoring, ordering, budget packing.
"""

import math

import pytest

from mnemos.config import DAY_MS, RetrievalConfig
from mnemos.errors import InvalidQuery
from mnemos.retrieval import (
    QueryCriteria,
    RetrievalEngine,
    estimate_tokens,
    recency_decay,
    text_match,
)
from mnemos.store import MemoryStore
from mnemos.types import episodic, semantic

NOW = 1_700_000_000_000


@pytest.fixture
def store():
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def engine(store):
    return RetrievalEngine(store, RetrievalConfig(), clock=lambda: NOW)


def _add(store, memory):
    store.create_memory(memory)
    return memory


class TestTextMatch:
    def test_tiers(self):
        m = semantic("Coffee helps me focus", "habits", context="morning routine",
                     tags=["caffeine", "focus-tools"])
        assert text_match(m, "coffee helps me focus") == 1.0
        assert text_match(m, "helps") == 0.8
        assert text_match(m, "routine") == 0.6
        assert text_match(m, "caffeine") == 0.5
        assert text_match(m, "tools") == 0.4
        assert text_match(m, "coffee routine tea") == pytest.approx(0.2)
        assert text_match(m, "tea") == 0.0

    def test_empty_query(self):
        assert text_match(semantic("x", "d"), "  ") == 1.0
        assert text_match(semantic("x", "d"), None) == 1.0


class TestPrimitives:
    def test_recency_half_life(self):
        assert recency_decay(0, DAY_MS) == 1.0
        assert recency_decay(DAY_MS, DAY_MS) == pytest.approx(0.5)
        assert recency_decay(-5, DAY_MS) == 1.0

    def test_estimate_tokens(self):
        assert estimate_tokens(semantic("x" * 40, "d")) == 10
        assert estimate_tokens(semantic("x", "d")) == 1


class TestScoring:
    def test_components(self, engine):
        m = semantic("fact", "d", importance="high", created_at=NOW - 7 * DAY_MS,
                     access_count=3)
        scored = engine.score(m, "fact", NOW)
        assert scored.components["text"] == 1.0
        assert scored.components["recency"] == pytest.approx(0.5)
        assert scored.components["importance"] == 0.75
        assert scored.components["frequency"] == pytest.approx(math.log(4))
        expected = 1.0 + 0.3 * 0.5 + 0.5 * 0.75 + 0.1 * math.log(4)
        assert scored.score == pytest.approx(expected)


class TestQuery:
    def test_query_is_not_an_access(self, engine, store):
        m = _add(store, semantic("Python is dynamically typed", "programming",
                                 created_at=NOW))
        results = engine.query(QueryCriteria(text="python"))
        assert [r.id for r in results] == [m.id]
        stored = store.get_memory(m.id)
        assert stored.access_count == 0
        assert stored.last_accessed is None
        assert store.count_provenance(m.id) == 0

    def test_text_filters_non_matches(self, engine, store):
        _add(store, semantic("apples", "food", created_at=NOW))
        _add(store, semantic("bananas", "food", created_at=NOW))
        assert [m.content for m in engine.query(QueryCriteria(text="apple"))] == ["apples"]

    def test_ranking_by_importance_weight(self, engine, store):
        low = _add(store, semantic("note one", "d", importance="low", created_at=NOW))
        crit = _add(store, semantic("note two", "d", importance="critical", created_at=NOW))
        assert [m.id for m in engine.query(QueryCriteria(text="note"))] == [crit.id, low.id]

    def test_tie_break_newest_then_id(self, engine, store):
        a = _add(store, semantic("same", "d", id="mem_a", created_at=NOW - 1000))
        b = _add(store, semantic("same", "d", id="mem_b", created_at=NOW - 1000))
        # equal scores and created_at: higher id first
        assert [m.id for m in engine.query(QueryCriteria(text="same"))] == [b.id, a.id]

    def test_sort_by_recency(self, engine, store):
        old = _add(store, semantic("x", "d", importance="critical", created_at=NOW - DAY_MS))
        new = _add(store, semantic("x", "d", importance="low", created_at=NOW))
        got = engine.query(QueryCriteria(sort_by="recency"))
        assert [m.id for m in got] == [new.id, old.id]

    def test_sort_by_access_count(self, engine, store):
        a = _add(store, semantic("x", "d", access_count=5, created_at=NOW))
        b = _add(store, semantic("y", "d", access_count=1, created_at=NOW))
        got = engine.query(QueryCriteria(sort_by="access_count"))
        assert [m.id for m in got] == [a.id, b.id]

    def test_limit_offset(self, engine, store):
        ids = [_add(store, semantic(f"m{i}", "d", created_at=NOW - i)).id for i in range(5)]
        got = engine.query(QueryCriteria(sort_by="recency", limit=2, offset=1))
        assert [m.id for m in got] == ids[1:3]

    def test_archived_opt_in(self, engine, store):
        m = _add(store, semantic("gone", "d", archived=True, created_at=NOW))
        assert engine.query(QueryCriteria()) == []
        assert [x.id for x in engine.query(QueryCriteria(include_archived=True))] == [m.id]

    def test_mixed_types(self, engine, store):
        _add(store, episodic("went hiking", "trip", created_at=NOW))
        _add(store, semantic("hiking needs water", "outdoors", created_at=NOW))
        assert len(engine.query(QueryCriteria(text="hiking"))) == 2
        assert len(engine.query(QueryCriteria(text="hiking", types=["episodic"]))) == 1


class TestInvalidQuery:
    @pytest.mark.parametrize("kwargs", [
        {"limit": -1},
        {"offset": -1},
        {"sort_by": "vibes"},
        {"types": ["dream"]},
        {"importance": ["urgent"]},
        {"created_after": 10, "created_before": 5},
        {"min_confidence": 1.5},
    ])
    def test_rejected(self, engine, kwargs):
        with pytest.raises(InvalidQuery):
            engine.query(QueryCriteria(**kwargs))


class TestBudget:
    def _seed(self, store):
        # 40, 80, 20 chars -> 10, 20, 5 tokens; importance sets the rank
        a = _add(store, semantic("a" * 40, "d", importance="critical", created_at=NOW))
        b = _add(store, semantic("b" * 80, "d", importance="high", created_at=NOW))
        c = _add(store, semantic("c" * 20, "d", importance="low", created_at=NOW))
        return a, b, c

    def test_prefix_within_budget(self, engine, store):
        a, b, c = self._seed(store)
        selected, total = engine.query_within_budget(QueryCriteria(), 30)
        assert [s.memory.id for s in selected] == [a.id, b.id]
        assert total == 30

    def test_stops_at_first_overflow(self, engine, store):
        a, b, c = self._seed(store)
        # b does not fit; c would, but the selection stays a prefix
        selected, total = engine.query_within_budget(QueryCriteria(), 25)
        assert [s.memory.id for s in selected] == [a.id]
        assert total == 10

    def test_never_exceeds_budget(self, engine, store):
        self._seed(store)
        for budget in range(0, 40):
            selected, total = engine.query_within_budget(QueryCriteria(), budget)
            assert total <= budget
            ranked = engine.query_scored(QueryCriteria())
            assert [s.memory.id for s in selected] == [s.memory.id for s in ranked[:len(selected)]]

    def test_zero_budget(self, engine, store):
        self._seed(store)
        assert engine.query_within_budget(QueryCriteria(), 0) == ([], 0)

    def test_negative_budget(self, engine):
        with pytest.raises(InvalidQuery):
            engine.query_within_budget(QueryCriteria(), -1)

    def test_negative_cost(self, engine, store):
        self._seed(store)
        with pytest.raises(InvalidQuery):
            engine.query_within_budget(QueryCriteria(), 10, cost_fn=lambda m: -1)

    def test_custom_cost(self, engine, store):
        self._seed(store)
        selected, total = engine.query_within_budget(QueryCriteria(), 2, cost_fn=lambda m: 1)
        assert len(selected) == 2
        assert total == 2
