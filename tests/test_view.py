"""
Tests for mnemos.view — filtering and paging of exported records.
"""

from mnemos.types import episodic, procedural, semantic
from mnemos.view import (
    ViewRecord,
    ViewState,
    apply,
    project,
    show_more,
    sort_records,
    with_filters,
)


def _records(n, **kwargs):
    return [
        ViewRecord.from_memory(semantic(f"fact {i}", "d", created_at=1000 + i, **kwargs))
        for i in range(n)
    ]


class TestProject:
    def test_excludes_archived_by_default(self):
        live = semantic("live", "d")
        gone = semantic("gone", "d", archived=True)
        assert [r.id for r in project([live, gone])] == [live.id]
        assert len(project([live, gone], include_archived=True)) == 2

    def test_newest_first(self):
        old = semantic("old", "d", created_at=1)
        new = episodic("new", "e", created_at=2)
        assert [r.content for r in project([old, new])] == ["new", "old"]

    def test_ties_by_id_descending(self):
        a = ViewRecord.from_memory(semantic("a", "d", id="mem_a", created_at=5))
        b = ViewRecord.from_memory(semantic("b", "d", id="mem_b", created_at=5))
        assert [r.id for r in sort_records([a, b])] == ["mem_b", "mem_a"]

    def test_record_fields(self):
        m = procedural("Deploy", "release", [], tags=["ops"], context="friday")
        r = ViewRecord.from_memory(m)
        assert r.type == "procedural"
        assert r.to_dict()["tags"] == ["ops"]


class TestApply:
    def test_first_page(self):
        page = apply(_records(60), ViewState())
        assert len(page.records) == 50
        assert page.total_matched == 60
        assert page.has_more
        assert page.records[0].content == "fact 59"

    def test_show_more(self):
        records = _records(60)
        page = apply(records, show_more(ViewState()))
        assert len(page.records) == 60
        assert not page.has_more

    def test_type_and_importance_filters(self):
        records = _records(3) + [
            ViewRecord.from_memory(episodic("trip", "vacation", importance="high")),
        ]
        page = apply(records, ViewState(type_filter="episodic"))
        assert [r.content for r in page.records] == ["trip"]
        page = apply(records, ViewState(importance_filter="normal"))
        assert page.total_matched == 3

    def test_search_is_case_insensitive_substring(self):
        records = [
            ViewRecord.from_memory(semantic("Tabs versus spaces", "style")),
            ViewRecord.from_memory(semantic("x", "d", context="Code REVIEW")),
            ViewRecord.from_memory(semantic("y", "d", tags=["review-notes"])),
            ViewRecord.from_memory(semantic("z", "d")),
        ]
        assert apply(records, ViewState(search="TABS")).total_matched == 1
        assert apply(records, ViewState(search="review")).total_matched == 2

    def test_changing_filters_resets_visible_count(self):
        state = show_more(show_more(ViewState()))
        assert state.visible_count == 150
        state = with_filters(state, search="fact")
        assert state.visible_count == 50
        assert state.search == "fact"
        assert state.type_filter == "all"

    def test_no_matches(self):
        page = apply(_records(3), ViewState(search="nothing"))
        assert page.records == []
        assert page.total_matched == 0
        assert not page.has_more
