"""
View Projection — Read-Only Filterable Slice

The display model behind the exported HTML document. ViewState holds the
filters and how many records are visible; apply() turns a record list and
a state into one page. The inline script emitted by
export_import.render_html() implements the same rules, so a page computed
here matches what the offline document shows.

Nothing in this module writes to a store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from mnemos.types import Memory

DEFAULT_PAGE_SIZE = 50
ALL = "all"


@dataclass(frozen=True)
class ViewRecord:
    """The displayed subset of a memory."""
    id: str
    type: str
    content: str
    importance: str
    created_at: int
    tags: List[str] = field(default_factory=list)
    context: Optional[str] = None
    access_count: int = 0
    archived: bool = False

    @classmethod
    def from_memory(cls, memory: Memory) -> ViewRecord:
        return cls(
            id=memory.id,
            type=memory.type,
            content=memory.content,
            importance=memory.importance,
            created_at=memory.created_at,
            tags=list(memory.tags),
            context=memory.context,
            access_count=memory.access_count,
            archived=memory.archived,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def matches(self, state: ViewState) -> bool:
        if state.type_filter != ALL and self.type != state.type_filter:
            return False
        if state.importance_filter != ALL and self.importance != state.importance_filter:
            return False
        if state.search:
            q = state.search.lower()
            if (
                q not in self.content.lower()
                and q not in (self.context or "").lower()
                and q not in " ".join(self.tags).lower()
            ):
                return False
        return True


@dataclass(frozen=True)
class ViewState:
    """Filters plus the number of visible records."""
    type_filter: str = ALL
    importance_filter: str = ALL
    search: str = ""
    visible_count: int = DEFAULT_PAGE_SIZE


@dataclass
class ViewPage:
    records: List[ViewRecord]
    total_matched: int
    has_more: bool


def project(memories: Iterable[Memory], include_archived: bool = False) -> List[ViewRecord]:
    """Records for display, newest first (ties by id descending)."""
    records = [
        ViewRecord.from_memory(m) for m in memories if include_archived or not m.archived
    ]
    return sort_records(records)


def sort_records(records: Iterable[ViewRecord]) -> List[ViewRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)


def apply(records: Iterable[ViewRecord], state: ViewState) -> ViewPage:
    """Filter, order and cut *records* according to *state*."""
    matched = [r for r in sort_records(records) if r.matches(state)]
    visible = matched[:max(state.visible_count, 0)]
    return ViewPage(
        records=visible,
        total_matched=len(matched),
        has_more=len(matched) > len(visible),
    )


def show_more(state: ViewState, page_size: int = DEFAULT_PAGE_SIZE) -> ViewState:
    """Reveal one more page; filters are unchanged."""
    return replace(state, visible_count=state.visible_count + page_size)


def with_filters(
    state: ViewState,
    *,
    type_filter: Optional[str] = None,
    importance_filter: Optional[str] = None,
    search: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ViewState:
    """Change filters; the visible count goes back to one page."""
    return ViewState(
        type_filter=state.type_filter if type_filter is None else type_filter,
        importance_filter=state.importance_filter if importance_filter is None else importance_filter,
        search=state.search if search is None else search,
        visible_count=page_size,
    )
