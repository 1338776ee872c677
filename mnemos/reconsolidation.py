"""
Reconsolidation Engine — Lability Windows

A memory is Stable until a qualifying retrieval opens a lability window.
While the window is open (Labile) fields may be updated; every update is
validated, recorded on the event and logged as ``modified``. The window
closes explicitly (close_window) or when its timer fires, and the closure
is logged as ``reconsolidated`` with a final state:

    net strengthening (importance up / confidence up)   -> strengthened
    net weakening                                        -> weakened
    any other update                                     -> updated
    no update                                            -> unchanged

At most one window per memory is open at a time: a per-memory lock
serializes window operations in-process, and a partial unique index in
the store rejects a second open row. In-memory window state changes only
after the store transaction that records it has committed.

Several engines (or processes) may share one database. The persisted
event row decides whether a window is open: every window operation
re-reads it first, and writes to an event only succeed while its row is
still open.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from mnemos.config import ReconsolidationConfig
from mnemos.errors import (
    MnemosError,
    NoActiveLabilityWindow,
    ReconsolidationError,
    WeakeningNotAllowed,
    WindowAlreadyOpen,
)
from mnemos.ids import now_ms
from mnemos.provenance import ProvenanceLog
from mnemos.store import MemoryStore
from mnemos.types import (
    IMPORTANCE_RANK,
    AccessedData,
    ArchivedData,
    FieldChange,
    ImportanceChangedData,
    Memory,
    ModifiedData,
    ReconsolidatedData,
    ReconsolidationEvent,
    ReconsolidationUpdate,
    RetrievalContext,
    plain,
)
from mnemos.validation import check_references, validate

logger = logging.getLogger(__name__)


@dataclass
class AccessOutcome:
    """Result of ReconsolidationEngine.access()."""
    memory: Memory
    event: Optional[ReconsolidationEvent] = None
    skipped_reason: Optional[str] = None

    @property
    def triggered_reconsolidation(self) -> bool:
        return self.event is not None


def _strength_delta(field: str, old: Any, new: Any) -> float:
    """Signed strength change of one field (0 for non-strength fields)."""
    if field == "importance" and old in IMPORTANCE_RANK and new in IMPORTANCE_RANK:
        return (IMPORTANCE_RANK[new] - IMPORTANCE_RANK[old]) / 3.0
    if field == "confidence" and isinstance(old, (int, float)) and isinstance(new, (int, float)):
        return float(new) - float(old)
    return 0.0


def final_state_of(updates: List[ReconsolidationUpdate]) -> str:
    """Classify a window from its updates (first old value vs last new value)."""
    if not updates:
        return "unchanged"
    first: Dict[str, Any] = {}
    last: Dict[str, Any] = {}
    for u in updates:
        first.setdefault(u.field, u.previous_value)
        last[u.field] = u.new_value
    net = sum(_strength_delta(f, first[f], last[f]) for f in first)
    if net > 1e-12:
        return "strengthened"
    if net < -1e-12:
        return "weakened"
    return "updated"


class ReconsolidationEngine:
    """Opens, mutates and closes lability windows over a store."""

    def __init__(
        self,
        store: MemoryStore,
        log: ProvenanceLog,
        config: Optional[ReconsolidationConfig] = None,
        clock: Callable[[], int] = now_ms,
        recover: bool = True,
    ):
        self._store = store
        self._log = log
        self.config = config or ReconsolidationConfig()
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._active: Dict[str, ReconsolidationEvent] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._stopped = False
        if recover:
            self.recover()

    # -- Locking -----------------------------------------------------------

    def _lock_for(self, memory_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(memory_id)
            if lock is None:
                lock = self._locks[memory_id] = threading.Lock()
            return lock

    @contextmanager
    def locked(self, memory_id: str) -> Iterator[None]:
        """Hold the window lock of one memory (for lifecycle operations)."""
        with self._lock_for(memory_id):
            yield

    # -- Window state ------------------------------------------------------

    def _forget(self, memory_id: str) -> None:
        self._active.pop(memory_id, None)
        timer = self._timers.pop(memory_id, None)
        if timer is not None and timer is not threading.current_thread():
            timer.cancel()

    def _sync(self, memory_id: str) -> Optional[ReconsolidationEvent]:
        """Refresh the tracked window of *memory_id* from the store.

        Other engines may share the database, so the persisted row decides
        whether a window is open. Windows opened elsewhere are adopted,
        windows closed elsewhere are forgotten.
        """
        stored = self._store.open_event(memory_id)
        if stored is None:
            if memory_id in self._active:
                logger.debug(f"window of {memory_id} was closed elsewhere")
            self._forget(memory_id)
            return None
        tracked = self._active.get(memory_id)
        self._active[memory_id] = stored
        if tracked is None or tracked.id != stored.id:
            remaining = (
                stored.lability_window_start
                + self.config.lability_window_duration_ms
                - self._clock()
            )
            if remaining > 0:
                self._arm(stored, remaining)
        return stored

    # -- Access ------------------------------------------------------------

    def _skip_reason(
        self, memory: Memory, context: RetrievalContext, at: int, open_now: bool,
    ) -> Optional[str]:
        if context.trigger not in self.config.qualifying_triggers:
            return f"trigger {context.trigger} does not qualify"
        if memory.archived:
            return "memory is archived"
        if open_now:
            return "window already open"
        last_end = self._store.last_closed_window_end(memory.id)
        if last_end is not None and at - last_end < self.config.min_reconsolidation_interval_ms:
            return "reconsolidated too recently"
        return None

    def _current(self, memory_id: str, at: int) -> Optional[ReconsolidationEvent]:
        """The open window of *memory_id*, closing it first if it has expired."""
        event = self._sync(memory_id)
        if event is not None and self._expired(event, at):
            self._close_locked(memory_id, "timeout")
            return None
        return event

    def access(self, memory_id: str, context: Optional[RetrievalContext] = None) -> AccessOutcome:
        """Record a retrieval and open a window if it qualifies.

        Raises:
            MemoryNotFound: Unknown memory id.
        """
        context = context or RetrievalContext()
        with self._lock_for(memory_id):
            memory = self._store.require_memory(memory_id)
            at = self._clock()
            open_now = self._current(memory_id, at) is not None
            reason = self._skip_reason(memory, context, at, open_now)
            event = None
            if reason is None:
                try:
                    with self._store.transaction():
                        memory = self._store.increment_access(memory_id, at)
                        event = self._insert_window(memory_id, context, at)
                        self._log.record(memory_id, AccessedData(
                            context=context, triggered_reconsolidation=True,
                        ))
                except WindowAlreadyOpen:
                    # Opened by another engine since the check above
                    event = None
                    reason = "window already open"
                    self._sync(memory_id)
            if event is None:
                with self._store.transaction():
                    memory = self._store.increment_access(memory_id, at)
                    self._log.record(memory_id, AccessedData(
                        context=context, triggered_reconsolidation=False,
                    ))
                logger.debug(f"access {memory_id}: no window ({reason})")
            else:
                self._activate(event)
        return AccessOutcome(
            memory=memory,
            event=copy.deepcopy(event),
            skipped_reason=reason,
        )

    def open_window(
        self, memory_id: str, context: Optional[RetrievalContext] = None,
    ) -> ReconsolidationEvent:
        """Force a window open, bypassing the trigger and interval rules.

        An expired window still on record is closed by timeout first.

        Raises:
            WindowAlreadyOpen: The memory is already labile.
            ReconsolidationError: The memory is archived.
            MemoryNotFound: Unknown memory id.
        """
        context = context or RetrievalContext()
        with self._lock_for(memory_id):
            memory = self._store.require_memory(memory_id)
            at = self._clock()
            if self._current(memory_id, at) is not None:
                raise WindowAlreadyOpen(f"memory {memory_id} already has an open lability window")
            if memory.archived:
                raise ReconsolidationError(
                    f"memory {memory_id} is archived; restore it first", "archived-is-stable",
                )
            with self._store.transaction():
                self._store.increment_access(memory_id, at)
                event = self._insert_window(memory_id, context, at)
                self._log.record(memory_id, AccessedData(
                    context=context, triggered_reconsolidation=True,
                ))
            self._activate(event)
        return copy.deepcopy(event)

    def _insert_window(
        self, memory_id: str, context: RetrievalContext, at: int,
    ) -> ReconsolidationEvent:
        event = ReconsolidationEvent(
            memory_id=memory_id,
            lability_window_start=at,
            trigger_context=copy.deepcopy(context),
            created_at=at,
        )
        self._store.insert_event(event)
        return event

    def _activate(self, event: ReconsolidationEvent) -> None:
        self._active[event.memory_id] = event
        self._arm(event, self.config.lability_window_duration_ms)
        logger.info(
            f"lability window opened: {event.memory_id} "
            f"(event={event.id}, trigger={event.trigger_context.trigger})"
        )

    # -- Updates -----------------------------------------------------------

    def _expired(self, event: ReconsolidationEvent, at: int) -> bool:
        return at - event.lability_window_start >= self.config.lability_window_duration_ms

    def apply_update(
        self, memory_id: str, field: str, new_value: Any, reason: str = "",
    ) -> ReconsolidationUpdate:
        """Change one field of a labile memory.

        Raises:
            NoActiveLabilityWindow: No open window, or it has expired or
                was closed by another engine sharing the store.
            ValidationError: Immutable/unknown field or invalid result.
            WeakeningNotAllowed: Lowering importance or confidence while
                ``allow_weakening`` is off.
        """
        with self._lock_for(memory_id):
            event = self._sync(memory_id)
            if event is None:
                raise NoActiveLabilityWindow(f"memory {memory_id} has no open lability window")
            at = self._clock()
            if self._expired(event, at):
                self._close_locked(memory_id, "timeout")
                raise NoActiveLabilityWindow(f"lability window for {memory_id} has expired")

            memory = self._store.require_memory(memory_id)
            candidate = memory.with_field(field, new_value)
            validate(candidate)
            check_references(candidate, self._store.memory_exists)
            previous = memory.get_field(field)
            if _strength_delta(field, previous, new_value) < 0 and not self.config.allow_weakening:
                raise WeakeningNotAllowed(
                    f"{field} of {memory_id} would drop from {previous!r} to {new_value!r}"
                )

            update = ReconsolidationUpdate(
                field=field,
                previous_value=plain(previous),
                new_value=plain(new_value),
                reason=reason,
                applied_at=at,
            )
            updated_event = copy.deepcopy(event)
            updated_event.updates_applied.append(update)
            patch: Dict[str, Any] = {field: candidate.get_field(field)}
            archive = (
                field == "confidence"
                and not memory.archived
                and new_value < self.config.deletion_threshold
            )
            if archive:
                patch["archived"] = True

            try:
                with self._store.transaction():
                    # The event row is the gate: a window closed elsewhere stops the write
                    if not self._store.update_event(updated_event):
                        raise NoActiveLabilityWindow(
                            f"lability window for {memory_id} was closed elsewhere"
                        )
                    self._store.update_memory(memory_id, patch)
                    self._log.record(memory_id, ModifiedData(
                        changes=[FieldChange(field, update.previous_value, update.new_value)],
                        reason=reason,
                        reconsolidation_event_id=event.id,
                    ))
                    if field == "importance" and previous != new_value:
                        self._log.record(memory_id, ImportanceChangedData(
                            previous_importance=previous,
                            new_importance=new_value,
                            reason=reason,
                        ))
                    if archive:
                        self._log.record(memory_id, ArchivedData(
                            details=(
                                f"confidence {new_value} below deletion threshold "
                                f"{self.config.deletion_threshold}"
                            ),
                        ))
            except NoActiveLabilityWindow:
                self._forget(memory_id)
                raise
            self._active[memory_id] = updated_event
        if archive:
            logger.info(f"memory archived by reconsolidation: {memory_id}")
        return update

    # -- Closing -----------------------------------------------------------

    def close_window(self, memory_id: str) -> ReconsolidationEvent:
        """Close the open window of *memory_id* now.

        A window already past its duration is recorded as closed by timeout.

        Raises:
            NoActiveLabilityWindow: No open window.
            StorageFailure: Closure could not be recorded; the window stays open.
        """
        with self._lock_for(memory_id):
            event = self._sync(memory_id)
            if event is None:
                raise NoActiveLabilityWindow(f"memory {memory_id} has no open lability window")
            closed_by = "timeout" if self._expired(event, self._clock()) else "caller"
            closed = self._close_locked(memory_id, closed_by)
            if closed is None:
                raise NoActiveLabilityWindow(f"memory {memory_id} has no open lability window")
            return closed

    def _close_locked(self, memory_id: str, closed_by: str) -> Optional[ReconsolidationEvent]:
        """Close the tracked window. None if another engine closed it first."""
        event = self._active[memory_id]
        closed = copy.deepcopy(event)
        closed.lability_window_end = max(self._clock(), event.lability_window_start)
        closed.final_state = final_state_of(closed.updates_applied)
        closed.closed_by = closed_by
        fields = sorted({u.field for u in closed.updates_applied})
        summary = (
            f"{len(closed.updates_applied)} update(s) to {', '.join(fields)}"
            if fields else "no changes"
        )
        with self._store.transaction():
            written = self._store.update_event(closed)
            if written:
                self._log.record(memory_id, ReconsolidatedData(
                    reconsolidation_event_id=closed.id,
                    change_summary=summary,
                    final_state=closed.final_state,
                ))
        self._forget(memory_id)
        if not written:
            logger.debug(f"window of {memory_id} was closed elsewhere")
            return None
        logger.info(
            f"lability window closed: {memory_id} "
            f"(event={closed.id}, state={closed.final_state}, by={closed_by})"
        )
        return copy.deepcopy(closed)

    # -- Timers ------------------------------------------------------------

    def _arm(self, event: ReconsolidationEvent, delay_ms: int) -> None:
        if self._stopped:
            return
        timer = threading.Timer(
            max(delay_ms, 0) / 1000.0, self._on_timeout, args=(event.memory_id, event.id),
        )
        timer.daemon = True
        old = self._timers.pop(event.memory_id, None)
        if old is not None:
            old.cancel()
        self._timers[event.memory_id] = timer
        timer.start()

    def _on_timeout(self, memory_id: str, event_id: str) -> None:
        with self._lock_for(memory_id):
            event = self._active.get(memory_id)
            if self._stopped or event is None or event.id != event_id:
                return
            try:
                self._close_locked(memory_id, "timeout")
            except MnemosError as exc:
                # Window stays open; the next update or recovery closes it
                logger.error(f"timed close of {memory_id} failed: {exc}")

    def recover(self) -> int:
        """Adopt persisted open windows not yet tracked in this process.

        Expired windows are closed at once (``closed_by="timeout"``), the
        others are re-armed for their remaining time. Returns the number
        of windows adopted.
        """
        adopted = 0
        for event in self._store.open_events():
            with self._lock_for(event.memory_id):
                if event.memory_id in self._active:
                    continue
                self._active[event.memory_id] = event
                adopted += 1
                remaining = (
                    event.lability_window_start
                    + self.config.lability_window_duration_ms
                    - self._clock()
                )
                if remaining <= 0:
                    self._close_locked(event.memory_id, "timeout")
                else:
                    self._arm(event, remaining)
                    logger.info(f"lability window recovered: {event.memory_id} ({remaining} ms left)")
        return adopted

    def shutdown(self) -> None:
        """Cancel all timers. Open windows stay persisted for recovery."""
        self._stopped = True
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        logger.debug(f"reconsolidation engine stopped ({len(timers)} timer(s) cancelled)")

    # -- Introspection -----------------------------------------------------

    def is_labile(self, memory_id: str) -> bool:
        return memory_id in self._active

    def active_event(self, memory_id: str) -> Optional[ReconsolidationEvent]:
        event = self._active.get(memory_id)
        return copy.deepcopy(event) if event is not None else None

    def open_windows(self) -> List[ReconsolidationEvent]:
        return [copy.deepcopy(e) for e in self._active.values()]

    def events_for(self, memory_id: str) -> List[ReconsolidationEvent]:
        return self._store.read_events(memory_id)
