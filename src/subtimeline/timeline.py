#!/usr/bin/env python3
"""Timeline store for one subtitle slot.

The store keeps entries sorted by start time and maintains a cursor
(current_index, state) describing where the playback clock sits. Producers
append from worker threads while the playback path queries; every public
operation takes the slot lock for exactly one logical step.
"""
from __future__ import annotations

import threading
from bisect import bisect_left, bisect_right
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from .events import EventChannel, EventKind, TimelineEvent
from .languages import UNKNOWN, Language, get_language
from .models import PositionState, SlotConfig, SubtitleEntry


class SubtitleTimeline:
    """Ordered, mutable subtitle track with a playback cursor.

    Entries must be added in non-decreasing start order, or `sort()` must be
    called before querying. Queries on an unsorted store return undefined
    results rather than raising.

    Args:
        slot: Slot index (0 = primary, 1 = secondary)
        config: Slot settings; delay and fallback language are read live
        events: Channel that receives change notifications
    """

    def __init__(
        self,
        slot: int,
        config: Optional[SlotConfig] = None,
        events: Optional[EventChannel] = None,
    ) -> None:
        self.slot = slot
        self.config = config if config is not None else SlotConfig()
        self.events = events
        self.lock = threading.RLock()

        self._entries: List[SubtitleEntry] = []
        self._index = -1
        self._state = PositionState.FIRST
        self._last_time: Optional[float] = None
        self._language_source: Optional[Language] = None
        self._loading = 0

    # ------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------

    @property
    def entries(self) -> List[SubtitleEntry]:
        """Snapshot of the entries. The list is a copy; entries are shared."""
        with self.lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def __getitem__(self, i: int) -> SubtitleEntry:
        with self.lock:
            return self._entries[i]

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def state(self) -> PositionState:
        return self._state

    @property
    def language_source(self) -> Optional[Language]:
        return self._language_source

    @language_source.setter
    def language_source(self, value: Optional[Language]) -> None:
        with self.lock:
            self._language_source = value
        if value is not None:
            self._publish(EventKind.LANGUAGE_DETECTED, value)

    @property
    def language(self) -> Language:
        """Source language, or the slot's fallback when it is unknown."""
        src = self._language_source
        if src is None or src.is_unknown:
            fallback = get_language(self.config.language_fallback)
            return fallback if not fallback.is_unknown else UNKNOWN
        return src

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    # ------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------

    def set_current_time(self, t: float) -> None:
        """Move the cursor to playback time t (seconds, before delay)."""
        self._last_time = t
        self._update_cursor(t - self.config.delay, allow_cheap=True)

    def refresh(self) -> None:
        """Recompute the cursor for the last queried time."""
        if self._last_time is None:
            return
        self._update_cursor(self._last_time - self.config.delay, allow_cheap=False)

    def _update_cursor(self, t: float, *, allow_cheap: bool) -> None:
        with self.lock:
            old = self._index
            entries = self._entries

            if (allow_cheap and self._state is PositionState.SHOWING
                    and 0 <= self._index < len(entries)):
                cur = entries[self._index]
                if cur.start <= t < cur.end:
                    return

            pos = bisect_right(entries, t, key=lambda e: e.start)
            if pos == 0:
                self._index = -1
                self._state = PositionState.FIRST
            else:
                i = pos - 1
                cur = entries[i]
                self._index = i
                if i == len(entries) - 1:
                    self._state = PositionState.LAST if t > cur.end else PositionState.SHOWING
                elif t < cur.end:
                    self._state = PositionState.SHOWING
                else:
                    self._state = PositionState.AROUND
            changed = old != self._index

        if changed:
            self._publish(EventKind.CURRENT_CHANGED, self._index)

    def get_current(self) -> Optional[SubtitleEntry]:
        """Entry showing at the cursor, or None between/outside entries."""
        with self.lock:
            if self._state is PositionState.SHOWING and 0 <= self._index < len(self._entries):
                return self._entries[self._index]
            return None

    def get_next(self) -> Optional[SubtitleEntry]:
        with self.lock:
            if not self._entries:
                return None
            if self._state is PositionState.FIRST:
                return self._entries[0]
            if self._state in (PositionState.SHOWING, PositionState.AROUND):
                nxt = self._index + 1
                if 0 <= nxt < len(self._entries):
                    return self._entries[nxt]
            return None

    def get_prev(self) -> Optional[SubtitleEntry]:
        with self.lock:
            if self._index == -1 or self._index >= len(self._entries):
                return None
            if self._state is PositionState.SHOWING:
                if self._index > 0:
                    return self._entries[self._index - 1]
                return None
            if self._state in (PositionState.AROUND, PositionState.LAST):
                return self._entries[self._index]
            return None

    # ------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------

    def add(self, entry: SubtitleEntry) -> None:
        with self.lock:
            self._append(entry)
        self._publish(EventKind.ENTRIES_CHANGED, len(self))

    def add_range(self, entries: Iterable[SubtitleEntry]) -> None:
        with self.lock:
            for e in entries:
                self._append(e)
            count = len(self._entries)
        self._publish(EventKind.ENTRIES_CHANGED, count)

    def load(self, entries: Iterable[SubtitleEntry]) -> None:
        """Replace all entries. Previous entries are disposed."""
        with self.lock:
            self._clear_locked()
            for e in entries:
                self._append(e)
            count = len(self._entries)
        self._publish(EventKind.ENTRIES_CHANGED, count)

    def sort(self) -> None:
        with self.lock:
            self._entries.sort(key=lambda e: e.start)
            for i, e in enumerate(self._entries):
                e.index = i
            self._reset_cursor()
        self._publish(EventKind.ENTRIES_CHANGED, len(self))

    def delete_after(self, t: float) -> None:
        """Drop every entry whose end time is at or after t.

        Removed entries are disposed and the cursor is reset.
        """
        with self.lock:
            pos = bisect_left(self._entries, t, key=lambda e: e.end)
            if pos >= len(self._entries):
                return
            removed = self._entries[pos:]
            self._entries = self._entries[:pos]
            for e in removed:
                e.dispose()
            self._reset_cursor()
            count = len(self._entries)
        self._publish(EventKind.ENTRIES_CHANGED, count)

    def clear(self) -> None:
        """Dispose every entry, reset the cursor and forget the source language."""
        with self.lock:
            self._clear_locked()
        self._publish(EventKind.ENTRIES_CHANGED, 0)

    def update_text(self, entry: SubtitleEntry, text: Optional[str]) -> None:
        with self.lock:
            entry.text = text
        self._publish(EventKind.ENTRIES_CHANGED, len(self))

    def update_translation(self, entry: SubtitleEntry, text: Optional[str]) -> None:
        with self.lock:
            entry.translated_text = text
            entry.use_translated = self.config.enabled_translated
        self._publish(EventKind.ENTRIES_CHANGED, len(self))

    @contextmanager
    def loading(self) -> Iterator["SubtitleTimeline"]:
        """Mark the slot busy for the duration of the block. Nests."""
        with self.lock:
            self._loading += 1
            started = self._loading == 1
        if started:
            self._publish(EventKind.LOADING_CHANGED, True)
        try:
            yield self
        finally:
            with self.lock:
                self._loading -= 1
                stopped = self._loading == 0
            if stopped:
                self._publish(EventKind.LOADING_CHANGED, False)

    # ------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------

    def _append(self, entry: SubtitleEntry) -> None:
        entry.index = len(self._entries)
        entry.use_translated = self.config.enabled_translated
        self._entries.append(entry)

    def _clear_locked(self) -> None:
        for e in self._entries:
            e.dispose()
        self._entries = []
        self._language_source = None
        self._reset_cursor()

    def _reset_cursor(self) -> None:
        self._index = -1
        self._state = PositionState.FIRST

    def _publish(self, kind: EventKind, value=None) -> None:
        if self.events is not None:
            self.events.publish(TimelineEvent(kind, self.slot, value))
