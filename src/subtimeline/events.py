#!/usr/bin/env python3
"""Store notifications delivered over queues.

Timelines publish events from whichever thread mutated them. Consumers
(renderers, translators, the CLI) subscribe and receive their own
queue.Queue, so no UI callback is ever invoked on a producer thread.
"""
from __future__ import annotations

import enum
import queue
import threading
from dataclasses import dataclass
from typing import Any, List


class EventKind(enum.Enum):
    ENTRIES_CHANGED = "entries_changed"
    LANGUAGE_DETECTED = "language_detected"
    LOADING_CHANGED = "loading_changed"
    CURRENT_CHANGED = "current_changed"


@dataclass(frozen=True)
class TimelineEvent:
    """One notification from a slot's timeline.

    Attributes:
        kind: What changed
        slot: Slot index of the timeline
        value: Kind-specific payload (entry count, Language, bool, index)
    """
    kind: EventKind
    slot: int
    value: Any = None


class EventChannel:
    """Fan-out of timeline events to any number of subscriber queues."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List["queue.Queue[TimelineEvent]"] = []

    def subscribe(self, maxsize: int = 0) -> "queue.Queue[TimelineEvent]":
        """Register a new subscriber.

        Args:
            maxsize: Queue bound; 0 means unbounded. When a bounded queue is
                full, new events for it are dropped.

        Returns:
            Queue that receives every event published after this call
        """
        q: "queue.Queue[TimelineEvent]" = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[TimelineEvent]") -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def publish(self, event: TimelineEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass


def drain(q: "queue.Queue[TimelineEvent]") -> List[TimelineEvent]:
    """Return every event currently waiting in a subscriber queue."""
    events: List[TimelineEvent] = []
    while True:
        try:
            events.append(q.get_nowait())
        except queue.Empty:
            return events
