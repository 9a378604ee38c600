#!/usr/bin/env python3
"""Subtitle-driven seeking.

Seek targets are expressed in playback time: an entry that starts at
`start` in subtitle time is shown at `start + delay` on the player clock.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import SubtitleEntry
from .timeline import SubtitleTimeline


@dataclass(frozen=True)
class SeekTarget:
    """Where to seek to.

    Attributes:
        time: Playback time in seconds
        from_subtitle: False when the target came from the plain fallback step
    """
    time: float
    from_subtitle: bool = True


def _entry_target(timeline: SubtitleTimeline, entry: Optional[SubtitleEntry]) -> Optional[SeekTarget]:
    if entry is None:
        return None
    return SeekTarget(max(0.0, entry.start + timeline.config.delay))


def prev_seek_target(
    timeline: SubtitleTimeline,
    now: Optional[float] = None,
    fallback: Optional[float] = None,
) -> Optional[SeekTarget]:
    """Start of the previous entry, or `now - fallback` when there is none.

    Args:
        timeline: Slot whose cursor is used
        now: Current playback time, needed only for the fallback
        fallback: Seconds to step back when no previous entry exists

    Returns:
        SeekTarget, or None when neither an entry nor a fallback applies
    """
    target = _entry_target(timeline, timeline.get_prev())
    if target is None and fallback is not None and now is not None:
        target = SeekTarget(max(0.0, now - fallback), from_subtitle=False)
    return target


def next_seek_target(
    timeline: SubtitleTimeline,
    now: Optional[float] = None,
    fallback: Optional[float] = None,
) -> Optional[SeekTarget]:
    """Start of the next entry, or `now + fallback` when there is none."""
    target = _entry_target(timeline, timeline.get_next())
    if target is None and fallback is not None and now is not None:
        target = SeekTarget(now + fallback, from_subtitle=False)
    return target


def cur_seek_target(timeline: SubtitleTimeline) -> Optional[SeekTarget]:
    """Start of the showing entry; between entries, the previous one."""
    target = _entry_target(timeline, timeline.get_current())
    if target is None:
        target = prev_seek_target(timeline)
    return target
