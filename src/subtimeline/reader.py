#!/usr/bin/env python3
"""Ingestion reader: drains a subtitle stream into timed entries.

Bitmap subtitle codecs (PGS in particular) do not always carry an end time.
Two signals close the pending bitmap entry at the current timestamp:
- an empty payload (no rects): the previous subtitle ended here
- a new payload while the pending one is open-ended (end_display_time
  equal to 0xFFFFFFFF): close the previous one and start the new one

Entries are otherwise held back one packet so that a later packet can still
correct their end time.
"""
from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, List, Optional

from .bitmap import BitmapArena
from .demux import OPEN_ENDED_DISPLAY, DecodedSubtitle, Demuxer, Packet, StreamInfo
from .errors import DecodeError, DemuxError, ErrorBudget, MediaOpenError, OperationCancelled
from .languages import get_language
from .logging_utils import component_tag, debug, log, warn
from .models import TICKS_PER_SECOND, ResolvedConfig, RunOutcome, SubtitleEntry
from .producers import CancelToken
from .text_processing import ass_to_plain
from .timeline import SubtitleTimeline

TEXT_SUBTITLE_EXTENSIONS = {".srt", ".ass", ".ssa", ".vtt", ".txt", ".sub", ".smi", ".lrc"}

_TEXT_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")


# ============================================================
# Text File Loading
# ============================================================

def read_text_subtitle_utf8(path: Path, max_bytes: int) -> bytes:
    """Read a text subtitle file and return it re-encoded as UTF-8.

    UTF-16 files are recognized by their BOM; otherwise UTF-8 is tried first,
    then cp1252 and latin-1 (which always succeeds).

    Args:
        path: Subtitle file
        max_bytes: Refuse files at or above this size

    Returns:
        UTF-8 bytes of the file content

    Raises:
        MediaOpenError: If the file is too big
    """
    size = path.stat().st_size
    if size >= max_bytes:
        raise MediaOpenError(f"text subtitle is too big to load ({size} bytes): {path}")
    raw = path.read_bytes()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16").encode("utf-8")
    for enc in _TEXT_ENCODINGS:
        try:
            return raw.decode(enc).encode("utf-8")
        except UnicodeDecodeError:
            continue
    return raw


def resolve_subtitle_url(url: str, stream_index: int) -> str:
    """Prefer the .idx companion of a VobSub .sub file when no stream is given."""
    if stream_index == -1 and url.lower().endswith(".sub"):
        idx = Path(url[:-4] + ".idx")
        if idx.exists():
            return str(idx)
    return url


# ============================================================
# Reader
# ============================================================

class SubtitleReader:
    """Reads every subtitle of one stream through a Demuxer.

    Args:
        demuxer: Packet source (a fresh, unopened instance)
        config: Resolved configuration (error budgets, text size limit)
        arena: Arena that receives retained bitmaps
        slot: Slot index, for log tags
    """

    def __init__(
        self,
        demuxer: Demuxer,
        config: ResolvedConfig,
        arena: Optional[BitmapArena] = None,
        *,
        slot: int = 0,
    ) -> None:
        self.demuxer = demuxer
        self.config = config
        self.arena = arena if arena is not None else BitmapArena()
        self.slot = slot
        self.stream: Optional[StreamInfo] = None
        self.url: Optional[str] = None
        self._tag = component_tag("SubReader", slot)

    def open(self, url: str, stream_index: int = -1) -> StreamInfo:
        """Open url and select its subtitle stream.

        Args:
            url: Media file or external subtitle file
            stream_index: Stream index, or -1 for the first subtitle stream

        Returns:
            Description of the selected stream

        Raises:
            MediaOpenError: If the stream cannot be opened
        """
        url = resolve_subtitle_url(url, stream_index)
        data: Optional[bytes] = None
        p = Path(url)
        if p.suffix.lower() in TEXT_SUBTITLE_EXTENSIONS and p.is_file():
            try:
                data = read_text_subtitle_utf8(p, self.config.text_subtitle_max_bytes)
            except (OSError, MediaOpenError) as e:
                warn(f"cannot load text subtitle to memory: {e}", quiet=self.config.quiet, tag=self._tag)

        self.stream = self.demuxer.open(url, stream_index, kind="subtitle", data=data)
        self.url = url
        debug(f"opened {url} stream={self.stream.index} codec={self.stream.codec} "
              f"bitmap={self.stream.is_bitmap}", verbose=self.config.verbose, tag=self._tag)
        return self.stream

    def close(self) -> None:
        self.demuxer.close()

    def __enter__(self) -> "SubtitleReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------

    def read_all(
        self,
        on_entry: Callable[[SubtitleEntry], None],
        token: Optional[CancelToken] = None,
        *,
        use_bitmap: bool = False,
    ) -> RunOutcome:
        """Drain the stream, calling on_entry for every finished entry.

        The pending entry is flushed at end of stream and on cancellation.

        Args:
            on_entry: Receives ownership of each entry
            token: Cancellation token checked before every packet
            use_bitmap: Keep bitmap payloads in the arena

        Returns:
            COMPLETED at end of stream, STOPPED if cancelled

        Raises:
            FatalMediaError: When an error budget is exhausted
        """
        if self.stream is None:
            raise MediaOpenError("read_all() before open()")

        token = token or CancelToken()
        is_bitmap = self.stream.is_bitmap
        start_ticks = int(round(self.demuxer.start_time * TICKS_PER_SECOND))
        demux_errors = ErrorBudget("demux", self.config.demux_max_errors)
        decode_errors = ErrorBudget("decode", self.config.decode_max_errors)

        pending: Optional[SubtitleEntry] = None
        pending_open_ended = False
        outcome = RunOutcome.COMPLETED

        try:
            while True:
                if token.cancelled:
                    outcome = RunOutcome.STOPPED
                    break

                try:
                    packet = self.demuxer.read_packet()
                    demux_errors.reset()
                except DemuxError as e:
                    warn(f"read_packet: {e}", quiet=self.config.quiet, tag=self._tag)
                    demux_errors.record(e)
                    continue

                if packet is None:
                    break
                if packet.stream_index != self.stream.index:
                    continue

                try:
                    decoded = self.demuxer.decode(packet)
                    decode_errors.reset()
                except DecodeError as e:
                    warn(f"decode: {e}", quiet=self.config.quiet, tag=self._tag)
                    decode_errors.record(e)
                    continue

                for sub in decoded:
                    ticks = self._pts_ticks(sub, packet)
                    if ticks is None:
                        continue
                    ticks -= start_ticks
                    now = ticks / TICKS_PER_SECOND

                    if is_bitmap and pending is not None:
                        if not sub.rects:
                            pending.end = now
                            on_entry(pending)
                            pending = None
                            continue
                        if pending_open_ended:
                            pending.end = now
                            on_entry(pending)
                            pending = None

                    entry = self._build_entry(sub, ticks, use_bitmap)
                    if entry is None:
                        continue

                    if pending is not None:
                        on_entry(pending)
                    pending = entry
                    pending_open_ended = sub.end_display_time == OPEN_ENDED_DISPLAY
        except BaseException:
            if pending is not None:
                pending.dispose()
            raise

        if pending is not None:
            on_entry(pending)
        return outcome

    def _pts_ticks(self, sub: DecodedSubtitle, packet: Packet) -> Optional[int]:
        if sub.pts is not None:
            # payload pts is in microseconds
            return int(sub.pts) * 10
        if packet.pts is not None:
            tb = packet.time_base or (self.stream.time_base if self.stream else None)
            if tb is None:
                return None
            return int(packet.pts * tb * TICKS_PER_SECOND)
        return None

    def _build_entry(self, sub: DecodedSubtitle, ticks: int, use_bitmap: bool) -> Optional[SubtitleEntry]:
        if not sub.rects:
            return None
        start = ticks / TICKS_PER_SECOND
        end = (ticks + sub.end_display_time * 10_000) / TICKS_PER_SECOND
        rect = sub.rects[0]

        if rect.kind == "bitmap":
            entry = SubtitleEntry(start=start, end=end, is_bitmap=True)
            if use_bitmap and rect.image is not None:
                entry.bitmap = self.arena.store(rect.image)
            return entry

        if rect.kind == "ass":
            text = ass_to_plain(rect.text or "")
        else:
            text = (rect.text or "").strip()
        if not text:
            return None
        return SubtitleEntry(start=start, end=end, text=text)


# ============================================================
# Batching
# ============================================================

class EntryBatcher:
    """Buffers entries and hands them over in groups.

    A batch is flushed once it holds at least `min_count` entries and at
    least `interval` seconds have passed since the last flush.

    Args:
        flush: Receives each batch (ownership moves with it)
        min_count: Minimum entries per intermediate flush
        interval: Minimum seconds between intermediate flushes
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        flush: Callable[[List[SubtitleEntry]], None],
        *,
        min_count: int = 2,
        interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._flush = flush
        self.min_count = min_count
        self.interval = interval
        self._clock = clock
        self._last = clock()
        self.pending: List[SubtitleEntry] = []

    def add(self, entry: SubtitleEntry) -> None:
        self.pending.append(entry)
        if len(self.pending) >= self.min_count and self._clock() - self._last >= self.interval:
            self.flush()

    def flush(self) -> None:
        if self.pending:
            batch, self.pending = self.pending, []
            self._flush(batch)
        self._last = self._clock()

    def discard(self) -> None:
        """Dispose buffered entries without handing them over."""
        for e in self.pending:
            e.dispose()
        self.pending = []


# ============================================================
# Loading Into A Timeline
# ============================================================

def load_subtitles(
    timeline: SubtitleTimeline,
    reader: SubtitleReader,
    url: str,
    stream_index: int,
    token: CancelToken,
    *,
    use_bitmap: bool = False,
    language: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RunOutcome:
    """Open a subtitle stream and stream its entries into a timeline.

    The timeline is cleared first. On cancellation, buffered entries are
    disposed and the timeline is cleared again so no partial track remains.

    Args:
        timeline: Destination store
        reader: Reader with an unopened demuxer
        url: Media or subtitle file
        stream_index: Stream index or -1
        token: Cancellation token of the owning producer
        use_bitmap: Keep bitmap payloads (needed for OCR)
        language: Known source language code, if any
        clock: Monotonic clock for batching

    Returns:
        RunOutcome of the read
    """
    cfg = reader.config
    tag = component_tag("SubReader", timeline.slot)
    token.raise_if_cancelled()
    timeline.clear()

    with timeline.loading():
        try:
            stream = reader.open(url, stream_index)
            lang = language or stream.language
            first = [True]

            def flush(batch: List[SubtitleEntry]) -> None:
                if first[0]:
                    first[0] = False
                    timeline.language_source = get_language(lang) if lang else None
                timeline.add_range(batch)
                timeline.refresh()

            batcher = EntryBatcher(
                flush,
                min_count=cfg.batch_min_count,
                interval=cfg.batch_interval,
                clock=clock,
            )
            try:
                outcome = reader.read_all(batcher.add, token, use_bitmap=use_bitmap)
            except BaseException:
                batcher.discard()
                raise

            if outcome is RunOutcome.STOPPED or token.cancelled:
                batcher.discard()
                timeline.clear()
                log("subtitle loading cancelled", quiet=cfg.quiet, tag=tag)
                return RunOutcome.STOPPED

            batcher.flush()
            log(f"loaded {len(timeline)} subtitles from {Path(url).name}", quiet=cfg.quiet, tag=tag)
            return RunOutcome.COMPLETED
        except OperationCancelled:
            timeline.clear()
            return RunOutcome.STOPPED
        finally:
            reader.close()
