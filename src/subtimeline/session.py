#!/usr/bin/env python3
"""Per-player subtitle session.

A SubtitleSession owns everything one player needs: the timelines of both
slots, their producer ownership, the stream selection, the registry of
external subtitle files, and the ASR/OCR/translation workers. Several
sessions can live in one process.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .actions import ActionRegistry, build_default_registry
from .asr import SubtitlesASR, create_engine
from .audio import AvResampler
from .bitmap import BitmapArena
from .demux import AvDemuxer, Demuxer
from .events import EventChannel
from .logging_utils import component_tag, debug
from .models import (
    SLOT_COUNT,
    ExternalStream,
    ProducerKind,
    ResolvedConfig,
    RunOutcome,
    SubtitleMethod,
)
from .ocr import SubtitlesOCR, create_ocr_engine
from .producers import CancelToken, ProducerHandle, ProducerSlot
from .reader import SubtitleReader, load_subtitles
from .timeline import SubtitleTimeline
from .translation import SubTranslator


# ============================================================
# Selection
# ============================================================

@dataclass
class StreamSelection:
    """What a slot is showing and how its text is produced."""
    url: str
    stream_index: int
    method: SubtitleMethod = SubtitleMethod.ORIGINAL
    is_external: bool = False


class SubtitleSelection:
    """Selected stream per slot."""

    def __init__(self, slots: int = SLOT_COUNT) -> None:
        self._lock = threading.Lock()
        self._selected: List[Optional[StreamSelection]] = [None] * slots

    def select(self, slot: int, selection: StreamSelection) -> None:
        with self._lock:
            self._selected[slot] = selection

    def get(self, slot: int) -> Optional[StreamSelection]:
        with self._lock:
            return self._selected[slot]

    def clear(self, slot: int) -> None:
        with self._lock:
            self._selected[slot] = None


# ============================================================
# Session
# ============================================================

class SubtitleSession:
    """Timelines, producers and workers for one player.

    Args:
        config: Resolved configuration; its `slots` list is shared live
        demuxer_factory: Builds a fresh Demuxer per reader or ASR run
        asr_engine_factory: Builds the transcription engine
        ocr_engine_factory: Builds the OCR engine
        resampler_factory: Builds the ASR resampler
        clock: Monotonic clock for batching and chunking
    """

    def __init__(
        self,
        config: Optional[ResolvedConfig] = None,
        *,
        demuxer_factory: Callable[[], Demuxer] = AvDemuxer,
        asr_engine_factory=create_engine,
        ocr_engine_factory=create_ocr_engine,
        resampler_factory=AvResampler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config if config is not None else ResolvedConfig()
        self.events = EventChannel()
        self.arena = BitmapArena()
        self.timelines = [
            SubtitleTimeline(i, self.config.slots[i], self.events) for i in range(SLOT_COUNT)
        ]
        self.producers = [ProducerSlot(i, quiet=self.config.quiet) for i in range(SLOT_COUNT)]
        self.selection = SubtitleSelection()
        self.external_streams: Dict[str, ExternalStream] = {}
        self._external_lock = threading.Lock()
        self._demuxer_factory = demuxer_factory
        self._clock = clock
        self._translators: Dict[int, SubTranslator] = {}
        self._last_index = [-1] * SLOT_COUNT

        self.asr = SubtitlesASR(
            self.timelines, self.producers, self.config,
            engine_factory=asr_engine_factory,
            demuxer_factory=demuxer_factory,
            resampler_factory=resampler_factory,
            clock=clock,
        )
        self.ocr = SubtitlesOCR(
            self.timelines, self.producers, self.config,
            engine_factory=ocr_engine_factory,
        )

    def __getitem__(self, slot: int) -> SubtitleTimeline:
        return self.timelines[slot]

    # ------------------------------------------------------------
    # External streams
    # ------------------------------------------------------------

    def register_external(self, url: str, is_bitmap: bool, language: Optional[str] = None) -> ExternalStream:
        ext = ExternalStream(url=url, is_bitmap=is_bitmap, language=language)
        with self._external_lock:
            self.external_streams[url] = ext
        return ext

    def external_stream(self, url: str) -> Optional[ExternalStream]:
        with self._external_lock:
            return self.external_streams.get(url)

    # ------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------

    def open(
        self,
        slot: int,
        url: str,
        stream_index: int = -1,
        *,
        method: SubtitleMethod = SubtitleMethod.ORIGINAL,
        language: Optional[str] = None,
        external: bool = False,
        cur_time: float = 0.0,
    ) -> ProducerHandle:
        """Load a subtitle stream into a slot on a worker thread.

        With method OCR the bitmaps are kept and recognized right after
        loading, within the same run. With method ASR the audio stream at
        stream_index is transcribed instead.

        Args:
            slot: Destination slot
            url: Media file or external subtitle file
            stream_index: Stream index, or -1 for the first matching stream
            method: How the text is obtained
            language: Known language code of the stream
            external: True if url is a standalone subtitle file
            cur_time: Playback time, used to order OCR and ASR work

        Returns:
            Handle of the started run
        """
        if method is SubtitleMethod.ASR:
            return self.transcribe(slot, url, stream_index, cur_time=cur_time)
        self.selection.select(slot, StreamSelection(url, stream_index, method, external))
        return self.producers[slot].start(
            ProducerKind.READER, self._open_run, slot, url, stream_index, method, language,
            external, cur_time, name=f"reader-{slot + 1}",
        )

    def _open_run(
        self,
        token: CancelToken,
        slot: int,
        url: str,
        stream_index: int,
        method: SubtitleMethod,
        language: Optional[str],
        external: bool,
        cur_time: float,
    ) -> RunOutcome:
        use_bitmap = method is SubtitleMethod.OCR or self.config.slots[slot].use_bitmap
        reader = SubtitleReader(self._demuxer_factory(), self.config, self.arena, slot=slot)
        outcome = load_subtitles(
            self.timelines[slot], reader, url, stream_index, token,
            use_bitmap=use_bitmap, language=language, clock=self._clock,
        )
        if external and reader.stream is not None:
            self.register_external(url, reader.stream.is_bitmap, language or reader.stream.language)
        if outcome is not RunOutcome.COMPLETED or token.cancelled:
            return RunOutcome.STOPPED
        if method is SubtitleMethod.OCR:
            return self.ocr.process(token, slot, language, cur_time)
        return outcome

    def transcribe(self, slot: int, url: str, stream_index: int = -1, *, cur_time: float = 0.0) -> ProducerHandle:
        """Start ASR on the audio stream of url. See SubtitlesASR.start."""
        self.selection.select(slot, StreamSelection(url, stream_index, SubtitleMethod.ASR))
        return self.asr.start(slot, url, stream_index, cur_time)

    # ------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------

    def translator(self, slot: int) -> SubTranslator:
        tr = self._translators.get(slot)
        if tr is None:
            tr = self._translators[slot] = SubTranslator(self.timelines[slot], self.config)
        return tr

    def actions(
        self,
        clock: Callable[[], float],
        seek: Callable[[float], None],
        *,
        seek_fallback: float = 5.0,
        delay_step: float = 0.1,
    ) -> ActionRegistry:
        """Built-in actions bound to this session and a player.

        Args:
            clock: Returns the current playback time in seconds
            seek: Called with the playback time to seek to
            seek_fallback: Step in seconds when there is no subtitle to seek to
            delay_step: Delay change in seconds per invocation
        """
        return build_default_registry(
            self, clock, seek, seek_fallback=seek_fallback, delay_step=delay_step,
        )

    def set_current_time(self, t: float) -> None:
        """Move the cursor of every slot; translate ahead where enabled."""
        for slot, timeline in enumerate(self.timelines):
            timeline.set_current_time(t)
            idx = timeline.current_index
            if idx != self._last_index[slot]:
                self._last_index[slot] = idx
                if self.config.slots[slot].enabled_translated:
                    self.translator(slot).translate_ahead(idx)

    # ------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------

    def reset(self, slot: int) -> None:
        """Stop the slot's producer, drop its entries, caches and selection."""
        self.producers[slot].cancel_and_wait()
        self.asr.reset(slot)
        self.selection.clear(slot)
        self._last_index[slot] = -1
        tr = self._translators.get(slot)
        if tr is not None:
            tr.reset()
        debug("reset", verbose=self.config.verbose, tag=component_tag("Session", slot))

    def close(self) -> None:
        for slot in range(SLOT_COUNT):
            self.producers[slot].cancel_and_wait()
        for slot in range(SLOT_COUNT):
            self.timelines[slot].clear()
            self.selection.clear(slot)
        for tr in self._translators.values():
            tr.close()
        self._translators.clear()

    def __enter__(self) -> "SubtitleSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
