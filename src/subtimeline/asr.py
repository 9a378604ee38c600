#!/usr/bin/env python3
"""Speech recognition pipeline: audio chunks in, timed entries out.

A run opens the audio stream with its own demux context, produces WAV
chunks on a helper thread and transcribes them on the run's thread. The
two stages are connected by a bounded queue (1 chunk for local files,
2 for network sources) and cancel each other on failure.

Results of the previous run on each slot are kept one deep, keyed by
(url, stream_index). Re-opening the same pair restores the entries; a
completed run is restored without transcribing again, a cancelled one is
restored and resumed from the requested time.
"""
from __future__ import annotations

import io
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .audio import AudioReader, AvResampler
from .demux import AvDemuxer, Demuxer
from .errors import AsrConfigError, OperationCancelled
from .languages import Language, get_language
from .logging_utils import component_tag, debug, format_timestamp, log
from .models import (
    AudioChunk,
    ProducerKind,
    ResolvedConfig,
    RunOutcome,
    SubtitleEntry,
    TranscriptSegment,
)
from .producers import CancelToken, ProducerHandle, ProducerSlot
from .timeline import SubtitleTimeline
from .whisper_wrapper import init_whisper_model

ASR_ENGINES = ("faster-whisper",)
_QUEUE_POLL = 0.1


# ============================================================
# Transcription Engines
# ============================================================

class TranscriptionEngine(ABC):
    """Transcribes one WAV chunk into segments relative to its start."""

    @abstractmethod
    def transcribe(self, wav: bytes) -> Iterable[TranscriptSegment]:
        ...

    def close(self) -> None:
        pass


class FasterWhisperEngine(TranscriptionEngine):
    """faster-whisper backed engine.

    The model is loaded on first use. Once a language has been detected it
    is pinned for the remaining chunks so that short or silent chunks do not
    flip the detection.

    Args:
        config: Resolved configuration (model, device, language, VAD)
        slot: Slot index, for log tags
        model_loader: Function with the signature of init_whisper_model
    """

    def __init__(
        self,
        config: ResolvedConfig,
        *,
        slot: int = 0,
        model_loader: Callable = init_whisper_model,
    ) -> None:
        self.config = config
        self.language: Optional[str] = config.asr_language
        self._model_loader = model_loader
        self._model = None
        self._tag = component_tag("ASR", slot)

    def _ensure_model(self):
        if self._model is None:
            self._model, _, _ = self._model_loader(
                self.config.model,
                self.config.device,
                quiet=self.config.quiet,
                strict_cuda=self.config.strict_cuda,
                tag=self._tag,
            )
        return self._model

    def transcribe(self, wav: bytes) -> Iterator[TranscriptSegment]:
        model = self._ensure_model()
        segments, info = model.transcribe(
            io.BytesIO(wav),
            language=self.language,
            vad_filter=self.config.vad_filter,
        )
        if self.language is None and getattr(info, "language", None):
            self.language = info.language
            debug(f"detected language: {info.language}", verbose=self.config.verbose, tag=self._tag)
        lang = self.language
        for seg in segments:
            text = (seg.text or "").strip()
            if not text:
                continue
            yield TranscriptSegment(start=float(seg.start), end=float(seg.end), text=text, language=lang)

    def close(self) -> None:
        self._model = None


def create_engine(config: ResolvedConfig, slot: int = 0) -> TranscriptionEngine:
    """Build the configured transcription engine.

    Raises:
        AsrConfigError: If the engine name is unknown
    """
    name = config.asr_engine.lower().replace("_", "-")
    if name == "faster-whisper":
        return FasterWhisperEngine(config, slot=slot)
    raise AsrConfigError(f"unknown ASR engine: {config.asr_engine}")


def check_asr_config(config: ResolvedConfig) -> Tuple[bool, str]:
    """Check that a run could start with this configuration.

    Returns:
        Tuple of (ok, error_message)
    """
    name = config.asr_engine.lower().replace("_", "-")
    if name not in ASR_ENGINES:
        return False, f"unknown ASR engine: {config.asr_engine}"
    if not config.model:
        return False, "no whisper model is configured"
    looks_like_path = any(sep in config.model for sep in ("/", "\\"))
    if looks_like_path and not Path(config.model).is_dir():
        return False, f"whisper model directory does not exist: {config.model}"
    if config.device not in ("auto", "cpu", "cuda"):
        return False, f"unknown device: {config.device}"
    return True, ""


# ============================================================
# Segment Placement
# ============================================================

def place_segment(chunk: AudioChunk, seg: TranscriptSegment, margin: float) -> Tuple[float, float]:
    """Convert a chunk-relative segment into presentation time.

    The end is clipped to the chunk end minus `margin` so that a segment
    never overlaps the first segment of the next chunk.

    Returns:
        Tuple of (start, end) in seconds
    """
    start = chunk.start + seg.start
    end = chunk.start + seg.end
    if end > chunk.end:
        end = chunk.end - margin
    return start, max(start, end)


# ============================================================
# Pipeline
# ============================================================

@dataclass
class AsrCache:
    """Entries of the last run on a slot.

    Attributes:
        url: Media url of the run
        stream_index: Audio stream of the run
        entries: Snapshot (clones) of the produced entries
        language: Detected language, if any
        complete: True if the run reached end of stream
    """
    url: str
    stream_index: int
    entries: List[SubtitleEntry]
    language: Optional[Language]
    complete: bool


_DONE = object()


class SubtitlesASR:
    """Runs speech recognition into the timelines of a session.

    Args:
        timelines: One timeline per slot
        producers: One ProducerSlot per slot
        config: Resolved configuration
        engine_factory: Builds a TranscriptionEngine for (config, slot)
        demuxer_factory: Builds a fresh Demuxer for each run
        resampler_factory: Builds the persistent resampler for each run
        clock: Monotonic clock for chunk age
    """

    def __init__(
        self,
        timelines: Sequence[SubtitleTimeline],
        producers: Sequence[ProducerSlot],
        config: ResolvedConfig,
        *,
        engine_factory: Callable[[ResolvedConfig, int], TranscriptionEngine] = create_engine,
        demuxer_factory: Callable[[], Demuxer] = AvDemuxer,
        resampler_factory: Callable = AvResampler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timelines = timelines
        self.producers = producers
        self.config = config
        self._engine_factory = engine_factory
        self._demuxer_factory = demuxer_factory
        self._resampler_factory = resampler_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._caches: Dict[int, Optional[AsrCache]] = {}
        self._latest_end: Dict[int, float] = {}

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def can_execute(self) -> Tuple[bool, str]:
        return check_asr_config(self.config)

    def cache(self, slot: int) -> Optional[AsrCache]:
        with self._lock:
            return self._caches.get(slot)

    def latest_end(self, slot: int) -> float:
        """End time of the latest entry produced on a slot (progress indicator)."""
        with self._lock:
            return self._latest_end.get(slot, 0.0)

    def start(self, slot: int, url: str, stream_index: int, cur_time: float = 0.0) -> ProducerHandle:
        """Start a run on a worker thread.

        Raises:
            AsrConfigError: If the configuration cannot run
        """
        ok, err = self.can_execute()
        if not ok:
            raise AsrConfigError(err)
        return self.producers[slot].start(
            ProducerKind.ASR, self._run, slot, url, stream_index, cur_time,
            name=f"asr-{slot + 1}",
        )

    def execute(self, slot: int, url: str, stream_index: int, cur_time: float = 0.0) -> RunOutcome:
        """Run on the calling thread until done or cancelled."""
        ok, err = self.can_execute()
        if not ok:
            raise AsrConfigError(err)
        try:
            with self.producers[slot].run(ProducerKind.ASR) as token:
                if token.cancelled:
                    return RunOutcome.STOPPED
                return self._run(token, slot, url, stream_index, cur_time)
        except OperationCancelled:
            return RunOutcome.STOPPED

    def try_cancel(self, slot: int, wait: bool = True) -> bool:
        p = self.producers[slot]
        if wait:
            return p.cancel_and_wait(ProducerKind.ASR)
        return p.cancel(ProducerKind.ASR)

    def reset(self, slot: int) -> None:
        """Stop any run on the slot and forget its cached results."""
        self.try_cancel(slot, wait=True)
        with self._lock:
            self._caches.pop(slot, None)
            self._latest_end.pop(slot, None)
        self.timelines[slot].clear()

    # ------------------------------------------------------------
    # Run
    # ------------------------------------------------------------

    def _run(self, token: CancelToken, slot: int, url: str, stream_index: int, cur_time: float) -> RunOutcome:
        cfg = self.config
        tag = component_tag("ASR", slot)
        timeline = self.timelines[slot]

        with self._lock:
            cache = self._caches.get(slot)
            if cache is not None and (cache.url, cache.stream_index) != (url, stream_index):
                self._caches[slot] = cache = None

        if cache is not None:
            timeline.load([e.clone() for e in cache.entries])
            if cache.complete:
                timeline.language_source = cache.language
                timeline.refresh()
                log(f"restored {len(cache.entries)} entries for {Path(url).name}", quiet=cfg.quiet, tag=tag)
                return RunOutcome.COMPLETED
        else:
            timeline.clear()

        token.raise_if_cancelled()
        engine = self._engine_factory(cfg, slot)
        log(f"transcribing {Path(url).name} from {format_timestamp(cur_time)}", quiet=cfg.quiet, tag=tag)

        try:
            with timeline.loading():
                reader = AudioReader(
                    self._demuxer_factory(), cfg, slot=slot,
                    resampler_factory=self._resampler_factory, clock=self._clock,
                )
                with reader:
                    reader.open(url, stream_index)
                    outcome = self._transcribe(token, slot, reader, engine, cur_time)
        except OperationCancelled:
            outcome = RunOutcome.STOPPED
        except Exception:
            self._store_cache(slot, url, stream_index, complete=False)
            raise
        finally:
            engine.close()

        if outcome is RunOutcome.STOPPED:
            snapshot = self._store_cache(slot, url, stream_index, complete=False)
            if snapshot:
                timeline.clear()
            log("transcription cancelled", quiet=cfg.quiet, tag=tag)
            return RunOutcome.STOPPED

        self._store_cache(slot, url, stream_index, complete=True)
        log(f"transcription finished: {len(timeline)} entries", quiet=cfg.quiet, tag=tag)
        return RunOutcome.COMPLETED

    def _store_cache(self, slot: int, url: str, stream_index: int, *, complete: bool) -> List[SubtitleEntry]:
        timeline = self.timelines[slot]
        snapshot = [e.clone() for e in timeline.entries]
        with self._lock:
            if snapshot or complete:
                self._caches[slot] = AsrCache(url, stream_index, snapshot, timeline.language_source, complete)
        return snapshot

    def _transcribe(
        self,
        token: CancelToken,
        slot: int,
        reader: AudioReader,
        engine: TranscriptionEngine,
        cur_time: float,
    ) -> RunOutcome:
        cfg = self.config
        tag = component_tag("ASR", slot)
        capacity = cfg.asr_queue_file if reader.is_file else cfg.asr_queue_stream
        chunks: "queue.Queue" = queue.Queue(maxsize=max(1, capacity))
        inner = CancelToken(parent=token)
        producer_errors: List[BaseException] = []

        def put(item) -> bool:
            while True:
                try:
                    chunks.put(item, timeout=_QUEUE_POLL)
                    return True
                except queue.Full:
                    if inner.cancelled:
                        return False

        def produce() -> None:
            try:
                for chunk in reader.read_chunks(cur_time, inner):
                    if not put(chunk):
                        return
            except BaseException as e:
                producer_errors.append(e)
                inner.cancel()
            finally:
                put(_DONE)

        producer = threading.Thread(target=produce, name=f"asr-audio-{slot + 1}", daemon=True)
        producer.start()
        try:
            while not inner.cancelled:
                try:
                    item = chunks.get(timeout=_QUEUE_POLL)
                except queue.Empty:
                    continue
                if item is _DONE:
                    break
                debug(f"chunk {item.number}: {format_timestamp(item.start)} -> {format_timestamp(item.end)}",
                      verbose=cfg.verbose, tag=tag)
                for seg in engine.transcribe(item.data):
                    if inner.cancelled:
                        break
                    self._add_segment(slot, item, seg)
        except BaseException:
            inner.cancel()
            raise
        finally:
            if inner.cancelled:
                # unblock a producer waiting on a full queue
                while not chunks.empty():
                    try:
                        chunks.get_nowait()
                    except queue.Empty:
                        break
            producer.join()

        if producer_errors:
            raise producer_errors[0]
        if token.cancelled:
            return RunOutcome.STOPPED
        return RunOutcome.COMPLETED

    def _add_segment(self, slot: int, chunk: AudioChunk, seg: TranscriptSegment) -> None:
        timeline = self.timelines[slot]
        start, end = place_segment(chunk, seg, self.config.asr_clip_margin)
        first = False
        with timeline.lock:
            if timeline.language_source is None:
                first = True
                # keep history before the restart point, drop the stale tail
                timeline.delete_after(start)
                timeline.language_source = get_language(seg.language)
            timeline.add(SubtitleEntry(start=start, end=end, text=seg.text))
        with self._lock:
            if end > self._latest_end.get(slot, 0.0):
                self._latest_end[slot] = end
        if first:
            timeline.refresh()
        debug(f"{format_timestamp(start)} -> {format_timestamp(end)}: {seg.text}",
              verbose=self.config.verbose, tag=component_tag("ASR", slot))

