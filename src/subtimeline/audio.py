#!/usr/bin/env python3
"""Audio extraction for the ASR pipeline.

The selected audio stream is decoded through its own demux context,
resampled to 16 kHz mono s16 with a single persistent resampler, and cut
into in-memory WAV chunks bounded by size and by wall-clock age.
"""
from __future__ import annotations

import io
import struct
import time
from typing import Any, Callable, Iterator, Optional

import av
import numpy as np

from .demux import DecodedAudio, Demuxer, StreamInfo
from .errors import DecodeError, DemuxError, ErrorBudget, MediaOpenError
from .logging_utils import component_tag, debug, format_timestamp, warn
from .models import AudioChunk, ResolvedConfig
from .producers import CancelToken

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
WAV_HEADER_SIZE = 44


# ============================================================
# WAV Buffer
# ============================================================

class WavBuffer:
    """In-memory PCM WAV file whose size fields are patched on finalize.

    Args:
        sample_rate: Samples per second
        channels: Channel count (16-bit samples)
    """

    def __init__(self, sample_rate: int = TARGET_SAMPLE_RATE, channels: int = TARGET_CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._buf = io.BytesIO()
        self._write_header()

    def _write_header(self) -> None:
        block_align = self.channels * 2
        self._buf.write(b"RIFF")
        self._buf.write(struct.pack("<I", 0))              # placeholder: file size - 8
        self._buf.write(b"WAVE")
        self._buf.write(b"fmt ")
        self._buf.write(struct.pack("<IHHIIHH", 16, 1, self.channels, self.sample_rate,
                                    self.sample_rate * block_align, block_align, 16))
        self._buf.write(b"data")
        self._buf.write(struct.pack("<I", 0))              # placeholder: data size

    def write(self, pcm: bytes) -> None:
        self._buf.seek(0, io.SEEK_END)
        self._buf.write(pcm)

    @property
    def size(self) -> int:
        """Total size in bytes, header included."""
        return self._buf.getbuffer().nbytes

    @property
    def has_audio(self) -> bool:
        return self.size > WAV_HEADER_SIZE

    @property
    def duration(self) -> float:
        return (self.size - WAV_HEADER_SIZE) / (self.sample_rate * self.channels * 2)

    def finalize(self) -> bytes:
        """Patch the RIFF and data sizes and return the complete file."""
        total = self.size
        self._buf.seek(4)
        self._buf.write(struct.pack("<I", total - 8))
        self._buf.seek(40)
        self._buf.write(struct.pack("<I", total - WAV_HEADER_SIZE))
        self._buf.seek(0, io.SEEK_END)
        return self._buf.getvalue()

    def reset(self) -> None:
        self._buf = io.BytesIO()
        self._write_header()


# ============================================================
# Resampling
# ============================================================

class AvResampler:
    """Persistent PyAV resampler to s16 mono at 16 kHz.

    One instance must serve a whole run: the resampler keeps filter state
    between frames, and recreating it per frame breaks continuity.
    """

    def __init__(self, rate: int = TARGET_SAMPLE_RATE, layout: str = "mono") -> None:
        self._resampler = av.AudioResampler(format="s16", layout=layout, rate=rate)

    @staticmethod
    def _to_bytes(frames) -> bytes:
        if frames is None:
            return b""
        if not isinstance(frames, (list, tuple)):
            frames = [frames]
        return b"".join(np.ascontiguousarray(f.to_ndarray(), dtype=np.int16).tobytes() for f in frames)

    def resample(self, audio: DecodedAudio) -> bytes:
        return self._to_bytes(self._resampler.resample(audio.frame))

    def flush(self) -> bytes:
        """Drain samples still buffered inside the resampler."""
        return self._to_bytes(self._resampler.resample(None))


# ============================================================
# Audio Reader
# ============================================================

class AudioReader:
    """Turns one audio stream into WAV chunks for transcription.

    Args:
        demuxer: Unopened demuxer dedicated to this reader
        config: Resolved configuration (chunk thresholds, error budgets)
        slot: Slot index, for log tags
        resampler_factory: Builds the persistent resampler
        clock: Monotonic clock for chunk age, injectable for tests
    """

    def __init__(
        self,
        demuxer: Demuxer,
        config: ResolvedConfig,
        *,
        slot: int = 0,
        resampler_factory: Callable[[], Any] = AvResampler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.demuxer = demuxer
        self.config = config
        self.slot = slot
        self._resampler_factory = resampler_factory
        self._clock = clock
        self.stream: Optional[StreamInfo] = None
        self._tag = component_tag("AudioReader", slot)

    def open(self, url: str, stream_index: int = -1) -> StreamInfo:
        self.stream = self.demuxer.open(url, stream_index, kind="audio")
        return self.stream

    @property
    def is_file(self) -> bool:
        return self.demuxer.is_file

    def close(self) -> None:
        self.demuxer.close()

    def __enter__(self) -> "AudioReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _seek_to(self, cur_time: float) -> None:
        cfg = self.config
        if cur_time <= cfg.asr_seek_threshold:
            return
        target = cur_time - cfg.asr_seek_backoff
        forward = False
        if target < 0:
            target, forward = 0.0, True
        elif self.demuxer.duration is not None and target > self.demuxer.duration - 0.05:
            target = max(0.0, self.demuxer.duration - 0.05)
        try:
            self.demuxer.seek(target, forward)
        except DemuxError as e:
            warn(f"seek failed, reading from the start: {e}", quiet=cfg.quiet, tag=self._tag)

    def read_chunks(self, cur_time: float, token: CancelToken) -> Iterator[AudioChunk]:
        """Yield WAV chunks starting near cur_time.

        A chunk is flushed when its byte size reaches asr_chunk_size or its
        wall-clock age reaches asr_chunk_seconds, whichever comes first.

        Args:
            cur_time: Playback position to transcribe from (seconds)
            token: Cancellation token checked before every packet

        Yields:
            AudioChunk with presentation-time bounds

        Raises:
            FatalMediaError: When an error budget is exhausted
        """
        if self.stream is None:
            raise MediaOpenError("read_chunks() before open()")

        cfg = self.config
        self._seek_to(cur_time)

        resampler = self._resampler_factory()
        wav = WavBuffer()
        demux_errors = ErrorBudget("demux", cfg.demux_max_errors)
        decode_errors = ErrorBudget("decode", cfg.decode_max_errors)
        start_time = self.demuxer.start_time

        chunk_no = 0
        chunk_start: Optional[float] = None
        frame_pts: Optional[int] = None
        frame_tb = None
        started = self._clock()

        def presentation(pts: int, tb) -> float:
            return float(pts * tb) - start_time

        while not token.cancelled:
            try:
                packet = self.demuxer.read_packet()
                demux_errors.reset()
            except DemuxError as e:
                warn(f"read_packet: {e}", quiet=cfg.quiet, tag=self._tag)
                demux_errors.record(e)
                continue
            if packet is None:
                break
            if packet.stream_index != self.stream.index:
                continue

            try:
                frames = self.demuxer.decode(packet)
                decode_errors.reset()
            except DecodeError as e:
                warn(f"decode: {e}", quiet=cfg.quiet, tag=self._tag)
                decode_errors.record(e)
                continue

            for frame in frames:
                if frame.pts is not None:
                    frame_pts = frame.pts
                elif frame_pts is not None:
                    # some codecs (APE, Musepack) leave pts unset
                    frame_pts += frame.duration
                else:
                    frame_pts = 0
                frame_tb = frame.time_base

                if chunk_start is None:
                    chunk_start = max(0.0, presentation(frame_pts, frame_tb))

                wav.write(resampler.resample(frame))

                if wav.size >= cfg.asr_chunk_size or self._clock() - started >= cfg.asr_chunk_seconds:
                    chunk_no += 1
                    chunk_end = presentation(frame_pts, frame_tb)
                    debug(f"chunk {chunk_no}: {format_timestamp(chunk_start)} -> "
                          f"{format_timestamp(chunk_end)} ({wav.size // 1024} KiB)",
                          verbose=cfg.verbose, tag=self._tag)
                    yield AudioChunk(chunk_no, wav.finalize(), chunk_start, chunk_end)
                    wav.reset()
                    chunk_start = None
                    started = self._clock()

        if token.cancelled:
            return

        wav.write(resampler.flush())
        if wav.has_audio and chunk_start is not None and frame_pts is not None:
            chunk_no += 1
            chunk_end = presentation(frame_pts, frame_tb)
            debug(f"last chunk {chunk_no}: {format_timestamp(chunk_start)} -> {format_timestamp(chunk_end)}",
                  verbose=cfg.verbose, tag=self._tag)
            yield AudioChunk(chunk_no, wav.finalize(), chunk_start, chunk_end)
