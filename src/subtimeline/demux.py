#!/usr/bin/env python3
"""Demuxer/decoder contract and its PyAV implementation.

Producers never touch PyAV directly. They open a stream through the
Demuxer interface, pull packets, and decode them into plain data objects
(DecodedSubtitle, DecodedAudio), which keeps the reconciliation and chunking
logic testable with scripted fakes.
"""
from __future__ import annotations

import io
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Iterator, List, Optional, Union

import av
from av.subtitles.subtitle import AssSubtitle, BitmapSubtitle

from .bitmap import BitmapImage
from .errors import DecodeError, DemuxError, MediaOpenError
from .palettes import palette_tracker


# ============================================================
# Data Types
# ============================================================

# end_display_time sentinel meaning "until the next packet says otherwise"
OPEN_ENDED_DISPLAY = 0xFFFFFFFF

# AV_NOPTS_VALUE as PyAV reports it
NO_PTS = -(1 << 63)

BITMAP_CODECS = {
    "hdmv_pgs_subtitle",
    "dvd_subtitle",
    "dvb_subtitle",
    "xsub",
    "dvb_teletext",
}


@dataclass
class StreamInfo:
    """Description of the opened stream.

    Attributes:
        index: Stream index within the container
        kind: "subtitle" or "audio"
        codec: Decoder name
        is_bitmap: True for bitmap subtitle codecs
        time_base: Stream time base
        language: Language tag from the container, if any
    """
    index: int
    kind: str
    codec: str
    is_bitmap: bool = False
    time_base: Optional[Fraction] = None
    language: Optional[str] = None


@dataclass
class Packet:
    """A demuxed packet.

    Attributes:
        stream_index: Stream the packet belongs to
        pts: Presentation timestamp in time_base units, if known
        time_base: Time base of pts
        size: Payload size in bytes
        raw: Native packet object for the decoder
    """
    stream_index: int
    pts: Optional[int] = None
    time_base: Optional[Fraction] = None
    size: int = 0
    raw: Any = None


@dataclass
class SubtitleRect:
    """One rectangle of a decoded subtitle.

    Attributes:
        kind: "text", "ass" or "bitmap"
        text: Text payload for text/ass rects
        image: Raster for bitmap rects
    """
    kind: str
    text: Optional[str] = None
    image: Optional[BitmapImage] = None


@dataclass
class DecodedSubtitle:
    """A decoded subtitle payload.

    Attributes:
        pts: Payload timestamp in microseconds, if the decoder set one
        start_display_time: Offset in milliseconds
        end_display_time: Duration in milliseconds (OPEN_ENDED_DISPLAY if unbounded)
        rects: Rectangles; empty for "previous subtitle ended" signals
    """
    pts: Optional[int] = None
    start_display_time: int = 0
    end_display_time: int = 0
    rects: List[SubtitleRect] = field(default_factory=list)


@dataclass
class DecodedAudio:
    """A decoded audio frame.

    Attributes:
        pts: Timestamp in time_base units, if known
        time_base: Time base of pts and duration
        duration: Frame duration in time_base units
        sample_rate: Input sample rate
        samples: Samples per channel
        frame: Native frame passed to the resampler
    """
    pts: Optional[int]
    time_base: Fraction
    duration: int
    sample_rate: int
    samples: int
    frame: Any = None


# ============================================================
# Interface
# ============================================================

class Demuxer(ABC):
    """Packet source for one stream of one url.

    Attributes:
        start_time: Container start time in seconds
        duration: Container duration in seconds, if known
        is_file: True when the url is a local file
    """

    start_time: float = 0.0
    duration: Optional[float] = None
    is_file: bool = True

    @abstractmethod
    def open(
        self,
        url: str,
        stream_index: int = -1,
        kind: str = "subtitle",
        data: Optional[bytes] = None,
    ) -> StreamInfo:
        """Open url and select a stream.

        Args:
            url: Path or URL (used for naming only when data is given)
            stream_index: Container stream index, or -1 for the first of `kind`
            kind: "subtitle" or "audio"
            data: In-memory file content to demux instead of reading url

        Raises:
            MediaOpenError: If the url cannot be opened or the stream is not of `kind`
        """

    @abstractmethod
    def read_packet(self) -> Optional[Packet]:
        """Return the next packet, or None at end of stream.

        Raises:
            DemuxError: Recoverable read failure; the caller may call again
        """

    @abstractmethod
    def decode(self, packet: Packet) -> List[Union[DecodedSubtitle, DecodedAudio]]:
        """Decode a packet of the selected stream.

        Raises:
            DecodeError: Recoverable decode failure
        """

    @abstractmethod
    def seek(self, seconds: float, forward: bool = False) -> None:
        """Seek to a presentation time (relative to start_time)."""

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "Demuxer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ============================================================
# PyAV Implementation
# ============================================================

def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class AvDemuxer(Demuxer):
    """Demuxer backed by PyAV (FFmpeg).

    Args:
        options: FFmpeg format options passed to av.open
        timeout: Open/read timeout in seconds for network sources
    """

    def __init__(self, *, options: Optional[dict] = None, timeout: Optional[float] = None) -> None:
        self.options = options or {}
        self.timeout = timeout
        self._container = None
        self._stream = None
        self._info: Optional[StreamInfo] = None
        self._packets: Optional[Iterator] = None
        self._palettes = None

    def open(self, url, stream_index=-1, kind="subtitle", data=None) -> StreamInfo:
        source = io.BytesIO(data) if data is not None else url
        try:
            self._container = av.open(source, mode="r", options=self.options, timeout=self.timeout)
        except (av.error.FFmpegError, OSError) as e:
            raise MediaOpenError(f"cannot open {url}: {e}") from e

        streams = list(self._container.streams)
        if stream_index == -1:
            matches = [s for s in streams if s.type == kind]
            if not matches:
                self.close()
                raise MediaOpenError(f"no {kind} stream in {url}")
            stream = matches[0]
        else:
            if stream_index < 0 or stream_index >= len(streams) or streams[stream_index].type != kind:
                self.close()
                raise MediaOpenError(f"stream {stream_index} of {url} is not a {kind} stream")
            stream = streams[stream_index]

        c = self._container
        self.start_time = c.start_time / av.time_base if c.start_time is not None else 0.0
        self.duration = c.duration / av.time_base if c.duration is not None else None
        self.is_file = data is not None or os.path.exists(url)

        codec_ctx = stream.codec_context
        codec_name = codec_ctx.name if codec_ctx is not None else ""
        bitmap_flag = getattr(getattr(codec_ctx, "codec", None), "bitmap_sub", None)
        is_bitmap = kind == "subtitle" and (
            bool(bitmap_flag) if bitmap_flag is not None else codec_name in BITMAP_CODECS
        )

        self._stream = stream
        self._packets = None
        self._palettes = palette_tracker(codec_name, getattr(codec_ctx, "extradata", None)) if is_bitmap else None
        self._info = StreamInfo(
            index=stream.index,
            kind=kind,
            codec=codec_name,
            is_bitmap=is_bitmap,
            time_base=stream.time_base,
            language=stream.metadata.get("language"),
        )
        return self._info

    def read_packet(self) -> Optional[Packet]:
        if self._container is None:
            raise MediaOpenError("read_packet() before open()")
        if self._packets is None:
            self._packets = self._container.demux(self._stream)
        try:
            pkt = next(self._packets)
        except (StopIteration, av.error.EOFError):
            return None
        except av.error.FFmpegError as e:
            # the generator is finished after raising; the next call re-creates it
            self._packets = None
            raise DemuxError(str(e)) from e
        return Packet(
            stream_index=pkt.stream.index,
            pts=pkt.pts,
            time_base=pkt.time_base,
            size=pkt.size,
            raw=pkt,
        )

    def decode(self, packet: Packet):
        if self._info is not None and self._info.kind == "subtitle":
            return self._decode_subtitle(packet)
        try:
            frames = packet.raw.decode()
        except av.error.FFmpegError as e:
            raise DecodeError(str(e)) from e
        return [self._convert_audio(f) for f in frames]

    def _decode_subtitle(self, packet: Packet) -> List[DecodedSubtitle]:
        # palette segments can arrive in packets that produce no subtitle
        if self._palettes is not None:
            self._palettes.feed(bytes(packet.raw))
        try:
            sub = self._stream.codec_context.decode2(packet.raw)
        except av.error.FFmpegError as e:
            raise DecodeError(str(e)) from e
        if sub is None:
            return []
        # a set without rects still reaches the reader: it ends the shown bitmap
        return [self._convert_subtitle(sub)]

    def seek(self, seconds: float, forward: bool = False) -> None:
        if self._container is None:
            return
        offset = int((seconds + self.start_time) * av.time_base)
        try:
            self._container.seek(offset, backward=not forward, any_frame=False)
        except av.error.FFmpegError as e:
            raise DemuxError(f"seek to {seconds:.3f}s failed: {e}") from e
        self._packets = None

    def close(self) -> None:
        if self._container is not None:
            self._container.close()
            self._container = None
        self._packets = None

    # ------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------

    def _convert_subtitle(self, sub) -> DecodedSubtitle:
        rects: List[SubtitleRect] = []
        for rect in sub.rects:
            if isinstance(rect, BitmapSubtitle):
                rects.append(SubtitleRect("bitmap", image=self._bitmap_image(rect)))
            elif isinstance(rect, AssSubtitle):
                rects.append(SubtitleRect("ass", text=_as_text(rect.ass)))
        pts = sub.pts
        return DecodedSubtitle(
            pts=None if pts is None or pts == NO_PTS else pts,
            start_display_time=sub.start_display_time,
            end_display_time=sub.end_display_time,
            rects=rects,
        )

    def _bitmap_image(self, rect) -> Optional[BitmapImage]:
        planes = rect.planes
        if rect.width <= 0 or rect.height <= 0 or not planes:
            return None
        indices = bytes(planes[0])
        if len(planes) > 1:
            palette = bytes(planes[1])[: 4 * rect.nb_colors]
        elif self._palettes is not None:
            palette = self._palettes.palette()
        else:
            palette = None
        if not palette:
            return None
        stride = len(indices) // rect.height
        return BitmapImage.from_palette(
            rect.x, rect.y, rect.width, rect.height, indices, palette, stride=stride
        )

    def _convert_audio(self, frame) -> DecodedAudio:
        tb = frame.time_base or (self._info.time_base if self._info else None) or Fraction(1, frame.sample_rate)
        duration = int(round(frame.samples / frame.sample_rate / tb)) if frame.sample_rate else 0
        return DecodedAudio(
            pts=frame.pts,
            time_base=tb,
            duration=duration,
            sample_rate=frame.sample_rate,
            samples=frame.samples,
            frame=frame,
        )
