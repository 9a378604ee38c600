#!/usr/bin/env python3
"""Data models for subtimeline.

This module contains the data classes shared across the package:
- TOOL_VERSION: Version constant
- SlotConfig / ResolvedConfig: Tunables for the store and its producers
- PositionState: Cursor state of a timeline
- SubtitleEntry: One timed subtitle unit (text or bitmap)
- AudioChunk / TranscriptSegment: ASR pipeline payloads
- ExternalStream: Descriptor for subtitles loaded from a separate file
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .bitmap import BitmapRef


# ============================================================
# Versioning
# ============================================================

TOOL_VERSION = "0.2.0"

SLOT_COUNT = 2

# 0.1 microsecond units per second
TICKS_PER_SECOND = 10_000_000


# ============================================================
# Configuration
# ============================================================

@dataclass
class SlotConfig:
    """Per-slot settings (0 = primary, 1 = secondary).

    Attributes:
        delay: Seconds subtracted from the playback clock before lookup
        language_fallback: ISO 639-1 code used when the source language is unknown
        enabled_translated: Show translated text when it is available
        use_bitmap: Keep bitmap payloads when reading bitmap subtitle streams
    """
    delay: float = 0.0
    language_fallback: str = "en"
    enabled_translated: bool = False
    use_bitmap: bool = False


def _default_slots() -> List[SlotConfig]:
    return [SlotConfig() for _ in range(SLOT_COUNT)]


@dataclass
class ResolvedConfig:
    """Resolved configuration for the timeline store and its producers.

    Thresholds that the player used to hardcode are exposed here so that
    callers can tune memory and latency per source.
    """
    # demux / decode error budgets (consecutive errors before abort)
    demux_max_errors: int = 30
    decode_max_errors: int = 200

    # ingestion batching
    batch_min_count: int = 2
    batch_interval: float = 0.5
    text_subtitle_max_bytes: int = 10 * 1024 * 1024

    # ASR chunking
    asr_chunk_size: int = 20 * 1024 * 1024
    asr_chunk_seconds: float = 20.0
    asr_seek_threshold: float = 30.0
    asr_seek_backoff: float = 10.0
    asr_clip_margin: float = 0.02
    asr_queue_file: int = 1
    asr_queue_stream: int = 2

    # ASR engine
    asr_engine: str = "faster-whisper"
    model: str = "small"
    device: str = "auto"               # auto|cpu|cuda
    strict_cuda: bool = False
    asr_language: Optional[str] = None
    vad_filter: bool = True

    # OCR
    ocr_engine: str = "tesseract"      # tesseract|easyocr
    ocr_lookbehind: int = 5
    ocr_padding: int = 20
    ocr_threshold: int = 128
    ocr_light_text: bool = True
    ocr_timeout: float = 30.0

    # translation
    translate_service: str = "google"  # google|deeplx
    translate_target: str = "en"
    translate_count: int = 4
    translate_max_concurrent: int = 2
    translate_timeout: float = 10.0
    google_endpoint: str = "https://translate.googleapis.com"
    deeplx_endpoint: str = "http://127.0.0.1:1188"

    # logging
    quiet: bool = False
    verbose: bool = False

    slots: List[SlotConfig] = field(default_factory=_default_slots)


# ============================================================
# Enumerations
# ============================================================

class PositionState(enum.Enum):
    """Where the playback clock sits relative to the sorted entries."""
    FIRST = "first"
    SHOWING = "showing"
    AROUND = "around"
    LAST = "last"


class ProducerKind(enum.Enum):
    """Kinds of producers that may write into a slot."""
    READER = "reader"
    ASR = "asr"
    OCR = "ocr"


class RunOutcome(enum.Enum):
    """How a producer run ended when it did not raise."""
    COMPLETED = "completed"
    STOPPED = "stopped"


class SubtitleMethod(enum.Enum):
    """How the text of a selected subtitle stream is obtained."""
    ORIGINAL = "original"
    OCR = "ocr"
    ASR = "asr"


# ============================================================
# Subtitle Data Structures
# ============================================================

@dataclass
class SubtitleEntry:
    """A single subtitle unit covering the half-open interval [start, end).

    Attributes:
        start: Start time in seconds
        end: End time in seconds
        text: Recognized or decoded text, if any
        translated_text: Translation of text, if any
        is_bitmap: True when the entry came from a bitmap subtitle codec
        bitmap: Arena handle to the raster payload, if retained
        index: Position assigned when the entry was added to a timeline
        use_translated: Prefer translated_text for display
    """
    start: float
    end: float
    text: Optional[str] = None
    translated_text: Optional[str] = None
    is_bitmap: bool = False
    bitmap: Optional["BitmapRef"] = None
    index: int = 0
    use_translated: bool = False

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def is_translated(self) -> bool:
        return self.translated_text is not None

    @property
    def display_text(self) -> Optional[str]:
        if self.use_translated and self.translated_text is not None:
            return self.translated_text
        return self.text

    def dispose(self) -> None:
        """Release the bitmap payload. Safe to call more than once."""
        if self.bitmap is not None:
            self.bitmap.dispose()
            self.bitmap = None

    def clone(self) -> "SubtitleEntry":
        """Copy timing and text. The bitmap payload is not shared."""
        return SubtitleEntry(
            start=self.start,
            end=self.end,
            text=self.text,
            translated_text=self.translated_text,
            is_bitmap=self.is_bitmap,
            index=self.index,
            use_translated=self.use_translated,
        )


@dataclass
class ExternalStream:
    """Descriptor for a subtitle stream that came from its own file.

    Attributes:
        url: Path or URL of the subtitle file
        is_bitmap: True if the stream carries bitmap subtitles
        language: ISO 639-1 code if known
    """
    url: str
    is_bitmap: bool = False
    language: Optional[str] = None


# ============================================================
# ASR Payloads
# ============================================================

@dataclass
class AudioChunk:
    """A bounded span of resampled audio handed to the transcription engine.

    Attributes:
        number: 1-based chunk counter within a run
        data: Complete WAV file bytes (16 kHz, mono, s16le)
        start: Presentation time of the first frame, in seconds
        end: Presentation time of the frame that closed the chunk, in seconds
    """
    number: int
    data: bytes
    start: float
    end: float


@dataclass
class TranscriptSegment:
    """A transcription result relative to the start of its chunk.

    Attributes:
        start: Offset from chunk start in seconds
        end: Offset from chunk start in seconds
        text: Recognized text
        language: ISO 639-1 code reported by the engine
    """
    start: float
    end: float
    text: str
    language: Optional[str] = None
