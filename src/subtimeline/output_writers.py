#!/usr/bin/env python3
"""Export of timeline entries to subtitle files.

This module handles writing entries to different formats:
- SRT (SubRip)
- VTT (WebVTT)
- TXT (plain transcript)
- JSON (entries with metadata)

Entries without text (bitmaps not yet recognized) are skipped.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import TOOL_VERSION, SubtitleEntry
from .system import ensure_parent_dir
from .text_processing import normalize_spaces


# ============================================================
# Time Formatters
# ============================================================

def _split_ms(seconds: float):
    ms = max(0, int(round(seconds * 1000)))
    h = ms // 3_600_000
    ms %= 3_600_000
    m = ms // 60_000
    ms %= 60_000
    s = ms // 1000
    ms %= 1000
    return h, m, s, ms


def format_srt_time(seconds: float) -> str:
    """Format time for SRT format (HH:MM:SS,mmm).

    Args:
        seconds: Time in seconds; negative values clamp to zero

    Returns:
        Formatted time string (e.g., "00:01:23,456")
    """
    h, m, s, ms = _split_ms(seconds)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def format_vtt_time(seconds: float) -> str:
    """Format time for WebVTT format (HH:MM:SS.mmm)."""
    h, m, s, ms = _split_ms(seconds)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"


# ============================================================
# Atomic File Writing
# ============================================================

def atomic_write_text(path: Path, content: str) -> None:
    """Write text to a file atomically using a temporary file.

    Args:
        path: Destination file path
        content: Text content to write
    """
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


# ============================================================
# Format Writers
# ============================================================

def _entry_text(entry: SubtitleEntry, translated: bool) -> str:
    text = entry.translated_text if translated and entry.translated_text else entry.text
    return normalize_spaces(text or "")


def _texted(entries: Sequence[SubtitleEntry], translated: bool):
    for e in entries:
        text = _entry_text(e, translated)
        if text:
            yield e, text


def write_srt(entries: Sequence[SubtitleEntry], out_path: Path, *, translated: bool = False) -> int:
    """Write entries in SRT (SubRip) format.

    Args:
        entries: Entries in timeline order
        out_path: Output file path
        translated: Prefer translated text where present

    Returns:
        Number of cues written
    """
    chunks: List[str] = []
    for i, (e, text) in enumerate(_texted(entries, translated), start=1):
        chunks.append(
            f"{i}\n"
            f"{format_srt_time(e.start)} --> {format_srt_time(e.end)}\n"
            f"{text}\n"
        )
    atomic_write_text(out_path, "\n".join(chunks).strip() + "\n")
    return len(chunks)


def write_vtt(entries: Sequence[SubtitleEntry], out_path: Path, *, translated: bool = False) -> int:
    """Write entries in WebVTT format. Returns the number of cues."""
    chunks: List[str] = ["WEBVTT\n"]
    for e, text in _texted(entries, translated):
        chunks.append(f"{format_vtt_time(e.start)} --> {format_vtt_time(e.end)}\n{text}\n")
    atomic_write_text(out_path, "\n".join(chunks).rstrip() + "\n")
    return len(chunks) - 1


def write_txt(entries: Sequence[SubtitleEntry], out_path: Path, *, translated: bool = False) -> int:
    """Write a plain transcript, one entry per line."""
    lines = [" ".join(text.splitlines()) for _, text in _texted(entries, translated)]
    atomic_write_text(out_path, "\n".join(lines).strip() + "\n")
    return len(lines)


# ============================================================
# JSON
# ============================================================

def entries_to_jsonable(entries: Sequence[SubtitleEntry]) -> List[Dict[str, Any]]:
    """Convert entries to JSON-serializable dictionaries (bitmaps omitted)."""
    return [
        {
            "index": e.index,
            "start": float(e.start),
            "end": float(e.end),
            "text": e.text,
            "translated_text": e.translated_text,
            "is_bitmap": e.is_bitmap,
        }
        for e in entries
    ]


def write_json(
    entries: Sequence[SubtitleEntry],
    out_path: Path,
    *,
    input_file: str,
    stream_index: int,
    method: str,
    language: Optional[str] = None,
) -> int:
    """Write entries with their source metadata as a JSON bundle.

    Args:
        entries: Entries in timeline order
        out_path: Output file path
        input_file: Media or subtitle file the entries came from
        stream_index: Stream the entries came from
        method: How the text was produced (original/ocr/asr)
        language: Source language code, if known

    Returns:
        Number of entries written
    """
    payload = {
        "tool_version": TOOL_VERSION,
        "input_file": input_file,
        "stream_index": stream_index,
        "method": method,
        "language": language,
        "entries": entries_to_jsonable(entries),
    }
    atomic_write_text(out_path, json.dumps(payload, ensure_ascii=False, indent=2))
    return len(entries)


WRITERS = {
    "srt": write_srt,
    "vtt": write_vtt,
    "txt": write_txt,
}
