#!/usr/bin/env python3
"""Text processing utilities for subtimeline.

This module converts decoder text payloads to plain text and cleans up
recognized text coming back from OCR engines.
"""
from __future__ import annotations

import re
from typing import List


# ============================================================
# Text Normalization
# ============================================================

def normalize_spaces(text: str) -> str:
    """Normalize whitespace within each line and drop empty lines.

    Args:
        text: Input text, possibly multi-line

    Returns:
        Text with single spaces inside lines and no blank lines
    """
    text = text.replace("\u00a0", " ").replace("\r\n", "\n").replace("\r", "\n")
    lines = [re.sub(r"[ \t\f\v]+", " ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)


def single_line(text: str) -> str:
    """Join a multi-line subtitle into one line (used before translation)."""
    return " ".join(normalize_spaces(text).split("\n"))


# ============================================================
# ASS / SSA
# ============================================================

_ASS_OVERRIDE_RE = re.compile(r"\{[^}]*\}")
_ASS_DRAWING_RE = re.compile(r"\{[^}]*\\p[1-9][^}]*\}.*?(\{[^}]*\\p0[^}]*\}|$)", re.S)


def ass_dialogue_text(line: str) -> str:
    """Extract the Text field of an ASS event as produced by the decoder.

    Decoders emit either "ReadOrder,Layer,Style,Name,MarginL,MarginR,MarginV,Effect,Text"
    or a full "Dialogue: Layer,Start,End,Style,Name,MarginL,MarginR,MarginV,Effect,Text"
    line.

    Args:
        line: Raw ASS event

    Returns:
        The Text field, untouched
    """
    line = line.strip()
    if line.startswith("Dialogue:"):
        parts = line[len("Dialogue:"):].split(",", 9)
        return parts[9] if len(parts) == 10 else parts[-1]
    parts = line.split(",", 8)
    return parts[8] if len(parts) == 9 else parts[-1]


def ass_to_plain(line: str) -> str:
    """Convert an ASS event to plain subtitle text.

    Drawing commands and override blocks are removed, hard line breaks
    become newlines and hard spaces become spaces.

    Args:
        line: Raw ASS event

    Returns:
        Plain text (may be empty)
    """
    text = ass_dialogue_text(line)
    text = _ASS_DRAWING_RE.sub("", text)
    text = _ASS_OVERRIDE_RE.sub("", text)
    text = text.replace("\\N", "\n").replace("\\n", "\n").replace("\\h", " ")
    return normalize_spaces(text)


# ============================================================
# OCR Clean-up
# ============================================================

_EN_CONFUSABLES: List[tuple] = [
    ("|", "I"),
    ("I1t's", "It's"),
    ("’'", "'"),
]

_CJK = r"\u3000-\u303f\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uff00-\uffef"
_CJK_SPACE_RE = re.compile(rf"(?<=[{_CJK}])[ \t]+(?=[{_CJK}])")


def fix_english_confusables(text: str) -> str:
    """Replace characters Tesseract commonly confuses in English text."""
    for src, dst in _EN_CONFUSABLES:
        text = text.replace(src, dst)
    return text


def remove_cjk_spaces(text: str) -> str:
    """Remove spaces that OCR inserts between CJK characters."""
    return _CJK_SPACE_RE.sub("", text)
