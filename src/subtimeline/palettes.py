#!/usr/bin/env python3
"""Palette recovery for bitmap subtitle codecs.

FFmpeg hands bitmap rects over with an index plane and a separate palette
plane, but PyAV only exposes planes with a non-zero line size, and the
palette plane has none. The trackers here rebuild the palette from the
raw packet bytes the decoder was fed:

- PgsPalettes: palette definition and presentation segments of PGS
- VobSubPalette: the idx header palette plus SPU colour/contrast commands

Both produce little-endian 32-bit ARGB entries, the layout of FFmpeg's
own palette plane, so BitmapImage.from_palette can consume either.
"""
from __future__ import annotations

import re
import struct
from typing import Dict, List, Optional, Tuple

# PGS segment types
PGS_PALETTE = 0x14
PGS_OBJECT = 0x15
PGS_PRESENTATION = 0x16
PGS_WINDOW = 0x17
PGS_END = 0x80

PGS_MAGIC = b"PG"


def _clamp255(value: float) -> int:
    return max(0, min(255, int(round(value))))


def ycbcr_to_argb(y: int, cr: int, cb: int, alpha: int) -> int:
    """Convert one BT.601 palette entry to a packed ARGB value."""
    crf = cr - 128.0
    cbf = cb - 128.0
    r = _clamp255(y + 1.402 * crf)
    g = _clamp255(y - 0.344136 * cbf - 0.714136 * crf)
    b = _clamp255(y + 1.772 * cbf)
    return ((alpha & 0xFF) << 24) | (r << 16) | (g << 8) | b


def pack_argb(entries: List[int]) -> bytes:
    return struct.pack(f"<{len(entries)}I", *entries)


# ============================================================
# PGS
# ============================================================

def iter_pgs_segments(data: bytes):
    """Yield (type, payload) for each segment in a PGS packet.

    Matroska packs a whole display set into one packet while the sup demuxer
    emits one segment per packet; both are plain type/length/payload runs.
    A leading "PG" timestamp header from raw .sup data is skipped.
    """
    pos = 0
    end = len(data)
    while pos + 3 <= end:
        if data[pos:pos + 2] == PGS_MAGIC and pos + 13 <= end:
            pos += 10
        seg_type = data[pos]
        length = (data[pos + 1] << 8) | data[pos + 2]
        payload = data[pos + 3:pos + 3 + length]
        if len(payload) < length:
            return
        yield seg_type, payload
        pos += 3 + length


class PgsPalettes:
    """Tracks PGS palettes across packets.

    Palette definitions update entries of their palette id and survive until
    the next epoch start; the presentation segment picks the active id.
    """

    def __init__(self) -> None:
        self._palettes: Dict[int, List[int]] = {}
        self.active_id = 0

    def feed(self, data: bytes) -> None:
        for seg_type, payload in iter_pgs_segments(data):
            if seg_type == PGS_PRESENTATION:
                self._presentation(payload)
            elif seg_type == PGS_PALETTE:
                self._palette(payload)

    def _presentation(self, payload: bytes) -> None:
        if len(payload) < 11:
            return
        # two high bits of composition_state: non-zero starts a new epoch
        if payload[7] >> 6:
            self._palettes.clear()
        self.active_id = payload[9]

    def _palette(self, payload: bytes) -> None:
        if len(payload) < 2:
            return
        entries = self._palettes.setdefault(payload[0], [0] * 256)
        for pos in range(2, len(payload) - 4, 5):
            index, y, cr, cb, alpha = payload[pos:pos + 5]
            entries[index] = ycbcr_to_argb(y, cr, cb, alpha)

    def palette(self) -> Optional[bytes]:
        entries = self._palettes.get(self.active_id)
        if entries is None:
            return None
        return pack_argb(entries)


# ============================================================
# VobSub
# ============================================================

_IDX_PALETTE = re.compile(r"^\s*palette:\s*(.+)$", re.IGNORECASE | re.MULTILINE)

# SPU control commands and their argument sizes
SPU_SET_COLOR = 0x03
SPU_SET_CONTRAST = 0x04
SPU_CHANGE_COLCON = 0x07
SPU_END = 0xFF
_SPU_ARG_SIZES = {0x00: 0, 0x01: 0, 0x02: 0, 0x03: 2, 0x04: 2, 0x05: 6, 0x06: 4}

# gray levels assigned to opaque colours when the stream carries no palette
_GUESS_LEVELS = {1: (0xFF,), 2: (0x00, 0xFF), 3: (0x00, 0x80, 0xFF), 4: (0x00, 0x55, 0xAA, 0xFF)}


def parse_idx_palette(extradata: Optional[bytes]) -> Optional[List[int]]:
    """Read the 16 RGB colours of a VobSub idx header.

    Returns:
        List of 0xRRGGBB values, or None when the header has no palette
    """
    if not extradata:
        return None
    text = extradata.decode("latin-1", errors="replace")
    match = _IDX_PALETTE.search(text)
    if match is None:
        return None
    colors = []
    for item in match.group(1).split(","):
        item = item.strip()
        if not item:
            continue
        try:
            colors.append(int(item, 16) & 0xFFFFFF)
        except ValueError:
            return None
    return colors if len(colors) == 16 else None


def _nibbles(hi: int, lo: int) -> List[int]:
    # entry 0 sits in the lowest nibble of the second byte
    return [lo & 0x0F, lo >> 4, hi & 0x0F, hi >> 4]


def parse_spu_colors(spu: bytes) -> Optional[Tuple[List[int], List[int]]]:
    """Find the colour and contrast commands of a DVD subpicture unit.

    Returns:
        (colormap, alpha) with four 4-bit values each, or None if the
        control sequence sets neither
    """
    if len(spu) < 4:
        return None
    size = len(spu)
    ctrl = (spu[2] << 8) | spu[3]
    colormap: Optional[List[int]] = None
    alpha: Optional[List[int]] = None
    seen = set()

    while ctrl + 4 <= size and ctrl not in seen:
        seen.add(ctrl)
        next_ctrl = (spu[ctrl + 2] << 8) | spu[ctrl + 3]
        pos = ctrl + 4
        while pos < size:
            cmd = spu[pos]
            pos += 1
            if cmd == SPU_END:
                break
            if cmd == SPU_CHANGE_COLCON:
                if pos + 2 > size:
                    break
                pos += (spu[pos] << 8) | spu[pos + 1]
                continue
            arg = _SPU_ARG_SIZES.get(cmd)
            if arg is None or pos + arg > size:
                break
            if cmd == SPU_SET_COLOR:
                colormap = _nibbles(spu[pos], spu[pos + 1])
            elif cmd == SPU_SET_CONTRAST:
                alpha = _nibbles(spu[pos], spu[pos + 1])
            pos += arg
        ctrl = next_ctrl

    if colormap is None and alpha is None:
        return None
    return colormap or [0, 1, 2, 3], alpha or [0, 15, 15, 15]


class VobSubPalette:
    """Builds the four-entry palette of each DVD subtitle packet.

    Args:
        extradata: Codec extradata holding the idx header, if any
    """

    def __init__(self, extradata: Optional[bytes] = None) -> None:
        self.colors = parse_idx_palette(extradata)
        self._current: Optional[List[int]] = None

    def feed(self, data: bytes) -> None:
        found = parse_spu_colors(data)
        if found is None:
            return
        colormap, alpha = found
        if self.colors is not None:
            self._current = [
                (self.colors[c] & 0xFFFFFF) | ((a * 17) << 24) for c, a in zip(colormap, alpha)
            ]
        else:
            self._current = self._guess(colormap, alpha)

    @staticmethod
    def _guess(colormap: List[int], alpha: List[int]) -> List[int]:
        opaque = []
        for c, a in zip(colormap, alpha):
            if a and c not in opaque:
                opaque.append(c)
        levels = _GUESS_LEVELS.get(len(opaque), ())
        out = []
        for c, a in zip(colormap, alpha):
            if not a:
                out.append(0)
                continue
            level = levels[opaque.index(c)]
            out.append(((a * 17) << 24) | (level << 16) | (level << 8) | level)
        return out

    def palette(self) -> Optional[bytes]:
        if self._current is None:
            return None
        return pack_argb(self._current)


def palette_tracker(codec: str, extradata: Optional[bytes] = None):
    """Return the palette tracker for a bitmap codec, or None if it has none."""
    if codec == "hdmv_pgs_subtitle":
        return PgsPalettes()
    if codec == "dvd_subtitle":
        return VobSubPalette(extradata)
    return None
