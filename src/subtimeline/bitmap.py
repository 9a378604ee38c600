#!/usr/bin/env python3
"""Bitmap subtitle payloads and their arena.

Decoded bitmap subtitles are stored in a BitmapArena and referenced from
entries by a BitmapRef handle. A handle is released exactly once; further
release calls are no-ops. Readers (OCR, renderers) borrow the image through
a guard that blocks release until the borrow ends.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import numpy as np

from .errors import BitmapDisposedError


# ============================================================
# Image
# ============================================================

@dataclass
class BitmapImage:
    """Decoded subtitle raster.

    Attributes:
        x: Left offset on the video frame
        y: Top offset on the video frame
        width: Width in pixels
        height: Height in pixels
        rgba: uint8 array of shape (height, width, 4)
    """
    x: int
    y: int
    width: int
    height: int
    rgba: np.ndarray

    @classmethod
    def from_palette(
        cls,
        x: int,
        y: int,
        width: int,
        height: int,
        indices: bytes,
        palette: bytes,
        stride: Optional[int] = None,
    ) -> "BitmapImage":
        """Build an RGBA image from palettized subtitle planes.

        Args:
            x: Left offset
            y: Top offset
            width: Width in pixels
            height: Height in pixels
            indices: One palette index per pixel, rows of `stride` bytes
            palette: Little-endian 32-bit ARGB entries
            stride: Bytes per row of indices (defaults to width)

        Returns:
            BitmapImage with RGBA pixels
        """
        stride = stride or width
        idx = np.frombuffer(indices, dtype=np.uint8)[: stride * height]
        idx = idx.reshape(height, stride)[:, :width]

        argb = np.frombuffer(palette, dtype="<u4")
        table = np.zeros((256, 4), dtype=np.uint8)
        n = min(len(argb), 256)
        table[:n, 0] = (argb[:n] >> 16) & 0xFF
        table[:n, 1] = (argb[:n] >> 8) & 0xFF
        table[:n, 2] = argb[:n] & 0xFF
        table[:n, 3] = (argb[:n] >> 24) & 0xFF

        return cls(x=x, y=y, width=width, height=height, rgba=table[idx])


# ============================================================
# Arena
# ============================================================

class _Slot:
    __slots__ = ("image", "readers", "disposed")

    def __init__(self, image: BitmapImage) -> None:
        self.image: Optional[BitmapImage] = image
        self.readers = 0
        self.disposed = False


class BitmapArena:
    """Owns every retained bitmap payload of a session.

    Attributes:
        released: Number of payloads actually released so far
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._slots: Dict[int, _Slot] = {}
        self._next_id = 1
        self.released = 0

    def store(self, image: BitmapImage) -> "BitmapRef":
        """Take ownership of an image and return its handle."""
        with self._cond:
            ref_id = self._next_id
            self._next_id += 1
            self._slots[ref_id] = _Slot(image)
        return BitmapRef(self, ref_id)

    @contextmanager
    def borrow(self, ref_id: int) -> Iterator[BitmapImage]:
        """Borrow an image for reading. Release waits until the borrow ends.

        Raises:
            BitmapDisposedError: If the payload has already been released
        """
        with self._cond:
            slot = self._slots.get(ref_id)
            if slot is None or slot.disposed or slot.image is None:
                raise BitmapDisposedError(f"bitmap {ref_id} already released")
            slot.readers += 1
            image = slot.image
        try:
            yield image
        finally:
            with self._cond:
                slot.readers -= 1
                self._cond.notify_all()

    def dispose(self, ref_id: int) -> bool:
        """Release a payload.

        Must not be called by a thread that currently borrows the same
        payload.

        Returns:
            True if this call released it, False if it was already released
        """
        with self._cond:
            slot = self._slots.get(ref_id)
            if slot is None or slot.disposed:
                return False
            slot.disposed = True
            while slot.readers > 0:
                self._cond.wait()
            slot.image = None
            del self._slots[ref_id]
            self.released += 1
            return True

    def is_disposed(self, ref_id: int) -> bool:
        with self._cond:
            return ref_id not in self._slots

    @property
    def live_count(self) -> int:
        with self._cond:
            return len(self._slots)


class BitmapRef:
    """Handle to an arena-owned bitmap."""

    __slots__ = ("_arena", "id")

    def __init__(self, arena: BitmapArena, ref_id: int) -> None:
        self._arena = arena
        self.id = ref_id

    def borrow(self):
        return self._arena.borrow(self.id)

    def dispose(self) -> bool:
        return self._arena.dispose(self.id)

    @property
    def disposed(self) -> bool:
        return self._arena.is_disposed(self.id)

    def __repr__(self) -> str:
        return f"BitmapRef({self.id}{', disposed' if self.disposed else ''})"
