#!/usr/bin/env python3
"""OCR pipeline: fills in the text of bitmap subtitle entries.

Each bitmap is binarized into dark text on a white background, padded,
and handed to a recognition engine. Recognition starts a few entries before
the playback position and wraps around the track so that nearby subtitles
get their text first.
"""
from __future__ import annotations

import importlib.util
import subprocess
import tempfile
from abc import ABC, abstractmethod
from bisect import bisect_left
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageOps

from .bitmap import BitmapImage
from .errors import BitmapDisposedError, EngineError, OcrConfigError, OperationCancelled
from .languages import Language, get_language
from .logging_utils import component_tag, debug, log, warn
from .models import ProducerKind, ResolvedConfig, RunOutcome, SubtitleEntry
from .producers import CancelToken, ProducerHandle, ProducerSlot
from .system import run_cmd_text, tesseract_languages, tesseract_ok
from .text_processing import fix_english_confusables, normalize_spaces, remove_cjk_spaces
from .timeline import SubtitleTimeline


# ============================================================
# Image Preprocessing
# ============================================================

_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def binarize(rgba: np.ndarray, *, light_text: bool = True, threshold: int = 128) -> np.ndarray:
    """Threshold an RGBA subtitle bitmap to black and white.

    Args:
        rgba: uint8 array of shape (h, w, 4)
        light_text: True if the source has light text on a dark outline
            (the common case); the result then has dark text
        threshold: Luminance midpoint

    Returns:
        uint8 RGBA array with black/white color and the source alpha
    """
    gray = rgba[..., :3].astype(np.float32) @ _LUMA
    dark = gray < threshold
    if light_text:
        value = np.where(dark, 255, 0)
    else:
        value = np.where(dark, 0, 255)
    out = np.empty_like(rgba)
    out[..., :3] = value[..., None].astype(np.uint8)
    out[..., 3] = rgba[..., 3]
    return out


def to_ocr_image(
    bitmap: BitmapImage,
    *,
    padding: int = 20,
    threshold: int = 128,
    light_text: bool = True,
) -> Image.Image:
    """Produce the grayscale image handed to OCR engines.

    Transparent areas become white and a white border of `padding` pixels
    is added around the text.
    """
    bw = binarize(bitmap.rgba, light_text=light_text, threshold=threshold)
    fg = Image.fromarray(bw, "RGBA")
    bg = Image.new("RGBA", fg.size, (255, 255, 255, 255))
    bg.alpha_composite(fg)
    gray = bg.convert("L")
    if padding > 0:
        gray = ImageOps.expand(gray, border=padding, fill=255)
    return gray


# ============================================================
# Recognition Engines
# ============================================================

class OCREngine(ABC):
    """Recognizes text in one preprocessed subtitle image.

    Args:
        language: Language of the subtitle track
        config: Resolved configuration
    """

    name = "ocr"

    def __init__(self, language: Language, config: ResolvedConfig) -> None:
        self.language = language
        self.config = config

    @classmethod
    @abstractmethod
    def try_initialize(cls, language: Language, config: ResolvedConfig) -> Tuple[bool, str]:
        """Check whether this engine can recognize `language`.

        Returns:
            Tuple of (ok, error_message)
        """

    @abstractmethod
    def recognize(self, image: Image.Image) -> str:
        """Raises:
            EngineError: If recognition fails for this image
        """

    def post_process(self, text: str) -> str:
        text = normalize_spaces(text)
        if self.language.is_cjk:
            text = remove_cjk_spaces(text)
        return text.strip()

    def close(self) -> None:
        pass


class TesseractEngine(OCREngine):
    """Tesseract via its command-line program."""

    name = "tesseract"

    @classmethod
    def try_initialize(cls, language, config):
        if not tesseract_ok():
            return False, "tesseract not found on PATH"
        code = language.tesseract
        if not code:
            return False, f"Tesseract does not support {language.name}"
        installed = tesseract_languages()
        if code not in installed:
            return False, f"Tesseract language pack '{code}' for {language.name} is not installed"
        return True, ""

    def recognize(self, image):
        code = self.language.tesseract or "eng"
        with tempfile.TemporaryDirectory(prefix="subtimeline_ocr_") as tmp:
            path = Path(tmp) / "sub.png"
            image.save(path)
            try:
                rc, out, err = run_cmd_text(
                    ["tesseract", str(path), "stdout", "-l", code, "--psm", "6"],
                    timeout=self.config.ocr_timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise EngineError(f"tesseract timed out after {e.timeout}s") from e
        if rc != 0:
            raise EngineError("tesseract failed", status_code=rc, response=err.strip())
        return out

    def post_process(self, text):
        text = super().post_process(text)
        if self.language.code == "en":
            text = fix_english_confusables(text).strip()
        return text


EASYOCR_CODES: Dict[str, str] = {
    "zh": "ch_sim",
    "no": "no",
}


class EasyOCREngine(OCREngine):
    """EasyOCR (optional extra). The reader is created on first use."""

    name = "easyocr"

    def __init__(self, language, config):
        super().__init__(language, config)
        self._reader = None

    @classmethod
    def try_initialize(cls, language, config):
        if importlib.util.find_spec("easyocr") is None:
            return False, "easyocr is not installed (pip install subtimeline[easyocr])"
        if language.is_unknown:
            return False, "EasyOCR needs a known language"
        return True, ""

    def _get_reader(self):
        if self._reader is None:
            import easyocr

            code = EASYOCR_CODES.get(self.language.code, self.language.code)
            self._reader = easyocr.Reader([code], gpu=self.config.device != "cpu", verbose=False)
        return self._reader

    def recognize(self, image):
        try:
            lines = self._get_reader().readtext(np.asarray(image), detail=0, paragraph=True)
        except (RuntimeError, ValueError) as e:
            raise EngineError(f"easyocr failed: {e}") from e
        return "\n".join(lines)

    def close(self):
        self._reader = None


OCR_ENGINES: Dict[str, type] = {
    TesseractEngine.name: TesseractEngine,
    EasyOCREngine.name: EasyOCREngine,
}


def engine_class(config: ResolvedConfig) -> type:
    """Raises:
        OcrConfigError: If the configured engine is unknown
    """
    cls = OCR_ENGINES.get(config.ocr_engine.lower())
    if cls is None:
        raise OcrConfigError(f"unknown OCR engine: {config.ocr_engine}")
    return cls


def create_ocr_engine(config: ResolvedConfig, language: Language) -> OCREngine:
    """Build and check the configured engine.

    Raises:
        OcrConfigError: If the engine cannot run for this language
    """
    cls = engine_class(config)
    ok, err = cls.try_initialize(language, config)
    if not ok:
        raise OcrConfigError(err)
    return cls(language, config)


# ============================================================
# Pipeline
# ============================================================

def start_position(entries: Sequence[SubtitleEntry], cur_time: float, lookbehind: int) -> int:
    """Index to start recognizing from: `lookbehind` entries before cur_time."""
    i = bisect_left(entries, cur_time, key=lambda e: e.start)
    if i == len(entries):
        return 0
    return max(0, i - lookbehind)


def wraparound_order(count: int, start: int) -> List[int]:
    return list(range(start, count)) + list(range(0, min(start, count)))


class SubtitlesOCR:
    """Runs OCR over the bitmap entries of a slot.

    Args:
        timelines: One timeline per slot
        producers: One ProducerSlot per slot
        config: Resolved configuration
        engine_factory: Builds an OCREngine for (config, language)
    """

    def __init__(
        self,
        timelines: Sequence[SubtitleTimeline],
        producers: Sequence[ProducerSlot],
        config: ResolvedConfig,
        *,
        engine_factory: Callable[[ResolvedConfig, Language], OCREngine] = create_ocr_engine,
    ) -> None:
        self.timelines = timelines
        self.producers = producers
        self.config = config
        self._engine_factory = engine_factory

    def try_initialize(self, slot: int, language: Optional[str] = None) -> Tuple[bool, str]:
        lang = get_language(language) if language else self.timelines[slot].language
        try:
            cls = engine_class(self.config)
        except OcrConfigError as e:
            return False, str(e)
        return cls.try_initialize(lang, self.config)

    def start(self, slot: int, language: Optional[str] = None, cur_time: float = 0.0) -> ProducerHandle:
        return self.producers[slot].start(
            ProducerKind.OCR, self.process, slot, language, cur_time, name=f"ocr-{slot + 1}",
        )

    def execute(self, slot: int, language: Optional[str] = None, cur_time: float = 0.0) -> RunOutcome:
        """Run on the calling thread until done or cancelled."""
        try:
            with self.producers[slot].run(ProducerKind.OCR) as token:
                if token.cancelled:
                    return RunOutcome.STOPPED
                return self.process(token, slot, language, cur_time)
        except OperationCancelled:
            return RunOutcome.STOPPED

    def try_cancel(self, slot: int, wait: bool = True) -> bool:
        p = self.producers[slot]
        if wait:
            return p.cancel_and_wait(ProducerKind.OCR)
        return p.cancel(ProducerKind.OCR)

    def reset(self, slot: int) -> None:
        self.try_cancel(slot, wait=True)

    def process(self, token: CancelToken, slot: int, language: Optional[str], cur_time: float) -> RunOutcome:
        cfg = self.config
        tag = component_tag("OCR", slot)
        timeline = self.timelines[slot]
        entries = timeline.entries
        if not entries or not entries[0].is_bitmap:
            return RunOutcome.COMPLETED

        lang = get_language(language) if language else timeline.language
        engine = self._engine_factory(cfg, lang)
        order = wraparound_order(len(entries), start_position(entries, cur_time, cfg.ocr_lookbehind))
        recognized = 0

        try:
            with timeline.loading():
                for i in order:
                    if token.cancelled:
                        # release every remaining buffer; dispose is idempotent
                        for e in entries:
                            e.dispose()
                        log(f"cancelled after {recognized} of {len(entries)} entries",
                            quiet=cfg.quiet, tag=tag)
                        return RunOutcome.STOPPED

                    entry = entries[i]
                    ref = entry.bitmap
                    if ref is None:
                        continue
                    try:
                        with ref.borrow() as bmp:
                            image = to_ocr_image(
                                bmp,
                                padding=cfg.ocr_padding,
                                threshold=cfg.ocr_threshold,
                                light_text=cfg.ocr_light_text,
                            )
                    except BitmapDisposedError:
                        continue

                    try:
                        text = engine.post_process(engine.recognize(image))
                    except EngineError as e:
                        warn(f"entry {entry.index}: {e}", quiet=cfg.quiet, tag=tag)
                        continue

                    timeline.update_text(entry, text)
                    if text:
                        entry.dispose()
                        recognized += 1
                    debug(f"entry {entry.index}: {text!r}", verbose=cfg.verbose, tag=tag)
        finally:
            engine.close()

        log(f"recognized {recognized} of {len(entries)} entries", quiet=cfg.quiet, tag=tag)
        return RunOutcome.COMPLETED
