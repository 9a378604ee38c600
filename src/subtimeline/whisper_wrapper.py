#!/usr/bin/env python3
"""faster-whisper model initialization for the ASR pipeline.

The model is tried on CUDA with float16 first (unless the CPU is requested)
and falls back to CPU with int8.
"""
from __future__ import annotations

from typing import List, Optional, Tuple

from faster_whisper import WhisperModel

from .errors import AsrConfigError
from .logging_utils import log


# ============================================================
# Device Initialization
# ============================================================

def _candidates(device: str) -> List[Tuple[str, str]]:
    if device == "cpu":
        return [("cpu", "int8")]
    return [("cuda", "float16"), ("cpu", "int8")]


def init_whisper_model(
    model_name: str,
    device: str,               # auto|cpu|cuda
    *,
    quiet: bool = False,
    strict_cuda: bool = False,
    download_root: Optional[str] = None,
    tag: Optional[str] = None,
) -> Tuple[WhisperModel, str, str]:
    """Load a Whisper model on the best available device.

    Args:
        model_name: Model size or local model directory (e.g., "small")
        device: Device selection: "auto", "cpu", or "cuda"
        quiet: If True, suppress log messages
        strict_cuda: If True, fail instead of falling back when CUDA init fails
        download_root: Directory for downloaded models
        tag: Log prefix

    Returns:
        Tuple of (model, device_used, compute_type_used)

    Raises:
        AsrConfigError: If the model cannot be loaded on any permitted device
    """
    if device not in ("auto", "cpu", "cuda"):
        raise AsrConfigError(f"unknown device: {device}")

    last_error: Optional[Exception] = None
    for dev, compute_type in _candidates(device):
        try:
            model = WhisperModel(model_name, device=dev, compute_type=compute_type,
                                 download_root=download_root)
        except Exception as e:
            last_error = e
            if dev == "cuda":
                if device == "cuda" and strict_cuda:
                    raise AsrConfigError(f"CUDA requested but init failed: {e}") from e
                log(f"CUDA not available; using CPU. Reason: {e}", quiet=quiet, tag=tag)
            continue
        log(f"model={model_name} device={dev} compute_type={compute_type}", quiet=quiet, tag=tag)
        return model, dev, compute_type

    raise AsrConfigError(f"cannot load whisper model '{model_name}': {last_error}") from last_error
