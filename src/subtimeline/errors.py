#!/usr/bin/env python3
"""Error types for subtimeline.

Errors fall into four groups:
- media I/O errors (recoverable per packet, fatal once a budget is spent)
- configuration errors (surfaced immediately, never retried)
- transient engine errors (carry status code and response for diagnostics)
- cancellation, which is not a failure and ends a run quietly
"""
from __future__ import annotations

from typing import Optional


# ============================================================
# Base
# ============================================================

class SubtitleError(Exception):
    """Base class for all subtimeline errors."""


# ============================================================
# Media I/O
# ============================================================

class MediaError(SubtitleError):
    """Base class for demuxer/decoder failures."""


class MediaOpenError(MediaError):
    """The url could not be opened or has no usable stream."""


class DemuxError(MediaError):
    """Reading one packet failed. The reader may keep going."""


class DecodeError(MediaError):
    """Decoding one packet failed. The reader may keep going."""


class FatalMediaError(MediaError):
    """Too many consecutive I/O errors, or an unrecoverable one."""


# ============================================================
# Configuration
# ============================================================

class ConfigurationError(SubtitleError):
    """Missing engine, model, credentials or an unsupported setting."""


class AsrConfigError(ConfigurationError):
    """The transcription engine cannot run with the current settings."""


class OcrConfigError(ConfigurationError):
    """The recognition engine cannot run with the current settings."""


# ============================================================
# Engines
# ============================================================

class EngineError(SubtitleError):
    """A transcription/recognition/translation call failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        response: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response

    def __str__(self) -> str:
        msg = super().__str__()
        if self.status_code is not None:
            msg = f"{msg} (status {self.status_code})"
        return msg


# ============================================================
# Producer Lifecycle
# ============================================================

class OperationCancelled(SubtitleError):
    """Raised inside a producer when its cancellation token is set."""


class ProducerTimeoutError(SubtitleError):
    """Waiting on a producer exceeded the caller's timeout."""


class BitmapDisposedError(SubtitleError):
    """A bitmap was borrowed after it had been released."""


# ============================================================
# Error Budget
# ============================================================

class ErrorBudget:
    """Counts consecutive recoverable errors and escalates at a limit.

    Args:
        name: Label used in the escalation message (e.g. "demux")
        max_errors: Number of consecutive errors that becomes fatal;
            0 or less disables escalation
    """

    def __init__(self, name: str, max_errors: int) -> None:
        self.name = name
        self.max_errors = max_errors
        self.count = 0
        self.total = 0

    def record(self, exc: BaseException) -> None:
        """Count one error.

        Raises:
            FatalMediaError: When the consecutive count reaches max_errors
        """
        self.count += 1
        self.total += 1
        if self.max_errors > 0 and self.count >= self.max_errors:
            raise FatalMediaError(
                f"{self.name}: {self.count} consecutive errors, last: {exc}"
            ) from exc

    def reset(self) -> None:
        self.count = 0
