"""subtimeline - subtitle timeline engine with ASR and OCR producers.

This package keeps a time-ordered subtitle track per slot, answers "what is
showing now" as playback moves, and fills tracks from subtitle streams,
faster-whisper transcription, or OCR of bitmap subtitles.
"""
from .actions import ActionRegistry, ActionTag, CustomAction
from .cli import main
from .models import TOOL_VERSION
from .navigation import SeekTarget, cur_seek_target, next_seek_target, prev_seek_target
from .session import SubtitleSession
from .timeline import SubtitleTimeline

__version__ = TOOL_VERSION
__all__ = [
    "main",
    "ActionRegistry",
    "ActionTag",
    "CustomAction",
    "SeekTarget",
    "SubtitleSession",
    "SubtitleTimeline",
    "cur_seek_target",
    "next_seek_target",
    "prev_seek_target",
    "__version__",
]
