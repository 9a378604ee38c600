#!/usr/bin/env python3
"""Logging and progress utilities for subtimeline.

Producers run on worker threads and tag their messages with the component
and slot they belong to (e.g. "[ASR1]", "[SubReader2]"), so interleaved
output from several slots stays readable.
"""
from __future__ import annotations

import sys
import threading
from typing import Optional

_print_lock = threading.Lock()


# ============================================================
# Logging / Progress
# ============================================================

def component_tag(component: str, slot: int) -> str:
    """Build the bracketed prefix used by a producer for one slot.

    Args:
        component: Component name (e.g. "ASR", "OCR", "SubReader")
        slot: Zero-based slot index

    Returns:
        Tag such as "[ASR1]"
    """
    return f"[{component}{slot + 1}]"


def _emit(stream, msg: str, tag: Optional[str]) -> None:
    line = f"{tag} {msg}" if tag else msg
    with _print_lock:
        print(line, file=stream, flush=True)


def log(msg: str, *, quiet: bool = False, tag: Optional[str] = None) -> None:
    """Print a log message to stdout unless quiet mode is enabled.

    Args:
        msg: Message to log
        quiet: If True, suppress output
        tag: Optional component prefix
    """
    if not quiet:
        _emit(sys.stdout, msg, tag)


def warn(msg: str, *, quiet: bool = False, tag: Optional[str] = None) -> None:
    """Print a warning message to stderr unless quiet mode is enabled.

    Args:
        msg: Warning message to display
        quiet: If True, suppress output
        tag: Optional component prefix
    """
    if not quiet:
        _emit(sys.stderr, f"WARNING: {msg}", tag)


def debug(msg: str, *, verbose: bool = False, tag: Optional[str] = None) -> None:
    """Print a debug message to stderr only when verbose mode is enabled."""
    if verbose:
        _emit(sys.stderr, f"DEBUG: {msg}", tag)


def die(msg: str, code: int = 1) -> int:
    """Print an error message to stderr and return an exit code.

    Args:
        msg: Error message to display
        code: Exit code to return (default: 1)

    Returns:
        The exit code provided
    """
    _emit(sys.stderr, f"ERROR: {msg}", None)
    return code


def progress_line(msg: str, *, enabled: bool, quiet: bool) -> None:
    """Display a progress message on the current line (overwrites previous).

    Args:
        msg: Progress message to display (truncated to 120 chars)
        enabled: If False, suppress output
        quiet: If True, suppress output
    """
    if quiet or not enabled:
        return
    with _print_lock:
        sys.stdout.write("\r" + msg[:120].ljust(120))
        sys.stdout.flush()


def progress_done(*, enabled: bool, quiet: bool) -> None:
    """Finalize progress display by adding a newline."""
    if quiet or not enabled:
        return
    with _print_lock:
        sys.stdout.write("\n")
        sys.stdout.flush()


# ============================================================
# Time Formatting
# ============================================================

def format_duration(seconds: float) -> str:
    """Format a duration in seconds as H:MM:SS or M:SS.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1:23:45" or "23:45")
    """
    seconds = max(0, int(seconds))
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    if h > 0:
        return f"{h:d}:{m:02d}:{s:02d}"
    return f"{m:d}:{s:02d}"


def format_timestamp(seconds: float) -> str:
    """Format a presentation time with milliseconds for log lines.

    Negative values keep their sign, which helps spot delay mistakes.

    Args:
        seconds: Time in seconds

    Returns:
        String such as "0:01:02.345" or "-0:00:00.500"
    """
    sign = "-" if seconds < 0 else ""
    ms = int(round(abs(seconds) * 1000))
    h = ms // 3_600_000
    ms %= 3_600_000
    m = ms // 60_000
    ms %= 60_000
    s = ms // 1000
    ms %= 1000
    return f"{sign}{h:d}:{m:02d}:{s:02d}.{ms:03d}"
