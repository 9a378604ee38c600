#!/usr/bin/env python3
"""System utilities and dependency checks for subtimeline.

This module provides:
- File system helpers
- External dependency checks (tesseract) and library versions
- Command execution helpers
- Diagnostics output for the CLI
"""
from __future__ import annotations

import importlib.util
import platform
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Set, Tuple

from .models import TOOL_VERSION


# ============================================================
# File System Utilities
# ============================================================

def ensure_parent_dir(path: Path) -> None:
    """Ensure that a file's parent directory exists, creating it if needed.

    Args:
        path: Path to a file whose parent directory should exist
    """
    parent = path.parent
    if parent and not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)


# ============================================================
# Command Execution
# ============================================================

def which_or_none(name: str) -> Optional[str]:
    """Find the path to an executable, or None if not found."""
    return shutil.which(name)


def run_cmd_text(cmd: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Run a command and capture its output as UTF-8 text.

    Args:
        cmd: Command and arguments to execute
        timeout: Seconds before the command is killed

    Returns:
        Tuple of (return_code, stdout, stderr)

    Raises:
        subprocess.TimeoutExpired: If the command exceeds timeout
    """
    p = subprocess.run(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )
    return p.returncode, p.stdout, p.stderr


# ============================================================
# Tesseract
# ============================================================

def tesseract_ok() -> bool:
    """Check if tesseract is available on the system PATH."""
    return which_or_none("tesseract") is not None


def tesseract_version() -> Optional[str]:
    """Get the first line of `tesseract --version`, or None if unavailable."""
    if not tesseract_ok():
        return None
    code, out, err = run_cmd_text(["tesseract", "--version"])
    if code != 0:
        return None
    # older releases print the version on stderr
    text = out or err
    return text.splitlines()[0].strip() if text else None


def tesseract_languages() -> Set[str]:
    """List installed Tesseract language packs (empty if unavailable)."""
    if not tesseract_ok():
        return set()
    code, out, _ = run_cmd_text(["tesseract", "--list-langs"])
    if code != 0:
        return set()
    # first line is a header: List of available languages in "..." (N):
    return {line.strip() for line in out.splitlines()[1:] if line.strip()}


# ============================================================
# Diagnostics
# ============================================================

def module_version(name: str) -> Optional[str]:
    """Return a module's __version__, or None if it is not installed."""
    if importlib.util.find_spec(name) is None:
        return None
    try:
        mod = __import__(name)
    except Exception:
        return "(unable to import)"
    return getattr(mod, "__version__", "unknown")


def diagnose() -> None:
    """Print system diagnostic information to stdout."""
    print(f"tool_version: {TOOL_VERSION}")
    print(f"python: {sys.version.split()[0]}")
    print(f"platform: {platform.platform()}")
    for name in ("av", "faster_whisper", "numpy", "PIL", "requests", "easyocr"):
        print(f"{name}: {module_version(name)}")
    print(f"tesseract: {tesseract_version()}")
    print("PATH tesseract:", which_or_none("tesseract"))
    langs = sorted(tesseract_languages())
    if langs:
        print("tesseract languages:", " ".join(langs))
