#!/usr/bin/env python3
"""Configuration management for subtimeline.

This module handles configuration loading, preset management, and
configuration merging/overrides.
"""
from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, Optional

from .models import ResolvedConfig, SlotConfig


# ============================================================
# Presets
# ============================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    # local files: large chunks, one chunk buffered ahead
    "file": {
        "asr_chunk_size": 20 * 1024 * 1024,
        "asr_chunk_seconds": 20.0,
        "asr_queue_file": 1,
        "batch_min_count": 2,
        "batch_interval": 0.5,
    },
    # network streams: smaller chunks so text appears sooner
    "stream": {
        "asr_chunk_size": 4 * 1024 * 1024,
        "asr_chunk_seconds": 8.0,
        "asr_queue_stream": 2,
        "demux_max_errors": 60,
        "batch_min_count": 1,
        "batch_interval": 0.25,
    },
    "low_memory": {
        "asr_chunk_size": 2 * 1024 * 1024,
        "asr_chunk_seconds": 10.0,
        "asr_queue_file": 1,
        "asr_queue_stream": 1,
        "model": "base",
        "translate_max_concurrent": 1,
    },
}

MODE_ALIASES = {
    "file": "file",
    "local": "file",
    "stream": "stream",
    "net": "stream",
    "network": "stream",
    "low_memory": "low_memory",
    "low-memory": "low_memory",
    "lowmem": "low_memory",
}


# ============================================================
# Configuration Loading
# ============================================================

def load_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Load configuration from a JSON file.

    Args:
        path: Path to JSON config file, or None to skip loading

    Returns:
        Dictionary of configuration values, or empty dict if path is None

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file isn't a valid JSON object
    """
    if not path:
        return {}
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Config must be a JSON object at top-level.")
    return data


def _merge_slots(base: list, overrides: Any) -> list:
    if not isinstance(overrides, list):
        raise ValueError("'slots' must be a list of objects.")
    slot_fields = {f.name for f in dataclasses.fields(SlotConfig)}
    merged = [dict(s) for s in base]
    for i, ov in enumerate(overrides[:len(merged)]):
        if not isinstance(ov, dict):
            raise ValueError(f"'slots[{i}]' must be an object.")
        for k, v in ov.items():
            if k in slot_fields:
                merged[i][k] = v
    return merged


def apply_overrides(base: ResolvedConfig, overrides: Dict[str, Any]) -> ResolvedConfig:
    """Apply configuration overrides to a base configuration.

    Unknown keys are ignored. `slots` is merged element-wise so that an
    override may set a single field of one slot.

    Args:
        base: Base ResolvedConfig instance
        overrides: Dictionary of configuration values to override

    Returns:
        New ResolvedConfig instance with overrides applied

    Raises:
        ValueError: If `slots` is not a list of objects
    """
    d = dataclasses.asdict(base)
    for k, v in overrides.items():
        if k == "slots":
            d["slots"] = _merge_slots(d["slots"], v)
        elif k in d:
            d[k] = v
    d["slots"] = [SlotConfig(**s) for s in d["slots"]]
    return ResolvedConfig(**d)


def resolve_config(
    preset: Optional[str] = None,
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ResolvedConfig:
    """Build a config: defaults -> config file -> preset -> overrides.

    Raises:
        ValueError: If preset is not a known mode
    """
    cfg = apply_overrides(ResolvedConfig(), load_config_file(path))
    if preset:
        key = MODE_ALIASES.get(preset.lower())
        if key is None:
            raise ValueError(f"Invalid preset '{preset}'. Valid presets: {', '.join(PRESETS)}")
        cfg = apply_overrides(cfg, PRESETS[key])
    if overrides:
        cfg = apply_overrides(cfg, overrides)
    return cfg
