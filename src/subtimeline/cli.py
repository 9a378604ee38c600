#!/usr/bin/env python3
"""Command-line interface for subtimeline.

Loads one subtitle track (read from a stream, recognized by OCR, or
transcribed by ASR) into a session and exports it to a file.
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import time
import traceback
from concurrent.futures import wait
from pathlib import Path
from typing import Any, Dict, Optional

from .config import MODE_ALIASES, PRESETS, resolve_config
from .errors import ConfigurationError, ProducerTimeoutError, SubtitleError
from .logging_utils import die, format_duration, format_timestamp, log, progress_done, progress_line, warn
from .models import TOOL_VERSION, ResolvedConfig, RunOutcome, SubtitleMethod
from .output_writers import WRITERS, write_json
from .reader import TEXT_SUBTITLE_EXTENSIONS
from .session import SubtitleSession
from .system import diagnose


COMMAND_METHODS = {
    "extract": SubtitleMethod.ORIGINAL,
    "ocr": SubtitleMethod.OCR,
    "transcribe": SubtitleMethod.ASR,
}

EXTERNAL_EXTENSIONS = set(TEXT_SUBTITLE_EXTENSIONS) | {".idx", ".sup"}


# ============================================================
# Config
# ============================================================

def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect CLI options that were given into config overrides."""
    ov: Dict[str, Any] = {}
    for opt, key in (
        ("model", "model"),
        ("device", "device"),
        ("language", "asr_language"),
        ("chunk_seconds", "asr_chunk_seconds"),
        ("ocr_engine", "ocr_engine"),
        ("translate_service", "translate_service"),
        ("translate", "translate_target"),
    ):
        value = getattr(args, opt, None)
        if value is not None:
            ov[key] = value
    if getattr(args, "strict_cuda", False):
        ov["strict_cuda"] = True
    if getattr(args, "no_vad", False):
        ov["vad_filter"] = False
    if getattr(args, "dark_text", False):
        ov["ocr_light_text"] = False
    if args.quiet:
        ov["quiet"] = True
    if args.verbose:
        ov["verbose"] = True
    slot0: Dict[str, Any] = {}
    if args.delay is not None:
        slot0["delay"] = args.delay
    if getattr(args, "translate", None):
        slot0["enabled_translated"] = True
    if getattr(args, "fallback_language", None):
        slot0["language_fallback"] = args.fallback_language
    if slot0:
        ov["slots"] = [slot0]
    return ov


def default_output_for(input_path: Path, fmt: str) -> Path:
    return input_path.with_suffix(f".{fmt}")


# ============================================================
# Run one input
# ============================================================

def wait_with_progress(session: SubtitleSession, handle, method: SubtitleMethod, *, show_progress: bool) -> RunOutcome:
    """Join a producer handle while printing entry counts."""
    cfg = session.config
    timeline = session[0]
    t0 = time.time()
    while True:
        try:
            outcome = handle.join(timeout=0.5)
            break
        except ProducerTimeoutError:
            extra = ""
            if method is SubtitleMethod.ASR:
                extra = f" | media_t={format_timestamp(session.asr.latest_end(0))}"
            progress_line(
                f"   entries:{len(timeline):6d}{extra} | elapsed {format_duration(time.time() - t0)}",
                enabled=show_progress,
                quiet=cfg.quiet,
            )
    progress_done(enabled=show_progress, quiet=cfg.quiet)
    return outcome


def translate_all(session: SubtitleSession) -> None:
    cfg = session.config
    tr = session.translator(0)
    n = len(session[0])
    step = max(1, cfg.translate_count)
    for i in range(0, n, step):
        if not tr.enabled:
            break
        wait(tr.translate_ahead(i))


def run_one(args: argparse.Namespace, cfg: ResolvedConfig) -> int:
    """Load, optionally translate, and export one input.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    method = COMMAND_METHODS[args.command]
    input_path = Path(args.input)
    output_path = Path(args.output) if args.output else default_output_for(input_path, args.format)
    if output_path.exists() and not args.overwrite:
        return die(f"Output exists: {output_path} (use --overwrite)", 2)

    show_progress = not args.no_progress
    external = input_path.suffix.lower() in EXTERNAL_EXTENSIONS

    with SubtitleSession(cfg) as session:
        if method is SubtitleMethod.ASR:
            ok, err = session.asr.can_execute()
            if not ok:
                return die(err, 2)
        elif method is SubtitleMethod.OCR:
            ok, err = session.ocr.try_initialize(0, args.stream_language or cfg.slots[0].language_fallback)
            if not ok:
                return die(err, 2)

        started = time.time()
        log(f"Input: {input_path}", quiet=cfg.quiet)
        log(f"Output: {output_path}", quiet=cfg.quiet)

        handle = session.open(
            0, str(input_path), args.stream,
            method=method,
            language=args.stream_language,
            external=external,
            cur_time=args.start,
        )
        try:
            outcome = wait_with_progress(session, handle, method, show_progress=show_progress)
        except KeyboardInterrupt:
            handle.cancel()
            handle.join()
            return die("Interrupted by user.", 130)

        if outcome is RunOutcome.STOPPED:
            return die("Stopped before completion.", 1)

        timeline = session[0]
        if cfg.slots[0].enabled_translated:
            log(f"Translating to {cfg.translate_target}...", quiet=cfg.quiet)
            translate_all(session)

        entries = timeline.entries
        lang = timeline.language_source.code if timeline.language_source else None
        if args.format == "json":
            count = write_json(
                entries, output_path,
                input_file=str(input_path),
                stream_index=args.stream,
                method=method.value,
                language=lang,
            )
        else:
            count = WRITERS[args.format](entries, output_path, translated=cfg.slots[0].enabled_translated)

        if count == 0:
            warn("no subtitle text was produced", quiet=cfg.quiet)
        log(f"Done: {output_path} ({count} entries, total {format_duration(time.time() - started)})",
            quiet=cfg.quiet)
    return 0


# ============================================================
# CLI
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="subtimeline",
        description="Subtitle timeline engine: extract, OCR or transcribe a subtitle track",
    )
    ap.add_argument("--version", action="version", version=TOOL_VERSION)
    sub = ap.add_subparsers(dest="command")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("input", help="Media file or external subtitle file")
    common.add_argument("-o", "--output", default=None, help="Output path (defaults next to the input)")
    common.add_argument("--format", choices=["srt", "vtt", "txt", "json"], default="srt")
    common.add_argument("--stream", type=int, default=-1, help="Stream index (-1 = first matching stream)")
    common.add_argument("--stream-language", default=None, help="Language code of the stream, if known")
    common.add_argument("--fallback-language", default=None, help="Language used when the stream's is unknown")
    common.add_argument("--start", type=float, default=0.0, help="Playback position to prioritize (seconds)")
    common.add_argument("--delay", type=float, default=None, help="Subtitle delay in seconds")
    common.add_argument("--translate", default=None, metavar="LANG", help="Also translate into LANG")
    common.add_argument("--translate-service", choices=["google", "deeplx"], default=None)
    common.add_argument("--mode", default=None, help="Preset: file | stream | low_memory")
    common.add_argument("--config", default=None, help="JSON config file. CLI args override config.")
    common.add_argument("--dry-run", action="store_true", help="Show the resolved config and exit.")
    common.add_argument("--overwrite", action="store_true", help="Overwrite output if it exists")
    common.add_argument("--quiet", action="store_true")
    common.add_argument("--verbose", action="store_true")
    common.add_argument("--no-progress", action="store_true")
    common.add_argument("--debug", action="store_true", help="Print tracebacks on failure")

    sub.add_parser("extract", parents=[common], help="Read a text or bitmap subtitle stream")

    p_ocr = sub.add_parser("ocr", parents=[common], help="Recognize a bitmap subtitle stream")
    p_ocr.add_argument("--ocr-engine", choices=["tesseract", "easyocr"], default=None)
    p_ocr.add_argument("--dark-text", action="store_true", help="Source has dark text on a light outline")

    p_asr = sub.add_parser("transcribe", parents=[common], help="Transcribe an audio stream")
    p_asr.add_argument("--model", default=None, help="tiny/base/small/medium/large-v3")
    p_asr.add_argument("--device", choices=["auto", "cpu", "cuda"], default=None)
    p_asr.add_argument("--strict-cuda", action="store_true",
                       help="Fail instead of falling back when CUDA init fails.")
    p_asr.add_argument("--language", default=None, help="Spoken language code. If omitted, auto-detect.")
    p_asr.add_argument("--chunk-seconds", type=float, default=None, help="Maximum wall-clock age of a chunk")
    p_asr.add_argument("--no-vad", action="store_true", help="Disable the VAD filter")

    sub.add_parser("diagnose", help="Print library and tesseract versions")
    return ap


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the subtimeline command-line tool.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.command is None:
        ap.print_help()
        return 2

    if args.command == "diagnose":
        diagnose()
        return 0

    if args.mode and args.mode.lower() not in MODE_ALIASES:
        return die(f"Invalid --mode '{args.mode}'. Valid modes: {', '.join(PRESETS)}", 2)

    if not Path(args.input).exists() and "://" not in args.input:
        return die(f"Input not found: {args.input}", 2)

    # defaults -> config file -> preset -> CLI overrides
    try:
        cfg = resolve_config(args.mode, args.config, config_overrides(args))
    except (OSError, ValueError, TypeError) as e:
        return die(str(e), 2)

    if args.dry_run:
        log("Resolved config:", quiet=cfg.quiet)
        log(json.dumps(dataclasses.asdict(cfg), indent=2), quiet=cfg.quiet)
        return 0

    try:
        return run_one(args, cfg)
    except ConfigurationError as e:
        return die(str(e), 2)
    except SubtitleError as e:
        if args.debug:
            traceback.print_exc()
        return die(f"{args.input}: {e}", 1)
    except KeyboardInterrupt:
        return die("Interrupted by user.", 130)


if __name__ == "__main__":
    raise SystemExit(main())
