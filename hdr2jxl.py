#!/usr/bin/env -S uv run --quiet --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "numpy>=2.0",
#     "pyexiftool>=0.5.6",
#     "pypng==0.20220715.0",
#     "rich>=13.0.0",
# ]
# ///
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Batch convert HDR PNGs into SDR base + gain map JPEG XL files.

For every Display P3 PQ PNG in the HDR folder the headroom is measured, an SDR
base is taken from the SDR folder (same file name) or tone mapped from the
HDR, the maker Apple headroom fields are derived and validated, and a JXL with
an ISO 21496-1 gain map is written. Items run in parallel on a bounded pool.

Layout (defaults):
    input_HDR/<name>.png                  HDR source, Display P3 PQ
    input_SDR/<name>.png                  optional SDR base, Display P3
    output_HDR_with_gainmap/<name>.jxl    result
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Final, TypeAlias

from typing_extensions import override

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from clip_analysis import apply_mask_overlay, build_clip_mask, measure_clip, parse_color
from encode_verify import encode_with_gain_map
from gainmap_config import DEFAULT_PERCENTILE, EncoderStrategy, HeadroomPolicy, ProcessingConfig
from gainmap_errors import (
    GainMapError,
    ItemSkipped,
    MakerValidationError,
    ReadError,
    ToneMapError,
    ValidationError,
)
from headroom import HeadroomResult, estimate_headroom
from jxl_gainmap import JxlRenderEngine
from maker_apple import MAX_HEADROOM, choose_maker, validate_maker
from render_engine import DISPLAY_P3, DISPLAY_P3_PQ, Image, RenderEngine

__all__: Final[list[str]] = [
    "WorkItem",
    "ItemStatus",
    "RunStats",
    "find_work_items",
    "process_item",
    "run_batch",
    "main",
]

__version__: Final[str] = "1.0.0"

EX_CANTCREAT: Final[int] = 73

DEFAULT_HDR_DIR: Final[Path] = Path("input_HDR")
DEFAULT_SDR_DIR: Final[Path] = Path("input_SDR")
DEFAULT_OUTPUT_DIR: Final[Path] = Path("output_HDR_with_gainmap")

LogSink: TypeAlias = Callable[[str], None]
ItemLogSink: TypeAlias = Callable[[str, str], None]

logger = logging.getLogger(__name__)

console = Console(stderr=True)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkItem:
    """One HDR input with its optional SDR partner and output location."""

    hdr_path: Path
    sdr_path: Path | None
    output_path: Path

    @property
    def name(self) -> str:
        return self.hdr_path.stem


class ItemStatus(StrEnum):
    WRITTEN = "written"
    DRY_RUN = "dry run"


@dataclass(slots=True)
class RunStats:
    """Aggregated batch outcome. Every mutation happens under one lock."""

    total: int = 0
    written: int = 0
    skipped: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_written(self) -> None:
        with self._lock:
            self.written += 1

    def record_skipped(self, item: str, reason: str) -> None:
        with self._lock:
            self.skipped.append((item, reason))

    def record_failed(self, item: str, reason: str) -> None:
        with self._lock:
            self.failed.append((item, reason))


# =============================================================================
# File Discovery
# =============================================================================


def find_work_items(
    hdr_dir: Path,
    sdr_dir: Path,
    output_dir: Path,
    suffix: str = "",
) -> list[WorkItem]:
    """HDR PNGs sorted by file name, each paired with <sdr_dir>/<name>.png."""
    hdr_files = sorted(
        (p for p in hdr_dir.iterdir() if p.is_file() and p.suffix.lower() == ".png"),
        key=lambda p: p.name,
    )
    return [
        WorkItem(
            hdr_path=path,
            sdr_path=sdr_dir / f"{path.stem}.png",
            output_path=output_dir / f"{path.stem}{suffix}.jxl",
        )
        for path in hdr_files
    ]


# =============================================================================
# Per-Item Pipeline
# =============================================================================


def _sidecar(item: WorkItem, tail: str) -> Path:
    return item.output_path.with_name(f"{item.output_path.stem}{tail}")


def _report_headroom(headroom: HeadroomResult, config: ProcessingConfig, log: LogSink) -> None:
    if headroom.policy is HeadroomPolicy.PERCENTILE:
        log(f"  • Percentile {config.percentile:.3f} -> headroom {headroom.pic_headroom:.3f}x")
    else:
        log(
            f"  • Max-peak={headroom.pic_headroom:.3f}x -> headroomRatio="
            f"{headroom.headroom_ratio:.3f} (tonemapRatio={config.tonemap_ratio:.1f})"
        )


def _load_sdr(sdr_path: Path, hdr: Image, engine: RenderEngine, log: LogSink) -> Image:
    log("  Found SDR counterpart, using it as base image")
    try:
        sdr = engine.load_image(sdr_path)
    except Exception as e:
        raise ReadError(f"Cannot read SDR: {sdr_path} ({e})") from e

    if hdr.orientation != sdr.orientation:
        raise ItemSkipped(f"Orientation mismatch (HDR={hdr.orientation}, SDR={sdr.orientation})")
    if hdr.extent != sdr.extent:
        raise ItemSkipped(f"Size mismatch (HDR={hdr.extent}, SDR={sdr.extent})")
    if sdr.color_space != DISPLAY_P3:
        raise ItemSkipped(f"SDR colorspace not Display P3 (got: {sdr.color_space})")
    return sdr


def _tonemap_sdr(
    item: WorkItem,
    hdr: Image,
    headroom: HeadroomResult,
    config: ProcessingConfig,
    engine: RenderEngine,
    log: LogSink,
) -> Image:
    log("  SDR image not found, producing one by tonemapping")
    threshold = headroom.headroom_ratio

    if config.emit_clip_mask:
        mask_path = _sidecar(item, "_clipmask.png")
        try:
            engine.write_png(mask_path, build_clip_mask(hdr, engine, threshold))
            log(f"  • Wrote clip mask: {mask_path}")
        except Exception as e:
            log(f"  ! Failed to write clip mask PNG: {e}")

    sdr = engine.tone_map(hdr, threshold, 1.0)
    if sdr is None:
        raise ToneMapError("Tonemapping failed")

    clip = measure_clip(hdr, engine, threshold, config.bin_count)
    if clip is None:
        log("  • Clip fraction: <n/a>")
    else:
        log(
            f"  • Pixels above headroom ({threshold:.3f}x): {clip.fraction * 100.0:.3f}% "
            f"(≈{clip.clipped_pixels:.0f} px)"
        )

    if config.emit_masked_image:
        overlay_path = _sidecar(item, "_clippedOverlay.png")
        color, _ = parse_color(config.mask_color)
        try:
            overlay = apply_mask_overlay(sdr, build_clip_mask(hdr, engine, threshold), color, engine)
            engine.write_png(overlay_path, overlay)
            log(f"  • Wrote clipped overlay: {overlay_path}")
        except Exception as e:
            log(f"  ! Failed to write clipped overlay PNG: {e}")

    return sdr


def process_item(
    item: WorkItem,
    config: ProcessingConfig,
    engine: RenderEngine,
    log: LogSink,
) -> ItemStatus:
    """Convert one item.

    Raises:
        ItemSkipped: Colour space, orientation or size preconditions not met
        ItemFailed: Any processing stage failed
    """
    log(f"Processing {item.name}…")

    try:
        hdr = engine.load_image(item.hdr_path)
    except Exception as e:
        raise ReadError(f"Cannot read HDR: {item.hdr_path} ({e})") from e
    if hdr.color_space != DISPLAY_P3_PQ:
        raise ItemSkipped(f"HDR colorspace not Display P3 PQ (got: {hdr.color_space})")

    headroom = estimate_headroom(hdr, engine, config)
    _report_headroom(headroom, config, log)

    if config.tonemap_dryrun:
        threshold = headroom.headroom_ratio
        clip = measure_clip(hdr, engine, threshold, config.bin_count)
        if clip is None:
            log(f"  [dryrun] Pixels above headroom ({threshold:.3f}x): <n/a>")
        else:
            log(
                f"  [dryrun] Pixels above headroom ({threshold:.3f}x): "
                f"{clip.fraction * 100.0:.3f}% (≈{clip.clipped_pixels:.0f} / {clip.total_pixels:.0f})"
            )
        return ItemStatus.DRY_RUN

    if item.sdr_path is not None and item.sdr_path.exists():
        sdr = _load_sdr(item.sdr_path, hdr, engine, log)
    else:
        sdr = _tonemap_sdr(item, hdr, headroom, config, engine, log)

    maker, chosen = choose_maker(headroom.pic_headroom, tol_stops_abs=config.tol_stops_abs)
    headroom_used = 2.0 ** max(maker.stops, 0.0)
    ok, diffs = validate_maker(
        headroom_used,
        chosen.maker33,
        chosen.maker48,
        tol_stops_abs=config.tol_stops_abs,
        tol_headroom_rel=config.tol_headroom_rel,
    )
    if not ok:
        raise MakerValidationError(
            f"makerApple validation failed (branch={diffs.branch}, "
            f"Δstops={diffs.abs_stops_diff:.4f}, relΔ={diffs.rel_headroom_diff * 100:.2f}%)"
        )
    logger.debug(
        "%s: maker33=%.1f maker48=%.6f branch=%s", item.name, chosen.maker33, chosen.maker48, chosen.branch
    )
    if headroom.pic_headroom > MAX_HEADROOM:
        log(
            f"  • Headroom {headroom.pic_headroom:.3f}× exceeds metadata limit (8×). "
            "Clamped makerApple to 8×."
        )

    result = encode_with_gain_map(sdr, hdr, chosen, item.output_path, engine, config, log)
    log(f"  ✔ Wrote: {result.path}")
    return ItemStatus.WRITTEN


# =============================================================================
# Batch Driver
# =============================================================================


def _default_item_log(name: str, message: str) -> None:
    logger.info("[%s] %s", name, message.strip())


def _run_item(
    item: WorkItem,
    config: ProcessingConfig,
    engine: RenderEngine,
    stats: RunStats,
    log: ItemLogSink,
    on_progress: Callable[[], None] | None,
) -> None:
    def emit(message: str) -> None:
        log(item.name, message)

    try:
        status = process_item(item, config, engine, emit)
        if status is ItemStatus.WRITTEN:
            stats.record_written()
        else:
            stats.record_skipped(item.name, str(status))
    except ItemSkipped as e:
        emit(f"  ! {e}")
        stats.record_skipped(item.name, str(e))
    except GainMapError as e:
        emit(f"  ! {e}")
        stats.record_failed(item.name, str(e))
    except Exception as e:
        logger.debug("Unexpected error in %s", item.name, exc_info=True)
        emit(f"  ! Unexpected error: {e}")
        stats.record_failed(item.name, f"Unexpected error: {e}")
    finally:
        if on_progress is not None:
            on_progress()


def run_batch(
    items: Sequence[WorkItem],
    config: ProcessingConfig,
    engine: RenderEngine,
    *,
    log: ItemLogSink | None = None,
    on_progress: Callable[[], None] | None = None,
) -> RunStats:
    """Process items on a bounded pool and wait for all of them.

    A new item is only submitted once one of the config.max_concurrency slots
    is free, so at most that many items are in flight at any time.
    """
    stats = RunStats(total=len(items))
    sink = log or _default_item_log
    slots = threading.BoundedSemaphore(config.max_concurrency)

    with ThreadPoolExecutor(
        max_workers=config.max_concurrency,
        thread_name_prefix="hdr2jxl",
    ) as executor:
        futures = []
        for item in items:
            slots.acquire()
            future = executor.submit(_run_item, item, config, engine, stats, sink, on_progress)
            future.add_done_callback(lambda _f: slots.release())
            futures.append(future)
        wait(futures)

    return stats


# =============================================================================
# CLI
# =============================================================================


class _AnsiColor(StrEnum):
    """ANSI color codes for terminal output."""

    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    RED = "\033[0;31m"
    GRAY = "\033[0;37m"
    RESET = "\033[0m"


class _ColoredFormatter(logging.Formatter):
    """Logging formatter with colored output."""

    _LEVEL_COLORS: ClassVar[dict[int, str]] = {
        logging.DEBUG: _AnsiColor.GRAY,
        logging.INFO: _AnsiColor.GREEN,
        logging.WARNING: _AnsiColor.YELLOW,
        logging.ERROR: _AnsiColor.RED,
    }

    @override
    def format(self, record: logging.LogRecord) -> str:
        color = self._LEVEL_COLORS.get(record.levelno, _AnsiColor.RESET)
        return f"{color}[{record.levelname}]{_AnsiColor.RESET} {record.getMessage()}"


def _setup_logging(debug: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_ColoredFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def _percentile(value: str) -> float:
    try:
        p = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid percentile: {value}") from None
    if not 0.0 < p <= 100.0:
        raise argparse.ArgumentTypeError(f"percentile must be in (0, 100], got {value}")
    return p


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Convert HDR PNGs into SDR + ISO 21496-1 gain map JPEG XL files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Expected layout:
  input_HDR/NAME.png                 HDR source (Display P3 PQ)
  input_SDR/NAME.png                 optional SDR base (Display P3)
  output_HDR_with_gainmap/NAME.jxl   result

Environment variables:
  CJXL, DJXL        Paths to the libjxl tools (default: PATH lookup)
  HDR2JXL_JOBS      Parallel jobs (default: CPU count)

Examples:
  %(prog)s                               Convert with max-peak headroom
  %(prog)s --peak-percentile             Use the 99.5th percentile as headroom
  %(prog)s --tonemap-dryrun              Only report headroom and clipping
  %(prog)s --emit-masked-image violet    Also write clipped-pixel overlays
""",
    )
    parser.add_argument("--input-hdr", type=Path, default=DEFAULT_HDR_DIR, metavar="DIR",
                        help="HDR PNG folder (default: ./input_HDR)")
    parser.add_argument("--input-sdr", type=Path, default=DEFAULT_SDR_DIR, metavar="DIR",
                        help="SDR PNG folder (default: ./input_SDR)")
    parser.add_argument("-o", "--output", type=Path, default=DEFAULT_OUTPUT_DIR, metavar="DIR",
                        help="Output folder (default: ./output_HDR_with_gainmap)")
    parser.add_argument("--suffix", default="", metavar="TEXT",
                        help='Suffix appended to output file names (e.g. "sdrtm" -> NAME_sdrtm.jxl)')
    parser.add_argument("--peak-percentile", type=_percentile, nargs="?", const=DEFAULT_PERCENTILE,
                        default=None, metavar="P",
                        help=f"Use percentile-based peak (default {DEFAULT_PERCENTILE} if value omitted)")
    parser.add_argument("--tonemap-ratio", type=float, default=0.2, metavar="R",
                        help="Blend exponent for the max-peak policy (default: 0.2)")
    parser.add_argument("--bins", type=int, default=2048, metavar="N",
                        help="Histogram bins, 1-2048 (default: 2048)")
    parser.add_argument("-q", "--quality", type=float, default=0.97, metavar="Q",
                        help="Base image quality 0-1 (default: 0.97)")
    parser.add_argument("--encoder", choices=[s.value for s in EncoderStrategy], default="auto",
                        help="Writer strategy (default: auto, chosen by architecture)")
    parser.add_argument("--no-verify", action="store_true",
                        help="Skip the gain map read-back after writing")
    parser.add_argument("--tonemap-dryrun", action="store_true",
                        help="Only compute headroom and clipped fraction; write nothing")
    parser.add_argument("--emit-clip-mask", action="store_true",
                        help="Also write a black/white PNG mask of clipped pixels")
    parser.add_argument("--emit-masked-image", nargs="?", const="magenta", default=None, metavar="COLOR",
                        help="Also write the SDR with clipped pixels painted COLOR "
                             "(red, magenta, violet or #RRGGBB; default: magenta)")
    parser.add_argument("-j", "--jobs", type=int, default=None, metavar="N",
                        help="Parallel processing jobs (default: CPU count)")
    parser.add_argument("--debug", action="store_true", help="Print verbose debug messages")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ProcessingConfig:
    return ProcessingConfig.create(
        max_concurrency=args.jobs,
        headroom_policy=HeadroomPolicy.PERCENTILE if args.peak_percentile is not None else HeadroomPolicy.MAX,
        percentile=args.peak_percentile if args.peak_percentile is not None else DEFAULT_PERCENTILE,
        tonemap_ratio=args.tonemap_ratio,
        bin_count=args.bins,
        compression_quality=args.quality,
        encoder_strategy=EncoderStrategy(args.encoder),
        verify_after_write=not args.no_verify,
        suffix=args.suffix,
        tonemap_dryrun=args.tonemap_dryrun,
        emit_clip_mask=args.emit_clip_mask,
        emit_masked_image=args.emit_masked_image is not None,
        mask_color=args.emit_masked_image or "magenta",
    )


def validate_environment(args: argparse.Namespace, config: ProcessingConfig) -> None:
    """Check folders and tools before any item runs.

    Raises:
        ValidationError: On a missing input folder, unwritable output folder or missing tool
    """
    if not args.input_hdr.is_dir():
        raise ValidationError(f"Input folder not found: {args.input_hdr}")
    try:
        args.output.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ValidationError(f"Cannot create output dir: {e}") from e

    if config.tonemap_dryrun:
        return
    for name, path in (("cjxl", config.cjxl_path), ("djxl", config.djxl_path)):
        if path is None or not path.exists():
            raise ValidationError(f"{name} not found (set {name.upper()} or add it to PATH)")
    if not shutil.which("exiftool"):
        raise ValidationError("exiftool not found in PATH")


def _print_summary(stats: RunStats) -> None:
    problems = [(name, "[yellow]skipped[/]", reason) for name, reason in stats.skipped]
    problems += [(name, "[red]failed[/]", reason) for name, reason in stats.failed]
    if problems:
        table = Table(title="Items not written")
        table.add_column("File", style="cyan")
        table.add_column("Status")
        table.add_column("Reason")
        for row in sorted(problems):
            table.add_row(*row)
        console.print(table)

    if not stats.failed:
        console.print(
            f"[green]Done:[/green] {stats.written} written, {len(stats.skipped)} skipped "
            f"of {stats.total}"
        )
    else:
        console.print(
            f"[yellow]Done:[/yellow] {stats.written} written, {len(stats.skipped)} skipped, "
            f"[red]{len(stats.failed)} failed[/red] of {stats.total}"
        )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    args = parse_args(argv)
    _setup_logging(args.debug)

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error("%s", e)
        sys.exit(2)

    if config.emit_masked_image and not parse_color(config.mask_color)[1]:
        logger.warning("Unknown mask colour %r, using magenta", config.mask_color)

    try:
        validate_environment(args, config)
    except ValidationError as e:
        logger.error("%s", e)
        sys.exit(EX_CANTCREAT)

    items = find_work_items(args.input_hdr, args.input_sdr, args.output, config.suffix)
    if not items:
        console.print(f"[yellow]No PNG files found in {args.input_hdr}[/yellow]")
        sys.exit(0)

    engine = JxlRenderEngine(
        config.cjxl_path or Path("cjxl"),
        config.djxl_path or Path("djxl"),
        read_exif_orientation=not config.tonemap_dryrun,
    )

    console.print(f"[bold]hdr2jxl v{__version__}[/bold]")
    console.print(f"Input: {args.input_hdr}  Output: {args.output}")
    console.print(f"Found: {len(items)} HDR file(s), jobs: {config.max_concurrency}")
    if config.tonemap_dryrun:
        console.print("[yellow][DRY RUN MODE][/yellow]")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("[cyan]Creating gain map JXLs...", total=len(items))

            def item_log(name: str, message: str) -> None:
                progress.console.print(f"[{name}] {message}", markup=False, highlight=False)

            stats = run_batch(
                items,
                config,
                engine,
                log=item_log,
                on_progress=lambda: progress.advance(task),
            )
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)

    _print_summary(stats)
    sys.exit(0 if not stats.failed else 1)


if __name__ == "__main__":
    main()
