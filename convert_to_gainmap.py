#!/usr/bin/env -S uv run --quiet --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "numpy>=1.26",
#     "pillow>=11.0",
#     "pillow-heif>=0.18",
#     "pyexiftool>=0.5.6",
#     "pypng>=0.20220715.0",
#     "rich>=13.0.0",
#     "scipy>=1.12",
#     "tifffile>=2024.1.30",
# ]
# ///
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Convert PQ / HLG HDR images to SDR images with an embedded gain map.

Viewers that understand gain maps reconstruct the HDR rendition; everything
else shows a properly tone-mapped SDR image. Can also export plain SDR, PQ or
HLG renditions. Several inputs are converted in parallel batches.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Final

from rich.console import Console
from rich.logging import RichHandler
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

from gainmap_batch import MAX_WORKERS, BatchPipeline
from gainmap_codecs import SOURCE_EXTENSIONS, OutputFormat
from gainmap_colorspace import parse_color_space_override
from gainmap_compute import GainMapStyle
from gainmap_context import ContextPolicy, ContextProvider
from gainmap_errors import ValidationError
from gainmap_job import ConversionRequest, ConversionResult, convert
from gainmap_writer import SUPPORTED_BIT_DEPTHS, ExportMode

__all__: Final[list[str]] = [
    "find_sources",
    "process_all",
    "parse_args",
    "main",
]

__version__: Final[str] = "1.0.0"

# ═══════════════════════════════════════════════════════════════════
#                        CONFIGURATION
# ═══════════════════════════════════════════════════════════════════

DEFAULT_BIT_DEPTH: Final[int] = 10
DEFAULT_FORMAT: Final[OutputFormat] = OutputFormat.HEIF
JOBS_ENV_VAR: Final[str] = "GAINMAP_JOBS"

# Console for rich output
console = Console()


def _get_env_int(var_name: str, /) -> int | None:
    """Get a positive int from environment variable, or None if invalid."""
    value = os.environ.get(var_name, "").strip()
    if not value:
        return None
    try:
        result = int(value)
        return result if result > 0 else None
    except ValueError:
        return None


def _default_jobs() -> int:
    jobs = _get_env_int(JOBS_ENV_VAR) or os.cpu_count() or 1
    return min(jobs, MAX_WORKERS)


# ═══════════════════════════════════════════════════════════════════
#                        FILE DISCOVERY
# ═══════════════════════════════════════════════════════════════════


def find_sources(paths: Sequence[Path]) -> list[Path]:
    """
    Expand files and directories into HDR source files.

    Directories are scanned (not recursively) for HEIF, PNG and TIFF files;
    hidden files are skipped. Explicit files are taken as given.
    """
    sources: list[Path] = []
    for path in paths:
        if path.is_dir():
            sources.extend(
                sorted(
                    p
                    for p in path.iterdir()
                    if p.is_file()
                    and not p.name.startswith(".")
                    and p.suffix.lower() in SOURCE_EXTENSIONS
                )
            )
        else:
            sources.append(path)
    return list(dict.fromkeys(sources))


# ═══════════════════════════════════════════════════════════════════
#                        PROCESSING
# ═══════════════════════════════════════════════════════════════════


def process_all(
    sources: list[Path],
    template: ConversionRequest,
    provider: ContextProvider,
    jobs: int,
) -> list[ConversionResult]:
    """
    Convert all sources in parallel batches with a progress display.

    Returns the failed results.
    """
    pipeline = BatchPipeline(jobs, provider=provider)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(
            "[cyan]Converting to gain map images...",
            total=len(sources),
        )
        report = pipeline.run(
            sources,
            template,
            on_progress=lambda completed: progress.update(task, completed=completed),
        )

    return list(report.failures)


def _print_failures(failures: list[ConversionResult]) -> None:
    table = Table(title="Failed Conversions")
    table.add_column("File", style="cyan")
    table.add_column("Status", style="red")
    table.add_column("Message")
    for result in failures:
        table.add_row(result.source_path.name, str(result.status), result.message)
    console.print(table)


# ═══════════════════════════════════════════════════════════════════
#                        CLI
# ═══════════════════════════════════════════════════════════════════


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Convert PQ/HLG HDR images to SDR images with an embedded gain map.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Inputs are HEIF/HEIC, PNG or TIFF files encoded with PQ or HLG. Directories
are scanned for such files. Outputs are named <stem>.<EXT> in the destination
directory (HEIC, JPG, PNG or TIFF).

Export modes (at most one):
  default      SDR base image + gain map
  -s/--sdr     tone-mapped SDR only
  -p/--pq      PQ HDR only
  --hlg        HLG HDR only

Color spaces (-c): srgb, 709, p3, displayp3, rec2020, 2100, ...

Environment variables:
  {JOBS_ENV_VAR}   Parallel conversions (default: CPU count, max {MAX_WORKERS})

Examples:
  %(prog)s photo.heic -o out               Gain map HEIC
  %(prog)s shots/ -o out -f jpg -m         Google Photos compatible JPEGs
  %(prog)s photo.png -o out -p -d 16 -f png
        """,
    )

    parser.add_argument(
        "sources",
        nargs="+",
        type=Path,
        metavar="SOURCE",
        help="HDR image files or directories",
    )
    parser.add_argument(
        "-o",
        "--dest",
        type=Path,
        default=Path("."),
        metavar="DIR",
        help="Destination directory (default: current directory)",
    )
    parser.add_argument(
        "-q",
        "--quality",
        type=float,
        default=None,
        metavar="Q",
        help="Quality as 0-1 or 1-100 (default: 0.90 SDR, 0.85 otherwise)",
    )
    parser.add_argument(
        "-c",
        "--color-space",
        default=None,
        metavar="NAME",
        help="Output color space (default: from source, else Display P3)",
    )
    parser.add_argument(
        "-d",
        "--depth",
        type=int,
        default=DEFAULT_BIT_DEPTH,
        choices=SUPPORTED_BIT_DEPTHS,
        metavar="D",
        help=f"Bit depth (8, 10, 16, default: {DEFAULT_BIT_DEPTH})",
    )
    parser.add_argument(
        "-s",
        "--sdr",
        action="store_true",
        help="Export tone-mapped SDR only",
    )
    parser.add_argument(
        "-p",
        "--pq",
        action="store_true",
        help="Export PQ HDR only",
    )
    parser.add_argument(
        "--hlg",
        action="store_true",
        help="Export HLG HDR only",
    )
    parser.add_argument(
        "-m",
        "--mono",
        action="store_true",
        help="Write a single-channel Google Photos compatible gain map",
    )
    parser.add_argument(
        "-f",
        "--format",
        default=DEFAULT_FORMAT.value,
        choices=[f.value for f in OutputFormat],
        help=f"Output format (default: {DEFAULT_FORMAT.value})",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        metavar="N",
        help=f"Parallel conversions (1-{MAX_WORKERS}, default: CPU count)",
    )
    parser.add_argument(
        "--per-job-context",
        action="store_true",
        help="Give every conversion its own image context",
    )
    parser.add_argument(
        "--copy-metadata",
        action="store_true",
        help="Copy EXIF/GPS metadata from the source (needs exiftool)",
    )
    parser.add_argument(
        "--no-timestamps",
        action="store_true",
        help="Do not copy file timestamps from the source",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, show_time=False)],
        force=True,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    args = parse_args(argv)
    _configure_logging(args.verbose)

    try:
        mode = ExportMode.from_flags(sdr=args.sdr, pq=args.pq, hlg=args.hlg)
    except ValidationError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)

    jobs = args.jobs or _default_jobs()
    if not 1 <= jobs <= MAX_WORKERS:
        console.print(f"[red]Error:[/red] --jobs must be between 1 and {MAX_WORKERS}")
        sys.exit(2)

    sources = find_sources(args.sources)
    if not sources:
        console.print("[yellow]No HDR images found[/yellow]")
        sys.exit(0)

    destination = args.dest.resolve()
    destination.mkdir(parents=True, exist_ok=True)

    template = ConversionRequest(
        source_path=sources[0],
        destination_dir=destination,
        quality=args.quality,
        color_space_override=parse_color_space_override(args.color_space),
        bit_depth=args.depth,
        export_mode=mode,
        gain_map_style=GainMapStyle.MONO if args.mono else GainMapStyle.RGB,
        output_format=OutputFormat(args.format),
        copy_metadata=args.copy_metadata,
        preserve_timestamps=not args.no_timestamps,
    )
    provider = ContextProvider(
        ContextPolicy.PER_JOB if args.per_job_context else ContextPolicy.SHARED
    )

    # Print header
    console.print()
    console.print(f"[bold]Convert to Gain Map v{__version__}[/bold]")
    console.print(f"Sources: {len(sources)} file(s)")
    console.print(f"Destination: {destination}")
    console.print(
        f"Mode: {mode}, Format: {template.output_format.extension}, "
        f"Depth: {template.bit_depth}-bit, Quality: {template.effective_quality:.2f}"
    )
    if mode is ExportMode.DEFAULT:
        console.print(f"Gain map: {template.gain_map_style}")
    if len(sources) > 1:
        console.print(f"Jobs: {jobs}")
    console.print()

    try:
        if len(sources) == 1:
            result = convert(template, provider=provider)
            failures = [] if result.ok else [result]
            if result.ok:
                console.print(f"  [green]✓[/green] {result.output_path}")
        else:
            failures = process_all(sources, template, provider, jobs)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)

    # Print summary
    console.print()
    success_count = len(sources) - len(failures)
    if not failures:
        console.print(f"[green]Complete:[/green] {success_count} file(s) converted successfully")
    else:
        _print_failures(failures)
        console.print(
            f"[yellow]Complete:[/yellow] {success_count} succeeded, "
            f"[red]{len(failures)} failed[/red]"
        )

    sys.exit(0 if not failures else 1)


if __name__ == "__main__":
    main()
