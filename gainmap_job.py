# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
One conversion, end to end.

convert() validates a ConversionRequest, decodes the source, resolves output
color spaces, tone-maps, computes the gain map, writes the container, and
returns a ConversionResult. It never raises for per-file problems: every
failure is reported as a tagged result and leaves no output file behind.

Optional post-steps copy EXIF/GPS metadata from the source with exiftool and
sync file timestamps. They only log warnings on failure.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Self

import exiftool

from gainmap_codecs import OutputFormat
from gainmap_colorspace import ColorSpaceOverride, resolve_color_spaces
from gainmap_compute import GainMapStyle, compute_gain_map
from gainmap_context import ContextProvider
from gainmap_errors import ConversionError, ConversionStatus, ValidationError
from gainmap_tonemap import tone_map_to_sdr
from gainmap_writer import (
    ExportMode,
    RenderInputs,
    resolve_bit_depth,
    write_conversion,
)

__all__: Final[list[str]] = [
    "ConversionRequest",
    "ConversionResult",
    "MetadataError",
    "convert",
    "transfer_metadata",
    "sync_timestamp",
]

logger = logging.getLogger(__name__)

_DEFAULT_PROVIDER: Final[ContextProvider] = ContextProvider()


class MetadataError(ConversionError):
    """Metadata transfer via exiftool failed."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class ConversionRequest:
    """
    Options for converting one source file.

    quality is a 0-1 fraction; values above 1 are read as percentages
    (95 -> 0.95). None selects the export mode's default.
    """

    source_path: Path
    destination_dir: Path
    quality: float | None = None
    color_space_override: ColorSpaceOverride = ColorSpaceOverride.UNSPECIFIED
    bit_depth: int = 8
    export_mode: ExportMode = ExportMode.DEFAULT
    gain_map_style: GainMapStyle = GainMapStyle.RGB
    output_format: OutputFormat = OutputFormat.HEIF
    copy_metadata: bool = False
    preserve_timestamps: bool = True

    def __post_init__(self) -> None:
        if self.quality is not None and self.quality > 1.0:
            object.__setattr__(self, "quality", self.quality / 100.0)

    @classmethod
    def from_options(
        cls,
        *,
        sdr: bool = False,
        pq: bool = False,
        hlg: bool = False,
        **options: Any,
    ) -> Self:
        """Build a request from the three exclusive export flags."""
        return cls(export_mode=ExportMode.from_flags(sdr=sdr, pq=pq, hlg=hlg), **options)

    @property
    def effective_quality(self) -> float:
        return self.export_mode.default_quality if self.quality is None else self.quality

    def for_source(self, source_path: Path) -> Self:
        """Same options for another source file."""
        return dataclasses.replace(self, source_path=source_path)


@dataclass(frozen=True, slots=True)
class ConversionResult:
    """Outcome of convert()."""

    source_path: Path
    status: ConversionStatus
    output_path: Path | None = None
    message: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ConversionStatus.SUCCESS


# =============================================================================
# Post-processing
# =============================================================================


def transfer_metadata(source: Path, target: Path) -> None:
    """
    Copy EXIF and GPS metadata from source to target using exiftool.

    Maker notes are excluded so the headroom fields written with the gain map
    survive.
    """
    try:
        with exiftool.ExifToolHelper() as et:
            et.execute(
                "-tagsFromFile",
                str(source),
                "-EXIF:all",
                "-GPS:all",
                "--MakerNotes:all",
                "--Orientation",
                "-overwrite_original",
                str(target),
            )
    except Exception as e:
        raise MetadataError(f"Failed to transfer metadata: {e}") from e


def sync_timestamp(source: Path, target: Path) -> bool:
    """Copy access and modification times from source to target."""
    try:
        source_stat = source.stat()
        os.utime(target, (source_stat.st_atime, source_stat.st_mtime))
        return True
    except OSError as e:
        # Non-fatal
        logger.warning("Could not sync timestamp of %s: %s", target.name, e)
        return False


# =============================================================================
# Conversion
# =============================================================================


def _validate(request: ConversionRequest) -> int:
    """Check request options, returning the effective bit depth."""
    quality = request.effective_quality
    if not 0.0 < quality <= 1.0:
        raise ValidationError(f"Quality must be in (0, 1] or (1, 100], got {request.quality}")
    bit_depth = resolve_bit_depth(request.output_format, request.export_mode, request.bit_depth)
    if not request.destination_dir.is_dir():
        raise ValidationError(f"Destination is not a directory: {request.destination_dir}")
    return bit_depth


def _run(request: ConversionRequest, provider: ContextProvider) -> Path:
    bit_depth = _validate(request)
    mode = request.export_mode

    with provider.acquire() as context:
        # Phase 1: Decode
        hdr = context.decode_hdr(request.source_path)

        # Phase 2: Resolve color spaces
        spaces = resolve_color_spaces(hdr.color_space_name, request.color_space_override)
        logger.debug("%s: %s color spaces %s", request.source_path.name, spaces.origin, spaces)

        # Phase 3: Tone map and gain map
        sdr = None
        gain_map = None
        if mode.hdr_transfer is None:
            sdr = tone_map_to_sdr(context, hdr)
        if mode is ExportMode.DEFAULT:
            gain_map = compute_gain_map(context, request.gain_map_style, hdr, sdr)

        # Phase 4: Encode and write
        return write_conversion(
            context,
            source_path=request.source_path,
            destination_dir=request.destination_dir,
            fmt=request.output_format,
            mode=mode,
            inputs=RenderInputs(
                hdr=hdr,
                sdr=sdr,
                gain_map=gain_map,
                spaces=spaces,
                bit_depth=bit_depth,
                quality=request.effective_quality,
            ),
        )


def convert(
    request: ConversionRequest,
    *,
    provider: ContextProvider | None = None,
) -> ConversionResult:
    """Convert one HDR source as described by the request."""
    start = time.perf_counter()
    try:
        output_path = _run(request, provider or _DEFAULT_PROVIDER)
    except ConversionError as e:
        logger.debug("%s failed: %s", request.source_path.name, e)
        return ConversionResult(
            source_path=request.source_path,
            status=e.status,
            message=str(e),
            elapsed=time.perf_counter() - start,
        )

    if request.copy_metadata:
        try:
            transfer_metadata(request.source_path, output_path)
        except MetadataError as e:
            logger.warning("%s: %s", output_path.name, e)
    if request.preserve_timestamps:
        sync_timestamp(request.source_path, output_path)

    return ConversionResult(
        source_path=request.source_path,
        status=ConversionStatus.SUCCESS,
        output_path=output_path,
        message="OK",
        elapsed=time.perf_counter() - start,
    )
