# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Output writing: export modes, bit depth rules, file naming and the
(format, mode) plan table.

Each plan turns the renditions of one conversion into an EncodedImage in the
right color space; the context then encodes it for the format. Files are
written whole to a hidden temporary name and renamed into place, so a failed
write never leaves a partial output behind.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final, Self

import numpy as np
from numpy.typing import NDArray

from gainmap_codecs import EncodedImage, OutputFormat
from gainmap_colorspace import (
    ColorSpace,
    ResolvedColorSpaces,
    Transfer,
    convert_primaries,
    encode_transfer,
)
from gainmap_compute import GainMap, GainMapStyle
from gainmap_container import build_apple_maker_note, build_exif
from gainmap_context import ImageContext, Rendition
from gainmap_errors import EncodeError, ValidationError

__all__: Final[list[str]] = [
    "OutputFormat",
    "ExportMode",
    "SUPPORTED_BIT_DEPTHS",
    "RenderInputs",
    "WritePlan",
    "WRITE_PLANS",
    "resolve_bit_depth",
    "destination_path",
    "write_conversion",
]

logger = logging.getLogger(__name__)

SUPPORTED_BIT_DEPTHS: Final[tuple[int, ...]] = (8, 10, 16)
HEIF_MAX_BIT_DEPTH: Final[int] = 10
SDR_DEFAULT_QUALITY: Final[float] = 0.90
DEFAULT_QUALITY: Final[float] = 0.85


class ExportMode(StrEnum):
    """What a conversion writes."""

    DEFAULT = "default"  # SDR base + gain map
    SDR_ONLY = "sdr"
    PQ_ONLY = "pq"
    HLG_ONLY = "hlg"

    @property
    def hdr_transfer(self) -> Transfer | None:
        """Transfer of the native HDR output, None for SDR-based modes."""
        if self is ExportMode.PQ_ONLY:
            return Transfer.PQ
        if self is ExportMode.HLG_ONLY:
            return Transfer.HLG
        return None

    @property
    def default_quality(self) -> float:
        return SDR_DEFAULT_QUALITY if self is ExportMode.SDR_ONLY else DEFAULT_QUALITY

    @classmethod
    def from_flags(cls, *, sdr: bool = False, pq: bool = False, hlg: bool = False) -> Self:
        """Map the three exclusive export flags to a mode."""
        if sum((sdr, pq, hlg)) > 1:
            raise ValidationError("Only one type of export can be specified.")
        if sdr:
            return cls(cls.SDR_ONLY)
        if pq:
            return cls(cls.PQ_ONLY)
        if hlg:
            return cls(cls.HLG_ONLY)
        return cls(cls.DEFAULT)


# =============================================================================
# Validation and naming
# =============================================================================


def resolve_bit_depth(fmt: OutputFormat, mode: ExportMode, requested: int) -> int:
    """
    Effective bit depth for a format and mode, or ValidationError.

    JPEG is 8-bit only: SDR-based modes are coerced to 8, HDR modes rejected.
    HEIF HDR is always 10-bit and never exceeds 10. PNG and TIFF take the
    request as is, except that 8 bits cannot hold a PQ or HLG signal.
    """
    if requested not in SUPPORTED_BIT_DEPTHS:
        raise ValidationError(
            f"Unsupported bit depth {requested} (expected one of {SUPPORTED_BIT_DEPTHS})"
        )

    hdr = mode.hdr_transfer is not None
    match fmt:
        case OutputFormat.JPEG:
            if hdr:
                raise ValidationError(f"JPEG cannot hold {mode} output (8-bit only)")
            if requested != 8:
                logger.debug("JPEG output is 8-bit, ignoring requested %d-bit", requested)
            return 8
        case OutputFormat.HEIF:
            return HEIF_MAX_BIT_DEPTH if hdr else min(requested, HEIF_MAX_BIT_DEPTH)
        case _:
            if hdr and requested == 8:
                raise ValidationError(
                    f"{fmt.extension} {mode} output needs 10 or 16 bits, got 8"
                )
            return requested


def destination_path(source: Path, destination_dir: Path, fmt: OutputFormat) -> Path:
    """<stem>.<EXT> in the destination directory."""
    return destination_dir / f"{source.stem}.{fmt.extension}"


# =============================================================================
# Plans
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class RenderInputs:
    """Everything a plan may draw on for one conversion."""

    hdr: Rendition
    sdr: Rendition | None
    gain_map: GainMap | None
    spaces: ResolvedColorSpaces
    bit_depth: int
    quality: float


@dataclass(frozen=True, slots=True)
class WritePlan:
    fmt: OutputFormat
    mode: ExportMode
    render: Callable[[RenderInputs], EncodedImage]


def _signal(rendition: Rendition, space: ColorSpace) -> NDArray[np.float32]:
    linear = convert_primaries(rendition.pixels, rendition.primaries, space.primaries)
    return encode_transfer(linear, space.transfer)


def _render_sdr(inputs: RenderInputs) -> EncodedImage:
    if inputs.sdr is None:
        raise EncodeError("SDR rendition missing")
    space = inputs.spaces.sdr
    return EncodedImage(
        pixels=_signal(inputs.sdr, space),
        color_space=space,
        bit_depth=inputs.bit_depth,
        quality=inputs.quality,
        exif=inputs.hdr.exif,
    )


def _render_hdr(inputs: RenderInputs, transfer: Transfer) -> EncodedImage:
    space = inputs.spaces.for_transfer(transfer)
    return EncodedImage(
        pixels=_signal(inputs.hdr, space),
        color_space=space,
        bit_depth=inputs.bit_depth,
        quality=inputs.quality,
        exif=inputs.hdr.exif,
    )


def _render_pq(inputs: RenderInputs) -> EncodedImage:
    return _render_hdr(inputs, Transfer.PQ)


def _render_hlg(inputs: RenderInputs) -> EncodedImage:
    return _render_hdr(inputs, Transfer.HLG)


def _render_gain_map(inputs: RenderInputs) -> EncodedImage:
    gain_map = inputs.gain_map
    if inputs.sdr is None or gain_map is None:
        raise EncodeError("SDR rendition or gain map missing")
    space = inputs.spaces.sdr
    metadata = gain_map.metadata
    maker_note = build_apple_maker_note(metadata.field33, metadata.field48)
    return EncodedImage(
        pixels=_signal(inputs.sdr, space),
        color_space=space,
        bit_depth=inputs.bit_depth,
        quality=inputs.quality,
        gain_map=gain_map.storage_signal(),
        gain_map_params=gain_map.params,
        headroom=gain_map.headroom_max if gain_map.style is GainMapStyle.RGB else None,
        exif=build_exif(maker_note),
    )


_RENDERERS: Final[dict[ExportMode, Callable[[RenderInputs], EncodedImage]]] = {
    ExportMode.DEFAULT: _render_gain_map,
    ExportMode.SDR_ONLY: _render_sdr,
    ExportMode.PQ_ONLY: _render_pq,
    ExportMode.HLG_ONLY: _render_hlg,
}

WRITE_PLANS: Final[dict[tuple[OutputFormat, ExportMode], WritePlan]] = {
    (fmt, mode): WritePlan(fmt, mode, _RENDERERS[mode])
    for fmt in OutputFormat
    for mode in ExportMode
}


# =============================================================================
# Writing
# =============================================================================


def _atomic_write(target: Path, data: bytes) -> None:
    temp_path = target.with_name(f".{target.stem}_{os.getpid()}_{threading.get_ident()}.tmp")
    try:
        temp_path.write_bytes(data)
        os.replace(temp_path, target)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def write_conversion(
    context: ImageContext,
    *,
    source_path: Path,
    destination_dir: Path,
    fmt: OutputFormat,
    mode: ExportMode,
    inputs: RenderInputs,
) -> Path:
    """Render, encode and atomically write one output file."""
    plan = WRITE_PLANS[(fmt, mode)]
    image = plan.render(inputs)
    data = context.encode_to_container(image, plan.fmt)

    target = destination_path(source_path, destination_dir, fmt)
    try:
        _atomic_write(target, data)
    except OSError as e:
        raise EncodeError(f"Cannot write {target.name}: {e}") from e

    logger.debug("Wrote %s (%d bytes, %d-bit)", target, len(data), image.bit_depth)
    return target
