# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Image context: the decode / tone-map / reduce / encode primitives every
conversion runs on, plus the provider that hands contexts to jobs.

ImageContext keeps no per-call state: each primitive allocates its own arrays
and codec objects, so one instance may serve many threads. ContextProvider
makes that choice explicit (shared or one per job) and scopes acquisition with
a context manager.
"""

from __future__ import annotations

import dataclasses
import logging
import struct
import threading
import zlib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Final, Self

import numpy as np
import png
import tifffile
from numpy.typing import NDArray

from gainmap_codecs import (
    ENCODERS,
    EncodedImage,
    OutputFormat,
    quantize,
    read_image,
    read_png_codes,
    write_png_codes,
)
from gainmap_colorspace import (
    ColorSpace,
    Primaries,
    Transfer,
    decode_transfer,
    encode_transfer,
)
from gainmap_container import icc_description
from gainmap_errors import DecodeError, EncodeError
from gainmap_tonemap import tone_map_headroom

__all__: Final[list[str]] = [
    "RenditionKind",
    "Rendition",
    "ImageContext",
    "ContextPolicy",
    "ContextProvider",
]

logger = logging.getLogger(__name__)

# Side length in pixels of the local windows used by area_min_max
DEFAULT_AREA_WINDOW: Final[int] = 16

_DECODE_ERRORS: Final = (
    OSError,
    ValueError,
    IndexError,
    RuntimeError,
    struct.error,
    png.Error,
    tifffile.TiffFileError,
    zlib.error,
)


# =============================================================================
# Renditions
# =============================================================================


class RenditionKind(StrEnum):
    HDR = "hdr"
    SDR = "sdr"
    GAIN_MAP = "gain_map"


@dataclass(frozen=True, slots=True, kw_only=True)
class Rendition:
    """
    An immutable image buffer.

    Pixels are float32 (H, W, C) linear light relative to SDR white, in the
    given primaries. Gain map renditions hold ratios instead. The array is
    made read-only on construction.
    """

    pixels: NDArray[np.float32]
    primaries: Primaries
    kind: RenditionKind
    headroom: float = 1.0
    color_space_name: str | None = None
    exif: bytes | None = None
    xmp: bytes | None = None

    def __post_init__(self) -> None:
        self.pixels.flags.writeable = False

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def is_empty(self) -> bool:
        return self.pixels.size == 0

    def derive(self, pixels: NDArray[np.float32], **changes: object) -> Self:
        """New rendition with other pixels, keeping every other field unless changed."""
        return dataclasses.replace(self, pixels=pixels, **changes)


# =============================================================================
# Image context
# =============================================================================


def _transfer_from_name(name: str) -> Transfer | None:
    if "PQ" in name or "2084" in name:
        return Transfer.PQ
    if "HLG" in name:
        return Transfer.HLG
    return None


def _primaries_from_name(name: str) -> Primaries | None:
    if "2020" in name or "2100" in name:
        return Primaries.BT2020
    if "P3" in name:
        return Primaries.DISPLAY_P3
    if "709" in name or "sRGB" in name:
        return Primaries.BT709
    return None


class ImageContext:
    """Stateless image service built on numpy, pypng, tifffile and pillow-heif."""

    thread_safe: ClassVar[bool] = True

    def __init__(
        self,
        *,
        assume_transfer: Transfer = Transfer.PQ,
        area_window: int = DEFAULT_AREA_WINDOW,
    ) -> None:
        if not assume_transfer.is_hdr:
            raise ValueError(f"assume_transfer must be PQ or HLG, got {assume_transfer}")
        if area_window < 1:
            raise ValueError(f"area_window must be >= 1, got {area_window}")
        # Transfer used for files that carry no color information at all
        self.assume_transfer = assume_transfer
        self.area_window = area_window

    def decode_hdr(self, path: Path) -> Rendition:
        """
        Decode a PQ or HLG source to a linear HDR rendition.

        Color information is taken from CICP / nclx first, then from the ICC
        profile description. Files with neither are assumed to be
        assume_transfer with BT.2020 primaries; an ICC profile without a
        readable description is a decode error.
        """
        try:
            decoded = read_image(path)
        except FileNotFoundError as e:
            raise DecodeError(f"Source not found: {path}") from e
        except _DECODE_ERRORS as e:
            raise DecodeError(f"Cannot decode {path.name}: {e}") from e

        if decoded.pixels.size == 0:
            raise DecodeError(f"{path.name} has no pixel data")

        primaries: Primaries | None = None
        transfer: Transfer | None = None
        name = icc_description(decoded.icc) if decoded.icc else None

        if decoded.cicp is not None:
            primaries = Primaries.from_cicp(decoded.cicp[0])
            transfer = Transfer.from_cicp(decoded.cicp[1])
            if name is None:
                space = ColorSpace.from_cicp(decoded.cicp[0], decoded.cicp[1])
                name = space.label if space is not None else None
        elif name is not None:
            primaries = _primaries_from_name(name)
            transfer = _transfer_from_name(name)
        elif decoded.icc is not None:
            raise DecodeError(f"{path.name} has an unreadable ICC profile")
        else:
            logger.debug("%s has no color information, assuming %s", path.name, self.assume_transfer)
            transfer = self.assume_transfer

        if transfer is None or not transfer.is_hdr:
            raise DecodeError(f"{path.name} is not a PQ or HLG image")

        linear = decode_transfer(decoded.pixels, transfer)
        logger.debug(
            "Decoded %s: %dx%d, %d-bit %s, %s",
            path.name,
            linear.shape[1],
            linear.shape[0],
            decoded.bit_depth,
            transfer,
            name or "unnamed color space",
        )
        return Rendition(
            pixels=linear,
            primaries=primaries or Primaries.BT2020,
            kind=RenditionKind.HDR,
            headroom=transfer.nominal_headroom,
            color_space_name=name,
            exif=decoded.exif,
            xmp=decoded.xmp,
        )

    def tone_map_headroom(
        self,
        rendition: Rendition,
        target_headroom: float,
        source_headroom: float | None = None,
    ) -> Rendition:
        """Compress a rendition into target_headroom (source defaults to its own)."""
        source = rendition.headroom if source_headroom is None else source_headroom
        pixels = tone_map_headroom(rendition.pixels, source, target_headroom)
        kind = RenditionKind.SDR if target_headroom <= 1.0 else RenditionKind.HDR
        return rendition.derive(pixels, kind=kind, headroom=target_headroom)

    def area_min_max(
        self, rendition: Rendition, window: int | None = None
    ) -> tuple[NDArray[np.float32], NDArray[np.float32]]:
        """Per-window channel minima and maxima, each (rows, cols, C).

        Edge windows are padded by repeating the last row / column.
        """
        size = window or self.area_window
        pixels = rendition.pixels
        h, w, c = pixels.shape
        rows = -(-h // size)
        cols = -(-w // size)
        padded = np.pad(
            pixels,
            ((0, rows * size - h), (0, cols * size - w), (0, 0)),
            mode="edge",
        )
        blocks = padded.reshape(rows, size, cols, size, c)
        return blocks.min(axis=(1, 3)), blocks.max(axis=(1, 3))

    def area_maximum(self, pixels: NDArray[np.float32]) -> NDArray[np.float32]:
        """Channel maxima over the whole area, shape (C,)."""
        return pixels.reshape(-1, pixels.shape[-1]).max(axis=0)

    def render_sdr_proxy(self, rendition: Rendition) -> Rendition:
        """Round-trip a rendition through an 8-bit sRGB PNG and decode it back."""
        signal = encode_transfer(rendition.pixels, Transfer.SRGB)
        data = write_png_codes(quantize(signal, 8), 8)
        codes, bit_depth = read_png_codes(data)
        decoded = codes.astype(np.float32) / np.float32((1 << bit_depth) - 1)
        linear = decode_transfer(decoded, Transfer.SRGB)
        return rendition.derive(linear, kind=RenditionKind.SDR, headroom=1.0)

    def encode_to_container(self, image: EncodedImage, fmt: OutputFormat) -> bytes:
        """Encode a prepared image into the bytes of one output file."""
        try:
            return ENCODERS[fmt](image)
        except (OSError, ValueError, RuntimeError, TypeError, png.Error) as e:
            raise EncodeError(f"{fmt.extension} encoding failed: {e}") from e


# =============================================================================
# Context provider
# =============================================================================


class ContextPolicy(StrEnum):
    """How conversions obtain an ImageContext."""

    SHARED = "shared"
    PER_JOB = "per_job"


class ContextProvider:
    """
    Hands out ImageContext instances to conversions.

    SHARED reuses one lazily created context across all jobs and threads, but
    only while that context reports thread_safe; otherwise every acquisition
    gets a fresh one. PER_JOB always creates a fresh context.
    """

    def __init__(
        self,
        policy: ContextPolicy = ContextPolicy.SHARED,
        factory: Callable[[], ImageContext] = ImageContext,
    ) -> None:
        self.policy = policy
        self._factory = factory
        self._shared: ImageContext | None = None
        self._lock = threading.Lock()

    def _shared_context(self) -> ImageContext | None:
        with self._lock:
            if self._shared is None:
                self._shared = self._factory()
                if not self._shared.thread_safe:
                    logger.warning(
                        "%s is not thread safe, using one context per job",
                        type(self._shared).__name__,
                    )
            return self._shared if self._shared.thread_safe else None

    @contextmanager
    def acquire(self) -> Iterator[ImageContext]:
        context = None
        if self.policy is ContextPolicy.SHARED:
            context = self._shared_context()
        if context is None:
            context = self._factory()
        yield context
