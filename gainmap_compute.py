# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Gain map computation in two styles.

RGB: per-channel HDR / SDR ratio, clamped to the measured headroom, stored as
log2 gain normalized to that headroom. Carries measured headroom metadata.

MONO: a single-channel map shaped for Google Photos. The difference between
the HDR image and an 8-bit SDR proxy, both exposed down three stops, is
reduced to its brightest channel, gamma-encoded and passed through a fixed
monotonic tone curve. Carries fixed headroom metadata.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import StrEnum
from functools import cache
from typing import Final

import numpy as np
from numpy.typing import NDArray
from scipy.interpolate import PchipInterpolator

from gainmap_container import GainMapParams
from gainmap_context import ImageContext, Rendition, RenditionKind
from gainmap_errors import DecodeError
from gainmap_headroom import HeadroomMetadata, headroom_to_stops, measure_headroom

__all__: Final[list[str]] = [
    "GainMapStyle",
    "GainMap",
    "MONO_CURVE_POINTS",
    "compute_rgb_ratios",
    "compute_mono_values",
    "compute_gain_map",
]

logger = logging.getLogger(__name__)

# Mono pipeline constants
MONO_EXPOSURE_STOPS: Final[float] = -3.0
MONO_FLOOR: Final[float] = 0.04
MONO_GAMMA: Final[float] = 2.2
MONO_CURVE_POINTS: Final[tuple[tuple[float, float], ...]] = (
    (0.0, 0.61),
    (0.5, 0.63),
    (0.75, 0.76),
    (0.9, 0.91),
    (1.0, 1.0),
)
# The -3 EV exposure spans three stops of gain
MONO_GAIN_MAP_MAX: Final[float] = -MONO_EXPOSURE_STOPS


class GainMapStyle(StrEnum):
    """Gain map encodings."""

    RGB = "rgb"
    MONO = "mono"


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMap:
    """A computed gain map with the metadata written next to it."""

    rendition: Rendition
    style: GainMapStyle
    headroom_max: float
    metadata: HeadroomMetadata
    params: GainMapParams

    def storage_signal(self) -> NDArray[np.float32]:
        """[0, 1] values to store: (H, W, 3) for RGB, (H, W) for mono."""
        pixels = self.rendition.pixels
        if self.style is GainMapStyle.MONO:
            return pixels[..., 0]
        log_max = math.log2(self.headroom_max)
        gain = np.log2(np.maximum(pixels[..., :3], 1.0)) / log_max
        return np.clip(gain, 0.0, 1.0).astype(np.float32)


# =============================================================================
# RGB style
# =============================================================================


def compute_rgb_ratios(
    hdr: NDArray[np.float32],
    sdr: NDArray[np.float32],
    headroom_max: float,
) -> NDArray[np.float32]:
    """
    Per-channel HDR / SDR ratios as an RGBA buffer.

    0/0 becomes 0 and x/0 becomes +inf before clamping, so every value ends up
    in [0, headroom_max]. Alpha is fixed at 1.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = hdr / sdr
    ratio = np.nan_to_num(ratio, nan=0.0, posinf=headroom_max, neginf=0.0)
    ratio = np.clip(ratio, 0.0, headroom_max)
    alpha = np.ones(ratio.shape[:-1] + (1,), dtype=np.float32)
    return np.concatenate([ratio, alpha], axis=-1).astype(np.float32)


def _rgb_gain_map(context: ImageContext, hdr: Rendition, sdr: Rendition) -> GainMap:
    headroom_max = measure_headroom(context, hdr, sdr)
    stops = headroom_to_stops(headroom_max)
    ratios = compute_rgb_ratios(hdr.pixels, sdr.pixels, headroom_max)
    return GainMap(
        rendition=_gain_map_rendition(hdr, ratios, headroom_max),
        style=GainMapStyle.RGB,
        headroom_max=headroom_max,
        metadata=HeadroomMetadata.from_stops(stops),
        params=GainMapParams(gain_map_max=stops, hdr_capacity_max=stops),
    )


# =============================================================================
# Mono style
# =============================================================================


@cache
def _mono_curve() -> PchipInterpolator:
    x = np.array([p[0] for p in MONO_CURVE_POINTS])
    y = np.array([p[1] for p in MONO_CURVE_POINTS])
    # PCHIP = Piecewise Cubic Hermite Interpolating Polynomial (monotonic)
    return PchipInterpolator(x, y)


def compute_mono_values(
    hdr: NDArray[np.float32], proxy: NDArray[np.float32]
) -> NDArray[np.float32]:
    """Single-channel gain values (H, W) from HDR and 8-bit proxy pixels."""
    exposure = np.float32(2.0**MONO_EXPOSURE_STOPS)
    difference = hdr * exposure - proxy * exposure
    brightest = np.max(difference, axis=-1)
    shaped = np.power(np.clip(brightest, MONO_FLOOR, 1.0), 1.0 / MONO_GAMMA)
    return np.clip(_mono_curve()(shaped), 0.0, 1.0).astype(np.float32)


def _mono_gain_map(context: ImageContext, hdr: Rendition) -> GainMap:
    proxy = context.render_sdr_proxy(hdr)
    values = compute_mono_values(hdr.pixels, proxy.pixels)
    return GainMap(
        rendition=_gain_map_rendition(hdr, values[..., np.newaxis], 2.0**MONO_GAIN_MAP_MAX),
        style=GainMapStyle.MONO,
        headroom_max=2.0**MONO_GAIN_MAP_MAX,
        metadata=HeadroomMetadata.mono(),
        params=GainMapParams(
            gain_map_max=MONO_GAIN_MAP_MAX,
            hdr_capacity_max=MONO_GAIN_MAP_MAX,
        ),
    )


# =============================================================================
# Dispatch
# =============================================================================


def _gain_map_rendition(
    hdr: Rendition, pixels: NDArray[np.float32], headroom: float
) -> Rendition:
    return hdr.derive(
        pixels,
        kind=RenditionKind.GAIN_MAP,
        headroom=headroom,
        exif=None,
        xmp=None,
    )


def compute_gain_map(
    context: ImageContext,
    style: GainMapStyle,
    hdr: Rendition,
    sdr: Rendition,
) -> GainMap:
    """Compute a gain map relating sdr to hdr in the requested style."""
    if hdr.is_empty:
        raise DecodeError("HDR rendition has no pixel data")

    if style is GainMapStyle.MONO:
        gain_map = _mono_gain_map(context, hdr)
    else:
        gain_map = _rgb_gain_map(context, hdr, sdr)

    logger.debug(
        "%s gain map: headroom max %.3f, stops %.3f",
        style,
        gain_map.headroom_max,
        gain_map.metadata.stops,
    )
    return gain_map
