# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Headroom tone mapping.

Compresses linear HDR pixels (1.0 = SDR white) from a source headroom into a
target headroom with a global Reinhard-style curve applied to max(R, G, B).
Scaling all three channels by the same factor keeps hue and saturation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from gainmap_context import ImageContext, Rendition

__all__: Final[list[str]] = [
    "SDR_TARGET_HEADROOM",
    "tone_map_headroom",
    "tone_map_to_sdr",
]

SDR_TARGET_HEADROOM: Final[float] = 1.0

# Below this max-RGB value a pixel is treated as black
_BLACK_EPSILON: Final[float] = 1e-10


def tone_map_headroom(
    pixels: NDArray[np.float32],
    source_headroom: float,
    target_headroom: float,
) -> NDArray[np.float32]:
    """
    Map linear pixels from source_headroom into [0, target_headroom].

    Uses y = x / (1 + x / P) on max(R, G, B), with P chosen so the source
    headroom lands exactly on the target: P = S * T / (S - T). The curve has
    unit slope at black. When the source already fits the target this is a clip.
    """
    if target_headroom <= 0:
        raise ValueError(f"target headroom must be positive, got {target_headroom}")

    pixels = np.maximum(pixels, 0.0)
    if source_headroom <= target_headroom:
        return np.clip(pixels, 0.0, target_headroom).astype(np.float32)

    peak = source_headroom * target_headroom / (source_headroom - target_headroom)
    max_rgb = np.max(pixels, axis=-1)
    mapped = max_rgb / (1.0 + max_rgb / peak)

    scale = np.divide(
        mapped,
        max_rgb,
        out=np.zeros_like(max_rgb),
        where=max_rgb > _BLACK_EPSILON,
    )
    result = pixels * scale[..., np.newaxis]
    return np.clip(result, 0.0, target_headroom).astype(np.float32)


def tone_map_to_sdr(context: ImageContext, hdr: Rendition) -> Rendition:
    """SDR rendition of an HDR rendition (target headroom 1.0)."""
    return context.tone_map_headroom(hdr, SDR_TARGET_HEADROOM)
