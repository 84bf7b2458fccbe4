# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Headroom measurement and the vendor maker-note encoding of headroom.

The headroom of an image is measured on its SDR-compressed rendition: the
brightest channel value after a windowed min/max reduction is read back at
16-bit precision and pushed through an empirically fitted curve. The result,
in stops, is then encoded into the two maker-note fields (33 and 48) that
gain-map-aware viewers read.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Self

from gainmap_tonemap import tone_map_to_sdr

if TYPE_CHECKING:
    from gainmap_context import ImageContext, Rendition

__all__: Final[list[str]] = [
    "MIN_HEADROOM",
    "MAX_HEADROOM",
    "HeadroomMetadata",
    "empirical_headroom",
    "headroom_to_stops",
    "encode_headroom",
    "measure_headroom",
]

logger = logging.getLogger(__name__)

MIN_HEADROOM: Final[float] = 2.0
MAX_HEADROOM: Final[float] = 16.0

# Readback precision of the reduced maximum
_READBACK_LEVELS: Final[int] = 65535

# (stops, field33, field48) written alongside single-channel gain maps
_MONO_METADATA: Final[tuple[float, float, float]] = (0.0, 1.0, 0.0)


@dataclass(frozen=True, slots=True)
class HeadroomMetadata:
    """
    Headroom in stops plus its two maker-note fields.

    The fields are always derived: build instances with from_stops() or
    mono(). Any other combination is rejected.
    """

    stops: float
    field33: float
    field48: float

    def __post_init__(self) -> None:
        fields = (self.field33, self.field48)
        if fields != encode_headroom(self.stops) and (self.stops, *fields) != _MONO_METADATA:
            raise ValueError(
                f"maker-note fields {fields} do not encode {self.stops} stops"
            )

    @classmethod
    def from_stops(cls, stops: float) -> Self:
        field33, field48 = encode_headroom(stops)
        return cls(stops, field33, field48)

    @classmethod
    def mono(cls) -> Self:
        """Fixed values written alongside single-channel gain maps."""
        return cls(*_MONO_METADATA)

    @property
    def headroom(self) -> float:
        """Linear headroom (peak over SDR white)."""
        return 2.0**self.stops


def empirical_headroom(v: float) -> float:
    """Fitted headroom for a normalized peak SDR value v in [0, 1]."""
    return 2.0 ** (-16.7702 + 20.209 * v) + 4.88701 * v + 0.2935


def headroom_to_stops(headroom: float) -> float:
    return math.log2(headroom)


def encode_headroom(stops: float) -> tuple[float, float]:
    """
    Piecewise (field33, field48) encoding of headroom stops.

    Rows are checked top to bottom, each lower bound inclusive:
        stops >= 2.303       -> (1, (3.0 - stops) / 70.0)
        1.8 <= stops < 2.303 -> (1, (2.303 - stops) / 0.303)
        1.6 <= stops < 1.8   -> (0, (1.80 - stops) / 20.0)
        stops < 1.6          -> (0, (1.601 - stops) / 0.101)
    """
    if stops >= 2.303:
        return 1.0, (3.0 - stops) / 70.0
    if stops >= 1.8:
        return 1.0, (2.303 - stops) / 0.303
    if stops >= 1.6:
        return 0.0, (1.80 - stops) / 20.0
    return 0.0, (1.601 - stops) / 0.101


def measure_headroom(
    context: ImageContext,
    hdr: Rendition,
    sdr: Rendition | None = None,
) -> float:
    """
    Linear headroom of an HDR rendition, clamped to [2, 16].

    sdr, when given, must be the rendition tone_map_to_sdr produces for hdr;
    it saves compressing the image twice.
    """
    if sdr is None:
        sdr = tone_map_to_sdr(context, hdr)

    _, maxima = context.area_min_max(sdr)
    peak = float(context.area_maximum(maxima).max())
    v = round(min(max(peak, 0.0), 1.0) * _READBACK_LEVELS) / _READBACK_LEVELS

    headroom = min(max(empirical_headroom(v), MIN_HEADROOM), MAX_HEADROOM)
    logger.debug("Peak SDR value %.5f -> headroom %.3f", v, headroom)
    return headroom
