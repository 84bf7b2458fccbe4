# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Color space resolution and color math for gain map conversion.

Picks the SDR / PQ / HLG output triad for a source image (user override first,
then the embedded color space name, then Display P3), and provides the primaries
conversion and transfer functions the rest of the pipeline works in.

All linear pixel data in this project is relative to SDR reference white:
1.0 corresponds to 203 cd/m² (ITU-R BT.2408).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from functools import cache
from typing import Final, Self

import numpy as np
from numpy.typing import NDArray

__all__: Final[list[str]] = [
    "SDR_WHITE_NITS",
    "PQ_PEAK_NITS",
    "HLG_PEAK_NITS",
    "Primaries",
    "Transfer",
    "ColorSpace",
    "ColorSpaceOverride",
    "ResolvedColorSpaces",
    "parse_color_space_override",
    "resolve_color_spaces",
    "rgb_to_xyz_matrix",
    "luminance_coefficients",
    "convert_primaries",
    "encode_transfer",
    "decode_transfer",
]

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════
#                        CONFIGURATION
# ═══════════════════════════════════════════════════════════════════

SDR_WHITE_NITS: Final[float] = 203.0
PQ_PEAK_NITS: Final[float] = 10000.0
HLG_PEAK_NITS: Final[float] = 1000.0

# BT.2100 HLG reference OOTF gamma for a 1000 cd/m² display
HLG_SYSTEM_GAMMA: Final[float] = 1.2

# Adobe RGB (1998) encoding gamma
ADOBE_RGB_GAMMA: Final[float] = 563.0 / 256.0

D65_WHITE: Final[tuple[float, float]] = (0.3127, 0.3290)

# PQ (SMPTE ST 2084) constants
_PQ_M1: Final[float] = 0.1593017578125
_PQ_M2: Final[float] = 78.84375
_PQ_C1: Final[float] = 0.8359375
_PQ_C2: Final[float] = 18.8515625
_PQ_C3: Final[float] = 18.6875

# HLG (ARIB STD-B67) constants
_HLG_A: Final[float] = 0.17883277
_HLG_B: Final[float] = 0.28466892
_HLG_C: Final[float] = 0.55991073


# ═══════════════════════════════════════════════════════════════════
#                        COLOR SPACES
# ═══════════════════════════════════════════════════════════════════


class Primaries(StrEnum):
    """RGB primaries with D65 white."""

    BT709 = "bt709"
    DISPLAY_P3 = "display-p3"
    BT2020 = "bt2020"
    ADOBE_RGB = "adobe-rgb"

    @property
    def chromaticities(self) -> tuple[tuple[float, float], ...]:
        """CIE 1931 xy of the red, green and blue primaries."""
        return _CHROMATICITIES[self]

    @property
    def cicp(self) -> int | None:
        """ITU-T H.273 ColourPrimaries code point, None when H.273 has none."""
        return _PRIMARIES_CICP.get(self)

    @classmethod
    def from_cicp(cls, code: int) -> Self | None:
        for primaries, value in _PRIMARIES_CICP.items():
            if value == code:
                return cls(primaries)
        # DCI-P3 (11) shares the P3 primaries, only the white point differs
        if code == 11:
            return cls(cls.DISPLAY_P3)
        return None


_CHROMATICITIES: Final[dict[Primaries, tuple[tuple[float, float], ...]]] = {
    Primaries.BT709: ((0.640, 0.330), (0.300, 0.600), (0.150, 0.060)),
    Primaries.DISPLAY_P3: ((0.680, 0.320), (0.265, 0.690), (0.150, 0.060)),
    Primaries.BT2020: ((0.708, 0.292), (0.170, 0.797), (0.131, 0.046)),
    Primaries.ADOBE_RGB: ((0.640, 0.330), (0.210, 0.710), (0.150, 0.060)),
}

_PRIMARIES_CICP: Final[dict[Primaries, int]] = {
    Primaries.BT709: 1,
    Primaries.BT2020: 9,
    Primaries.DISPLAY_P3: 12,
}


class Transfer(StrEnum):
    """Transfer characteristics understood by the pipeline."""

    SRGB = "srgb"
    GAMMA22 = "gamma22"
    PQ = "pq"
    HLG = "hlg"
    LINEAR = "linear"

    @property
    def is_hdr(self) -> bool:
        return self in (Transfer.PQ, Transfer.HLG)

    @property
    def cicp(self) -> int:
        """ITU-T H.273 TransferCharacteristics code point."""
        return _TRANSFER_CICP[self]

    @property
    def nominal_headroom(self) -> float:
        """Peak of the signal range relative to SDR reference white."""
        if self is Transfer.PQ:
            return PQ_PEAK_NITS / SDR_WHITE_NITS
        if self is Transfer.HLG:
            return HLG_PEAK_NITS / SDR_WHITE_NITS
        return 1.0

    @classmethod
    def from_cicp(cls, code: int) -> Self | None:
        for transfer, value in _TRANSFER_CICP.items():
            if value == code:
                return cls(transfer)
        return None


_TRANSFER_CICP: Final[dict[Transfer, int]] = {
    Transfer.SRGB: 13,
    Transfer.GAMMA22: 4,
    Transfer.PQ: 16,
    Transfer.HLG: 18,
    Transfer.LINEAR: 8,
}


class ColorSpace(StrEnum):
    """Output color spaces: a primaries / transfer pair with a display name."""

    BT709 = "bt709"
    BT709_PQ = "bt709-pq"
    BT709_HLG = "bt709-hlg"
    DISPLAY_P3 = "display-p3"
    DISPLAY_P3_PQ = "display-p3-pq"
    DISPLAY_P3_HLG = "display-p3-hlg"
    BT2020_SRGB_GAMMA = "bt2020-srgb-gamma"
    BT2100_PQ = "bt2100-pq"
    BT2100_HLG = "bt2100-hlg"
    ADOBE_RGB = "adobe-rgb-1998"

    @property
    def primaries(self) -> Primaries:
        return _COLOR_SPACE_PARTS[self][0]

    @property
    def transfer(self) -> Transfer:
        return _COLOR_SPACE_PARTS[self][1]

    @property
    def label(self) -> str:
        """Human-readable name, also written as the ICC profile description."""
        return _COLOR_SPACE_PARTS[self][2]

    @property
    def cicp(self) -> tuple[int, int, int, int] | None:
        """(primaries, transfer, matrix, full range) or None without a code point."""
        primaries = self.primaries.cicp
        if primaries is None:
            return None
        return (primaries, self.transfer.cicp, 0, 1)

    @classmethod
    def from_cicp(cls, primaries: int, transfer: int) -> Self | None:
        prim = Primaries.from_cicp(primaries)
        trc = Transfer.from_cicp(transfer)
        for space, (p, t, _) in _COLOR_SPACE_PARTS.items():
            if p is prim and t is trc:
                return cls(space)
        return None


_COLOR_SPACE_PARTS: Final[dict[ColorSpace, tuple[Primaries, Transfer, str]]] = {
    ColorSpace.BT709: (Primaries.BT709, Transfer.SRGB, "ITU-R BT.709"),
    ColorSpace.BT709_PQ: (Primaries.BT709, Transfer.PQ, "ITU-R BT.709 PQ"),
    ColorSpace.BT709_HLG: (Primaries.BT709, Transfer.HLG, "ITU-R BT.709 HLG"),
    ColorSpace.DISPLAY_P3: (Primaries.DISPLAY_P3, Transfer.SRGB, "Display P3"),
    ColorSpace.DISPLAY_P3_PQ: (Primaries.DISPLAY_P3, Transfer.PQ, "Display P3 PQ"),
    ColorSpace.DISPLAY_P3_HLG: (Primaries.DISPLAY_P3, Transfer.HLG, "Display P3 HLG"),
    ColorSpace.BT2020_SRGB_GAMMA: (
        Primaries.BT2020,
        Transfer.SRGB,
        "ITU-R BT.2020 sRGB Gamma",
    ),
    ColorSpace.BT2100_PQ: (Primaries.BT2020, Transfer.PQ, "ITU-R BT.2100 PQ"),
    ColorSpace.BT2100_HLG: (Primaries.BT2020, Transfer.HLG, "ITU-R BT.2100 HLG"),
    ColorSpace.ADOBE_RGB: (Primaries.ADOBE_RGB, Transfer.GAMMA22, "Adobe RGB (1998)"),
}


# ═══════════════════════════════════════════════════════════════════
#                        RESOLUTION
# ═══════════════════════════════════════════════════════════════════


class ColorSpaceOverride(StrEnum):
    """User color space choice."""

    SRGB = "srgb"
    DISPLAY_P3 = "p3"
    REC2020 = "rec2020"
    UNSPECIFIED = "unspecified"


# Accepted spellings, matched case-sensitively
_OVERRIDE_ALIASES: Final[dict[str, ColorSpaceOverride]] = {
    **dict.fromkeys(
        ("srgb", "709", "rec709", "rec.709", "bt709", "bt,709", "itu709", "sRGB"),
        ColorSpaceOverride.SRGB,
    ),
    **dict.fromkeys(
        ("p3", "dcip3", "dci-p3", "dci.p3", "displayp3", "P3"),
        ColorSpaceOverride.DISPLAY_P3,
    ),
    **dict.fromkeys(
        (
            "rec2020",
            "2020",
            "rec.2020",
            "bt2020",
            "itu2020",
            "2100",
            "rec2100",
            "rec.2100",
            "Rec. 2020",
        ),
        ColorSpaceOverride.REC2020,
    ),
}


@dataclass(frozen=True, slots=True)
class ResolvedColorSpaces:
    """Output color spaces for the SDR, PQ and HLG renditions."""

    sdr: ColorSpace
    pq: ColorSpace
    hlg: ColorSpace
    origin: str = "default"

    def for_transfer(self, transfer: Transfer) -> ColorSpace:
        if transfer is Transfer.PQ:
            return self.pq
        if transfer is Transfer.HLG:
            return self.hlg
        return self.sdr


_BT709_TRIAD: Final = (ColorSpace.BT709, ColorSpace.BT709_PQ, ColorSpace.BT709_HLG)
_P3_TRIAD: Final = (
    ColorSpace.DISPLAY_P3,
    ColorSpace.DISPLAY_P3_PQ,
    ColorSpace.DISPLAY_P3_HLG,
)
_BT2020_TRIAD: Final = (
    ColorSpace.BT2020_SRGB_GAMMA,
    ColorSpace.BT2100_PQ,
    ColorSpace.BT2100_HLG,
)
_ADOBE_TRIAD: Final = (ColorSpace.ADOBE_RGB, ColorSpace.ADOBE_RGB, ColorSpace.ADOBE_RGB)

_OVERRIDE_TRIADS: Final[dict[ColorSpaceOverride, tuple[ColorSpace, ...]]] = {
    ColorSpaceOverride.SRGB: _BT709_TRIAD,
    ColorSpaceOverride.DISPLAY_P3: _P3_TRIAD,
    ColorSpaceOverride.REC2020: _BT2020_TRIAD,
}

# Checked in order, a later match replaces an earlier one
_EMBEDDED_NAME_TRIADS: Final[tuple[tuple[str, tuple[ColorSpace, ...]], ...]] = (
    ("709", _BT709_TRIAD),
    ("sRGB", _BT709_TRIAD),
    ("2100", _BT2020_TRIAD),
    ("2020", _BT2020_TRIAD),
    ("Adobe RGB", _ADOBE_TRIAD),
)


def parse_color_space_override(text: str | None) -> ColorSpaceOverride:
    """Map a user-supplied color space alias to an override."""
    if not text:
        return ColorSpaceOverride.UNSPECIFIED
    override = _OVERRIDE_ALIASES.get(text)
    if override is None:
        logger.warning("Unrecognized color space %r, using source color space", text)
        return ColorSpaceOverride.UNSPECIFIED
    return override


def resolve_color_spaces(
    embedded_name: str | None,
    override: ColorSpaceOverride = ColorSpaceOverride.UNSPECIFIED,
) -> ResolvedColorSpaces:
    """
    Choose the SDR / PQ / HLG output spaces for one source image.

    An explicit override wins. Otherwise the embedded color space name is
    searched for known substrings. Without a match the Display P3 triad is used,
    with a warning unless the embedded name is itself a P3 space.
    """
    triad = _OVERRIDE_TRIADS.get(override)
    if triad is not None:
        return ResolvedColorSpaces(*triad, origin="override")

    if embedded_name:
        for needle, candidate in _EMBEDDED_NAME_TRIADS:
            if needle in embedded_name:
                triad = candidate
        if triad is not None:
            return ResolvedColorSpaces(*triad, origin="embedded")
        # Display P3 sources land on the default triad, which is their own
        if "P3" not in embedded_name:
            logger.warning(
                "Unrecognized embedded color space %r, falling back to Display P3",
                embedded_name,
            )

    return ResolvedColorSpaces(*_P3_TRIAD, origin="default")


# ═══════════════════════════════════════════════════════════════════
#                        PRIMARIES CONVERSION
# ═══════════════════════════════════════════════════════════════════


@cache
def rgb_to_xyz_matrix(primaries: Primaries) -> NDArray[np.float64]:
    """Normalized primary matrix (RGB -> XYZ, Y of white = 1) from chromaticities."""
    xy = np.array(primaries.chromaticities, dtype=np.float64)
    x, y = xy[:, 0], xy[:, 1]
    m = np.stack([x / y, np.ones(3), (1.0 - x - y) / y])

    wx, wy = D65_WHITE
    white = np.array([wx / wy, 1.0, (1.0 - wx - wy) / wy])
    scale = np.linalg.solve(m, white)
    return m * scale


@cache
def _conversion_matrix(src: Primaries, dst: Primaries) -> NDArray[np.float32]:
    matrix = np.linalg.inv(rgb_to_xyz_matrix(dst)) @ rgb_to_xyz_matrix(src)
    return matrix.astype(np.float32)


def luminance_coefficients(primaries: Primaries) -> NDArray[np.float32]:
    """Y row of the RGB -> XYZ matrix."""
    return rgb_to_xyz_matrix(primaries)[1].astype(np.float32)


def convert_primaries(
    img: NDArray[np.float32], src: Primaries, dst: Primaries
) -> NDArray[np.float32]:
    """Convert linear RGB between primaries, desaturating out-of-gamut pixels.

    Pixels that land outside the destination gamut are pulled toward their own
    luminance until the most negative channel reaches zero, which keeps
    luminance and hue while dropping saturation.
    """
    if src is dst:
        return img

    matrix = _conversion_matrix(src, dst)
    lum_coeffs = luminance_coefficients(dst)

    shape = img.shape
    flat = img.reshape(-1, 3)
    converted = flat @ matrix.T

    min_vals = np.min(converted, axis=1)
    out_of_gamut = min_vals < 0

    if np.any(out_of_gamut):
        lum = (converted[out_of_gamut] @ lum_coeffs)[:, np.newaxis]
        rgb_oog = converted[out_of_gamut]

        with np.errstate(divide="ignore", invalid="ignore"):
            diff = lum - rgb_oog
            t = np.where(diff > 0, lum / diff, 1.0)
            t_max = np.min(np.where(rgb_oog < 0, t, 1.0), axis=1, keepdims=True)

        converted[out_of_gamut] = lum + t_max * (rgb_oog - lum)
        converted[out_of_gamut] = np.maximum(converted[out_of_gamut], 0.0)

    return converted.reshape(shape).astype(np.float32)


# ═══════════════════════════════════════════════════════════════════
#                        TRANSFER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════


def _srgb_encode(linear: NDArray[np.float32]) -> NDArray[np.float32]:
    """sRGB transfer function (IEC 61966-2-1)."""
    linear = np.clip(linear, 0.0, 1.0)
    return np.where(
        linear <= 0.0031308,
        12.92 * linear,
        1.055 * np.power(linear, 1.0 / 2.4) - 0.055,
    ).astype(np.float32)


def _srgb_decode(signal: NDArray[np.float32]) -> NDArray[np.float32]:
    signal = np.clip(signal, 0.0, 1.0)
    return np.where(
        signal <= 0.04045,
        signal / 12.92,
        np.power((signal + 0.055) / 1.055, 2.4),
    ).astype(np.float32)


def _pq_encode(linear_nits: NDArray[np.float32]) -> NDArray[np.float32]:
    """PQ (SMPTE ST 2084) inverse EOTF."""
    L = np.clip(linear_nits / PQ_PEAK_NITS, 0.0, 1.0)
    L_m1 = np.power(L, _PQ_M1)
    numerator = _PQ_C1 + _PQ_C2 * L_m1
    denominator = 1.0 + _PQ_C3 * L_m1
    return np.power(numerator / denominator, _PQ_M2).astype(np.float32)


def _pq_decode(signal: NDArray[np.float32]) -> NDArray[np.float32]:
    """PQ EOTF, returning absolute cd/m²."""
    E = np.power(np.clip(signal, 0.0, 1.0), 1.0 / _PQ_M2)
    numerator = np.maximum(E - _PQ_C1, 0.0)
    denominator = _PQ_C2 - _PQ_C3 * E
    L = np.power(numerator / denominator, 1.0 / _PQ_M1)
    return (L * PQ_PEAK_NITS).astype(np.float32)


def _hlg_oetf(scene: NDArray[np.float32]) -> NDArray[np.float32]:
    scene = np.clip(scene, 0.0, 1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        log_branch = _HLG_A * np.log(np.maximum(12.0 * scene - _HLG_B, 1e-12)) + _HLG_C
    return np.where(
        scene <= 1.0 / 12.0, np.sqrt(3.0 * scene), log_branch
    ).astype(np.float32)


def _hlg_inverse_oetf(signal: NDArray[np.float32]) -> NDArray[np.float32]:
    signal = np.clip(signal, 0.0, 1.0)
    return np.where(
        signal <= 0.5,
        signal * signal / 3.0,
        (np.exp((signal - _HLG_C) / _HLG_A) + _HLG_B) / 12.0,
    ).astype(np.float32)


def _hlg_decode(signal: NDArray[np.float32]) -> NDArray[np.float32]:
    """HLG signal to display light (cd/m²) on a 1000 cd/m² reference display."""
    scene = _hlg_inverse_oetf(signal)
    ys = scene @ luminance_coefficients(Primaries.BT2020)
    ootf = np.power(ys, HLG_SYSTEM_GAMMA - 1.0)[..., np.newaxis]
    return (HLG_PEAK_NITS * ootf * scene).astype(np.float32)


def _hlg_encode(linear_nits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Display light (cd/m²) to HLG signal through the inverse reference OOTF."""
    display = np.clip(linear_nits / HLG_PEAK_NITS, 0.0, 1.0)
    yd = display @ luminance_coefficients(Primaries.BT2020)
    exponent = (1.0 - HLG_SYSTEM_GAMMA) / HLG_SYSTEM_GAMMA
    with np.errstate(divide="ignore", invalid="ignore"):
        gain = np.where(yd > 0.0, np.power(yd, exponent), 0.0)[..., np.newaxis]
    return _hlg_oetf(display * gain)


def encode_transfer(linear: NDArray[np.float32], transfer: Transfer) -> NDArray[np.float32]:
    """Encode linear light (1.0 = SDR white) to a [0, 1] signal."""
    match transfer:
        case Transfer.SRGB:
            return _srgb_encode(linear)
        case Transfer.GAMMA22:
            return np.power(np.clip(linear, 0.0, 1.0), 1.0 / ADOBE_RGB_GAMMA).astype(
                np.float32
            )
        case Transfer.PQ:
            return _pq_encode(linear * SDR_WHITE_NITS)
        case Transfer.HLG:
            return _hlg_encode(linear * SDR_WHITE_NITS)
        case Transfer.LINEAR:
            return np.clip(linear, 0.0, 1.0).astype(np.float32)


def decode_transfer(signal: NDArray[np.float32], transfer: Transfer) -> NDArray[np.float32]:
    """Decode a [0, 1] signal to linear light (1.0 = SDR white)."""
    match transfer:
        case Transfer.SRGB:
            return _srgb_decode(signal)
        case Transfer.GAMMA22:
            return np.power(np.clip(signal, 0.0, 1.0), ADOBE_RGB_GAMMA).astype(np.float32)
        case Transfer.PQ:
            return _pq_decode(signal) / np.float32(SDR_WHITE_NITS)
        case Transfer.HLG:
            return _hlg_decode(signal) / np.float32(SDR_WHITE_NITS)
        case Transfer.LINEAR:
            return np.clip(signal, 0.0, 1.0).astype(np.float32)
