# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Metadata serialization for gain map containers.

Builds the byte payloads the format encoders embed next to the pixels:

- XMP packets: Adobe/Google gain map (hdrgm) parameters, the GContainer
  directory announcing an appended gain map image, and Apple HDRGainMap
  properties
- Apple maker note carrying the headroom fields 33 and 48 as signed rationals
- EXIF block (Pillow) wrapping the maker note
- Minimal ICC v4 display profiles (matrix/TRC) with a cicp tag for PQ and HLG

Also reads back ICC descriptions and cicp tags so decoded sources can report
their color space.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from fractions import Fraction
from typing import Final

import numpy as np
from numpy.typing import NDArray
from PIL import ExifTags, Image

from gainmap_colorspace import (
    ColorSpace,
    Transfer,
    decode_transfer,
    rgb_to_xyz_matrix,
    D65_WHITE,
    SDR_WHITE_NITS,
    PQ_PEAK_NITS,
)

__all__: Final[list[str]] = [
    "GainMapParams",
    "float_to_fraction",
    "build_gain_map_xmp",
    "build_primary_xmp",
    "build_apple_maker_note",
    "parse_apple_maker_note",
    "build_exif",
    "build_icc_profile",
    "read_icc_tags",
    "icc_description",
    "icc_cicp",
]

XMP_TOOLKIT: Final[str] = "hdr-gainmap-convert 1.0.0"
HDRGM_NS: Final[str] = "http://ns.adobe.com/hdr-gain-map/1.0/"
GCONTAINER_NS: Final[str] = "http://ns.google.com/photos/1.0/container/"
GCONTAINER_ITEM_NS: Final[str] = "http://ns.google.com/photos/1.0/container/item/"
APPLE_GAINMAP_NS: Final[str] = "http://ns.apple.com/HDRGainMap/1.0/"
APPLE_GAINMAP_VERSION: Final[int] = 65536

# Apple maker note tags holding the headroom encoding
MAKER_NOTE_HEADROOM_TAG: Final[int] = 0x0021
MAKER_NOTE_GAIN_TAG: Final[int] = 0x0030
_MAKER_NOTE_HEADER: Final[bytes] = b"Apple iOS\x00\x00\x01MM"
_SRATIONAL: Final[int] = 10

# ICC profile constants
_D50_XYZ: Final[tuple[float, float, float]] = (0.9642, 1.0, 0.8249)
_BRADFORD: Final[NDArray[np.float64]] = np.array(
    [
        [0.8951, 0.2664, -0.1614],
        [-0.7502, 1.7135, 0.0367],
        [0.0389, -0.0685, 1.0296],
    ]
)
_ICC_V43: Final[int] = 0x04300000
_ICC_V44: Final[int] = 0x04400000
_ICC_CURVE_POINTS: Final[int] = 1024
# Fixed creation date so output bytes are reproducible
_ICC_DATE: Final[tuple[int, ...]] = (2025, 1, 1, 0, 0, 0)


# =============================================================================
# Gain map XMP
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMapParams:
    """Gain map parameters in the hdrgm (log2) domain."""

    gain_map_min: float = 0.0
    gain_map_max: float
    gamma: float = 1.0
    offset_sdr: float = 0.0
    offset_hdr: float = 0.0
    hdr_capacity_min: float = 0.0
    hdr_capacity_max: float


def float_to_fraction(value: float, max_denominator: int = 1_000_000) -> tuple[int, int]:
    """Convert float to fraction with reasonable precision.

    The default denominator bound keeps both terms inside a signed 32-bit
    rational.
    """
    frac = Fraction(value).limit_denominator(max_denominator)
    return frac.numerator, frac.denominator


def _fmt(value: float) -> str:
    return f"{value:.6f}"


def _xmp_packet(description: str) -> bytes:
    packet = f"""<x:xmpmeta xmlns:x="adobe:ns:meta/" x:xmptk="{XMP_TOOLKIT}">
 <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
{description}
 </rdf:RDF>
</x:xmpmeta>
"""
    return packet.encode("utf-8")


def build_gain_map_xmp(params: GainMapParams) -> bytes:
    """XMP for the gain map image itself (hdrgm attributes)."""
    description = f"""  <rdf:Description rdf:about=""
    xmlns:hdrgm="{HDRGM_NS}"
    hdrgm:Version="1.0"
    hdrgm:GainMapMin="{_fmt(params.gain_map_min)}"
    hdrgm:GainMapMax="{_fmt(params.gain_map_max)}"
    hdrgm:Gamma="{_fmt(params.gamma)}"
    hdrgm:OffsetSDR="{_fmt(params.offset_sdr)}"
    hdrgm:OffsetHDR="{_fmt(params.offset_hdr)}"
    hdrgm:HDRCapacityMin="{_fmt(params.hdr_capacity_min)}"
    hdrgm:HDRCapacityMax="{_fmt(params.hdr_capacity_max)}"
    hdrgm:BaseRenditionIsHDR="False"/>"""
    return _xmp_packet(description)


def build_primary_xmp(
    *,
    gain_map_mime: str | None = None,
    gain_map_length: int | None = None,
    headroom: float | None = None,
) -> bytes:
    """
    XMP for the primary (SDR) image.

    With gain_map_mime set, declares hdrgm version and a GContainer directory
    listing the primary and the gain map item. The item length is written when
    the gain map is appended after the primary (JPEG). With headroom set, adds
    the Apple HDRGainMap properties.
    """
    namespaces = []
    attributes = []
    body = ""

    if gain_map_mime is not None:
        namespaces += [
            f'xmlns:hdrgm="{HDRGM_NS}"',
            f'xmlns:Container="{GCONTAINER_NS}"',
            f'xmlns:Item="{GCONTAINER_ITEM_NS}"',
        ]
        attributes.append('hdrgm:Version="1.0"')
        length = (
            f'\n          Item:Length="{gain_map_length}"'
            if gain_map_length is not None
            else ""
        )
        body = f""">
   <Container:Directory>
    <rdf:Seq>
     <rdf:li rdf:parseType="Resource">
      <Container:Item
          Item:Semantic="Primary"
          Item:Mime="{gain_map_mime}"/>
     </rdf:li>
     <rdf:li rdf:parseType="Resource">
      <Container:Item
          Item:Semantic="GainMap"
          Item:Mime="{gain_map_mime}"{length}/>
     </rdf:li>
    </rdf:Seq>
   </Container:Directory>
  </rdf:Description>"""

    if headroom is not None:
        namespaces.append(f'xmlns:HDRGainMap="{APPLE_GAINMAP_NS}"')
        attributes += [
            f'HDRGainMap:HDRGainMapVersion="{APPLE_GAINMAP_VERSION}"',
            f'HDRGainMap:HDRGainMapHeadroom="{_fmt(headroom)}"',
        ]

    head = "\n    ".join(['<rdf:Description rdf:about=""', *namespaces, *attributes])
    description = f"  {head}{body or '/>'}"
    return _xmp_packet(description)


# =============================================================================
# Apple maker note and EXIF
# =============================================================================


def build_apple_maker_note(field33: float, field48: float) -> bytes:
    """
    Serialize an Apple maker note with the two headroom fields (big-endian).

    Layout:
    - "Apple iOS\\0", version 0x0001, "MM"
    - IFD: entry count (uint16), 12-byte entries, next IFD offset (uint32)
    - SRATIONAL values (int32 numerator + int32 denominator)

    Offsets are relative to the start of the maker note.
    """
    values = ((MAKER_NOTE_HEADROOM_TAG, field33), (MAKER_NOTE_GAIN_TAG, field48))
    ifd_start = len(_MAKER_NOTE_HEADER)
    data_start = ifd_start + 2 + 12 * len(values) + 4

    entries = bytearray(struct.pack(">H", len(values)))
    data = bytearray()
    for tag, value in values:
        offset = data_start + len(data)
        entries.extend(struct.pack(">HHII", tag, _SRATIONAL, 1, offset))
        data.extend(struct.pack(">ii", *float_to_fraction(value)))
    entries.extend(struct.pack(">I", 0))

    return _MAKER_NOTE_HEADER + bytes(entries) + bytes(data)


def parse_apple_maker_note(note: bytes) -> dict[int, float]:
    """Read SRATIONAL entries back from a maker note built by build_apple_maker_note."""
    if not note.startswith(_MAKER_NOTE_HEADER):
        raise ValueError("Not an Apple maker note")
    pos = len(_MAKER_NOTE_HEADER)
    (count,) = struct.unpack_from(">H", note, pos)
    values: dict[int, float] = {}
    for i in range(count):
        tag, typ, _, offset = struct.unpack_from(">HHII", note, pos + 2 + 12 * i)
        if typ == _SRATIONAL:
            num, den = struct.unpack_from(">ii", note, offset)
            values[tag] = num / den
    return values


def build_exif(maker_note: bytes | None = None) -> bytes:
    """EXIF block ("Exif\\0\\0" + TIFF structure) with an optional maker note."""
    exif = Image.Exif()
    exif[ExifTags.Base.Software] = XMP_TOOLKIT
    if maker_note is not None:
        exif[ExifTags.IFD.Exif] = {ExifTags.Base.MakerNote: maker_note}
    return exif.tobytes()


# =============================================================================
# ICC profiles
# =============================================================================


def _s15(value: float) -> int:
    return int(round(value * 65536.0))


def _xy_to_xyz(x: float, y: float) -> NDArray[np.float64]:
    return np.array([x / y, 1.0, (1.0 - x - y) / y])


def _bradford_d65_to_d50() -> NDArray[np.float64]:
    src = _BRADFORD @ _xy_to_xyz(*D65_WHITE)
    dst = _BRADFORD @ np.array(_D50_XYZ)
    return np.linalg.inv(_BRADFORD) @ np.diag(dst / src) @ _BRADFORD


def _mluc(text: str) -> bytes:
    encoded = text.encode("utf-16-be")
    return (
        b"mluc"
        + bytes(4)
        + struct.pack(">II", 1, 12)
        + b"enUS"
        + struct.pack(">II", len(encoded), 28)
        + encoded
    )


def _xyz(values: NDArray[np.float64] | tuple[float, ...]) -> bytes:
    return b"XYZ " + bytes(4) + struct.pack(">3i", *(_s15(v) for v in values))


def _sf32(matrix: NDArray[np.float64]) -> bytes:
    return b"sf32" + bytes(4) + struct.pack(">9i", *(_s15(v) for v in matrix.flat))


def _trc(transfer: Transfer) -> bytes:
    """Tone reproduction curve for one channel."""
    match transfer:
        case Transfer.SRGB:
            # Parametric type 3: IEC 61966-2-1
            params = (2.4, 1.0 / 1.055, 0.055 / 1.055, 1.0 / 12.92, 0.04045)
            return b"para" + bytes(4) + struct.pack(">HH5i", 3, 0, *map(_s15, params))
        case Transfer.GAMMA22:
            return b"para" + bytes(4) + struct.pack(">HHi", 0, 0, _s15(563.0 / 256.0))
        case Transfer.LINEAR:
            return b"para" + bytes(4) + struct.pack(">HHi", 0, 0, _s15(1.0))
        case _:
            # Sampled curve normalized to the format's peak; readers that know
            # cicp use the tag instead.
            signal = np.linspace(0.0, 1.0, _ICC_CURVE_POINTS, dtype=np.float32)
            rgb = np.repeat(signal[:, np.newaxis], 3, axis=1)
            linear = decode_transfer(rgb, transfer)[:, 0]
            peak = PQ_PEAK_NITS / SDR_WHITE_NITS if transfer is Transfer.PQ else linear[-1]
            samples = np.clip(np.round(linear / peak * 65535.0), 0, 65535).astype(">u2")
            return b"curv" + bytes(4) + struct.pack(">I", len(samples)) + samples.tobytes()


def build_icc_profile(space: ColorSpace) -> bytes:
    """Build a matrix/TRC ICC display profile for an output color space."""
    adaptation = _bradford_d65_to_d50()
    colorants = adaptation @ rgb_to_xyz_matrix(space.primaries)
    trc = _trc(space.transfer)

    tags: list[tuple[bytes, bytes]] = [
        (b"desc", _mluc(space.label)),
        (b"cprt", _mluc("No copyright, use freely")),
        (b"wtpt", _xyz(_D50_XYZ)),
        (b"chad", _sf32(adaptation)),
        (b"rXYZ", _xyz(colorants[:, 0])),
        (b"gXYZ", _xyz(colorants[:, 1])),
        (b"bXYZ", _xyz(colorants[:, 2])),
        (b"rTRC", trc),
        (b"gTRC", trc),
        (b"bTRC", trc),
    ]
    cicp = space.cicp
    if cicp is not None and space.transfer.is_hdr:
        tags.append((b"cicp", b"cicp" + bytes(4) + bytes(cicp)))

    table_size = 4 + 12 * len(tags)
    offset = 128 + table_size
    table = bytearray(struct.pack(">I", len(tags)))
    body = bytearray()
    placed: dict[bytes, int] = {}
    for signature, data in tags:
        if data not in placed:
            placed[data] = offset + len(body)
            body.extend(data)
            body.extend(bytes(-len(body) % 4))
        table.extend(struct.pack(">4sII", signature, placed[data], len(data)))

    size = 128 + table_size + len(body)
    version = _ICC_V44 if any(sig == b"cicp" for sig, _ in tags) else _ICC_V43
    header = struct.pack(
        ">I4sI4s4s4s6H4s4sIII8sI3i4s16s28s",
        size,
        bytes(4),
        version,
        b"mntr",
        b"RGB ",
        b"XYZ ",
        *_ICC_DATE,
        b"acsp",
        bytes(4),
        0,
        0,
        0,
        bytes(8),
        0,
        *(_s15(v) for v in _D50_XYZ),
        bytes(4),
        bytes(16),
        bytes(28),
    )
    return header + bytes(table) + bytes(body)


def read_icc_tags(icc: bytes) -> dict[bytes, bytes]:
    """Return the raw tag data of an ICC profile keyed by signature."""
    if len(icc) < 132 or icc[36:40] != b"acsp":
        raise ValueError("Not an ICC profile")
    (count,) = struct.unpack_from(">I", icc, 128)
    tags: dict[bytes, bytes] = {}
    for i in range(count):
        signature, offset, size = struct.unpack_from(">4sII", icc, 132 + 12 * i)
        tags[signature] = icc[offset : offset + size]
    return tags


def icc_description(icc: bytes) -> str | None:
    """Profile description (v4 mluc or v2 textDescription), None if absent."""
    try:
        desc = read_icc_tags(icc).get(b"desc")
    except (ValueError, struct.error):
        return None
    if desc is None or len(desc) < 12:
        return None

    try:
        if desc[:4] == b"mluc":
            length, offset = struct.unpack_from(">II", desc, 20)
            return desc[offset : offset + length].decode("utf-16-be", errors="replace")
        if desc[:4] == b"desc":
            (length,) = struct.unpack_from(">I", desc, 8)
            return desc[12 : 12 + length].rstrip(b"\x00").decode("latin-1")
    except struct.error:
        # truncated tag
        return None
    return None


def icc_cicp(icc: bytes) -> tuple[int, int, int, int] | None:
    """The (primaries, transfer, matrix, full range) cicp tag, if present."""
    try:
        tag = read_icc_tags(icc).get(b"cicp")
    except (ValueError, struct.error):
        return None
    if tag is None or len(tag) < 12:
        return None
    primaries, transfer, matrix, full_range = tag[8:12]
    return primaries, transfer, matrix, full_range
