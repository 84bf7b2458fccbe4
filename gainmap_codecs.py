# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Container codecs: HEIF, JPEG, PNG and TIFF readers and writers.

Readers return normalized signal values plus whatever color metadata the file
carries (CICP / nclx, ICC, EXIF, XMP). Writers take an EncodedImage, a fully
prepared signal-domain rendition with its metadata, and return the file bytes.
Nothing here touches the filesystem except the readers.

Gain maps are stored next to the primary image:

- HEIF: second top-level image with its own hdrgm XMP
- JPEG: secondary JPEG appended after the primary, announced by the primary's
  GContainer XMP directory (Ultra HDR layout)
- PNG: private ancillary chunk "gmAp" holding a PNG of the gain map
- TIFF: second page
"""

from __future__ import annotations

import io
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final

import numpy as np
import pillow_heif
import png
import tifffile
from numpy.typing import NDArray
from PIL import Image

from gainmap_colorspace import ColorSpace
from gainmap_container import (
    GainMapParams,
    build_gain_map_xmp,
    build_icc_profile,
    build_primary_xmp,
    icc_cicp,
)

__all__: Final[list[str]] = [
    "OutputFormat",
    "DecodedImage",
    "EncodedImage",
    "ENCODERS",
    "HEIF_EXTENSIONS",
    "PNG_EXTENSIONS",
    "TIFF_EXTENSIONS",
    "SOURCE_EXTENSIONS",
    "read_image",
    "encode_heif",
    "encode_jpeg",
    "encode_png",
    "encode_tiff",
    "quantize",
    "png_chunks",
    "write_png_codes",
    "read_png_codes",
]

HEIF_EXTENSIONS: Final[frozenset[str]] = frozenset({".heic", ".heif", ".hif"})
PNG_EXTENSIONS: Final[frozenset[str]] = frozenset({".png"})
TIFF_EXTENSIONS: Final[frozenset[str]] = frozenset({".tif", ".tiff"})
SOURCE_EXTENSIONS: Final[frozenset[str]] = HEIF_EXTENSIONS | PNG_EXTENSIONS | TIFF_EXTENSIONS

GAIN_MAP_CHUNK: Final[bytes] = b"gmAp"
XMP_KEYWORD: Final[bytes] = b"XML:com.adobe.xmp"
ICC_PROFILE_NAME: Final[bytes] = b"ICC Profile"
EXIF_HEADER: Final[bytes] = b"Exif\x00\x00"

# TIFF tags
_TIFF_XMP: Final[int] = 700
_TIFF_ICC: Final[int] = 34675

# YCbCr matrix per CICP primaries for HEIF (BT.2020 NCL for BT.2020, else BT.709)
_HEIF_MATRIX: Final[dict[int, int]] = {9: 9}

pillow_heif.register_heif_opener()


# =============================================================================
# Data Classes
# =============================================================================


class OutputFormat(StrEnum):
    """Output container formats."""

    HEIF = "heic"
    JPEG = "jpg"
    PNG = "png"
    TIFF = "tiff"

    @property
    def extension(self) -> str:
        """File extension written for this format (without the dot)."""
        return self.value.upper()


@dataclass(frozen=True, slots=True)
class DecodedImage:
    """Pixels of a decoded file as [0, 1] signal values, (H, W, 3)."""

    pixels: NDArray[np.float32]
    bit_depth: int
    cicp: tuple[int, int, int, int] | None = None
    icc: bytes | None = None
    exif: bytes | None = None
    xmp: bytes | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class EncodedImage:
    """A rendition ready for a container encoder."""

    pixels: NDArray[np.float32]  # (H, W, 3) signal values in [0, 1]
    color_space: ColorSpace
    bit_depth: int
    quality: float
    gain_map: NDArray[np.float32] | None = None  # (H, W) or (H, W, 3), [0, 1]
    gain_map_params: GainMapParams | None = None
    headroom: float | None = None  # linear headroom for Apple HDRGainMap XMP
    exif: bytes | None = None

    @property
    def size(self) -> tuple[int, int]:
        height, width = self.pixels.shape[:2]
        return width, height


# =============================================================================
# Helpers
# =============================================================================


def quantize(signal: NDArray[np.float32], bit_depth: int) -> NDArray[np.uint8] | NDArray[np.uint16]:
    """Round [0, 1] signal values to integer code values of bit_depth bits."""
    max_code = (1 << bit_depth) - 1
    dtype = np.uint8 if bit_depth <= 8 else np.uint16
    return np.round(np.clip(signal, 0.0, 1.0) * max_code).astype(dtype)


def _quality_percent(quality: float) -> int:
    return int(min(max(round(quality * 100.0), 1), 100))


def _gain_map_pil(gain_map: NDArray[np.float32]) -> Image.Image:
    return Image.fromarray(quantize(gain_map, 8))


def _to_rgb(arr: NDArray) -> NDArray:
    if arr.ndim == 2:
        return np.repeat(arr[..., np.newaxis], 3, axis=2)
    if arr.shape[2] == 1:
        return np.repeat(arr, 3, axis=2)
    if arr.shape[2] == 2:
        return np.repeat(arr[..., :1], 3, axis=2)
    return arr[..., :3]


def _normalize(arr: NDArray, max_code: float | None = None) -> NDArray[np.float32]:
    if np.issubdtype(arr.dtype, np.floating):
        return np.clip(arr, 0.0, 1.0).astype(np.float32)
    if max_code is None:
        max_code = float(np.iinfo(arr.dtype).max)
    return (arr.astype(np.float32) / np.float32(max_code)).astype(np.float32)


# =============================================================================
# Readers
# =============================================================================


def _read_heif(path: Path) -> DecodedImage:
    heif = pillow_heif.open_heif(path, convert_hdr_to_8bit=False)
    arr = np.asarray(heif)
    info = heif.info

    nclx = info.get("nclx_profile")
    cicp = None
    if nclx:
        cicp = (
            int(nclx["color_primaries"]),
            int(nclx["transfer_characteristics"]),
            int(nclx["matrix_coefficients"]),
            int(nclx["full_range_flag"]),
        )

    return DecodedImage(
        pixels=_normalize(_to_rgb(arr)),
        bit_depth=int(info.get("bit_depth", 16 if arr.dtype == np.uint16 else 8)),
        cicp=cicp,
        icc=info.get("icc_profile") or None,
        exif=info.get("exif") or None,
        xmp=info.get("xmp") or None,
    )


def png_chunks(data: bytes) -> list[tuple[bytes, bytes]]:
    """All (type, payload) chunks of a PNG stream."""
    return list(png.Reader(bytes=data).chunks())


def read_png_codes(data: bytes) -> tuple[NDArray[np.uint16], int]:
    """Decode a PNG stream to (H, W, planes) code values and their bit depth.

    pypng rescales to the sBIT depth when the chunk is present, so a 10-bit
    PNG comes back as 0..1023.
    """
    width, height, rows, info = png.Reader(bytes=data).asDirect()
    planes = info["planes"]
    arr = np.array([np.asarray(row, dtype=np.uint16) for row in rows])
    return arr.reshape(height, width, planes), int(info["bitdepth"])


def _read_png(path: Path) -> DecodedImage:
    data = path.read_bytes()

    cicp = icc = exif = xmp = None
    for chunk_type, payload in png_chunks(data):
        if chunk_type == b"cICP" and len(payload) >= 4:
            cicp = tuple(payload[:4])
        elif chunk_type == b"iCCP":
            _, compressed = payload.split(b"\x00", 1)
            icc = zlib.decompress(compressed[1:])
        elif chunk_type == b"eXIf":
            exif = EXIF_HEADER + payload
        elif chunk_type == b"iTXt" and payload.startswith(XMP_KEYWORD + b"\x00"):
            xmp = _itxt_text(payload)

    arr, bit_depth = read_png_codes(data)
    return DecodedImage(
        pixels=_normalize(_to_rgb(arr), float((1 << bit_depth) - 1)),
        bit_depth=bit_depth,
        cicp=cicp,
        icc=icc,
        exif=exif,
        xmp=xmp,
    )


def _read_tiff(path: Path) -> DecodedImage:
    with tifffile.TiffFile(path) as tif:
        page = tif.pages[0]
        arr = page.asarray()
        icc_tag = page.tags.get(_TIFF_ICC)
        xmp_tag = page.tags.get(_TIFF_XMP)
        bit_depth = int(page.bitspersample)
        # tag values may be read lazily, so copy them while the file is open
        icc = bytes(icc_tag.value) if icc_tag is not None else None
        xmp = None
        if xmp_tag is not None:
            value = xmp_tag.value
            xmp = value.encode("utf-8") if isinstance(value, str) else bytes(value)

    return DecodedImage(
        pixels=_normalize(_to_rgb(arr)),
        bit_depth=bit_depth,
        cicp=icc_cicp(icc) if icc else None,
        icc=icc,
        xmp=xmp,
    )


def read_image(path: Path) -> DecodedImage:
    """Decode a HEIF, PNG or TIFF file by extension."""
    suffix = path.suffix.lower()
    if suffix in HEIF_EXTENSIONS:
        return _read_heif(path)
    if suffix in PNG_EXTENSIONS:
        return _read_png(path)
    if suffix in TIFF_EXTENSIONS:
        return _read_tiff(path)
    raise ValueError(f"Unsupported source format: {path.suffix}")


# =============================================================================
# HEIF
# =============================================================================


def encode_heif(image: EncodedImage) -> bytes:
    """
    HEIF with nclx color description; gain map as the second image.

    The gain map is a plain top-level image, not an auxiliary or derived item:
    pillow-heif exposes no way to link images, so the only tie to the primary
    is the primary's GContainer XMP and the gain image's own hdrgm XMP.
    Readers that look for an ISO 21496-1 tone-map item see two unrelated
    images and display the SDR primary. XMP and EXIF go in each image's info
    so the save-level options never touch the gain image's metadata.
    """
    high = image.bit_depth > 8
    codes = quantize(image.pixels, 16 if high else 8)
    heif = pillow_heif.from_bytes(
        mode="RGB;16" if high else "RGB",
        size=image.size,
        data=codes.tobytes(),
    )

    xmp = None
    if image.gain_map is not None and image.gain_map_params is not None:
        gain = quantize(image.gain_map, 8)
        gain_image = heif.add_frombytes(
            mode="L" if gain.ndim == 2 else "RGB",
            size=image.size,
            data=gain.tobytes(),
        )
        gain_image.info["xmp"] = build_gain_map_xmp(image.gain_map_params)
        xmp = build_primary_xmp(gain_map_mime="image/heic", headroom=image.headroom)
    elif image.headroom is not None:
        xmp = build_primary_xmp(headroom=image.headroom)

    save_kwargs: dict[str, object] = {
        "format": "HEIF",
        "quality": _quality_percent(image.quality),
    }
    cicp = image.color_space.cicp
    if cicp is not None:
        primaries, transfer, _, full_range = cicp
        save_kwargs.update(
            save_nclx_profile=True,
            color_primaries=primaries,
            transfer_characteristics=transfer,
            matrix_coefficients=_HEIF_MATRIX.get(primaries, 1),
            full_range_flag=full_range,
        )
    else:
        heif[0].info["icc_profile"] = build_icc_profile(image.color_space)
    if xmp is not None:
        heif[0].info["xmp"] = xmp
    if image.exif is not None:
        heif[0].info["exif"] = image.exif

    buffer = io.BytesIO()
    heif.save(buffer, **save_kwargs)
    return buffer.getvalue()


# =============================================================================
# JPEG
# =============================================================================


def _save_jpeg(
    img: Image.Image,
    quality: int,
    *,
    icc: bytes | None = None,
    exif: bytes | None = None,
    xmp: bytes | None = None,
) -> bytes:
    save_kwargs: dict[str, object] = {"format": "JPEG", "quality": quality}
    if icc is not None:
        save_kwargs["icc_profile"] = icc
    if exif is not None:
        save_kwargs["exif"] = exif
    if xmp is not None:
        save_kwargs["xmp"] = xmp
    buffer = io.BytesIO()
    img.save(buffer, **save_kwargs)
    return buffer.getvalue()


def encode_jpeg(image: EncodedImage) -> bytes:
    """8-bit JPEG; a gain map is appended as a secondary JPEG."""
    primary = Image.fromarray(quantize(image.pixels, 8))
    quality = _quality_percent(image.quality)
    icc = build_icc_profile(image.color_space)

    if image.gain_map is None or image.gain_map_params is None:
        xmp = build_primary_xmp(headroom=image.headroom) if image.headroom else None
        return _save_jpeg(primary, quality, icc=icc, exif=image.exif, xmp=xmp)

    gain_jpeg = _save_jpeg(
        _gain_map_pil(image.gain_map),
        quality,
        xmp=build_gain_map_xmp(image.gain_map_params),
    )
    xmp = build_primary_xmp(
        gain_map_mime="image/jpeg",
        gain_map_length=len(gain_jpeg),
        headroom=image.headroom,
    )
    return _save_jpeg(primary, quality, icc=icc, exif=image.exif, xmp=xmp) + gain_jpeg


# =============================================================================
# PNG
# =============================================================================


def _itxt(keyword: bytes, text: bytes) -> bytes:
    # keyword, compression flag, method, empty language tag, empty translation
    return keyword + b"\x00" + b"\x00\x00" + b"\x00" + b"\x00" + text


def _itxt_text(payload: bytes) -> bytes:
    try:
        _, rest = payload.split(b"\x00", 1)
        flag, method = rest[0], rest[1]
        _, rest = rest[2:].split(b"\x00", 1)
        _, text = rest.split(b"\x00", 1)
    except (ValueError, IndexError) as e:
        raise ValueError("Malformed iTXt chunk") from e
    return zlib.decompress(text) if flag and method == 0 else text


def write_png_codes(codes: NDArray, bit_depth: int) -> bytes:
    """Serialize integer code values with pypng (greyscale or RGB)."""
    greyscale = codes.ndim == 2
    height, width = codes.shape[:2]
    writer = png.Writer(
        width=width,
        height=height,
        bitdepth=bit_depth,
        greyscale=greyscale,
    )
    # pypng expects rows as (H, W*planes)
    rows = codes.reshape(height, -1)
    buffer = io.BytesIO()
    writer.write(buffer, rows)
    return buffer.getvalue()


def _insert_chunks(data: bytes, extra: list[tuple[bytes, bytes]]) -> bytes:
    chunks = png_chunks(data)
    # IHDR first, then ancillary chunks, then the rest
    chunks[1:1] = extra
    buffer = io.BytesIO()
    png.write_chunks(buffer, chunks)
    return buffer.getvalue()


def encode_png(image: EncodedImage) -> bytes:
    """PNG at 8, 10 (sBIT) or 16 bits with cICP, iCCP, eXIf and XMP chunks."""
    base = write_png_codes(quantize(image.pixels, image.bit_depth), image.bit_depth)

    extra: list[tuple[bytes, bytes]] = []
    cicp = image.color_space.cicp
    if cicp is not None:
        extra.append((b"cICP", bytes(cicp)))
    icc = build_icc_profile(image.color_space)
    extra.append((b"iCCP", ICC_PROFILE_NAME + b"\x00\x00" + zlib.compress(icc)))
    if image.exif is not None:
        extra.append((b"eXIf", image.exif.removeprefix(EXIF_HEADER)))

    if image.gain_map is not None and image.gain_map_params is not None:
        gain_png = write_png_codes(quantize(image.gain_map, 8), 8)
        gain_png = _insert_chunks(
            gain_png,
            [(b"iTXt", _itxt(XMP_KEYWORD, build_gain_map_xmp(image.gain_map_params)))],
        )
        xmp = build_primary_xmp(gain_map_mime="image/png", headroom=image.headroom)
        extra.append((b"iTXt", _itxt(XMP_KEYWORD, xmp)))
        extra.append((GAIN_MAP_CHUNK, gain_png))
    elif image.headroom is not None:
        extra.append((b"iTXt", _itxt(XMP_KEYWORD, build_primary_xmp(headroom=image.headroom))))

    return _insert_chunks(base, extra)


# =============================================================================
# TIFF
# =============================================================================


def encode_tiff(image: EncodedImage) -> bytes:
    """TIFF (zlib) with an ICC profile carrying cicp; gain map as page two.

    10-bit output is stored in 16-bit samples holding 10-bit code values scaled
    to the full 16-bit range.
    """
    if image.bit_depth == 10:
        codes = quantize(image.pixels, 10).astype(np.uint32) * 65535 // 1023
        codes = codes.astype(np.uint16)
    else:
        codes = quantize(image.pixels, image.bit_depth)

    has_gain_map = image.gain_map is not None and image.gain_map_params is not None
    if has_gain_map:
        xmp = build_primary_xmp(gain_map_mime="image/tiff", headroom=image.headroom)
    elif image.headroom is not None:
        xmp = build_primary_xmp(headroom=image.headroom)
    else:
        xmp = None

    buffer = io.BytesIO()
    with tifffile.TiffWriter(buffer) as tif:
        extratags = [(_TIFF_XMP, "B", len(xmp), xmp, True)] if xmp else []
        tif.write(
            codes,
            photometric="rgb",
            compression="zlib",
            iccprofile=build_icc_profile(image.color_space),
            extratags=extratags,
            metadata=None,
        )
        if has_gain_map:
            gain_xmp = build_gain_map_xmp(image.gain_map_params)
            gain = quantize(image.gain_map, 8)
            tif.write(
                gain,
                photometric="minisblack" if gain.ndim == 2 else "rgb",
                compression="zlib",
                extratags=[(_TIFF_XMP, "B", len(gain_xmp), gain_xmp, True)],
                metadata=None,
            )
    return buffer.getvalue()


ENCODERS: Final[dict[OutputFormat, Callable[[EncodedImage], bytes]]] = {
    OutputFormat.HEIF: encode_heif,
    OutputFormat.JPEG: encode_jpeg,
    OutputFormat.PNG: encode_png,
    OutputFormat.TIFF: encode_tiff,
}
