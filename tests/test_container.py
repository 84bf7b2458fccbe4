from __future__ import annotations

import struct

import pytest
from PIL import ExifTags, Image

from gainmap_colorspace import ColorSpace
from gainmap_container import (
    MAKER_NOTE_GAIN_TAG,
    MAKER_NOTE_HEADROOM_TAG,
    GainMapParams,
    build_apple_maker_note,
    build_exif,
    build_gain_map_xmp,
    build_icc_profile,
    build_primary_xmp,
    float_to_fraction,
    icc_cicp,
    icc_description,
    parse_apple_maker_note,
    read_icc_tags,
)
from gainmap_headroom import HeadroomMetadata


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.5, (1, 2)), (1.0, (1, 1)), (0.0, (0, 1)), (0.25, (1, 4))],
)
def test_float_to_fraction(value: float, expected: tuple[int, int]) -> None:
    assert float_to_fraction(value) == expected


def test_float_to_fraction_fits_rational() -> None:
    num, den = float_to_fraction(0.009957142857)
    assert 0 < den <= 1_000_000
    assert num / den == pytest.approx(0.009957142857, rel=1e-6)


def test_maker_note_round_trip() -> None:
    meta = HeadroomMetadata.from_stops(2.5)
    note = build_apple_maker_note(meta.field33, meta.field48)
    assert note.startswith(b"Apple iOS\x00")
    values = parse_apple_maker_note(note)
    assert values[MAKER_NOTE_HEADROOM_TAG] == meta.field33
    assert values[MAKER_NOTE_GAIN_TAG] == pytest.approx(meta.field48, rel=1e-6)


def test_maker_note_entries_are_srationals() -> None:
    note = build_apple_maker_note(1.0, 0.0)
    (count,) = struct.unpack_from(">H", note, 14)
    assert count == 2
    tag, typ, n, _ = struct.unpack_from(">HHII", note, 16)
    assert (tag, typ, n) == (0x21, 10, 1)


def test_parse_rejects_foreign_note() -> None:
    with pytest.raises(ValueError):
        parse_apple_maker_note(b"Nikon\x00\x02")


def test_exif_carries_maker_note() -> None:
    note = build_apple_maker_note(1.0, 0.5)
    data = build_exif(note)
    assert data.startswith(b"Exif\x00\x00")

    exif = Image.Exif()
    exif.load(data)
    assert exif[ExifTags.Base.Software].startswith("hdr-gainmap-convert")
    assert note in data


def test_exif_without_maker_note() -> None:
    data = build_exif()
    assert b"Apple iOS" not in data


def test_gain_map_xmp() -> None:
    xmp = build_gain_map_xmp(GainMapParams(gain_map_max=2.5, hdr_capacity_max=2.5)).decode()
    assert 'hdrgm:Version="1.0"' in xmp
    assert 'hdrgm:GainMapMax="2.500000"' in xmp
    assert 'hdrgm:HDRCapacityMax="2.500000"' in xmp
    assert 'hdrgm:BaseRenditionIsHDR="False"' in xmp


def test_primary_xmp_with_appended_gain_map() -> None:
    xmp = build_primary_xmp(gain_map_mime="image/jpeg", gain_map_length=1234, headroom=6.0).decode()
    assert 'Item:Semantic="GainMap"' in xmp
    assert 'Item:Length="1234"' in xmp
    assert 'HDRGainMap:HDRGainMapVersion="65536"' in xmp
    assert 'HDRGainMap:HDRGainMapHeadroom="6.000000"' in xmp


def test_primary_xmp_without_headroom() -> None:
    xmp = build_primary_xmp(gain_map_mime="image/heic").decode()
    assert "HDRGainMap" not in xmp
    assert "Item:Length" not in xmp
    assert xmp.count("<rdf:Description") == 1


@pytest.mark.parametrize("space", list(ColorSpace))
def test_icc_profile_structure(space: ColorSpace) -> None:
    icc = build_icc_profile(space)
    (size,) = struct.unpack_from(">I", icc, 0)
    assert size == len(icc)
    assert icc[36:40] == b"acsp"
    assert icc_description(icc) == space.label
    tags = read_icc_tags(icc)
    assert {b"desc", b"wtpt", b"rXYZ", b"gTRC", b"bTRC"} <= tags.keys()


def test_icc_cicp_only_for_hdr() -> None:
    assert icc_cicp(build_icc_profile(ColorSpace.BT2100_PQ)) == (9, 16, 0, 1)
    assert icc_cicp(build_icc_profile(ColorSpace.DISPLAY_P3_HLG)) == (12, 18, 0, 1)
    assert icc_cicp(build_icc_profile(ColorSpace.DISPLAY_P3)) is None


def test_icc_profile_is_deterministic() -> None:
    assert build_icc_profile(ColorSpace.BT2100_HLG) == build_icc_profile(ColorSpace.BT2100_HLG)


def test_icc_helpers_reject_garbage() -> None:
    assert icc_description(b"not a profile") is None
    assert icc_cicp(b"\x00" * 200) is None


def test_icc_description_of_truncated_mluc_tag() -> None:
    header = bytearray(128)
    header[36:40] = b"acsp"
    table = struct.pack(">I", 1) + struct.pack(">4sII", b"desc", 144, 16)
    assert icc_description(bytes(header) + table + b"mluc" + b"\x00" * 12) is None
