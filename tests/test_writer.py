from __future__ import annotations

from pathlib import Path

import pytest

from gainmap_codecs import OutputFormat
from gainmap_errors import ValidationError
from gainmap_writer import (
    WRITE_PLANS,
    ExportMode,
    destination_path,
    resolve_bit_depth,
)


@pytest.mark.parametrize(
    ("flags", "expected"),
    [
        ({}, ExportMode.DEFAULT),
        ({"sdr": True}, ExportMode.SDR_ONLY),
        ({"pq": True}, ExportMode.PQ_ONLY),
        ({"hlg": True}, ExportMode.HLG_ONLY),
    ],
)
def test_from_flags(flags: dict[str, bool], expected: ExportMode) -> None:
    assert ExportMode.from_flags(**flags) is expected


@pytest.mark.parametrize(
    "flags",
    [
        {"sdr": True, "pq": True},
        {"pq": True, "hlg": True},
        {"sdr": True, "pq": True, "hlg": True},
    ],
)
def test_from_flags_rejects_multiple(flags: dict[str, bool]) -> None:
    with pytest.raises(ValidationError, match="Only one type of export"):
        ExportMode.from_flags(**flags)


def test_default_quality() -> None:
    assert ExportMode.SDR_ONLY.default_quality == 0.90
    assert ExportMode.DEFAULT.default_quality == 0.85
    assert ExportMode.PQ_ONLY.default_quality == 0.85


@pytest.mark.parametrize(
    ("fmt", "mode", "requested", "expected"),
    [
        (OutputFormat.JPEG, ExportMode.DEFAULT, 16, 8),
        (OutputFormat.JPEG, ExportMode.SDR_ONLY, 10, 8),
        (OutputFormat.HEIF, ExportMode.PQ_ONLY, 16, 10),
        (OutputFormat.HEIF, ExportMode.HLG_ONLY, 8, 10),
        (OutputFormat.HEIF, ExportMode.DEFAULT, 16, 10),
        (OutputFormat.HEIF, ExportMode.SDR_ONLY, 8, 8),
        (OutputFormat.PNG, ExportMode.PQ_ONLY, 16, 16),
        (OutputFormat.PNG, ExportMode.DEFAULT, 8, 8),
        (OutputFormat.TIFF, ExportMode.HLG_ONLY, 10, 10),
    ],
)
def test_resolve_bit_depth(
    fmt: OutputFormat, mode: ExportMode, requested: int, expected: int
) -> None:
    assert resolve_bit_depth(fmt, mode, requested) == expected


@pytest.mark.parametrize(
    ("fmt", "mode", "requested"),
    [
        (OutputFormat.JPEG, ExportMode.PQ_ONLY, 8),
        (OutputFormat.JPEG, ExportMode.HLG_ONLY, 16),
        (OutputFormat.PNG, ExportMode.PQ_ONLY, 8),
        (OutputFormat.TIFF, ExportMode.HLG_ONLY, 8),
        (OutputFormat.PNG, ExportMode.DEFAULT, 12),
    ],
)
def test_resolve_bit_depth_rejects(fmt: OutputFormat, mode: ExportMode, requested: int) -> None:
    with pytest.raises(ValidationError):
        resolve_bit_depth(fmt, mode, requested)


@pytest.mark.parametrize(
    ("fmt", "name"),
    [
        (OutputFormat.HEIF, "IMG_0001.HEIC"),
        (OutputFormat.JPEG, "IMG_0001.JPG"),
        (OutputFormat.PNG, "IMG_0001.PNG"),
        (OutputFormat.TIFF, "IMG_0001.TIFF"),
    ],
)
def test_destination_path(fmt: OutputFormat, name: str) -> None:
    out = destination_path(Path("/photos/IMG_0001.heic"), Path("/export"), fmt)
    assert out == Path("/export") / name


def test_every_format_and_mode_has_a_plan() -> None:
    assert set(WRITE_PLANS) == {(fmt, mode) for fmt in OutputFormat for mode in ExportMode}
    for (fmt, mode), plan in WRITE_PLANS.items():
        assert plan.fmt is fmt
        assert plan.mode is mode
