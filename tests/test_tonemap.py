from __future__ import annotations

import numpy as np
import pytest

from gainmap_colorspace import Primaries
from gainmap_context import ImageContext, Rendition, RenditionKind
from gainmap_tonemap import tone_map_headroom, tone_map_to_sdr


def _hdr(pixels: np.ndarray, headroom: float) -> Rendition:
    return Rendition(
        pixels=pixels.astype(np.float32),
        primaries=Primaries.BT2020,
        kind=RenditionKind.HDR,
        headroom=headroom,
    )


@pytest.mark.parametrize(("source", "target"), [(49.26, 1.0), (4.0, 1.0), (16.0, 2.0)])
def test_source_headroom_lands_on_target(source: float, target: float) -> None:
    pixels = np.full((1, 1, 3), source, np.float32)
    out = tone_map_headroom(pixels, source, target)
    assert out[0, 0] == pytest.approx([target] * 3, rel=1e-5)


def test_curve_is_monotonic_and_bounded() -> None:
    values = np.linspace(0.0, 49.0, 500, dtype=np.float32)
    pixels = np.repeat(values[:, np.newaxis], 3, axis=1)[np.newaxis]
    out = tone_map_headroom(pixels, 49.26, 1.0)[0, :, 0]
    assert np.all(np.diff(out) >= 0.0)
    assert out.max() <= 1.0
    assert out[0] == 0.0


def test_channel_ratios_are_preserved() -> None:
    pixels = np.array([[[4.0, 2.0, 1.0]]], np.float32)
    out = tone_map_headroom(pixels, 10.0, 1.0)[0, 0]
    assert out[1] / out[0] == pytest.approx(0.5, rel=1e-5)
    assert out[2] / out[0] == pytest.approx(0.25, rel=1e-5)


def test_source_within_target_is_a_clip() -> None:
    pixels = np.array([[[0.5, 1.5, -0.2]]], np.float32)
    out = tone_map_headroom(pixels, 1.0, 1.0)
    np.testing.assert_array_equal(out, [[[0.5, 1.0, 0.0]]])


def test_non_positive_target_is_rejected() -> None:
    with pytest.raises(ValueError, match="target headroom"):
        tone_map_headroom(np.zeros((1, 1, 3), np.float32), 4.0, 0.0)


def test_tone_map_to_sdr_is_deterministic(hdr_linear: np.ndarray) -> None:
    context = ImageContext()
    hdr = _hdr(hdr_linear, 10000 / 203)
    first = tone_map_to_sdr(context, hdr)
    second = tone_map_to_sdr(context, hdr)
    assert first.kind is RenditionKind.SDR
    assert first.headroom == 1.0
    assert first.pixels.max() <= 1.0
    np.testing.assert_array_equal(first.pixels, second.pixels)


def test_renditions_are_read_only(hdr_linear: np.ndarray) -> None:
    hdr = _hdr(hdr_linear, 4.0)
    with pytest.raises(ValueError):
        hdr.pixels[0, 0, 0] = 1.0
