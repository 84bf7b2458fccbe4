from __future__ import annotations

import io
from collections.abc import Callable, Sequence
from pathlib import Path

import numpy as np
import png
import pytest

from gainmap_colorspace import Transfer, encode_transfer

# (primaries, transfer) CICP code points used by the synthetic sources
BT2100_PQ_CICP = (9, 16, 0, 1)
BT2100_HLG_CICP = (9, 18, 0, 1)
SRGB_CICP = (1, 13, 0, 1)

type HdrPngFactory = Callable[..., Path]


def synthetic_linear(height: int = 20, width: int = 24) -> np.ndarray:
    """Linear HDR test card (1.0 = SDR white): ramps up to 8x white plus a black corner."""
    ramp = np.linspace(0.0, 8.0, width, dtype=np.float32)
    rows = np.linspace(0.25, 1.0, height, dtype=np.float32)[:, np.newaxis]
    img = np.stack(
        [ramp * rows, (ramp * rows) ** 0.9, np.full((height, width), 0.2, np.float32)],
        axis=-1,
    ).astype(np.float32)
    img[:4, :4] = 0.0
    return img


def write_hdr_png(
    path: Path,
    linear: np.ndarray,
    *,
    transfer: Transfer = Transfer.PQ,
    cicp: tuple[int, int, int, int] | None = BT2100_PQ_CICP,
    extra_chunks: Sequence[tuple[bytes, bytes]] = (),
) -> Path:
    """Write a 16-bit RGB PNG of linear pixels encoded with transfer, tagged with cICP.

    extra_chunks are inserted right after IHDR.
    """
    signal = encode_transfer(linear.astype(np.float32), transfer)
    codes = np.round(np.clip(signal, 0.0, 1.0) * 65535).astype(np.uint16)
    height, width = codes.shape[:2]

    buffer = io.BytesIO()
    png.Writer(width=width, height=height, bitdepth=16, greyscale=False).write(
        buffer, codes.reshape(height, -1)
    )
    chunks = list(png.Reader(bytes=buffer.getvalue()).chunks())
    if cicp is not None:
        chunks.insert(1, (b"cICP", bytes(cicp)))
    chunks[1:1] = extra_chunks
    with path.open("wb") as f:
        png.write_chunks(f, chunks)
    return path


@pytest.fixture
def hdr_linear() -> np.ndarray:
    return synthetic_linear()


@pytest.fixture
def make_hdr_png(tmp_path: Path, hdr_linear: np.ndarray) -> HdrPngFactory:
    """Factory writing the synthetic test card as a PQ (default) or HLG PNG."""

    def _make(
        name: str = "scene.png",
        *,
        transfer: Transfer = Transfer.PQ,
        cicp: tuple[int, int, int, int] | None = BT2100_PQ_CICP,
        linear: np.ndarray | None = None,
        extra_chunks: Sequence[tuple[bytes, bytes]] = (),
    ) -> Path:
        src_dir = tmp_path / "src"
        src_dir.mkdir(exist_ok=True)
        pixels = hdr_linear if linear is None else linear
        return write_hdr_png(
            src_dir / name, pixels, transfer=transfer, cicp=cicp, extra_chunks=extra_chunks
        )

    return _make


@pytest.fixture
def pq_png(make_hdr_png: HdrPngFactory) -> Path:
    return make_hdr_png("pq_scene.png")


@pytest.fixture
def hlg_png(make_hdr_png: HdrPngFactory) -> Path:
    return make_hdr_png("hlg_scene.png", transfer=Transfer.HLG, cicp=BT2100_HLG_CICP)


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    out = tmp_path / "out"
    out.mkdir()
    return out
