from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from conftest import HdrPngFactory
import convert_to_gainmap
from convert_to_gainmap import find_sources, main, parse_args


def _exit_code(argv: list[str]) -> int | str | None:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


def test_find_sources_scans_directories(tmp_path: Path) -> None:
    for name in ("b.heic", "a.PNG", "c.tif", ".hidden.png", "notes.txt", "movie.mov"):
        (tmp_path / name).write_bytes(b"")
    (tmp_path / "nested").mkdir()

    found = find_sources([tmp_path])
    assert [p.name for p in found] == ["a.PNG", "b.heic", "c.tif"]


def test_find_sources_keeps_explicit_files_once(tmp_path: Path) -> None:
    source = tmp_path / "shot.png"
    source.write_bytes(b"")
    assert find_sources([source, source]) == [source]


def test_parse_args_defaults() -> None:
    args = parse_args(["photo.heic"])
    assert args.sources == [Path("photo.heic")]
    assert args.depth == 10
    assert args.format == "heic"
    assert args.quality is None
    assert not (args.sdr or args.pq or args.hlg or args.mono)


def test_parse_args_rejects_unknown_depth() -> None:
    with pytest.raises(SystemExit):
        parse_args(["photo.heic", "-d", "12"])


def test_exclusive_export_flags_exit_2(pq_png: Path, dest: Path) -> None:
    assert _exit_code([str(pq_png), "-o", str(dest), "-s", "-p"]) == 2
    assert list(dest.iterdir()) == []


def test_jobs_out_of_range_exit_2(pq_png: Path, dest: Path) -> None:
    assert _exit_code([str(pq_png), "-o", str(dest), "-j", "32"]) == 2


def test_no_sources_exit_0(tmp_path: Path, dest: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    assert _exit_code([str(empty), "-o", str(dest)]) == 0


def test_single_file_conversion(pq_png: Path, dest: Path) -> None:
    assert _exit_code([str(pq_png), "-o", str(dest), "-f", "png", "-d", "8"]) == 0
    assert (dest / "pq_scene.PNG").exists()


def test_directory_conversion(pq_png: Path, dest: Path) -> None:
    shutil.copyfile(pq_png, pq_png.with_name("second.png"))
    code = _exit_code([str(pq_png.parent), "-o", str(dest), "-f", "tiff", "--hlg", "-d", "16", "-j", "2"])
    assert code == 0
    assert sorted(p.name for p in dest.iterdir()) == ["pq_scene.TIFF", "second.TIFF"]


def test_failures_exit_1(tmp_path: Path, dest: Path) -> None:
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"not a png")
    assert _exit_code([str(broken), "-o", str(dest), "-f", "png"]) == 1


def test_interrupt_exits_130(pq_png: Path, dest: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _interrupt(*args: object, **kwargs: object) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(convert_to_gainmap, "convert", _interrupt)
    assert _exit_code([str(pq_png), "-o", str(dest)]) == 130


def test_jobs_default_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GAINMAP_JOBS", "3")
    assert convert_to_gainmap._default_jobs() == 3
    monkeypatch.setenv("GAINMAP_JOBS", "100")
    assert convert_to_gainmap._default_jobs() == 16
    monkeypatch.setenv("GAINMAP_JOBS", "nope")
    assert 1 <= convert_to_gainmap._default_jobs() <= 16


def test_malformed_metadata_exits_1(make_hdr_png: HdrPngFactory, dest: Path) -> None:
    source = make_hdr_png("bad_xmp.png", extra_chunks=[(b"iTXt", b"XML:com.adobe.xmp\x00")])
    assert _exit_code([str(source), "-o", str(dest), "-f", "png"]) == 1
