from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from gainmap_batch import BatchPipeline, BatchReport, partition_batches
from gainmap_codecs import OutputFormat
from gainmap_context import ContextPolicy, ContextProvider
from gainmap_errors import ConversionStatus
from gainmap_job import ConversionRequest, ConversionResult


class RecordingConvert:
    """convert() stand-in that records start/end order and concurrency."""

    def __init__(self, delay: float = 0.005, fail: set[str] | None = None) -> None:
        self.delay = delay
        self.fail = fail or set()
        self.events: list[tuple[str, str]] = []
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, request: ConversionRequest, *, provider: ContextProvider) -> ConversionResult:
        name = request.source_path.name
        with self._lock:
            self.events.append(("start", name))
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            if name in self.fail:
                raise RuntimeError("boom")
            return ConversionResult(source_path=request.source_path, status=ConversionStatus.SUCCESS)
        finally:
            with self._lock:
                self.in_flight -= 1
                self.events.append(("end", name))


def _paths(count: int) -> list[Path]:
    return [Path(f"img_{i:03d}.png") for i in range(count)]


def _template(tmp_path: Path) -> ConversionRequest:
    return ConversionRequest(source_path=Path("unused.png"), destination_dir=tmp_path)


def test_partition_batches() -> None:
    batches = partition_batches(_paths(37), 8)
    assert [len(b) for b in batches] == [8, 8, 8, 8, 5]
    assert [p for b in batches for p in b] == _paths(37)


def test_partition_rejects_empty_batches() -> None:
    with pytest.raises(ValueError):
        partition_batches(_paths(3), 0)


@pytest.mark.parametrize("concurrency", [0, 17])
def test_concurrency_bounds(concurrency: int) -> None:
    with pytest.raises(ValueError):
        BatchPipeline(concurrency)


def test_run_reports_progress_once_per_file(tmp_path: Path) -> None:
    fake = RecordingConvert()
    pipeline = BatchPipeline(8, batch_pause=0, convert_fn=fake)
    progress: list[int] = []
    done: list[BatchReport] = []

    report = pipeline.run(_paths(37), _template(tmp_path), on_progress=progress.append, on_done=done.append)

    assert progress == list(range(1, 38))
    assert done == [report]
    assert report.completed == report.total == 37
    assert report.succeeded == 37
    assert not report.cancelled
    assert fake.peak <= 8


def test_batches_do_not_overlap(tmp_path: Path) -> None:
    fake = RecordingConvert()
    paths = _paths(20)
    BatchPipeline(4, batch_pause=0, convert_fn=fake).run(paths, _template(tmp_path))

    batches = partition_batches(paths, 4)
    position = {event: i for i, event in enumerate(fake.events)}
    for current, following in zip(batches, batches[1:]):
        last_end = max(position[("end", p.name)] for p in current)
        first_start = min(position[("start", p.name)] for p in following)
        assert last_end < first_start


def test_failures_are_contained(tmp_path: Path) -> None:
    fake = RecordingConvert(fail={"img_002.png", "img_005.png"})
    progress: list[int] = []

    report = BatchPipeline(3, batch_pause=0, convert_fn=fake).run(
        _paths(7), _template(tmp_path), on_progress=progress.append
    )

    assert progress == list(range(1, 8))
    assert report.succeeded == 5
    failed = {r.source_path.name: r for r in report.failures}
    assert set(failed) == {"img_002.png", "img_005.png"}
    assert all(r.status is ConversionStatus.ENCODE_FAILED for r in failed.values())
    assert all(r.message.startswith("Unexpected error") for r in failed.values())


def test_cancel_stops_before_next_batch(tmp_path: Path) -> None:
    fake = RecordingConvert()
    cancel = threading.Event()

    def on_progress(completed: int) -> None:
        if completed == 4:
            cancel.set()

    report = BatchPipeline(4, batch_pause=0, convert_fn=fake).run(
        _paths(12), _template(tmp_path), on_progress=on_progress, cancel_event=cancel
    )

    assert report.cancelled
    assert report.completed == 4
    assert len(fake.events) == 8


def test_submit_returns_future(tmp_path: Path) -> None:
    fake = RecordingConvert()
    done = threading.Event()

    future = BatchPipeline(2, batch_pause=0, convert_fn=fake).submit(
        _paths(5), _template(tmp_path), on_done=lambda report: done.set()
    )

    report = future.result(timeout=10)
    assert report.completed == 5
    assert done.is_set()


def test_shared_and_per_job_contexts_write_identical_files(pq_png: Path, tmp_path: Path) -> None:
    sources = []
    for i in range(6):
        copy = pq_png.with_name(f"copy_{i}.png")
        shutil.copyfile(pq_png, copy)
        sources.append(copy)

    outputs: dict[ContextPolicy, dict[str, bytes]] = {}
    for policy in ContextPolicy:
        out_dir = tmp_path / f"out_{policy.value}"
        out_dir.mkdir()
        template = ConversionRequest(
            source_path=sources[0],
            destination_dir=out_dir,
            output_format=OutputFormat.PNG,
        )
        pipeline = BatchPipeline(4, provider=ContextProvider(policy), batch_pause=0)
        report = pipeline.run(sources, template)
        assert report.succeeded == 6, [r.message for r in report.failures]
        outputs[policy] = {p.name: p.read_bytes() for p in out_dir.iterdir()}

    assert outputs[ContextPolicy.SHARED] == outputs[ContextPolicy.PER_JOB]
    assert len(outputs[ContextPolicy.SHARED]) == 6
