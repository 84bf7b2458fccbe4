# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Bounded-concurrency batch conversion.

Files are split into batches of W (the worker count). Batches run strictly
one after another; inside a batch up to W conversions run on a thread pool,
each holding one of W admission slots for its whole duration. Progress is
counted on the coordinating thread as conversions finish, so callbacks never
run concurrently.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from gainmap_context import ContextProvider
from gainmap_errors import ConversionStatus
from gainmap_job import ConversionRequest, ConversionResult, convert

__all__: Final[list[str]] = [
    "MAX_WORKERS",
    "DEFAULT_BATCH_PAUSE",
    "BatchState",
    "BatchReport",
    "BatchPipeline",
    "partition_batches",
]

logger = logging.getLogger(__name__)

MAX_WORKERS: Final[int] = 16
DEFAULT_BATCH_PAUSE: Final[float] = 0.1

type ConvertFn = Callable[..., ConversionResult]
type ProgressCallback = Callable[[int], None]
type DoneCallback = Callable[[BatchReport], None]


def partition_batches(paths: Sequence[Path], size: int) -> tuple[tuple[Path, ...], ...]:
    """Split paths into consecutive batches of at most size (last may be short)."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return tuple(tuple(paths[i : i + size]) for i in range(0, len(paths), size))


@dataclass(slots=True)
class BatchState:
    """Progress of one batch run. completed only ever increases."""

    total: int
    batches: tuple[tuple[Path, ...], ...]
    completed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_completion(self) -> int:
        with self._lock:
            self.completed += 1
            return self.completed


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Aggregate outcome of a batch run."""

    total: int
    completed: int
    results: tuple[ConversionResult, ...]
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failures(self) -> tuple[ConversionResult, ...]:
        return tuple(r for r in self.results if not r.ok)


class BatchPipeline:
    """Runs conversions for many files with at most `concurrency` in flight."""

    def __init__(
        self,
        concurrency: int,
        *,
        provider: ContextProvider | None = None,
        batch_pause: float = DEFAULT_BATCH_PAUSE,
        convert_fn: ConvertFn = convert,
    ) -> None:
        if not 1 <= concurrency <= MAX_WORKERS:
            raise ValueError(f"concurrency must be between 1 and {MAX_WORKERS}, got {concurrency}")
        if batch_pause < 0:
            raise ValueError(f"batch_pause must be >= 0, got {batch_pause}")
        self.concurrency = concurrency
        self.batch_pause = batch_pause
        self.provider = provider or ContextProvider()
        self._convert = convert_fn
        self._slots = threading.BoundedSemaphore(concurrency)

    def _convert_one(self, request: ConversionRequest) -> ConversionResult:
        """Worker body: hold one admission slot for the whole conversion."""
        self._slots.acquire()
        try:
            return self._convert(request, provider=self.provider)
        except Exception as e:
            return ConversionResult(
                source_path=request.source_path,
                status=ConversionStatus.ENCODE_FAILED,
                message=f"Unexpected error: {e}",
            )
        finally:
            self._slots.release()

    def run(
        self,
        paths: Sequence[Path],
        template: ConversionRequest,
        *,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        """
        Convert every path with the template's options, blocking until done.

        on_progress(completed) is called once per finished file, success or
        failure; on_done(report) once at the end. Setting cancel_event stops
        the run before the next batch starts.
        """
        state = BatchState(
            total=len(paths),
            batches=partition_batches(paths, self.concurrency),
        )
        results: list[ConversionResult] = []
        cancelled = False
        logger.debug(
            "Converting %d files in %d batches of up to %d",
            state.total,
            len(state.batches),
            self.concurrency,
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="gainmap",
        ) as executor:
            for index, batch in enumerate(state.batches):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.info("Batch run cancelled after %d of %d files", state.completed, state.total)
                    break
                if index and self.batch_pause:
                    time.sleep(self.batch_pause)

                futures = [
                    executor.submit(self._convert_one, template.for_source(path))
                    for path in batch
                ]
                # Joins the whole batch before the next one is submitted
                for future in as_completed(futures):
                    result = future.result()
                    results.append(result)
                    if not result.ok:
                        logger.error("%s: %s", result.source_path.name, result.message)
                    completed = state.record_completion()
                    if on_progress is not None:
                        on_progress(completed)

        report = BatchReport(
            total=state.total,
            completed=state.completed,
            results=tuple(results),
            cancelled=cancelled,
        )
        if on_done is not None:
            on_done(report)
        return report

    def submit(
        self,
        paths: Sequence[Path],
        template: ConversionRequest,
        *,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Future[BatchReport]:
        """Start run() on a background thread and return its future."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gainmap-batch")
        future = executor.submit(
            self.run,
            paths,
            template,
            on_progress=on_progress,
            on_done=on_done,
            cancel_event=cancel_event,
        )
        executor.shutdown(wait=False)
        return future
