"""Disk-bounded chunked fetch → transform → load driver."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from fdpbench.timing import SYSTEM_CLOCK, Clock
from fdpbench.trial.errors import BenchError, PipelineError
from fdpbench.trial.models import Chunk
from fdpbench.utils import secs_to_duration

logger = logging.getLogger(__name__)

ChunkStep = Callable[[Chunk], None]


def chunk_ranges(total: int, chunk_size: int, start: int = 0) -> Iterator[Tuple[int, int]]:
    """Yield half-open ``[lo, hi)`` ranges covering ``[start, start + total)``."""
    if chunk_size <= 0:
        raise ValueError(f"chunk size must be positive, got {chunk_size}")
    if total < 0:
        raise ValueError(f"total must not be negative, got {total}")
    end = start + total
    cursor = start
    while cursor < end:
        upper = min(cursor + chunk_size, end)
        yield cursor, upper
        cursor = upper


def run_chunked(
    total: int,
    chunk_size: int,
    *,
    artifact_for: Callable[[int, int, int], Path],
    transform: ChunkStep,
    load: ChunkStep,
    fetch: Optional[ChunkStep] = None,
    start: int = 0,
    clock: Clock = SYSTEM_CLOCK,
) -> List[Chunk]:
    """Process ``total`` units in ``chunk_size`` slices, one artifact on disk at a time.

    ``artifact_for(index, lo, hi)`` names the staging file ``transform`` must
    produce. The artifact is deleted after every chunk whether or not ``load``
    succeeded. A missing artifact or a failing ``load`` aborts the whole run
    with :class:`PipelineError`; already-loaded chunks are not retried.
    """
    processed: List[Chunk] = []
    for index, (lo, hi) in enumerate(chunk_ranges(total, chunk_size, start)):
        chunk = Chunk(index=index, range_start=lo, range_end=hi, artifact_path=artifact_for(index, lo, hi))
        logger.info("── Chunk %d: blocks %d → %d ──", index, lo, hi)
        # A stale artifact from an interrupted run would break the one-artifact bound.
        chunk.artifact_path.unlink(missing_ok=True)
        try:
            _process(chunk, fetch=fetch, transform=transform, load=load, clock=clock)
        finally:
            chunk.artifact_path.unlink(missing_ok=True)
        logger.info("Chunk %d done, artifact deleted", index)
        processed.append(chunk)

    logger.info("All %d chunk(s) processed (units %d..%d)", len(processed), start, start + total)
    return processed


def _process(
    chunk: Chunk,
    *,
    fetch: Optional[ChunkStep],
    transform: ChunkStep,
    load: ChunkStep,
    clock: Clock,
) -> None:
    if fetch is not None:
        _step("fetch", fetch, chunk)

    started = clock.monotonic()
    _step("transform", transform, chunk)
    if not chunk.artifact_path.is_file():
        raise PipelineError(f"chunk {chunk.index} artifact was not created: {chunk.artifact_path}")
    size = chunk.artifact_path.stat().st_size
    logger.info(
        "  Chunk artifact ready: %d bytes (transformed in %s)",
        size,
        secs_to_duration(clock.monotonic() - started),
    )

    started = clock.monotonic()
    _step("load", load, chunk)
    logger.info("  Loaded in %s", secs_to_duration(clock.monotonic() - started))


def _step(name: str, fn: ChunkStep, chunk: Chunk) -> None:
    try:
        fn(chunk)
    except BenchError:
        raise
    except Exception as exc:
        raise PipelineError(f"chunk {chunk.index} {name} failed: {exc}") from exc
