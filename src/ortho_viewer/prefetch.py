"""Batch helpers for two-phase slice prefetching.

Prefetch runs in two phases: the priority slices (center first) of every
view, then everything else. Each phase is processed in fixed-size batches
whose items settle independently; the pause between batches grows with the
phase's failure ratio so a struggling origin gets room to recover.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Literal, Sequence

from ortho_viewer.logger import get_logger
from ortho_viewer.views import View

__all__ = [
    "PrefetchTask",
    "BatchResult",
    "PreloadReport",
    "ItemOutcome",
    "priority_slices",
    "run_batches",
]

LOGGER = get_logger(__name__)

ItemOutcome = Literal["completed", "failed", "skipped"]


@dataclass(frozen=True)
class PrefetchTask:
    """One slice to prefetch."""

    view: View
    slice_index: int
    url: str


@dataclass
class BatchResult:
    """Outcome counters for one prefetch phase."""

    name: str
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.skipped

    def failure_ratio(self) -> float:
        """Return failed / processed items (0.0 before anything ran)."""
        total = self.total
        return self.failed / total if total > 0 else 0.0

    def record(self, outcome: ItemOutcome) -> None:
        if outcome == "completed":
            self.completed += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.skipped += 1


@dataclass
class PreloadReport:
    """Summary of a full two-phase prefetch run."""

    priority: BatchResult
    background: BatchResult
    elapsed_s: float = 0.0
    cancelled: bool = False


def priority_slices(slice_count: int, radius: int = 2) -> List[int]:
    """Return the center slice followed by its neighbours, nearest first.

    For 21 slices and ``radius=2`` this is ``[10, 9, 11, 8, 12]``.
    """
    if slice_count < 1:
        return []
    center = slice_count // 2
    order = [center]
    for delta in range(1, radius + 1):
        for index in (center - delta, center + delta):
            if 0 <= index < slice_count:
                order.append(index)
    return order


async def run_batches(
    tasks: Sequence[PrefetchTask],
    name: str,
    batch_size: int,
    run_item: Callable[[PrefetchTask], Awaitable[ItemOutcome]],
    pause_for: Callable[[float], float],
    still_active: Callable[[], bool],
) -> BatchResult:
    """Process ``tasks`` in settle-all batches with adaptive pauses.

    Parameters
    ----------
    tasks : sequence of PrefetchTask
        Items for this phase, in load order.
    name : str
        Phase name used in logs and in the result.
    batch_size : int
        Items started together; normally the cache's concurrency cap.
    run_item : callable
        Coroutine function loading one item and returning its outcome.
    pause_for : callable
        Maps the phase's failure ratio to the pause before the next batch.
    still_active : callable
        Returns False once this run has been superseded; checked before
        every batch.
    """
    result = BatchResult(name)
    batch_size = max(1, int(batch_size))
    LOGGER.info("Starting %s phase: %d images", name, len(tasks))
    for start in range(0, len(tasks), batch_size):
        if not still_active():
            result.cancelled = True
            LOGGER.info("%s phase superseded after %d items", name, result.total)
            break
        batch = tasks[start : start + batch_size]
        outcomes = await asyncio.gather(*(run_item(task) for task in batch), return_exceptions=True)
        for task, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.error(
                    "Batch item %s[%d] raised %r",
                    task.view.value,
                    task.slice_index,
                    outcome,
                    extra={"view": task.view.value},
                )
                result.record("failed")
            else:
                result.record(outcome)
        done = start + len(batch)
        if done % (batch_size * 3) == 0 or done >= len(tasks):
            LOGGER.info(
                "%s progress: %.1f%% (%d loaded, %d failed, %d skipped)",
                name,
                100.0 * done / len(tasks),
                result.completed,
                result.failed,
                result.skipped,
            )
        if done < len(tasks):
            pause = pause_for(result.failure_ratio())
            if pause > 0:
                await asyncio.sleep(pause)
    LOGGER.info(
        "%s phase complete: %d loaded, %d failed, %d skipped",
        name,
        result.completed,
        result.failed,
        result.skipped,
    )
    return result
