"""Resilient cache and prefetcher for network-fetched slice images.

The cache maps ``(view, slice_index)`` to a decoded ``AssetHandle`` and owns
every network load behind it:

- one in-flight load per key; concurrent requests attach to it;
- a global cap on simultaneous network attempts;
- bounded retries with shrinking per-attempt timeouts and jittered
  exponential backoff;
- a URL blacklist for loads that exhausted their retries, cleared
  independently of successfully cached entries;
- a two-phase prefetch (priority slices, then everything else) in
  settle-all batches with adaptive pauses.

Concurrency model
-----------------
Everything runs on one asyncio event loop, so the tables need no locks. The
only rule is that ``request`` registers a new load in the in-flight map
before its first ``await``; another task can then never start a second load
for the same key. Timeouts race the fetch against a timer and never cancel
the transport; a late completion is ignored.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pandas as pd

from ortho_viewer.assets import AssetHandle, decode_asset
from ortho_viewer.config import CacheConfig, ImageManifest
from ortho_viewer.errors import AssetError, FailureReason, PermanentLoadError, TransientLoadError
from ortho_viewer.fetch import Fetcher, HttpFetcher
from ortho_viewer.logger import get_logger
from ortho_viewer.prefetch import (
    ItemOutcome,
    PrefetchTask,
    PreloadReport,
    priority_slices as default_priority,
    run_batches,
)
from ortho_viewer.views import View

__all__ = ["CacheKey", "EntryState", "CacheEntry", "CacheStats", "ResilientAssetCache"]

LOGGER = get_logger(__name__)

CacheKey = Tuple[View, int]


class EntryState(str, Enum):
    """Lifecycle of one cache key."""

    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    FAILED_PERMANENT = "failed_permanent"


@dataclass
class CacheEntry:
    """Bookkeeping for one ``(view, slice)`` key."""

    key: CacheKey
    url: str
    state: EntryState = EntryState.EMPTY
    handle: Optional[AssetHandle] = None
    reason: Optional[FailureReason] = None
    attempts: int = 0


@dataclass(frozen=True)
class CacheStats:
    """Read-only snapshot of cache counters.

    ``hit_rate`` is ``hits / (hits + misses)``, 0.0 before any lookup.
    """

    hits: int
    misses: int
    preloaded: int
    failed: int
    cache_size: int
    in_flight_count: int
    hit_rate: float


@dataclass
class _Counters:
    hits: int = 0
    misses: int = 0
    preloaded: int = 0
    failed: int = 0

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.preloaded = 0
        self.failed = 0


class ResilientAssetCache:
    """Load, deduplicate, retry, rate-limit and blacklist slice images.

    Parameters
    ----------
    fetcher : Fetcher, optional
        Transport; defaults to ``HttpFetcher``.
    config : CacheConfig, optional
        Concurrency cap, retry policy and prefetch pacing.
    rng : random.Random, optional
        Source of backoff jitter.
    """

    def __init__(
        self,
        fetcher: Optional[Fetcher] = None,
        config: Optional[CacheConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._fetcher: Fetcher = fetcher or HttpFetcher()
        self._config = config or CacheConfig()
        self._rng = rng or random.Random()
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._in_flight: Dict[CacheKey, "asyncio.Future[AssetHandle]"] = {}
        self._blacklist: Set[str] = set()
        self._retry_delays: Dict[str, float] = {}
        self._counters = _Counters()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None
        self._active_fetches = 0
        self._generation = 0
        self._preloading = False
        self._preload_run: Optional[str] = None
        self._last_priority: Optional[Tuple[int, ...]] = None

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def active_fetches(self) -> int:
        """Network attempts currently holding a concurrency slot."""
        return self._active_fetches

    @property
    def preloading(self) -> bool:
        return self._preloading

    async def request(self, view: View, slice_index: int, url: str) -> AssetHandle:
        """Return the asset for ``(view, slice_index)``, loading it if needed.

        Raises
        ------
        PermanentLoadError
            If the URL is blacklisted or its load exhausted every retry.
        """
        key = (view, int(slice_index))
        entry = self._entries.get(key)
        if entry is not None and entry.state is EntryState.READY and entry.handle is not None:
            self._counters.hits += 1
            LOGGER.debug("Cache hit for slice %d", key[1], extra={"view": view.value})
            return entry.handle

        task = self._in_flight.get(key)
        if task is None:
            if url in self._blacklist:
                LOGGER.debug("Rejecting blacklisted URL %s", url, extra={"view": view.value})
                cause = entry.reason if entry is not None and entry.url == url else None
                raise PermanentLoadError(url, cause=cause)
            self._counters.misses += 1
            task = asyncio.ensure_future(self._load(key, url, self._generation))
            self._in_flight[key] = task
            task.add_done_callback(partial(self._forget, key))
        return await asyncio.shield(task)

    def get_ready(self, view: View, slice_index: int) -> Optional[AssetHandle]:
        """Return a cached handle without loading or touching counters."""
        entry = self._entries.get((view, int(slice_index)))
        if entry is None or entry.state is not EntryState.READY:
            return None
        return entry.handle

    def state_of(self, view: View, slice_index: int) -> EntryState:
        entry = self._entries.get((view, int(slice_index)))
        return EntryState.EMPTY if entry is None else entry.state

    def is_blacklisted(self, url: str) -> bool:
        return url in self._blacklist

    def retry_delay(self, url: str) -> Optional[float]:
        """Return the last backoff scheduled for ``url``, if any."""
        return self._retry_delays.get(url)

    def priority_for(self, manifest: ImageManifest) -> List[int]:
        """Return center-first priority slices sized to the largest view."""
        counts = manifest.slice_counts().values()
        if not counts:
            return []
        return default_priority(max(counts), self._config.priority_radius)

    async def preload(
        self, manifest: ImageManifest, priority_slices: Sequence[int]
    ) -> Optional[PreloadReport]:
        """Prefetch priority slices of every view, then all remaining slices.

        Returns ``None`` without doing anything if a prefetch is already
        running. A run superseded by ``restart`` stops at its next batch.
        """
        if self._preloading:
            LOGGER.info("Preloading already in progress, skipping")
            return None
        self._preloading = True
        run_id = uuid.uuid4().hex[:8]
        self._preload_run = run_id
        priority = tuple(dict.fromkeys(int(i) for i in priority_slices))
        self._last_priority = priority
        start = time.monotonic()
        batch_size = self._config.max_concurrent

        def still_active() -> bool:
            return self._preload_run == run_id

        try:
            priority_tasks = [
                PrefetchTask(view, index, manifest.url(view, index))
                for view in manifest.views
                for index in priority
                if 0 <= index < manifest.slice_count(view)
            ]
            priority_result = await run_batches(
                priority_tasks, "Priority", batch_size, self._prefetch_item,
                self._config.batch_pause, still_active,
            )
            priority_set = set(priority)
            remaining_tasks = [
                PrefetchTask(view, index, url)
                for view, index, url in manifest.items()
                if index not in priority_set
            ]
            background_result = await run_batches(
                remaining_tasks, "Background", batch_size, self._prefetch_item,
                self._config.batch_pause, still_active,
            )
            report = PreloadReport(
                priority=priority_result,
                background=background_result,
                elapsed_s=time.monotonic() - start,
                cancelled=priority_result.cancelled or background_result.cancelled,
            )
            LOGGER.info(
                "Preloading finished in %.2fs: priority %d loaded/%d failed, "
                "background %d loaded/%d failed",
                report.elapsed_s,
                priority_result.completed,
                priority_result.failed,
                background_result.completed,
                background_result.failed,
            )
            return report
        finally:
            if self._preload_run == run_id:
                self._preloading = False
                self._preload_run = None

    async def restart(
        self, manifest: ImageManifest, priority_slices: Optional[Sequence[int]] = None
    ) -> Optional[PreloadReport]:
        """Abandon a stuck prefetch run and start a fresh one.

        Clears the running flag and the in-flight bookkeeping, pauses for
        ``restart_pause`` and preloads again with the given (or last used)
        priority slices.
        """
        LOGGER.info("Restarting preloading (was running: %s)", self._preloading)
        self._preloading = False
        self._preload_run = None
        self._in_flight.clear()
        if self._config.restart_pause > 0:
            await asyncio.sleep(self._config.restart_pause)
        if priority_slices is None:
            priority_slices = self._last_priority
        if priority_slices is None:
            priority_slices = self.priority_for(manifest)
        return await self.preload(manifest, priority_slices)

    def clear(self) -> None:
        """Release every asset and reset all tables and counters.

        Loads still running finish normally, but their results are not
        stored and do not touch the new blacklist.
        """
        released = 0
        for entry in self._entries.values():
            if entry.handle is not None:
                entry.handle.release()
                released += 1
        self._entries.clear()
        self._in_flight.clear()
        self._blacklist.clear()
        self._retry_delays.clear()
        self._counters.reset()
        self._generation += 1
        LOGGER.info("Cache cleared completely (%d assets released)", released)

    def clear_blacklist(self) -> int:
        """Forget failed URLs so they can be retried; keeps cached assets.

        Returns
        -------
        int
            Number of URLs removed from the blacklist.
        """
        count = len(self._blacklist)
        self._blacklist.clear()
        self._retry_delays.clear()
        LOGGER.info("Cleared %d failed URLs - they can now be retried", count)
        return count

    def stats(self) -> CacheStats:
        """Return a snapshot of cache counters."""
        c = self._counters
        lookups = c.hits + c.misses
        return CacheStats(
            hits=c.hits,
            misses=c.misses,
            preloaded=c.preloaded,
            failed=c.failed,
            cache_size=sum(1 for e in self._entries.values() if e.state is EntryState.READY),
            in_flight_count=len(self._in_flight),
            hit_rate=c.hits / lookups if lookups > 0 else 0.0,
        )

    def detailed_stats(self) -> Dict[str, Any]:
        """Return ``stats()`` plus failure and scheduling details."""
        details = asdict(self.stats())
        details.update(
            blacklisted=len(self._blacklist),
            retry_delays=len(self._retry_delays),
            active_fetches=self._active_fetches,
            preloading=self._preloading,
        )
        return details

    def failure_report(self) -> pd.DataFrame:
        """Return one row per key that is not ready, for diagnostics.

        Columns: view, slice, url, state, reason, attempts.
        """
        rows: List[Dict[str, Any]] = []
        for (view, index), entry in sorted(self._entries.items(), key=lambda kv: (kv[0][0].value, kv[0][1])):
            if entry.state is EntryState.READY:
                continue
            rows.append(
                {
                    "view": view.value,
                    "slice": index,
                    "url": entry.url,
                    "state": entry.state.value,
                    "reason": entry.reason.value if entry.reason is not None else None,
                    "attempts": entry.attempts,
                }
            )
        return pd.DataFrame(rows, columns=["view", "slice", "url", "state", "reason", "attempts"])

    async def _load(self, key: CacheKey, url: str, generation: int) -> AssetHandle:
        entry = self._entries.get(key)
        if entry is None or entry.url != url:
            entry = CacheEntry(key, url)
            self._entries[key] = entry
        entry.state = EntryState.LOADING
        entry.reason = None
        try:
            return await self._load_with_retries(entry, generation)
        finally:
            if entry.state is EntryState.LOADING:
                entry.state = EntryState.EMPTY

    async def _load_with_retries(self, entry: CacheEntry, generation: int) -> AssetHandle:
        view, index = entry.key
        url = entry.url
        policy = self._config.retry
        attempt = 0
        while True:
            attempt += 1
            try:
                handle = await self._attempt(url, policy.timeout_for(attempt))
            except TransientLoadError as exc:
                entry.attempts += 1
                LOGGER.warning(
                    "Failed to load slice %d (attempt %d/%d): %s",
                    index,
                    attempt,
                    policy.attempts,
                    exc,
                    extra={"view": view.value},
                )
                if attempt >= policy.attempts:
                    raise self._give_up(entry, generation, exc) from exc
                delay = policy.backoff_delay(attempt, self._rng)
                self._retry_delays[url] = delay
                LOGGER.info(
                    "Retrying slice %d in %.0fms (%d attempts left)",
                    index,
                    delay * 1000,
                    policy.attempts - attempt,
                    extra={"view": view.value},
                )
                await asyncio.sleep(delay)
                continue

            entry.attempts += 1
            if generation == self._generation:
                self._retry_delays.pop(url, None)
                entry.state = EntryState.READY
                entry.handle = handle
                LOGGER.info(
                    "Cached slice %d (%.1fKB)", index, handle.nbytes / 1024, extra={"view": view.value}
                )
            return handle

    def _give_up(self, entry: CacheEntry, generation: int, error: TransientLoadError) -> PermanentLoadError:
        view, index = entry.key
        if generation == self._generation:
            self._blacklist.add(entry.url)
            entry.state = EntryState.FAILED_PERMANENT
            entry.handle = None
            entry.reason = error.reason
            self._counters.failed += 1
        LOGGER.error("Permanently failed slice %d: %s", index, error, extra={"view": view.value})
        return PermanentLoadError(entry.url, cause=error.reason)

    async def _attempt(self, url: str, timeout: float) -> AssetHandle:
        async with self._slots():
            self._active_fetches += 1
            try:
                try:
                    fetch = asyncio.ensure_future(self._fetcher.fetch(url))
                except Exception as exc:
                    raise TransientLoadError(
                        url, FailureReason.HTTP_ERROR, f"Transport error: {exc!r}"
                    ) from exc
                done, _ = await asyncio.wait({fetch}, timeout=timeout)
                if fetch not in done:
                    fetch.add_done_callback(_discard_late_result)
                    raise TransientLoadError(
                        url, FailureReason.TIMEOUT, f"Request timeout after {timeout:.1f}s"
                    )
                try:
                    response = fetch.result()
                except asyncio.TimeoutError as exc:
                    raise TransientLoadError(url, FailureReason.TIMEOUT, "Request timeout") from exc
                except Exception as exc:
                    raise TransientLoadError(
                        url, FailureReason.HTTP_ERROR, f"Transport error: {exc!r}"
                    ) from exc
            finally:
                self._active_fetches -= 1
        if not response.ok:
            raise TransientLoadError(
                url, FailureReason.HTTP_ERROR, f"HTTP {response.status}", status=response.status
            )
        return decode_asset(response, url)

    async def _prefetch_item(self, task: PrefetchTask) -> ItemOutcome:
        if self.get_ready(task.view, task.slice_index) is not None:
            return "skipped"
        if task.url in self._blacklist:
            LOGGER.debug(
                "Skipping permanently failed slice %d", task.slice_index, extra={"view": task.view.value}
            )
            return "skipped"
        try:
            await self.request(task.view, task.slice_index, task.url)
        except AssetError as exc:
            LOGGER.warning(
                "Prefetch of slice %d failed: %s", task.slice_index, exc, extra={"view": task.view.value}
            )
            return "failed"
        self._counters.preloaded += 1
        return "completed"

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self._config.max_concurrent)
            self._semaphore_loop = loop
        return self._semaphore

    def _forget(self, key: CacheKey, task: "asyncio.Future[AssetHandle]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]


def _discard_late_result(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("Ignoring late failure after timeout: %r", exc)
