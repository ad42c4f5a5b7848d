"""Viewer session: one explicitly constructed context per viewer instance.

The session owns the correlation engine, the view state and the asset cache
for a single coefficient table and manifest. It subscribes to slice changes
and asks the cache for the newly selected slice, then hands the result to
renderer callbacks. Several sessions can live side by side; nothing is
shared through module globals.

Stale results
-------------
Loads finish out of order. Every load is tagged with a per-view token and
its result is applied only if the token is still the latest for that view
and the view still shows the same slice; anything else is discarded.
"""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

from ortho_viewer.asset_cache import ResilientAssetCache
from ortho_viewer.assets import AssetHandle
from ortho_viewer.config import (
    DEFAULT_CONFIG,
    AppConfig,
    CoefficientTable,
    ImageManifest,
    load_coefficients,
    load_manifest,
)
from ortho_viewer.coordinates import side_mirror
from ortho_viewer.correlation import CorrelationEngine
from ortho_viewer.errors import AssetError
from ortho_viewer.fetch import Fetcher
from ortho_viewer.logger import get_logger
from ortho_viewer.prefetch import PreloadReport
from ortho_viewer.view_sync import SliceUpdate, ViewSyncState
from ortho_viewer.views import View

__all__ = ["ViewerSession", "AssetListener", "FailureListener"]

LOGGER = get_logger(__name__)

AssetListener = Callable[[View, int, AssetHandle], None]
FailureListener = Callable[[View, int, AssetError], None]


class ViewerSession:
    """Engine, view state and asset cache wired together for one viewer.

    Parameters
    ----------
    coefficients : CoefficientTable
        Validated correlation coefficients.
    manifest : ImageManifest
        Validated per-view URL lists; fixes each view's slice count.
    config : AppConfig
        Session settings (cache tuning, region, side, start slices).
    fetcher : Fetcher, optional
        Transport for the cache; defaults to HTTP.
    loop : asyncio.AbstractEventLoop, optional
        Loop on which slice loads are scheduled when no loop is running in
        the calling thread (e.g. GUI callbacks that pump the loop).

    Raises
    ------
    ConfigError
        If the coefficients do not cover every ordered pair of the
        manifest's views.
    """

    def __init__(
        self,
        coefficients: CoefficientTable,
        manifest: ImageManifest,
        config: AppConfig = DEFAULT_CONFIG,
        fetcher: Optional[Fetcher] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        manifest.validate(manifest.views)
        self.config = config
        self.manifest = manifest
        self.engine = CorrelationEngine(coefficients, manifest.slice_counts())
        self.state = ViewSyncState(
            self.engine,
            start_slices=config.start_slices,
            x_transform=side_mirror(config.side, config.mirrored_targets),
        )
        self.cache = ResilientAssetCache(fetcher=fetcher, config=config.cache)
        self._loop = loop
        self._displayed: Dict[View, AssetHandle] = {}
        self._tokens = itertools.count(1)
        self._latest: Dict[View, int] = {}
        self._pending: Set[View] = set()
        self._tasks: Set["asyncio.Future[None]"] = set()
        self._asset_listeners: List[AssetListener] = []
        self._failure_listeners: List[FailureListener] = []
        self._subscription = self.state.subscribe(self._on_slice_update)

    @classmethod
    def from_files(
        cls,
        coefficients_path: Union[str, Path],
        manifest_path: Union[str, Path],
        config: AppConfig = DEFAULT_CONFIG,
        fetcher: Optional[Fetcher] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> "ViewerSession":
        """Load and validate both JSON documents and build a session."""
        manifest = load_manifest(manifest_path)
        coefficients = load_coefficients(coefficients_path, manifest.views, region=config.region)
        return cls(coefficients, manifest, config=config, fetcher=fetcher, loop=loop)

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def add_asset_listener(self, listener: AssetListener) -> None:
        self._asset_listeners.append(listener)

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def displayed(self, view: View) -> Optional[AssetHandle]:
        """Return the last asset successfully shown for ``view``."""
        return self._displayed.get(view)

    @property
    def pending_views(self) -> Set[View]:
        """Views whose current slice has not been requested yet."""
        return set(self._pending)

    def priority_slices(self) -> List[int]:
        """Center-first prefetch order for the largest view."""
        return self.cache.priority_for(self.manifest)

    async def load_view(self, view: View) -> Optional[AssetHandle]:
        """Load and display the current slice of ``view``.

        Returns the handle, or ``None`` if the load failed or was superseded
        by a newer slice change; failures are reported to failure listeners.
        """
        self._pending.discard(view)
        slice_index = self.state.get_slice(view)
        token = next(self._tokens)
        self._latest[view] = token
        url = self.manifest.url(view, slice_index)
        try:
            handle = await self.cache.request(view, slice_index, url)
        except AssetError as exc:
            if self._is_current(view, token, slice_index):
                LOGGER.warning(
                    "Keeping previous image; slice %d unavailable: %s",
                    slice_index,
                    exc,
                    extra={"view": view.value},
                )
                self._notify_failure(view, slice_index, exc)
            return None
        if not self._is_current(view, token, slice_index):
            LOGGER.debug("Discarding stale slice %d", slice_index, extra={"view": view.value})
            return None
        self._displayed[view] = handle
        self._notify_asset(view, slice_index, handle)
        return handle

    async def refresh(self) -> Dict[View, Optional[AssetHandle]]:
        """Load the current slice of every view concurrently."""
        views = self.state.views
        handles = await asyncio.gather(*(self.load_view(view) for view in views))
        return dict(zip(views, handles))

    async def prefetch(self, priority: Optional[Sequence[int]] = None) -> Optional[PreloadReport]:
        return await self.cache.preload(self.manifest, priority if priority is not None else self.priority_slices())

    async def restart_prefetch(self) -> Optional[PreloadReport]:
        return await self.cache.restart(self.manifest, self.priority_slices())

    def start_prefetch(self) -> "asyncio.Future[Optional[PreloadReport]]":
        """Schedule a background prefetch on the session loop."""
        return self._schedule(self.prefetch())

    def close(self) -> None:
        """Detach from view state and release every cached asset."""
        self._subscription.unsubscribe()
        self._displayed.clear()
        self._pending.clear()
        self.cache.clear()

    def _on_slice_update(self, update: SliceUpdate) -> None:
        if self._target_loop() is None:
            self._pending.add(update.view)
            return
        self._schedule(self.load_view(update.view))

    def _is_current(self, view: View, token: int, slice_index: int) -> bool:
        return self._latest.get(view) == token and self.state.get_slice(view) == slice_index

    def _schedule(self, coro) -> "asyncio.Future":
        loop = self._target_loop()
        if loop is None:
            coro.close()
            raise RuntimeError("No event loop available to schedule work on")
        task = asyncio.ensure_future(coro, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _target_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return self._loop

    def _notify_asset(self, view: View, slice_index: int, handle: AssetHandle) -> None:
        for listener in list(self._asset_listeners):
            try:
                listener(view, slice_index, handle)
            except Exception:
                LOGGER.exception("Asset listener failed", extra={"view": view.value})

    def _notify_failure(self, view: View, slice_index: int, error: AssetError) -> None:
        for listener in list(self._failure_listeners):
            try:
                listener(view, slice_index, error)
            except Exception:
                LOGGER.exception("Failure listener failed", extra={"view": view.value})
