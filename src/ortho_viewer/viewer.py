"""Matplotlib renderer for the three synchronized views.

The figure holds one axes per view. Images are drawn with a top-left origin
(``extent=(0, w, h, 0)``) so event data coordinates are already rendered
pixel coordinates and can be passed to the view state unchanged.

Controls
--------
- Left click: move the other views to the correlated slices.
- Mouse wheel: step the view under the cursor.
- Arrow keys over a view: Up/Left go back one slice, Down/Right forward.

The asyncio loop owned by the session is pumped from a matplotlib timer, so
loads and GUI events share one thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, Optional, Set, Union

import matplotlib.pyplot as plt
import numpy as np

from ortho_viewer.assets import AssetHandle
from ortho_viewer.config import DEFAULT_CONFIG, AppConfig
from ortho_viewer.errors import AssetError
from ortho_viewer.logger import get_logger
from ortho_viewer.session import ViewerSession
from ortho_viewer.view_sync import SliceUpdate
from ortho_viewer.views import View

__all__ = ["OrthoSliceViewer", "run_viewer"]

LOGGER = get_logger(__name__)

_KEY_STEPS = {"up": -1, "left": -1, "down": 1, "right": 1}


class OrthoSliceViewer:
    """Axial/sagittal/coronal viewer with click, wheel and key navigation."""

    def __init__(self, session: ViewerSession, pump_interval_ms: int = 20) -> None:
        self.session = session
        self.views = session.state.views
        self.fig, axes = plt.subplots(1, len(self.views), figsize=(4 * len(self.views), 4), squeeze=False)
        self.axes: Dict[View, object] = dict(zip(self.views, axes[0]))
        self._view_of = {id(ax): view for view, ax in self.axes.items()}
        self._images: Dict[View, object] = {}
        self._markers: Dict[View, object] = {}
        self._failed: Set[View] = set()
        self._tasks: Set["asyncio.Future"] = set()
        for view, ax in self.axes.items():
            ax.set_axis_off()
            (marker,) = ax.plot([], [], "+", color="yellow", ms=12, mew=1.5)
            self._markers[view] = marker
            self._update_title(view)

        session.add_asset_listener(self.show_asset)
        session.add_failure_listener(self.show_failure)
        self._subscription = session.state.subscribe(self._on_slice_update)
        self.fig.canvas.mpl_connect("button_press_event", self._on_click)
        self.fig.canvas.mpl_connect("scroll_event", self._on_scroll)
        self.fig.canvas.mpl_connect("key_press_event", self._on_key)

        self._timer = None
        if session.loop is not None:
            self._timer = self.fig.canvas.new_timer(interval=pump_interval_ms)
            self._timer.add_callback(self._pump)

    def start(self) -> None:
        """Load the initial slices, begin prefetching and start the pump."""
        loop = self.session.loop
        if loop is None:
            raise RuntimeError("Session has no event loop to run loads on")
        task = asyncio.ensure_future(self.session.refresh(), loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.session.start_prefetch()
        if self._timer is not None:
            self._timer.start()

    def close(self) -> None:
        if self._timer is not None:
            self._timer.stop()
        self._subscription.unsubscribe()
        plt.close(self.fig)

    def show_asset(self, view: View, slice_index: int, handle: AssetHandle) -> None:
        """Draw a loaded slice and clear the failure indicator."""
        if handle.pixels is None:
            return
        self._failed.discard(view)
        self._images[view] = _update_or_create(self.axes[view], self._images.get(view), handle.pixels)
        self._update_title(view)
        self.fig.canvas.draw_idle()

    def show_failure(self, view: View, slice_index: int, error: AssetError) -> None:
        """Mark a view as unavailable; its last good image stays drawn."""
        self._failed.add(view)
        self._update_title(view)
        self.fig.canvas.draw_idle()

    def image_size(self, view: View) -> Optional[tuple]:
        """Return ``(width, height)`` of the image drawn in ``view``."""
        artist = self._images.get(view)
        if artist is None:
            return None
        data = np.asarray(artist.get_array())
        return data.shape[1], data.shape[0]

    def _on_slice_update(self, update: SliceUpdate) -> None:
        self._update_title(update.view)
        self.fig.canvas.draw_idle()

    def _on_click(self, event) -> None:
        if event.button != 1 or event.xdata is None or event.ydata is None:
            return
        view = self._view_at(event)
        if view is None:
            return
        size = self.image_size(view)
        if size is None:
            LOGGER.debug("Ignoring click before first image", extra={"view": view.value})
            return
        width, height = size
        self._markers[view].set_data([event.xdata], [event.ydata])
        for other in self.views:
            if other is not view:
                self._markers[other].set_data([], [])
        self.session.state.handle_interaction_click(view, event.xdata, event.ydata, width, height)
        self.fig.canvas.draw_idle()

    def _on_scroll(self, event) -> None:
        view = self._view_at(event)
        if view is None:
            return
        self.session.state.handle_step(view, 1 if event.button == "down" else -1)

    def _on_key(self, event) -> None:
        direction = _KEY_STEPS.get(event.key)
        view = self._view_at(event)
        if direction is None or view is None:
            return
        self.session.state.handle_step(view, direction)

    def _view_at(self, event) -> Optional[View]:
        if event.inaxes is None:
            return None
        return self._view_of.get(id(event.inaxes))

    def _update_title(self, view: View) -> None:
        state = self.session.state
        title = f"{view.value.capitalize()}  {state.get_slice(view) + 1}/{state.slice_count(view)}"
        if view in self._failed:
            title += " (unavailable)"
        self.axes[view].set_title(title)

    def _pump(self) -> None:
        loop = self.session.loop
        if loop is None or loop.is_running() or loop.is_closed():
            return
        loop.call_soon(loop.stop)
        loop.run_forever()


def _update_or_create(ax, artist, data: np.ndarray):
    cmap = "gray" if data.ndim == 2 else None
    if artist is None:
        return ax.imshow(data, cmap=cmap, extent=(0, data.shape[1], data.shape[0], 0))
    artist.set_data(data)
    artist.set_extent((0, data.shape[1], data.shape[0], 0))
    artist.autoscale()
    return artist


def run_viewer(
    coefficients_path: Union[str, Path],
    manifest_path: Union[str, Path],
    config: AppConfig = DEFAULT_CONFIG,
) -> None:
    """Open the viewer for a coefficient file and an image manifest."""
    loop = asyncio.new_event_loop()
    session = ViewerSession.from_files(coefficients_path, manifest_path, config=config, loop=loop)
    viewer = OrthoSliceViewer(session)
    try:
        viewer.start()
        plt.show()
    finally:
        viewer.close()
        session.close()
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
