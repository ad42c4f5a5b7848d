"""Current-slice state for all views with synchronous change notification.

``ViewSyncState`` is the single writer of every view's current slice. Writes
are clamped into range, never rejected, and only real changes are published.

Notes
-----
Dispatch is synchronous and ordered by subscription time. It is not guarded
against re-entrancy: a subscriber that calls ``set_slice`` from inside its
callback recurses within the same call stack, and the outer dispatch then
continues with the remaining subscribers.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple

from ortho_viewer.coordinates import XTransform, identity_x, normalize_click
from ortho_viewer.correlation import CorrelationEngine
from ortho_viewer.logger import get_logger
from ortho_viewer.views import View, other_views

__all__ = ["SliceUpdate", "Subscription", "SliceCallback", "ViewSyncState"]

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class SliceUpdate:
    """Notification payload for a slice change.

    Attributes
    ----------
    view : View
        View whose slice changed.
    slice_index : int
        New (clamped) slice index of ``view``.
    snapshot : mapping of View to int
        Read-only current slice of every view after the change.
    """

    view: View
    slice_index: int
    snapshot: Mapping[View, int]


SliceCallback = Callable[[SliceUpdate], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``ViewSyncState.subscribe``."""

    id: int
    owner: "ViewSyncState"

    def unsubscribe(self) -> bool:
        return self.owner.unsubscribe(self)


class ViewSyncState:
    """Owns current slice indices and keeps sibling views correlated.

    Parameters
    ----------
    engine : CorrelationEngine
        Correlation used on interaction clicks; its slice counts define the
        views and their ranges.
    start_slices : mapping of View to int, optional
        Initial slices (clamped). Views not listed start at their center.
    x_transform : callable, optional
        ``(source, target, x) -> x`` applied before correlation, e.g. the
        left-side mirror.
    """

    def __init__(
        self,
        engine: CorrelationEngine,
        start_slices: Optional[Mapping[View, int]] = None,
        x_transform: Optional[XTransform] = None,
    ) -> None:
        self._engine = engine
        self._counts: Dict[View, int] = dict(engine.slice_counts)
        self._current: Dict[View, int] = {view: count // 2 for view, count in self._counts.items()}
        for view, index in (start_slices or {}).items():
            if view in self._current:
                self._current[view] = self._clamp(view, index)
        self._x_transform = x_transform or identity_x
        self._subscribers: Dict[int, SliceCallback] = {}
        self._ids = itertools.count(1)
        LOGGER.info("View state initialized with slices: %s", self._describe())

    @property
    def views(self) -> Tuple[View, ...]:
        return tuple(self._counts)

    def get_slice(self, view: View) -> int:
        """Return the current slice of ``view``."""
        return self._current[view]

    def slice_count(self, view: View) -> int:
        return self._counts[view]

    def snapshot(self) -> Mapping[View, int]:
        """Return a read-only copy of every view's current slice."""
        return MappingProxyType(dict(self._current))

    def set_slice(self, view: View, index: int, suppress_notify: bool = False) -> int:
        """Clamp and store a slice index, notifying subscribers on change.

        Returns
        -------
        int
            The slice stored for ``view`` after the call.
        """
        clamped = self._clamp(view, index)
        if self._current[view] == clamped:
            return clamped
        self._current[view] = clamped
        LOGGER.info("Set %s slice to %d", view.value, clamped, extra={"view": view.value})
        if not suppress_notify:
            self._dispatch(SliceUpdate(view, clamped, self.snapshot()))
        return clamped

    def handle_interaction_click(
        self,
        source: View,
        raw_x: float,
        raw_y: float,
        rendered_width: float,
        rendered_height: float,
    ) -> Dict[View, int]:
        """Move every sibling view to the slice correlated with a click.

        The click is normalized with a Y-flip (y=0 at the bottom). All
        notifications for the sibling views are delivered before returning.

        Returns
        -------
        dict of View to int
            New slice of each sibling view.
        """
        x, y = normalize_click(raw_x, raw_y, rendered_width, rendered_height)
        LOGGER.info(
            "Click at (%.1f, %.1f) -> normalized x=%.3f y=%.3f",
            raw_x,
            raw_y,
            x,
            y,
            extra={"view": source.value},
        )
        results: Dict[View, int] = {}
        for target in other_views(source, self.views):
            target_x = self._x_transform(source, target, x)
            index = self._engine.compute(source, target, target_x, y)
            results[target] = self.set_slice(target, index)
        return results

    def handle_step(self, view: View, direction: int) -> int:
        """Step one slice forward (+1) or backward (-1) in ``view`` only."""
        if direction not in (-1, 1):
            raise ValueError(f"direction must be -1 or +1, got {direction!r}")
        return self.set_slice(view, self._current[view] + direction)

    def handle_scroll(self, view: View, delta: float) -> int:
        """Step ``view`` by the sign of a wheel delta; zero is a no-op."""
        if delta == 0:
            return self._current[view]
        return self.handle_step(view, 1 if delta > 0 else -1)

    def subscribe(self, callback: SliceCallback) -> Subscription:
        """Register a callback for slice changes; returns its handle."""
        sub_id = next(self._ids)
        self._subscribers[sub_id] = callback
        return Subscription(sub_id, self)

    def unsubscribe(self, handle: Subscription) -> bool:
        """Remove a subscription; returns False if it was already removed."""
        if handle.owner is not self:
            return False
        return self._subscribers.pop(handle.id, None) is not None

    def _dispatch(self, update: SliceUpdate) -> None:
        for sub_id, callback in list(self._subscribers.items()):
            try:
                callback(update)
            except Exception:
                LOGGER.exception(
                    "Subscriber %d failed for %s slice %d",
                    sub_id,
                    update.view.value,
                    update.slice_index,
                    extra={"view": update.view.value},
                )

    def _clamp(self, view: View, index: int) -> int:
        return max(0, min(self._counts[view] - 1, int(index)))

    def _describe(self) -> str:
        return ", ".join(f"{view.value}={index}" for view, index in self._current.items())
