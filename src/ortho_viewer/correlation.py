"""Cross-view slice correlation.

A click at normalized ``(x, y)`` in a source view selects a slice in each
sibling view through a per-pair affine formula::

    slice = a * y + b * x - c

rounded to the nearest integer (halves up) and clamped to the target view's
slice range. The engine is pure: identical inputs always give identical
results and nothing is cached between calls.
"""

from __future__ import annotations

import math
from types import MappingProxyType
from typing import Mapping

from ortho_viewer.config import CoefficientTable
from ortho_viewer.errors import ConfigError
from ortho_viewer.logger import get_logger
from ortho_viewer.views import View

__all__ = ["CorrelationEngine"]

LOGGER = get_logger(__name__)


class CorrelationEngine:
    """Map a normalized click in one view to slice indices in the others.

    Parameters
    ----------
    coefficients : CoefficientTable
        Affine coefficients for every ordered pair of distinct views.
    slice_counts : mapping of View to int
        Number of slices per view; fixes the clamp range of each target.

    Raises
    ------
    ConfigError
        If a slice count is not positive or the table misses any pair over
        the configured views.
    """

    def __init__(self, coefficients: CoefficientTable, slice_counts: Mapping[View, int]) -> None:
        bad = [f"{v.value}={n}" for v, n in slice_counts.items() if int(n) < 1]
        if bad:
            raise ConfigError("Slice counts must be positive", bad)
        self._counts: Mapping[View, int] = MappingProxyType({v: int(n) for v, n in slice_counts.items()})
        coefficients.validate(tuple(self._counts))
        self._table = coefficients

    @property
    def slice_counts(self) -> Mapping[View, int]:
        return self._counts

    def raw(self, source: View, target: View, x: float, y: float) -> float:
        """Return the unrounded, unclamped affine value for a click."""
        if source is target:
            raise ConfigError(f"Cannot correlate {source.value} with itself")
        coeff = self._table.entry(source, target)
        return coeff.a * y + coeff.b * x - coeff.c

    def compute(self, source: View, target: View, x: float, y: float) -> int:
        """Return the target slice index for a normalized click in ``source``.

        Parameters
        ----------
        source, target : View
            Clicked view and view to update; must differ.
        x, y : float
            Normalized click position, y=0 at the bottom of the image.

        Returns
        -------
        int
            Slice index in ``[0, slice_count(target) - 1]``.
        """
        count = self._counts.get(target)
        if count is None:
            raise ConfigError(f"No slice count configured for {target.value}")
        raw = self.raw(source, target, x, y)
        rounded = math.floor(raw + 0.5)
        clamped = max(0, min(count - 1, rounded))
        LOGGER.debug(
            "%s->%s: x=%.3f y=%.3f raw=%.3f rounded=%d clamped=%d",
            source.value,
            target.value,
            x,
            y,
            raw,
            rounded,
            clamped,
            extra={"view": target.value},
        )
        return clamped
