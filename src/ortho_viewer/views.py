"""View identifiers for the three co-registered image stacks.

Each view is an independent ordered stack of slices through the same volume.
Views are identified by stable symbolic names; legacy manifests use the
positional keys ``vp1``/``vp2``/``vp3`` which are accepted as aliases.
"""

from __future__ import annotations

from enum import Enum
from itertools import permutations
from typing import Iterable, Iterator, Tuple

__all__ = ["View", "ALL_VIEWS", "ViewPair", "ordered_pairs", "other_views"]


class View(str, Enum):
    """One of the orthogonal image stacks kept in sync."""

    AXIAL = "axial"
    SAGITTAL = "sagittal"
    CORONAL = "coronal"

    @classmethod
    def parse(cls, name: "str | View") -> "View":
        """Return the view for a symbolic name or legacy viewport key.

        Raises
        ------
        ValueError
            If ``name`` is not a known view name or alias.
        """
        if isinstance(name, View):
            return name
        key = str(name).strip().lower()
        alias = _ALIASES.get(key)
        if alias is not None:
            return alias
        return cls(key)

    def __str__(self) -> str:
        return self.value


_ALIASES = {
    "vp1": View.SAGITTAL,
    "vp2": View.AXIAL,
    "vp3": View.CORONAL,
}

ALL_VIEWS: Tuple[View, ...] = (View.AXIAL, View.SAGITTAL, View.CORONAL)

ViewPair = Tuple[View, View]


def ordered_pairs(views: Iterable[View] = ALL_VIEWS) -> Iterator[ViewPair]:
    """Yield every ordered pair of distinct views."""
    return permutations(tuple(views), 2)


def other_views(source: View, views: Iterable[View] = ALL_VIEWS) -> Tuple[View, ...]:
    """Return the sibling views of ``source`` in configured order."""
    return tuple(v for v in views if v is not source)
