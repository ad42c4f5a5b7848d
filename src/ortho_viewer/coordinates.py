"""Click coordinate normalization and optional x transforms.

Conventions
-----------
- Raw click coordinates are in rendered-image pixels, origin top-left.
- Normalized coordinates are in [0, 1] with y flipped so that y=0 is the
  bottom of the image.
- An x transform is applied per (source, target) pair after normalization
  and before correlation; the engine itself never mirrors.
"""

from __future__ import annotations

from typing import Callable, Iterable, Tuple

from ortho_viewer.views import View

__all__ = ["XTransform", "normalize_click", "identity_x", "side_mirror"]

XTransform = Callable[[View, View, float], float]


def normalize_click(
    raw_x: float, raw_y: float, rendered_width: float, rendered_height: float
) -> Tuple[float, float]:
    """Convert a click in rendered pixels to normalized, Y-flipped coordinates.

    Parameters
    ----------
    raw_x, raw_y : float
        Click position relative to the rendered image, origin top-left.
    rendered_width, rendered_height : float
        Size of the rendered image surface.

    Returns
    -------
    x, y : tuple[float, float]
        ``x = raw_x / width`` and ``y = (height - raw_y) / height``, clamped
        to [0, 1].

    Raises
    ------
    ValueError
        If either rendered dimension is not positive.
    """
    if rendered_width <= 0 or rendered_height <= 0:
        raise ValueError(f"Rendered size must be positive, got {rendered_width}x{rendered_height}")
    x = raw_x / rendered_width
    y = (rendered_height - raw_y) / rendered_height
    return _unit(x), _unit(y)


def identity_x(_source: View, _target: View, x: float) -> float:
    return x


def side_mirror(side: str, mirrored_targets: Iterable[View]) -> XTransform:
    """Return an x transform for the imaged side.

    On the left side, ``x`` becomes ``1 - x`` for every target view in
    ``mirrored_targets``; on the right side the transform is the identity.
    """
    if side == "right":
        return identity_x
    if side != "left":
        raise ValueError(f"side must be 'right' or 'left', got {side!r}")
    targets = frozenset(mirrored_targets)

    def _mirror(_source: View, target: View, x: float) -> float:
        return 1.0 - x if target in targets else x

    return _mirror


def _unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
