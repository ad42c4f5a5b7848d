"""Loaded slice images and payload decoding.

An ``AssetHandle`` is the opaque result of a successful load: the decoded
pixel array plus the metadata needed for diagnostics. The cache owns every
handle until it is released by ``ResilientAssetCache.clear``.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional

import numpy as np
import tifffile as tif
from PIL import Image

from ortho_viewer.errors import FailureReason, TransientLoadError

__all__ = ["FetchResponse", "AssetHandle", "decode_asset"]

_TIFF_TYPES = ("image/tiff", "image/tif", "image/x-tiff")


@dataclass(frozen=True)
class FetchResponse:
    """Raw transport result for one GET."""

    status: int
    content_type: str
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(eq=False)
class AssetHandle:
    """Decoded slice image owned by the cache.

    Attributes
    ----------
    url : str
        Source URL.
    content_type : str
        Media type reported by the server.
    nbytes : int
        Size of the encoded payload.
    pixels : numpy.ndarray or None
        Decoded image as (Y, X) or (Y, X, C); ``None`` once released.
    """

    url: str
    content_type: str
    nbytes: int
    pixels: Optional[np.ndarray]

    @property
    def released(self) -> bool:
        return self.pixels is None

    @property
    def shape(self) -> tuple:
        return () if self.pixels is None else tuple(self.pixels.shape)

    def release(self) -> None:
        """Drop the pixel buffer so its memory can be reclaimed."""
        self.pixels = None


def decode_asset(response: FetchResponse, url: str) -> AssetHandle:
    """Validate an image response and decode it into an asset handle.

    Raises
    ------
    TransientLoadError
        With ``INVALID_CONTENT_TYPE`` if the media type is not ``image/*`` or
        the payload cannot be decoded as an image.
    """
    content_type = (response.content_type or "").split(";", 1)[0].strip().lower()
    if not content_type.startswith("image/"):
        raise TransientLoadError(
            url,
            FailureReason.INVALID_CONTENT_TYPE,
            f"Invalid content type: {content_type or 'missing'}",
        )
    try:
        if content_type in _TIFF_TYPES:
            pixels = np.asarray(tif.imread(io.BytesIO(response.body)))
        else:
            with Image.open(io.BytesIO(response.body)) as img:
                img.load()
                pixels = np.asarray(img)
    except Exception as exc:
        raise TransientLoadError(
            url,
            FailureReason.INVALID_CONTENT_TYPE,
            f"Cannot decode {content_type} payload: {exc}",
        ) from exc
    return AssetHandle(url=url, content_type=content_type, nbytes=len(response.body), pixels=pixels)
