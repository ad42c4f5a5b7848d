"""Transport used by the asset cache.

The cache only depends on the ``Fetcher`` protocol: an awaitable GET that
returns status, media type and body. ``HttpFetcher`` is the default; it runs
the blocking request in a worker thread so the event loop keeps serving
other loads. Non-2xx responses are returned, not raised, so the cache can
classify them; transport failures raise ``OSError``.
"""

from __future__ import annotations

import asyncio
import urllib.error
import urllib.request
from typing import Dict, Optional, Protocol

from ortho_viewer.assets import FetchResponse

__all__ = ["Fetcher", "HttpFetcher"]


class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchResponse:
        ...


class HttpFetcher:
    """GET slice images over HTTP(S) or from ``file://`` URLs.

    Parameters
    ----------
    headers : dict, optional
        Extra request headers. None are sent by default.
    max_wait : float
        Socket timeout for the underlying request; the cache applies its own,
        shorter per-attempt timeouts on top of this.
    """

    def __init__(self, headers: Optional[Dict[str, str]] = None, max_wait: float = 60.0) -> None:
        self._headers = dict(headers or {})
        self._max_wait = float(max_wait)

    async def fetch(self, url: str) -> FetchResponse:
        return await asyncio.to_thread(self._get, url)

    def _get(self, url: str) -> FetchResponse:
        request = urllib.request.Request(url, headers=self._headers, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self._max_wait) as resp:
                status = getattr(resp, "status", None) or resp.getcode() or 200
                return FetchResponse(
                    status=int(status),
                    content_type=resp.headers.get_content_type() if resp.headers else "",
                    body=resp.read(),
                )
        except urllib.error.HTTPError as exc:
            return FetchResponse(status=int(exc.code), content_type="", body=b"")
