import asyncio
import io
import os

import matplotlib
import numpy as np
import pytest
from PIL import Image

from ortho_viewer.assets import FetchResponse
from ortho_viewer.config import CacheConfig, RetryPolicy, load_coefficients, load_manifest
from ortho_viewer.views import ALL_VIEWS


def pytest_addoption(parser):
    parser.addoption(
        "--run-gui",
        action="store_true",
        default=False,
        help="Run interactive GUI tests (requires a display).",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "gui: GUI tests that require an interactive backend")


def pytest_collection_modifyitems(config, items):
    run_gui = config.getoption("--run-gui")
    selected_marker = config.getoption("-m")
    marker_includes_gui = selected_marker and "gui" in selected_marker

    if run_gui or marker_includes_gui:
        return

    skip_gui = pytest.mark.skip(reason="Use --run-gui or -m gui to run GUI tests.")
    for item in items:
        if "gui" in item.keywords:
            item.add_marker(skip_gui)


# Safe backend for headless CI
if "CI" in os.environ:
    os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use(os.environ.get("MPLBACKEND", "Agg"), force=True)


SLICES = 21

COEFFICIENTS = {
    "axial_to_sagittal": {"a": -11.68, "b": 19.22, "c": -4.08},
    "coronal_to_sagittal": {"a": -1.26, "b": 25.88, "c": 3.01},
    "sagittal_to_axial": {"a": -30.71, "b": -0.67, "c": -26.41},
    "coronal_to_axial": {"a": -34.74, "b": 0.00, "c": -29.48},
    "sagittal_to_coronal": {"a": 0.00, "b": 24.29, "c": 1.71},
    "axial_to_coronal": {"a": -25.50, "b": -13.81, "c": -30.49},
}

HANG = "hang"


def slice_url(view, index):
    return f"https://images.test/{view.value}/{index:02d}.png"


def png_payload(width=8, height=6, value=128):
    buf = io.BytesIO()
    Image.fromarray(np.full((height, width), value, dtype=np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


class FakeFetcher:
    """Scripted transport that records calls and peak concurrency.

    Each URL can be given a queue of outcomes: a ``FetchResponse``, an
    exception instance to raise, or ``HANG`` to never complete. Unscripted
    calls return a small PNG.
    """

    def __init__(self, body=None, delay=0.0, content_type="image/png"):
        self.body = body if body is not None else png_payload()
        self.delay = delay
        self.content_type = content_type
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._scripts = {}
        self._always = {}

    def script(self, url, *outcomes):
        self._scripts.setdefault(url, []).extend(outcomes)

    def fail_always(self, url, status=500):
        self._always[url] = status

    def heal(self, url):
        self._always.pop(url, None)
        self._scripts.pop(url, None)

    def count(self, url):
        return self.calls.count(url)

    async def fetch(self, url):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self._scripts.get(url)
            outcome = queue.pop(0) if queue else None
            if url in self._always:
                outcome = FetchResponse(self._always[url], "text/html", b"")
            if outcome == HANG:
                await asyncio.sleep(3600)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, FetchResponse):
                return outcome
            return FetchResponse(200, self.content_type, self.body)
        finally:
            self.active -= 1


def fast_retry(retries=2, timeout=1.0):
    return RetryPolicy(retries=retries, attempt_timeouts=(timeout,), base_delay=0.0, jitter=0.0, max_delay=0.0)


def fast_cache_config(max_concurrent=3, retries=2, timeout=1.0, priority_radius=2):
    return CacheConfig(
        max_concurrent=max_concurrent,
        priority_radius=priority_radius,
        retry=fast_retry(retries, timeout),
        batch_pauses=(),
        base_batch_pause=0.0,
        restart_pause=0.0,
    )


@pytest.fixture
def coefficient_document():
    return {"shoulder_correlations": {"coefficients": {k: dict(v) for k, v in COEFFICIENTS.items()}}}


@pytest.fixture
def coefficients(coefficient_document):
    return load_coefficients(coefficient_document)


@pytest.fixture
def manifest_document():
    return {"mri_images": {view.value: [slice_url(view, i) for i in range(SLICES)] for view in ALL_VIEWS}}


@pytest.fixture
def manifest(manifest_document):
    return load_manifest(manifest_document)


@pytest.fixture
def png_bytes():
    return png_payload()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def cache_config():
    return fast_cache_config()
