"""Unit tests for the resilient asset cache."""

import asyncio
import http.client
import random

import pytest

from conftest import HANG, FakeFetcher, fast_cache_config, slice_url
from ortho_viewer.asset_cache import EntryState, ResilientAssetCache
from ortho_viewer.assets import FetchResponse
from ortho_viewer.errors import FailureReason, PermanentLoadError
from ortho_viewer.views import View

URL = slice_url(View.AXIAL, 10)


def _cache(fetcher, **kwargs):
    return ResilientAssetCache(fetcher=fetcher, config=fast_cache_config(**kwargs), rng=random.Random(0))


class TestRequest:
    """Test hits, misses and deduplication."""

    def test_hit_returns_same_handle(self, fetcher):
        """Test repeated requests for a ready key reuse the handle."""
        cache = _cache(fetcher)

        async def scenario():
            first = await cache.request(View.AXIAL, 10, URL)
            second = await cache.request(View.AXIAL, 10, URL)
            third = await cache.request(View.AXIAL, 10, URL)
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert first is second is third
        assert fetcher.count(URL) == 1
        stats = cache.stats()
        assert stats.misses == 1
        assert stats.hits == 2
        assert stats.cache_size == 1
        assert cache.state_of(View.AXIAL, 10) is EntryState.READY

    def test_concurrent_requests_share_one_load(self):
        """Test N concurrent requests for one key make one network call."""
        fetcher = FakeFetcher(delay=0.02)
        cache = _cache(fetcher)

        async def scenario():
            return await asyncio.gather(*(cache.request(View.AXIAL, 10, URL) for _ in range(8)))

        handles = asyncio.run(scenario())
        assert fetcher.count(URL) == 1
        assert all(h is handles[0] for h in handles)
        assert cache.stats().misses == 1

    def test_in_flight_visible(self):
        """Test a running load shows up as in flight."""
        fetcher = FakeFetcher(delay=0.02)
        cache = _cache(fetcher)

        async def scenario():
            task = asyncio.ensure_future(cache.request(View.AXIAL, 10, URL))
            for _ in range(3):
                await asyncio.sleep(0)
            during = (cache.stats().in_flight_count, cache.state_of(View.AXIAL, 10))
            await task
            return during

        during = asyncio.run(scenario())
        assert during == (1, EntryState.LOADING)
        assert cache.stats().in_flight_count == 0

    def test_concurrency_bound(self):
        """Test simultaneous network attempts never exceed the cap."""
        fetcher = FakeFetcher(delay=0.01)
        cache = _cache(fetcher, max_concurrent=3)

        async def scenario():
            await asyncio.gather(
                *(cache.request(View.SAGITTAL, i, slice_url(View.SAGITTAL, i)) for i in range(12))
            )

        asyncio.run(scenario())
        assert len(fetcher.calls) == 12
        assert fetcher.max_active <= 3
        assert cache.active_fetches == 0


class TestRetryAndBlacklist:
    """Test bounded retries and the permanent failure list."""

    def test_transient_failures_retried(self, fetcher):
        """Test a load succeeds after two failed attempts."""
        fetcher.script(URL, FetchResponse(500, "text/html", b""), FetchResponse(503, "text/html", b""))
        cache = _cache(fetcher)
        handle = asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert handle.shape == (6, 8)
        assert fetcher.count(URL) == 3
        assert cache.retry_delay(URL) is None
        assert not cache.is_blacklisted(URL)

    def test_exhausted_retries_blacklist(self, fetcher):
        """Test a URL is blacklisted after 1 + retries failed attempts."""
        fetcher.fail_always(URL, status=404)
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.reason is FailureReason.PERMANENTLY_BLACKLISTED
        assert info.value.cause is FailureReason.HTTP_ERROR
        assert fetcher.count(URL) == 3
        assert cache.is_blacklisted(URL)
        assert cache.state_of(View.AXIAL, 10) is EntryState.FAILED_PERMANENT
        assert cache.retry_delay(URL) == 0.0
        assert cache.stats().failed == 1

    def test_blacklisted_url_fails_without_network(self, fetcher):
        """Test a blacklisted URL is rejected without a new attempt."""
        fetcher.fail_always(URL)
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError):
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.HTTP_ERROR
        assert fetcher.count(URL) == 3

    def test_clear_blacklist_allows_retry(self, fetcher):
        """Test clearing the blacklist lets the next request hit the network."""
        fetcher.fail_always(URL)
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError):
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        ready = asyncio.run(cache.request(View.CORONAL, 1, slice_url(View.CORONAL, 1)))

        fetcher.heal(URL)
        assert cache.clear_blacklist() == 1
        assert not cache.is_blacklisted(URL)
        assert cache.get_ready(View.CORONAL, 1) is ready
        handle = asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert handle is not None
        assert fetcher.count(URL) == 4

    def test_timeout_then_success(self):
        """Test a hung attempt times out and the retry succeeds."""
        fetcher = FakeFetcher()
        fetcher.script(URL, HANG)
        cache = _cache(fetcher, timeout=0.05)
        handle = asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert handle is not None
        assert fetcher.count(URL) == 2

    def test_timeouts_exhaust_retries(self):
        """Test repeated timeouts end in a permanent failure."""
        fetcher = FakeFetcher()
        fetcher.script(URL, HANG, HANG)
        cache = _cache(fetcher, retries=1, timeout=0.05)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.TIMEOUT
        assert fetcher.count(URL) == 2
        assert cache.active_fetches == 0

    def test_transport_error(self, fetcher):
        """Test OSError from the transport is an HTTP error."""
        fetcher.script(URL, OSError("reset"), OSError("reset"), OSError("reset"))
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.HTTP_ERROR

    def test_incomplete_read_retried(self, fetcher):
        """Test a truncated HTTP body is retried like any transient failure."""
        fetcher.script(URL, http.client.IncompleteRead(b"partial"))
        cache = _cache(fetcher)
        handle = asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert handle.shape == (6, 8)
        assert fetcher.count(URL) == 2
        assert cache.state_of(View.AXIAL, 10) is EntryState.READY

    def test_unexpected_fetcher_errors_blacklist(self, fetcher):
        """Test arbitrary fetcher exceptions exhaust retries into a permanent failure."""
        fetcher.script(URL, RuntimeError("bad"), ValueError("worse"), KeyError("worst"))
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.HTTP_ERROR
        assert fetcher.count(URL) == 3
        assert cache.is_blacklisted(URL)
        assert cache.state_of(View.AXIAL, 10) is EntryState.FAILED_PERMANENT
        assert cache.stats().failed == 1

    def test_fetcher_failing_before_await(self):
        """Test a fetcher that raises when called is treated as a failed attempt."""

        class BrokenFetcher:
            def fetch(self, url):
                raise TypeError("not awaitable")

        cache = _cache(BrokenFetcher(), retries=1)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.HTTP_ERROR
        assert cache.active_fetches == 0

    def test_cancelled_load_not_left_loading(self):
        """Test a load cancelled mid-flight does not stay in the loading state."""
        fetcher = FakeFetcher()
        fetcher.script(URL, HANG)
        cache = _cache(fetcher)
        key = (View.AXIAL, 10)

        async def scenario():
            waiter = asyncio.ensure_future(cache.request(*key, URL))
            for _ in range(3):
                await asyncio.sleep(0)
            during = cache.state_of(*key)
            cache._in_flight[key].cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            return during

        during = asyncio.run(scenario())
        assert during is EntryState.LOADING
        assert cache.state_of(*key) is EntryState.EMPTY
        assert cache.stats().in_flight_count == 0
        assert cache.active_fetches == 0

    def test_wrong_content_type(self):
        """Test non-image responses fail as invalid content."""
        fetcher = FakeFetcher(content_type="text/html")
        cache = _cache(fetcher, retries=0)
        with pytest.raises(PermanentLoadError) as info:
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        assert info.value.cause is FailureReason.INVALID_CONTENT_TYPE
        assert fetcher.count(URL) == 1


class TestClearAndStats:
    """Test resetting the cache and its counters."""

    def test_clear_releases_assets(self, fetcher):
        """Test clear releases handles and resets counters and blacklist."""
        bad = slice_url(View.CORONAL, 0)
        fetcher.fail_always(bad)
        cache = _cache(fetcher)

        async def scenario():
            handle = await cache.request(View.AXIAL, 10, URL)
            with pytest.raises(PermanentLoadError):
                await cache.request(View.CORONAL, 0, bad)
            return handle

        handle = asyncio.run(scenario())
        cache.clear()
        assert handle.released
        assert cache.get_ready(View.AXIAL, 10) is None
        assert not cache.is_blacklisted(bad)
        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.failed, stats.cache_size) == (0, 0, 0, 0)
        assert stats.hit_rate == 0.0

    def test_load_running_during_clear_not_stored(self):
        """Test a load that finishes after clear still answers its waiter only."""
        fetcher = FakeFetcher(delay=0.05)
        cache = _cache(fetcher)

        async def scenario():
            task = asyncio.ensure_future(cache.request(View.AXIAL, 10, URL))
            await asyncio.sleep(0.01)
            cache.clear()
            return await task

        handle = asyncio.run(scenario())
        assert handle is not None
        assert not handle.released
        assert cache.get_ready(View.AXIAL, 10) is None
        assert cache.stats().cache_size == 0

    def test_hit_rate(self, fetcher):
        """Test hit rate is hits over lookups."""
        cache = _cache(fetcher)

        async def scenario():
            for _ in range(4):
                await cache.request(View.AXIAL, 10, URL)

        asyncio.run(scenario())
        stats = cache.stats()
        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(0.75)

    def test_detailed_stats(self, fetcher):
        """Test detailed stats add failure and scheduling details."""
        fetcher.fail_always(URL)
        cache = _cache(fetcher)
        with pytest.raises(PermanentLoadError):
            asyncio.run(cache.request(View.AXIAL, 10, URL))
        details = cache.detailed_stats()
        assert details["blacklisted"] == 1
        assert details["failed"] == 1
        assert details["active_fetches"] == 0
        assert details["preloading"] is False

    def test_failure_report(self, fetcher):
        """Test the failure report lists keys that are not ready."""
        fetcher.fail_always(URL)
        cache = _cache(fetcher)

        async def scenario():
            await cache.request(View.SAGITTAL, 0, slice_url(View.SAGITTAL, 0))
            with pytest.raises(PermanentLoadError):
                await cache.request(View.AXIAL, 10, URL)

        asyncio.run(scenario())
        report = cache.failure_report()
        assert list(report.columns) == ["view", "slice", "url", "state", "reason", "attempts"]
        assert len(report) == 1
        row = report.iloc[0]
        assert row["view"] == "axial"
        assert row["slice"] == 10
        assert row["state"] == "failed_permanent"
        assert row["reason"] == "http_error"
        assert row["attempts"] == 3

    def test_empty_failure_report(self, fetcher):
        """Test an empty report still has the expected columns."""
        report = _cache(fetcher).failure_report()
        assert report.empty
        assert "reason" in report.columns
