"""Tests for the in-memory rate limit store."""

import asyncio

import pytest

from dashboard.app.exceptions import RateLimitConfigError
from dashboard.app.middleware.rate_limit import InMemoryRateLimitStore
from dashboard.app.middleware.rate_limit.store import build_result


class TestFixedWindow:
    """Window accounting of check()."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryRateLimitStore(clock=clock)

    @pytest.mark.asyncio
    async def test_six_checks_against_limit_of_five(self, store, clock):
        """Five requests fit, the sixth is denied with retry after ~60s."""
        results = [await store.check("K", 5, 60000) for _ in range(6)]

        assert [r.success for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5].remaining == 0
        assert results[5].retry_after == 60
        assert results[0].retry_after is None

    @pytest.mark.asyncio
    async def test_reset_is_window_end_in_unix_seconds(self, store, clock):
        result = await store.check("K", 5, 60000)
        assert result.reset == int(clock.now) + 60

        clock.advance(10)
        result = await store.check("K", 5, 60000)
        # Same window, reset does not move
        assert result.reset == int(clock.now) - 10 + 60

    @pytest.mark.asyncio
    async def test_retry_after_shrinks_as_window_ages(self, store, clock):
        for _ in range(2):
            await store.check("K", 2, 60000)

        clock.advance(45)
        result = await store.check("K", 2, 60000)
        assert result.success is False
        assert result.retry_after == 15

    @pytest.mark.asyncio
    async def test_new_window_after_window_elapses(self, store, clock):
        """After W has elapsed the count restarts at 1 regardless of denials."""
        for _ in range(20):
            await store.check("K", 3, 1000)
        assert (await store.check("K", 3, 1000)).success is False

        clock.advance(1.0)
        result = await store.check("K", 3, 1000)
        assert result.success is True
        assert result.remaining == 2
        assert await store.get("K") == 1

    @pytest.mark.asyncio
    async def test_window_still_open_just_before_it_elapses(self, store, clock):
        for _ in range(3):
            await store.check("K", 3, 1000)

        clock.advance(0.999)
        assert (await store.check("K", 3, 1000)).success is False

    @pytest.mark.asyncio
    async def test_remaining_is_monotonic_within_window(self, store, clock):
        limit = 10
        previous = limit
        for count in range(1, 16):
            clock.advance(0.5)
            result = await store.check("K", limit, 60000)
            assert result.remaining <= previous
            assert result.remaining == max(0, limit - count)
            previous = result.remaining

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, store):
        for _ in range(5):
            await store.check("A", 5, 60000)
        assert (await store.check("A", 5, 60000)).success is False

        result = await store.check("B", 5, 60000)
        assert result.success is True
        assert result.remaining == 4
        assert await store.get("B") == 1

    @pytest.mark.asyncio
    async def test_concurrent_checks_are_counted_exactly(self, store):
        """Concurrent requests on one key never share a pre-increment count."""
        results = await asyncio.gather(*(store.check("K", 50, 60000) for _ in range(80)))

        assert sum(r.success for r in results) == 50
        assert sorted(r.remaining for r in results if r.success) == list(range(50))
        assert await store.get("K") == 80


class TestGetAndReset:
    """Non-mutating reads and administrative reset."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryRateLimitStore(clock=clock)

    @pytest.mark.asyncio
    async def test_get_does_not_increment(self, store):
        await store.check("K", 5, 60000)
        assert await store.get("K") == 1
        assert await store.get("K") == 1

    @pytest.mark.asyncio
    async def test_get_unknown_key_is_zero(self, store):
        assert await store.get("missing") == 0

    @pytest.mark.asyncio
    async def test_get_after_window_elapsed_is_zero(self, store, clock):
        await store.check("K", 5, 1000)
        clock.advance(2)
        assert await store.get("K") == 0

    @pytest.mark.asyncio
    async def test_reset_clears_key(self, store):
        for _ in range(6):
            await store.check("K", 5, 60000)

        await store.reset("K")

        assert await store.get("K") == 0
        assert (await store.check("K", 5, 60000)).remaining == 4

    @pytest.mark.asyncio
    async def test_reset_unknown_key_is_noop(self, store):
        await store.reset("missing")
        assert len(store) == 0


class TestSweep:
    """Eviction of stale entries."""

    @pytest.mark.asyncio
    async def test_young_entry_survives_even_if_window_elapsed(self, clock):
        store = InMemoryRateLimitStore(max_entry_age_ms=10_000, clock=clock)
        await store.check("K", 5, 1000)

        clock.advance(5)
        assert await store.sweep() == 0
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_old_entry_is_removed(self, clock):
        store = InMemoryRateLimitStore(max_entry_age_ms=10_000, clock=clock)
        await store.check("old", 5, 1000)
        clock.advance(8)
        await store.check("new", 5, 1000)

        clock.advance(3)
        assert await store.sweep() == 1
        assert len(store) == 1
        assert await store.get("new") == 0  # window elapsed, entry kept

    @pytest.mark.asyncio
    async def test_entry_outlives_retention_while_its_window_runs(self, clock):
        store = InMemoryRateLimitStore(max_entry_age_ms=1000, clock=clock)
        await store.check("daily", 100, 24 * 60 * 60 * 1000)

        clock.advance(3600)
        assert await store.sweep() == 0
        assert await store.get("daily") == 1

    @pytest.mark.asyncio
    async def test_sweep_only_counts_from_window_start(self, clock):
        """Incrementing does not refresh an entry's age."""
        store = InMemoryRateLimitStore(max_entry_age_ms=2000, clock=clock)
        await store.check("K", 100, 2000)
        clock.advance(1.5)
        await store.check("K", 100, 2000)

        clock.advance(1)
        assert await store.sweep() == 1

    @pytest.mark.asyncio
    async def test_background_sweep_evicts_and_stops(self, clock):
        store = InMemoryRateLimitStore(
            max_entry_age_ms=1000, sweep_interval_seconds=0.01, clock=clock
        )
        await store.check("K", 5, 1000)
        clock.advance(5)

        await store.start()
        assert store.running is True
        for _ in range(100):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
        await store.stop()

        assert len(store) == 0
        assert store.running is False

    @pytest.mark.asyncio
    async def test_stop_keeps_entries(self, clock):
        store = InMemoryRateLimitStore(sweep_interval_seconds=60, clock=clock)
        await store.check("K", 5, 60000)

        await store.start()
        await store.start()  # second start is a no-op
        await store.stop()
        await store.stop()

        assert await store.get("K") == 1


class TestConfiguration:
    """Misconfiguration fails loudly."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("limit", "window_ms"), [(0, 1000), (-1, 1000), (5, 0), (5, -10)])
    async def test_check_rejects_non_positive_values(self, limit, window_ms):
        store = InMemoryRateLimitStore()
        with pytest.raises(RateLimitConfigError):
            await store.check("K", limit, window_ms)

    def test_rejects_non_positive_retention(self):
        with pytest.raises(RateLimitConfigError):
            InMemoryRateLimitStore(max_entry_age_ms=0)

    def test_rejects_non_positive_sweep_interval(self):
        with pytest.raises(RateLimitConfigError):
            InMemoryRateLimitStore(sweep_interval_seconds=0)


class TestBuildResult:
    """Result arithmetic shared by every store."""

    def test_allowed_result(self):
        result = build_result(count=3, window_start=1_000_000, limit=5, window_ms=60000, now=1_010_000)
        assert result.success is True
        assert result.remaining == 2
        assert result.reset == 1060
        assert result.retry_after is None

    def test_denied_result_rounds_up(self):
        result = build_result(count=6, window_start=1_000_000, limit=5, window_ms=60000, now=1_000_500)
        assert result.success is False
        assert result.remaining == 0
        assert result.retry_after == 60
