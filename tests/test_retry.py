"""
Tests for command retries and per-backend circuit breakers (queuearr_watcher/retry.py)
"""

import pytest
from unittest.mock import AsyncMock

from queuearr_watcher.exceptions import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendResponseError,
    BackendTimeoutError,
)
from queuearr_watcher.retry import (
    RetryHandler,
    RetryConfig,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    breakers_for,
    is_safe_to_resend,
    is_transient,
)


def unreachable(backend="radarr"):
    return BackendConnectionError(f"{backend} request failed", backend=backend, details="refused")


@pytest.fixture
def clock():
    class Clock:
        now = 1000.0

        def __call__(self):
            return self.now

    return Clock()


class TestRetryHandler:
    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def handler(self, sleeps):
        async def sleep(delay):
            sleeps.append(delay)

        return RetryHandler(RetryConfig(max_attempts=3, initial_delay=1.0, jitter=False), sleep=sleep)

    @pytest.mark.asyncio
    async def test_success_first_time(self, handler, sleeps):
        command = AsyncMock(return_value=["release"])

        assert await handler.with_retry(command, "releases", "radarr:42") == ["release"]
        assert command.await_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off_then_succeeds(self, handler, sleeps):
        command = AsyncMock(side_effect=[unreachable(), unreachable(), None])

        await handler.with_retry(command, "search", "radarr:42")

        assert command.await_count == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, handler):
        command = AsyncMock(side_effect=unreachable("sonarr"))

        with pytest.raises(BackendConnectionError):
            await handler.with_retry(command, "episode-search", "sonarr:7")
        assert command.await_count == 3

    @pytest.mark.asyncio
    async def test_auth_error_is_final(self, handler):
        command = AsyncMock(side_effect=BackendAuthenticationError("bad key", backend="sonarr"))

        with pytest.raises(BackendAuthenticationError):
            await handler.with_retry(command, "releases")
        assert command.await_count == 1

    @pytest.mark.asyncio
    async def test_grab_not_resent_after_timeout(self, handler):
        command = AsyncMock(side_effect=BackendTimeoutError("radarr POST release timed out", backend="radarr"))

        with pytest.raises(BackendTimeoutError):
            await handler.with_retry(command, "grab", should_retry=is_safe_to_resend)
        assert command.await_count == 1

    @pytest.mark.asyncio
    async def test_grab_resent_when_backend_unreachable(self, handler):
        command = AsyncMock(side_effect=[unreachable(), None])

        await handler.with_retry(command, "grab", should_retry=is_safe_to_resend)
        assert command.await_count == 2

    @pytest.mark.asyncio
    async def test_stats_keyed_by_operation(self, handler):
        await handler.with_retry(AsyncMock(side_effect=[unreachable(), "ok"]), "grab", "radarr:42")
        await handler.with_retry(AsyncMock(return_value=[]), "releases", "radarr:42")
        with pytest.raises(BackendResponseError):
            await handler.with_retry(
                AsyncMock(side_effect=BackendResponseError("gone", status=404)), "releases"
            )

        stats = handler.get_stats()
        assert list(stats) == ["grab", "releases"]
        assert stats["grab"] == {
            "calls": 1, "attempts": 2, "retries": 1, "failures": 0,
            "last_error": "radarr request failed: refused",
        }
        assert stats["releases"]["calls"] == 2
        assert stats["releases"]["failures"] == 1


class TestRetryRules:
    @pytest.mark.parametrize("error, expected", [
        (unreachable(), True),
        (BackendTimeoutError("timed out", backend="radarr"), True),
        (BackendResponseError("failed", status=503), True),
        (BackendResponseError("failed", status=404), False),
        (BackendAuthenticationError("bad key", backend="radarr"), False),
        (KeyError("missing"), False),
    ])
    def test_is_transient(self, error, expected):
        assert is_transient(error) is expected

    @pytest.mark.parametrize("error, expected", [
        (unreachable(), True),
        (BackendTimeoutError("timed out", backend="radarr"), False),
        (BackendResponseError("failed", status=503), False),
    ])
    def test_is_safe_to_resend(self, error, expected):
        assert is_safe_to_resend(error) is expected


class TestBackoff:
    def test_doubles_and_caps(self):
        handler = RetryHandler(RetryConfig(initial_delay=10.0, max_delay=25.0, jitter=False))
        assert [handler.backoff(a) for a in (1, 2, 3)] == [10.0, 20.0, 25.0]

    def test_jitter_bounds(self):
        handler = RetryHandler(RetryConfig(initial_delay=2.0, jitter=True))
        for _ in range(20):
            assert 1.0 <= handler.backoff(1) <= 3.0


class TestCircuitBreaker:
    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            "radarr", CircuitBreakerConfig(failure_threshold=3, reset_timeout=60), clock=clock
        )

    @pytest.fixture
    def empty(self):
        return AsyncMock(return_value=[])

    async def _fail(self, breaker, empty, times):
        for _ in range(times):
            with pytest.raises(BackendConnectionError):
                await breaker.execute(AsyncMock(side_effect=unreachable()), fallback=empty)

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker, empty, clock):
        await self._fail(breaker, empty, 3)

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

        fetch = AsyncMock(return_value=["entry"])
        assert await breaker.execute(fetch, fallback=empty) == []
        fetch.assert_not_awaited()
        assert breaker.get_stats()["skipped_calls"] == 1

    @pytest.mark.asyncio
    async def test_success_resets_the_count(self, breaker, empty):
        await self._fail(breaker, empty, 2)
        await breaker.execute(AsyncMock(return_value=[]), fallback=empty)
        await self._fail(breaker, empty, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_trial_fetch_after_reset_timeout(self, breaker, empty, clock):
        await self._fail(breaker, empty, 3)

        clock.now += 59
        assert breaker.allows_call() is False

        clock.now += 1
        entries = await breaker.execute(AsyncMock(return_value=["entry"]), fallback=empty)

        assert entries == ["entry"]
        assert breaker.state == CircuitState.CLOSED
        assert breaker.opened_at is None

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker, empty, clock):
        await self._fail(breaker, empty, 3)
        clock.now += 60

        await self._fail(breaker, empty, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == clock.now

    def test_stats(self, breaker):
        assert breaker.get_stats() == {
            "state": "closed", "consecutive_failures": 0, "opened_at": None, "skipped_calls": 0,
        }


def test_breakers_for_share_clock(clock):
    breakers = breakers_for(["radarr", "sonarr"], CircuitBreakerConfig(failure_threshold=1), clock=clock)

    assert set(breakers) == {"radarr", "sonarr"}
    assert breakers["sonarr"].name == "sonarr"

    breakers["radarr"].record_failure()
    assert breakers["radarr"].opened_at == clock.now
    assert breakers["sonarr"].state == CircuitState.CLOSED
