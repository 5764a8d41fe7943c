"""
Backoff and Circuit Breaking
Commands sent to a backend on a user's behalf (release search, grab, search
triggers) are retried with backoff. Each backend the reconciliation loop
reads sits behind its own circuit breaker, timed by the watcher's clock.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Callable, Awaitable, TypeVar, Dict, Iterable

from .exceptions import BackendConnectionError, BackendResponseError, BackendTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


def wall_clock() -> float:
    return datetime.now().timestamp()


# -----------------------------------------------------------------------------
# Retrying backend commands
# -----------------------------------------------------------------------------


def is_transient(error: Exception) -> bool:
    """Unreachable backends and 5xx answers may succeed on another attempt."""
    if isinstance(error, BackendConnectionError):
        return True
    if isinstance(error, BackendResponseError):
        return (error.status or 0) >= 500
    return False


def is_safe_to_resend(error: Exception) -> bool:
    """
    Retry rule for commands that must not run twice, such as grabbing a release.

    Only a failure to reach the backend qualifies. After a timeout or any HTTP
    answer the backend may already have acted on the request.
    """
    return isinstance(error, BackendConnectionError) and not isinstance(
        error, BackendTimeoutError
    )


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True


@dataclass
class OperationStats:
    """Counters for one kind of backend command (grab, releases, search...)."""
    calls: int = 0
    attempts: int = 0
    retries: int = 0
    failures: int = 0
    last_error: Optional[str] = None


class RetryHandler:
    """
    Exponential backoff for one-shot backend commands.

    The reconciliation loop never goes through here: a failed fetch is simply
    tried again on the next cycle.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._stats: Dict[str, OperationStats] = {}

    def backoff(self, attempt: int) -> float:
        """Delay before attempt + 1: doubles each time, capped, optionally jittered."""
        delay = min(self.config.initial_delay * 2 ** (attempt - 1), self.config.max_delay)
        if self.config.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay

    async def with_retry(
        self,
        command: Callable[[], Awaitable[T]],
        operation: str,
        target: str = "",
        should_retry: Callable[[Exception], bool] = is_transient,
    ) -> T:
        """
        Run command until it succeeds, fails for good, or runs out of attempts.

        operation names the kind of command and keys the statistics; target
        (e.g. "radarr:42") only appears in log messages.
        """
        stats = self._stats.setdefault(operation, OperationStats())
        stats.calls += 1
        label = f"{operation} {target}".strip()

        attempt = 0
        while True:
            attempt += 1
            stats.attempts += 1
            try:
                result = await command()
            except Exception as e:
                stats.last_error = str(e)
                if attempt >= self.config.max_attempts or not should_retry(e):
                    stats.failures += 1
                    logger.warning(f"{label} failed after {attempt} attempt(s): {e}")
                    raise
                delay = self.backoff(attempt)
                stats.retries += 1
                logger.info(f"{label} failed, retrying in {delay:.1f}s: {e}")
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"{label} succeeded on attempt {attempt}")
            return result

    def get_stats(self) -> dict:
        return {name: asdict(stats) for name, stats in sorted(self._stats.items())}


# -----------------------------------------------------------------------------
# Per-backend circuit breakers
# -----------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 120.0


class CircuitBreaker:
    """
    Breaker in front of one backend's per-cycle fetch.

    After failure_threshold consecutive failures the backend is skipped until
    reset_timeout seconds have passed on the clock. The next fetch is a trial:
    success closes the circuit, failure opens it for another reset_timeout.
    Cycles never overlap, so there is at most one call in flight.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or wall_clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self.skipped_calls = 0

    def allows_call(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if self._clock() - self.opened_at < self.config.reset_timeout:
            self.skipped_calls += 1
            return False
        self.state = CircuitState.HALF_OPEN
        logger.info(f"{self.name} circuit half-open, trying one fetch", extra={"backend": self.name})
        return True

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info(f"{self.name} circuit closed", extra={"backend": self.name})
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if (
            self.state == CircuitState.HALF_OPEN
            or self.consecutive_failures >= self.config.failure_threshold
        ):
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.warning(
                f"{self.name} circuit open after {self.consecutive_failures} failures, "
                f"skipping it for {self.config.reset_timeout:.0f}s",
                extra={"backend": self.name},
            )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
    ) -> T:
        """Run operation, or fallback while the circuit is open. Failures propagate."""
        if not self.allows_call():
            return await fallback()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "skipped_calls": self.skipped_calls,
        }


def breakers_for(
    names: Iterable[str],
    config: Optional[CircuitBreakerConfig] = None,
    clock: Optional[Clock] = None,
) -> Dict[str, CircuitBreaker]:
    """One breaker per backend name, all reading the same clock."""
    return {name: CircuitBreaker(name, config, clock=clock) for name in names}
