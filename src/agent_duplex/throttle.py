"""
Rate limiting, retry backoff and circuit breaking for model calls.

These are ordinary objects injected into a ``TurnLoop`` (or shared between
loops by handing the same instance to each). All state sits behind a
``threading.Lock``.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from agent_duplex.errors import CircuitOpenError
from agent_duplex.logging import get_logger

if TYPE_CHECKING:
    from agent_duplex.config import ThrottleConfig

logger = get_logger("throttle")

Clock = Callable[[], float]


@dataclass
class TokenBucket:
    """Token bucket limiting how often model calls may start."""

    capacity: int
    refill_rate: float  # tokens per second
    clock: Clock = field(default=time.monotonic, repr=False)
    _tokens: float = field(init=False)
    _last_update: float = field(init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.capacity <= 0 or self.refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self._tokens = float(self.capacity)
        self._last_update = self.clock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self._last_update
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_update = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take *tokens* if available. Returns True on success."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def time_until_available(self, tokens: int = 1) -> float:
        """Seconds until *tokens* can be taken."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                return 0.0
            return (tokens - self._tokens) / self.refill_rate

    async def acquire(self, tokens: int = 1) -> None:
        """Wait until *tokens* are available and take them."""
        while not self.try_acquire(tokens):
            await asyncio.sleep(self.time_until_available(tokens))


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        return min(self.max_backoff, self.initial_backoff * self.multiplier ** (attempt - 1))

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.max_retries


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Rejects model calls after repeated failures.

    Opens after ``failure_threshold`` consecutive failures. Once
    ``recovery_timeout`` seconds have passed it goes half-open and admits a
    single trial call; other callers are rejected until that call reports
    back. A successful trial closes the breaker, a failed one reopens it.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    clock: Clock = field(default=time.monotonic, repr=False)
    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    opened_at: float | None = field(default=None, init=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def before_call(self) -> bool:
        """
        Admit a call. Returns True when the caller holds the half-open trial
        and must later call ``release_trial()``.

        Raises:
            CircuitOpenError: while the breaker is open or a trial is running.
        """
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return False
            if self.state == CircuitState.OPEN:
                opened_at = self.opened_at if self.opened_at is not None else self.clock()
                if self.clock() - opened_at < self.recovery_timeout:
                    raise CircuitOpenError("Model calls are temporarily suspended")
                self.state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker entering half-open state")
            if self._trial_in_flight:
                raise CircuitOpenError("Model calls are temporarily suspended")
            self._trial_in_flight = True
            return True

    def release_trial(self) -> None:
        """Give up the trial slot; a trial that recorded no outcome can be retaken."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info("Circuit breaker closed")
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self._trial_in_flight = False
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning("Circuit breaker opened after %d failures", self.failure_count)
                self.state = CircuitState.OPEN
                self.opened_at = self.clock()


def create_throttling(
    config: ThrottleConfig,
) -> tuple[RetryPolicy, TokenBucket | None, CircuitBreaker | None]:
    """Build the retry policy, token bucket and circuit breaker for *config*."""
    policy = RetryPolicy(
        max_retries=config.max_retries,
        initial_backoff=config.initial_backoff,
        max_backoff=config.max_backoff,
        multiplier=config.backoff_multiplier,
    )
    bucket = (
        TokenBucket(capacity=config.rate_limit_capacity, refill_rate=config.rate_limit_refill)
        if config.rate_limit_capacity
        else None
    )
    breaker = (
        CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_timeout,
        )
        if config.circuit_failure_threshold
        else None
    )
    return policy, bucket, breaker
