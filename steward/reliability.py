"""
STEWARD Provider Reliability Layer

Every model invocation goes through a stack of small decorators that
share one call interface, `await provider.invoke(request)`:

    FallbackChain([
        CircuitBreaker(RetryingProvider(TimeoutProvider(base))),
        ...
    ])

  - TimeoutProvider   hard per-call timeout; expiry is a logged failure
  - RetryingProvider  bounded tries with capped cumulative latency
  - CircuitBreaker    per-provider; opens after N timeout/rate-limit
                      failures inside a sliding window, half-opens with
                      a single probe once the cooldown has elapsed
  - FallbackChain     ordered providers; skips open circuits

Each layer is usable and testable on its own.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)


# ---------------------------------------------------------------------------
# Call interface
# ---------------------------------------------------------------------------

class ModelRequest(BaseModel):
    role: str
    messages: list[dict[str, str]]
    max_tokens: int = 4096
    temperature: float = 0.2
    response_format: dict | None = None
    budget_hint: float | None = None  # max USD the caller expects to spend


class ModelResponse(BaseModel):
    content: str
    model: str
    provider: str
    tokens_used: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0


TRIPPING_KINDS = frozenset({"timeout", "rate_limit"})
RETRIABLE_KINDS = frozenset({"timeout", "rate_limit", "server", "connection"})


class ProviderError(Exception):
    """A single provider failed. `kind` drives retry and breaker policy."""

    def __init__(self, kind: str, message: str, provider: str = ""):
        self.kind = kind
        self.provider = provider
        super().__init__(f"[{kind}] {provider}: {message}" if provider else f"[{kind}] {message}")

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    @property
    def trips_breaker(self) -> bool:
        return self.kind in TRIPPING_KINDS


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str, retry_in_s: float):
        self.retry_in_s = retry_in_s
        super().__init__("circuit_open", f"circuit open, next probe in {retry_in_s:.1f}s", provider)


class ProviderUnavailable(Exception):
    """Every provider in a fallback chain failed or was skipped."""

    def __init__(self, role: str, failures: list[ProviderError]):
        self.role = role
        self.failures = failures
        summary = "; ".join(str(f) for f in failures) or "no providers configured"
        super().__init__(f"No provider available for role '{role}': {summary}")


class Provider(ABC):
    name: str = "provider"

    @abstractmethod
    async def invoke(self, request: ModelRequest) -> ModelResponse:
        ...


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------

class TimeoutProvider(Provider):
    def __init__(self, inner: Provider, timeout_s: float):
        self.inner = inner
        self.timeout_s = timeout_s
        self.name = inner.name

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        try:
            return await asyncio.wait_for(self.inner.invoke(request), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                f"[RELIABILITY] {self.name} ({request.role}) timed out after {self.timeout_s:g}s"
            )
            raise ProviderError("timeout", f"no response within {self.timeout_s:g}s", self.name) from None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def _is_retriable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retriable


class RetryingProvider(Provider):
    """Retries retriable failures; `max_retries` extra tries, capped by total latency."""

    def __init__(
        self,
        inner: Provider,
        max_retries: int = 3,
        max_latency_s: float = 90.0,
        wait_min_s: float = 2.0,
        wait_max_s: float = 16.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.inner = inner
        self.name = inner.name
        self.max_retries = max_retries
        self.max_latency_s = max_latency_s
        self.wait_min_s = wait_min_s
        self.wait_max_s = wait_max_s
        self._sleep = sleep

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.info(f"[RELIABILITY] {self.name} retry {state.attempt_number}/{self.max_retries}: {exc}")

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1) | stop_after_delay(self.max_latency_s),
            wait=wait_exponential(multiplier=self.wait_min_s, min=self.wait_min_s, max=self.wait_max_s),
            retry=retry_if_exception(_is_retriable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.inner.invoke(request)
        raise AssertionError("unreachable: tenacity reraises the last failure")


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker(Provider):
    """
    Per-provider breaker.

    Only timeout and rate-limit failures count toward opening. Other
    failures are neutral; a success clears the streak. While half-open,
    exactly one probe is in flight and its outcome decides the state.
    """

    def __init__(
        self,
        inner: Provider,
        failure_threshold: int = 3,
        window_s: float = 60.0,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.inner = inner
        self.name = inner.name
        self.failure_threshold = failure_threshold
        self.window_s = window_s
        self.cooldown_s = cooldown_s
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def allows_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN:
            return not self._probe_in_flight
        return False

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.cooldown_s

    def _admit(self) -> None:
        state = self.state
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            if self._state != CircuitState.HALF_OPEN:
                logger.info(f"[BREAKER] {self.name} half-open, sending probe")
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = True
            return
        retry_in = 0.0
        if self._opened_at is not None:
            retry_in = max(0.0, self.cooldown_s - (self._clock() - self._opened_at))
        raise CircuitOpenError(self.name, retry_in)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._failures.clear()
        logger.warning(f"[BREAKER] {self.name} opened for {self.cooldown_s:g}s")

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"[BREAKER] {self.name} closed after successful probe")
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self, error: ProviderError) -> None:
        was_probe = self._probe_in_flight
        self._probe_in_flight = False
        if was_probe or self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        if not error.trips_breaker:
            return
        now = self._clock()
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.window_s:
            self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._open()

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        self._admit()
        try:
            response = await self.inner.invoke(request)
        except ProviderError as e:
            self.record_failure(e)
            raise
        except BaseException:
            # A cancelled or crashed probe says nothing about provider health.
            self._probe_in_flight = False
            raise
        self.record_success()
        return response


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------

class FallbackChain(Provider):
    """Try providers in order; the first success wins."""

    def __init__(
        self,
        role: str,
        providers: list[Provider],
        before_each: Callable[[Provider], None] | None = None,
    ):
        self.role = role
        self.providers = providers
        self.name = f"chain[{role}]"
        self._before_each = before_each

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        failures: list[ProviderError] = []
        for index, provider in enumerate(self.providers):
            if isinstance(provider, CircuitBreaker) and not provider.allows_request():
                logger.debug(f"[FALLBACK] {self.role}: skipping {provider.name} (circuit {provider.state.value})")
                failures.append(CircuitOpenError(provider.name, 0.0))
                continue

            if self._before_each is not None:
                self._before_each(provider)

            try:
                return await provider.invoke(request)
            except ProviderError as e:
                failures.append(e)
                nxt = self.providers[index + 1].name if index + 1 < len(self.providers) else None
                if nxt:
                    logger.warning(f"[FALLBACK] {self.role}: {provider.name} failed ({e.kind}), trying {nxt}")
                else:
                    logger.error(f"[FALLBACK] {self.role}: {provider.name} failed ({e.kind}), chain exhausted")

        raise ProviderUnavailable(self.role, failures)

