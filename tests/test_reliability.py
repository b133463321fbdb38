"""Tests for the provider reliability decorators."""

import asyncio

import pytest

from steward.reliability import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    FallbackChain,
    ModelRequest,
    ModelResponse,
    Provider,
    ProviderError,
    ProviderUnavailable,
    RetryingProvider,
    TimeoutProvider,
)

REQUEST = ModelRequest(role="implementer", messages=[{"role": "user", "content": "hi"}])


class StubProvider(Provider):
    """Raises the queued errors in order, then answers."""

    def __init__(self, name="stub", errors=(), delay_s=0.0):
        self.name = name
        self.errors = list(errors)
        self.delay_s = delay_s
        self.calls = 0

    async def invoke(self, request):
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.errors:
            raise self.errors.pop(0)
        return ModelResponse(content="ok", model=self.name, provider=self.name)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def _no_sleep(_seconds):
    return None


def _timeout():
    return ProviderError("timeout", "slow", "stub")


class TestTimeoutProvider:
    @pytest.mark.asyncio
    async def test_expiry_becomes_timeout_error(self):
        provider = TimeoutProvider(StubProvider(delay_s=1.0), timeout_s=0.01)
        with pytest.raises(ProviderError) as exc:
            await provider.invoke(REQUEST)
        assert exc.value.kind == "timeout"
        assert exc.value.trips_breaker

    @pytest.mark.asyncio
    async def test_fast_call_passes_through(self):
        response = await TimeoutProvider(StubProvider(), timeout_s=1.0).invoke(REQUEST)
        assert response.content == "ok"


class TestRetryingProvider:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        stub = StubProvider(errors=[ProviderError("server", "502"), ProviderError("connection", "reset")])
        response = await RetryingProvider(stub, max_retries=2, sleep=_no_sleep).invoke(REQUEST)
        assert response.content == "ok"
        assert stub.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        stub = StubProvider(errors=[_timeout() for _ in range(5)])
        with pytest.raises(ProviderError):
            await RetryingProvider(stub, max_retries=1, sleep=_no_sleep).invoke(REQUEST)
        assert stub.calls == 2

    @pytest.mark.asyncio
    async def test_non_retriable_fails_immediately(self):
        stub = StubProvider(errors=[ProviderError("auth", "bad key")])
        with pytest.raises(ProviderError) as exc:
            await RetryingProvider(stub, max_retries=3, sleep=_no_sleep).invoke(REQUEST)
        assert exc.value.kind == "auth"
        assert stub.calls == 1


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_rejects(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout(), _timeout()])
        breaker = CircuitBreaker(stub, failure_threshold=2, cooldown_s=30.0, clock=clock)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await breaker.invoke(REQUEST)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.invoke(REQUEST)
        assert stub.calls == 2

    @pytest.mark.asyncio
    async def test_neutral_failures_do_not_trip(self):
        stub = StubProvider(errors=[ProviderError("server", "500") for _ in range(5)])
        breaker = CircuitBreaker(stub, failure_threshold=2, clock=FakeClock())
        for _ in range(5):
            with pytest.raises(ProviderError):
                await breaker.invoke(REQUEST)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failures_outside_window_are_forgotten(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout(), _timeout()])
        breaker = CircuitBreaker(stub, failure_threshold=2, window_s=10.0, clock=clock)
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        clock.now += 11
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_successful_probe_closes(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout()])
        breaker = CircuitBreaker(stub, failure_threshold=1, cooldown_s=30.0, clock=clock)
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        clock.now += 30
        assert breaker.state == CircuitState.HALF_OPEN

        response = await breaker.invoke(REQUEST)
        assert response.content == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout(), ProviderError("server", "still down")])
        breaker = CircuitBreaker(stub, failure_threshold=1, cooldown_s=30.0, clock=clock)
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        clock.now += 31
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_admits_single_probe(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout()], delay_s=0.05)
        breaker = CircuitBreaker(stub, failure_threshold=1, cooldown_s=30.0, clock=clock)
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        clock.now += 30

        results = await asyncio.gather(
            breaker.invoke(REQUEST), breaker.invoke(REQUEST), return_exceptions=True
        )
        assert sum(isinstance(r, ModelResponse) for r in results) == 1
        assert sum(isinstance(r, CircuitOpenError) for r in results) == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unexpected_error_during_probe_frees_the_slot(self):
        clock = FakeClock()
        stub = StubProvider(errors=[_timeout(), KeyError("malformed payload")])
        breaker = CircuitBreaker(stub, failure_threshold=1, cooldown_s=30.0, clock=clock)
        with pytest.raises(ProviderError):
            await breaker.invoke(REQUEST)
        clock.now += 30

        with pytest.raises(KeyError):
            await breaker.invoke(REQUEST)
        response = await breaker.invoke(REQUEST)
        assert response.content == "ok"
        assert breaker.state == CircuitState.CLOSED

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(StubProvider(), failure_threshold=0)


class TestFallbackChain:
    @pytest.mark.asyncio
    async def test_falls_through_to_next_provider(self):
        first = StubProvider("first", errors=[ProviderError("server", "down")])
        second = StubProvider("second")
        response = await FallbackChain("implementer", [first, second]).invoke(REQUEST)
        assert response.model == "second"

    @pytest.mark.asyncio
    async def test_skips_open_circuit(self):
        clock = FakeClock()
        primary = CircuitBreaker(StubProvider("primary", errors=[_timeout()]), failure_threshold=1, clock=clock)
        with pytest.raises(ProviderError):
            await primary.invoke(REQUEST)
        backup_stub = StubProvider("backup")
        chain = FallbackChain("implementer", [primary, CircuitBreaker(backup_stub, clock=clock)])

        response = await chain.invoke(REQUEST)

        assert response.model == "backup"
        assert primary.inner.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_chain_raises_unavailable(self):
        chain = FallbackChain("reviewer", [
            StubProvider("a", errors=[ProviderError("server", "x")]),
            StubProvider("b", errors=[ProviderError("auth", "y")]),
        ])
        with pytest.raises(ProviderUnavailable) as exc:
            await chain.invoke(REQUEST)
        assert [f.kind for f in exc.value.failures] == ["server", "auth"]

    @pytest.mark.asyncio
    async def test_before_each_can_veto(self):
        class Veto(Exception):
            pass

        def before_each(_provider):
            raise Veto()

        stub = StubProvider()
        with pytest.raises(Veto):
            await FallbackChain("fixer", [stub], before_each=before_each).invoke(REQUEST)
        assert stub.calls == 0
