"""
STEWARD Router — Vendor-Agnostic Model Abstraction

Routes agent calls through LiteLLM so agents never know which vendor
is backing them. Every call is budget-checked before it starts and
charged after it finishes, and runs through the reliability stack
(timeout -> retry -> circuit breaker -> fallback chain).
"""

from __future__ import annotations

import time
from typing import Any, Callable

import litellm
from loguru import logger
from pydantic import BaseModel

from steward.budget import BudgetGuard
from steward.config_loader import StewardConfig
from steward.reliability import (
    CircuitBreaker,
    FallbackChain,
    ModelRequest,
    ModelResponse,
    Provider,
    ProviderError,
    ProviderUnavailable,
    RetryingProvider,
    TimeoutProvider,
)


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    if response_format:
        kwargs["response_format"] = response_format

    return kwargs


def _classify(exc: Exception) -> str:
    # Timeout subclasses APIConnectionError, so it must be checked first.
    if isinstance(exc, litellm.Timeout):
        return "timeout"
    if isinstance(exc, litellm.RateLimitError):
        return "rate_limit"
    if isinstance(exc, (litellm.ServiceUnavailableError, litellm.InternalServerError)):
        return "server"
    if isinstance(exc, litellm.APIConnectionError):
        return "connection"
    if isinstance(exc, litellm.AuthenticationError):
        return "auth"
    if isinstance(exc, litellm.BadRequestError):
        return "bad_request"
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return "server"
    return "bad_request"


_LITELLM_ERRORS = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.AuthenticationError,
    litellm.BadRequestError,
    litellm.APIError,
)

# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------

class LiteLLMProvider(Provider):
    """One concrete model behind LiteLLM's async completion API."""

    def __init__(self, model: str):
        self.model = model
        self.name = model

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        kwargs = _build_kwargs(
            self.model, request.messages, request.temperature,
            request.max_tokens, request.response_format,
        )
        start = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except _LITELLM_ERRORS as e:
            raise ProviderError(_classify(e), str(e)[:300], self.model) from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        try:
            cost = float(litellm.completion_cost(completion_response=response))
        except Exception as e:
            # Unknown pricing for this model; the call still happened.
            logger.debug(f"[ROUTER] No pricing for {self.model}: {e}")
            cost = 0.0

        usage = getattr(response, "usage", None)
        return ModelResponse(
            content=response.choices[0].message.content or "",
            model=self.model,
            provider=self.model.split("/", 1)[0],
            tokens_used=getattr(usage, "total_tokens", 0) or 0,
            cost_usd=cost,
            latency_ms=elapsed_ms,
        )


ProviderFactory = Callable[[str], Provider]


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class ModelCallRecord(BaseModel):
    role: str
    model: str | None = None
    provider: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0
    error: str | None = None


class Router:
    """
    Vendor-agnostic model router.

    Agents call `await router.complete(role, messages)`. The router
    resolves the role's fallback chain, enforces the budget, and returns
    structured output. Breakers are shared per model across roles.
    """

    def __init__(
        self,
        config: StewardConfig,
        guard: BudgetGuard,
        provider_factory: ProviderFactory | None = None,
    ):
        self.config = config
        self.guard = guard
        self._factory = provider_factory or LiteLLMProvider
        self._breakers: dict[str, CircuitBreaker] = {}
        self._chains: dict[str, FallbackChain] = {}
        self.call_log: list[ModelCallRecord] = []

        litellm.suppress_debug_info = True

    def _breaker_for(self, model: str) -> CircuitBreaker:
        if model not in self._breakers:
            rel = self.config.reliability
            stacked = RetryingProvider(
                TimeoutProvider(self._factory(model), rel.call_timeout_s),
                max_retries=rel.max_retries,
                max_latency_s=rel.max_retry_latency_s,
                wait_min_s=rel.backoff_min_s,
                wait_max_s=rel.backoff_max_s,
            )
            self._breakers[model] = CircuitBreaker(
                stacked,
                failure_threshold=rel.breaker_failure_threshold,
                window_s=rel.breaker_window_s,
                cooldown_s=rel.breaker_cooldown_s,
            )
        return self._breakers[model]

    def chain_for(self, role: str) -> FallbackChain:
        if role not in self._chains:
            models = self.config.routing.chain_for(role)
            self._chains[role] = FallbackChain(
                role,
                [self._breaker_for(m) for m in models],
                before_each=lambda _provider: self._precheck(),
            )
        return self._chains[role]

    def _precheck(self, budget_hint: float | None = None) -> None:
        limits = self.config.limits
        reserve = max(limits.call_reserve_usd, budget_hint or 0.0)
        self.guard.ensure_available(cost_usd=reserve, wall_ms=limits.call_reserve_ms)

    async def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        response_format: dict | None = None,
        budget_hint: float | None = None,
    ) -> ModelResponse:
        """Send a completion request through the role's fallback chain.

        Raises:
            BudgetExceeded: before the call if the reserve does not fit, or
                after it if the actual cost crosses a ceiling.
            ProviderUnavailable: when every provider in the chain failed.
        """
        self._precheck(budget_hint)
        chain = self.chain_for(role)
        request = ModelRequest(
            role=role,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
            budget_hint=budget_hint,
        )

        logger.debug(f"[ROUTER] {role} → {[p.name for p in chain.providers]} ({len(messages)} messages)")
        start = time.monotonic()
        try:
            response = await chain.invoke(request)
        except ProviderUnavailable as e:
            self.call_log.append(ModelCallRecord(
                role=role,
                latency_ms=int((time.monotonic() - start) * 1000),
                error=str(e)[:500],
            ))
            raise

        record = ModelCallRecord(
            role=role,
            model=response.model,
            provider=response.provider,
            tokens_used=response.tokens_used,
            cost_usd=response.cost_usd,
            latency_ms=response.latency_ms,
        )
        self.call_log.append(record)
        try:
            snapshot = self.guard.charge(response.cost_usd, response.latency_ms)
        except Exception as e:
            record.error = f"charge rejected: {e}"
            raise

        logger.debug(
            f"[ROUTER] {role} complete via {response.model} — "
            f"{response.tokens_used} tokens, ${response.cost_usd:.4f} "
            f"(total ${snapshot.cost_usd:.4f}), {response.latency_ms}ms"
        )
        return response
