"""Perplexity chat-completions client used as the search-augmented research provider."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from company_research.config import settings
from company_research.errors import ConfigurationError, ProviderAuthError, ProviderError
from company_research.models.research import ProviderRequest, ResearchResult, TokenUsage
from company_research.services import logger as log_service

# USD per 1K tokens
PRICING: dict[str, tuple[float, float]] = {
    "sonar-pro": (0.001, 0.001),
    "sonar": (0.0005, 0.0005),
    "sonar-medium": (0.0015, 0.0015),
}
DEFAULT_PRICING_MODEL = "sonar-pro"


class ResearchProvider(Protocol):
    async def research(self, request: ProviderRequest) -> ResearchResult: ...


# --- Response schema ---


class _Message(BaseModel):
    role: str
    content: str


class _Choice(BaseModel):
    index: int = 0
    message: _Message
    finish_reason: str | None = None


class _Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class PerplexityResponse(BaseModel):
    id: str
    model: str
    choices: list[_Choice]
    usage: _Usage
    citations: list[str] = []
    related_questions: list[str] = []


def calculate_cost(usage: _Usage | TokenUsage, model: str) -> float:
    input_price, output_price = PRICING.get(model, PRICING[DEFAULT_PRICING_MODEL])
    return (usage.prompt_tokens * input_price + usage.completion_tokens * output_price) / 1000


def _retry_after_seconds(value: str | None, default: float) -> float:
    """Retry-After as seconds; HTTP-date and malformed values use the default."""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


class RateLimiter:
    """Sliding-window limiter over the last minute and the last hour."""

    def __init__(self, *, per_minute: int, per_hour: int, clock=time.monotonic):
        self.per_minute = max(per_minute, 1)
        self.per_hour = max(per_hour, 1)
        self._clock = clock
        self._requests: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _wait_time(self, now: float) -> float:
        while self._requests and now - self._requests[0] >= 3600:
            self._requests.popleft()

        wait = 0.0
        last_minute = [t for t in self._requests if now - t < 60]
        if len(last_minute) >= self.per_minute:
            wait = max(wait, 60 - (now - last_minute[-self.per_minute]))
        if len(self._requests) >= self.per_hour:
            wait = max(wait, 3600 - (now - self._requests[-self.per_hour]))
        return wait

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._wait_time(self._clock())
            if wait > 0:
                logger.warning(f"Perplexity rate limit reached, waiting {wait:.1f}s")
                await asyncio.sleep(wait)
            self._requests.append(self._clock())


class PerplexityClient:
    """Async client for the Perplexity API with retries and rate limiting."""

    provider_name = "perplexity"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        backoff_ms: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.api_key = (api_key or settings.perplexity_api_key).strip()
        if not self.api_key:
            raise ConfigurationError(
                "Perplexity API key is required. Set PERPLEXITY_API_KEY environment variable."
            )
        self.base_url = (base_url or settings.perplexity_base_url).rstrip("/")
        self.model = model or settings.perplexity_model
        self.max_retries = settings.perplexity_max_retries if max_retries is None else max_retries
        self.backoff_ms = settings.perplexity_backoff_ms if backoff_ms is None else backoff_ms
        self._http = http_client or httpx.AsyncClient(timeout=settings.perplexity_request_timeout_s)
        self._rate_limiter = rate_limiter or RateLimiter(
            per_minute=settings.perplexity_max_requests_per_minute,
            per_hour=settings.perplexity_max_requests_per_hour,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.query})

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.perplexity_temperature,
            "max_tokens": settings.perplexity_max_tokens,
            "return_citations": True,
            "return_related_questions": True,
        }
        if request.search_domains:
            payload["search_domain_filter"] = list(request.search_domains)
        if request.recency_filter:
            payload["search_recency_filter"] = request.recency_filter.value
        return payload

    async def _post(self, payload: dict[str, Any]) -> PerplexityResponse:
        url = f"{self.base_url}/chat/completions"
        backoff = self.backoff_ms / 1000

        for attempt in range(self.max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                response = await self._http.post(
                    url,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {self.api_key}",
                    },
                )
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise ProviderError(f"Perplexity request failed: {exc}") from exc
                logger.warning(
                    f"Perplexity attempt {attempt + 1} failed ({exc}), retrying in {backoff:.1f}s"
                )
                await asyncio.sleep(backoff)
                backoff *= 2
                continue

            status = response.status_code
            if status == 401:
                raise ProviderAuthError(
                    "Authentication failed: Invalid or expired API key", status_code=status
                )
            if status == 429 or status >= 500:
                if attempt >= self.max_retries:
                    raise ProviderError(
                        f"Perplexity API error: {status} - {response.text}", status_code=status
                    )
                wait = _retry_after_seconds(response.headers.get("Retry-After"), backoff)
                logger.warning(
                    f"Perplexity returned {status}, retry {attempt + 1}/{self.max_retries} in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                backoff *= 2
                continue
            if status >= 400:
                raise ProviderError(f"Client error {status}: {response.text}", status_code=status)

            try:
                return PerplexityResponse.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                raise ProviderError(f"Malformed Perplexity response: {exc}") from exc

        raise ProviderError("Max retries exceeded")

    async def research(self, request: ProviderRequest) -> ResearchResult:
        t0 = time.monotonic()
        try:
            data = await self._post(self._build_payload(request))
        except ProviderError as exc:
            log_service.log_provider_call(
                provider=self.provider_name,
                model=self.model,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        cost = calculate_cost(data.usage, data.model)
        log_service.log_provider_call(
            provider=self.provider_name,
            model=data.model,
            duration_ms=int((time.monotonic() - t0) * 1000),
            total_tokens=data.usage.total_tokens,
            cost_usd=cost,
            citations=len(data.citations),
        )
        return ResearchResult(
            content=data.choices[0].message.content if data.choices else "",
            citations=list(data.citations),
            related_questions=list(data.related_questions),
            usage=TokenUsage(
                prompt_tokens=data.usage.prompt_tokens,
                completion_tokens=data.usage.completion_tokens,
                total_tokens=data.usage.total_tokens,
            ),
            cost_usd=cost,
            model=data.model,
        )
