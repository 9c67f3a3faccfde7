"""
Provider backends for the model gateway.

A provider turns (model, prompt payload) into a completion or raises a
typed ProviderError. Retrying is not a provider concern: the dispatcher
owns retry policy, so every failure is surfaced immediately.
"""

import asyncio
import os
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from shared.logging import get_logger

from .models import (
    PromptPayload,
    ProviderCompletion,
    ProviderQuotaExceeded,
    ProviderUnavailable,
)

log = get_logger("llm", "client")


# Rate limits (requests per minute) per model - conservative defaults
DEFAULT_RATE_LIMIT = 60


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP-date; anything unparseable is None.
    """
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RateLimiter:
    """Simple token bucket rate limiter keyed by model."""

    def __init__(self, limits: dict[str, int] | None = None, default_limit: int = DEFAULT_RATE_LIMIT):
        self._limits = limits or {}
        self._default_limit = default_limit
        self._tokens: dict[str, float] = {}
        self._last_update: dict[str, float] = {}

    async def acquire(self, key: str) -> None:
        """Wait until a request for this key may be sent."""
        limit = self._limits.get(key, self._default_limit)
        tokens_per_second = limit / 60.0

        now = time.time()

        if key not in self._tokens:
            self._tokens[key] = limit
            self._last_update[key] = now

        elapsed = now - self._last_update[key]
        self._tokens[key] = min(limit, self._tokens[key] + elapsed * tokens_per_second)
        self._last_update[key] = now

        if self._tokens[key] < 1:
            wait_time = (1 - self._tokens[key]) / tokens_per_second
            log.info("llm.rate_limit.waiting", key=key, wait_seconds=round(wait_time, 2))
            await asyncio.sleep(wait_time)
            self._tokens[key] = 0
        else:
            self._tokens[key] -= 1


class Provider(ABC):
    """A backend able to complete prompts for a given model id."""

    name: str = "provider"

    @abstractmethod
    async def complete(self, model: str, payload: PromptPayload) -> ProviderCompletion:
        """Return a completion or raise ProviderUnavailable / ProviderQuotaExceeded."""

    async def close(self) -> None:
        """Release any network resources."""


class OpenRouterProvider(Provider):
    """
    OpenAI-compatible chat-completions provider (OpenRouter by default).

    Usage:
        provider = OpenRouterProvider()
        completion = await provider.complete("openai/gpt-4o-mini", PromptPayload(prompt="..."))
    """

    name = "openrouter"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://openrouter.ai/api/v1",
        rate_limits: Optional[dict[str, int]] = None,
        request_timeout: float = 300.0,
    ):
        """
        Args:
            api_key: API key (falls back to OPENROUTER_API_KEY)
            base_url: API base URL, trailing slash stripped
            rate_limits: Requests per minute keyed by model id
            request_timeout: Transport-level timeout in seconds
        """
        self._api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        self._base_url = base_url.rstrip("/")
        self._request_timeout = request_timeout
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = RateLimiter(rate_limits)

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def close(self):
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    def _build_request_body(self, model: str, payload: PromptPayload) -> dict:
        messages = []
        if payload.system_prompt:
            messages.append({"role": "system", "content": payload.system_prompt})
        messages.append({"role": "user", "content": payload.prompt})

        body = {"model": model, "messages": messages}
        if payload.max_tokens is not None:
            body["max_tokens"] = payload.max_tokens
        if payload.temperature is not None:
            body["temperature"] = payload.temperature
        return body

    async def complete(self, model: str, payload: PromptPayload) -> ProviderCompletion:
        if not self._api_key:
            raise ProviderUnavailable(
                "OPENROUTER_API_KEY not configured", provider=self.name, model=model
            )

        await self._rate_limiter.acquire(model)

        session = await self._get_http_session()
        try:
            async with session.post(
                f"{self._base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "X-Title": "Wayfarer Trip Orchestrator",
                },
                json=self._build_request_body(model, payload),
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as resp:
                if resp.status == 429:
                    retry_after = resp.headers.get("Retry-After")
                    raise ProviderQuotaExceeded(
                        "Rate limited by provider",
                        retry_after=parse_retry_after(retry_after),
                        provider=self.name,
                        model=model,
                    )

                try:
                    data = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    # Proxies answer 5xx with HTML pages
                    log.error("llm.openrouter.error", model=model, status=resp.status,
                              error="non-JSON response body")
                    raise ProviderUnavailable(
                        f"Provider returned {resp.status} with a non-JSON body",
                        provider=self.name,
                        model=model,
                    ) from None

                if resp.status != 200:
                    error = data.get("error", {}) if isinstance(data, dict) else {}
                    message = error.get("message", str(data)) if isinstance(error, dict) else str(error)
                    log.error("llm.openrouter.error", model=model, status=resp.status, error=message)
                    raise ProviderUnavailable(
                        f"Provider returned {resp.status}: {message}",
                        provider=self.name,
                        model=model,
                    )

        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                f"Request timed out after {self._request_timeout} seconds",
                provider=self.name,
                model=model,
            ) from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(str(e), provider=self.name, model=model) from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderUnavailable(
                "Malformed completion envelope", provider=self.name, model=model
            ) from e

        usage = data.get("usage") or {}
        return ProviderCompletion(
            text=text,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )
