"""
Model Gateway - one call interface over every reasoning backend.

The gateway resolves a descriptor's model tier to a concrete provider
and model, times the call, and attaches token usage and cost to the
response. Provider failures pass through unchanged so the dispatcher
can tell transient outages from quota refusals.
"""

import time
import uuid
from typing import Optional

from shared.logging import get_logger

from .client import Provider
from .models import (
    ModelTier,
    PromptPayload,
    ProviderError,
    ProviderResponse,
    ProviderUnavailable,
    TieredDescriptor,
    UnknownTierError,
)
from .pricing import DEFAULT_PRICING, calculate_cost, estimate_tokens

log = get_logger("llm", "gateway")


# Default tier -> model mapping (all served through OpenRouter)
DEFAULT_TIERS: dict[str, ModelTier] = {
    "premium": ModelTier(
        name="premium",
        provider="openrouter",
        model="anthropic/claude-sonnet-4",
        pricing=DEFAULT_PRICING["premium"],
    ),
    "standard": ModelTier(
        name="standard",
        provider="openrouter",
        model="openai/gpt-4o-mini",
        pricing=DEFAULT_PRICING["standard"],
    ),
    "economy": ModelTier(
        name="economy",
        provider="openrouter",
        model="google/gemini-2.0-flash-001",
        pricing=DEFAULT_PRICING["economy"],
    ),
}


class ModelGateway:
    """
    Routes prompt payloads to providers by model tier.

    Usage:
        gateway = ModelGateway({"openrouter": OpenRouterProvider()})
        response = await gateway.call(descriptor, PromptPayload(prompt="..."))
        response.cost_usd
    """

    def __init__(
        self,
        providers: dict[str, Provider],
        tiers: Optional[dict[str, ModelTier]] = None,
    ):
        self.providers = providers
        self.tiers = dict(tiers) if tiers else dict(DEFAULT_TIERS)

    def resolve_tier(self, tier_name: str) -> ModelTier:
        """Look up a tier, raising UnknownTierError if it isn't configured."""
        tier = self.tiers.get(tier_name)
        if tier is None:
            raise UnknownTierError(f"Unknown model tier: {tier_name}")
        return tier

    async def call(
        self,
        descriptor: TieredDescriptor,
        payload: PromptPayload,
        tier: Optional[str] = None,
    ) -> ProviderResponse:
        """
        Call the provider serving the descriptor's tier.

        Args:
            descriptor: Agent descriptor (only model_tier is read)
            payload: Prompt to send
            tier: Optional tier override (downgrade/fallback)

        Raises:
            ProviderUnavailable, ProviderQuotaExceeded, UnknownTierError
        """
        model_tier = self.resolve_tier(tier or descriptor.model_tier)
        provider = self.providers.get(model_tier.provider)
        if provider is None:
            raise ProviderUnavailable(
                f"No provider registered for '{model_tier.provider}'",
                provider=model_tier.provider,
                model=model_tier.model,
            )

        if payload.max_tokens is None:
            payload.max_tokens = model_tier.max_tokens
        if payload.temperature is None:
            payload.temperature = model_tier.temperature

        call_id = uuid.uuid4().hex[:12]
        prompt_text = (payload.system_prompt or "") + payload.prompt
        start_time = log.call_start(
            call_id,
            tier=model_tier.name,
            model=model_tier.model,
            prompt_length=len(prompt_text),
            provider=model_tier.provider,
        )
        started = time.monotonic()

        try:
            completion = await provider.complete(model_tier.model, payload)
        except ProviderError as e:
            log.call_error(
                call_id,
                tier=model_tier.name,
                error=str(e),
                error_type=type(e).__name__,
                start_time=start_time,
            )
            raise

        latency = time.monotonic() - started
        input_tokens = completion.input_tokens
        if input_tokens is None:
            input_tokens = estimate_tokens(prompt_text)
        output_tokens = completion.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(completion.text)

        cost = calculate_cost(input_tokens, output_tokens, model_tier.pricing)

        log.call_complete(
            call_id,
            tier=model_tier.name,
            model=model_tier.model,
            start_time=start_time,
            response_length=len(completion.text),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=round(cost, 6),
        )

        return ProviderResponse(
            text=completion.text,
            tier=model_tier.name,
            provider=model_tier.provider,
            model=model_tier.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_seconds=latency,
            cost_usd=cost,
        )

    async def close(self):
        """Close every provider."""
        for provider in self.providers.values():
            await provider.close()

    def list_tiers(self) -> dict[str, str]:
        """Tier name -> model id."""
        return {name: tier.model for name, tier in self.tiers.items()}


def build_tiers(config: dict) -> dict[str, ModelTier]:
    """Build tier table from the ``llm.tiers`` config section, over the defaults."""
    tiers = dict(DEFAULT_TIERS)
    for name, data in (config or {}).items():
        tiers[name] = ModelTier.from_dict(name, data)
    return tiers
