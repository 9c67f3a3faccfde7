"""
LLM Library - model gateway for Wayfarer agents.

Resolves model tiers (premium / standard / economy) to concrete
providers, accounts for tokens, latency and cost, and reports provider
failures as typed errors:

    from llm import ModelGateway, OpenRouterProvider, PromptPayload

    gateway = ModelGateway({"openrouter": OpenRouterProvider()})
    response = await gateway.call(descriptor, PromptPayload(prompt="..."))
"""

from .src.client import Provider, OpenRouterProvider, RateLimiter
from .src.gateway import ModelGateway, DEFAULT_TIERS, build_tiers
from .src.models import (
    ModelTier,
    PromptPayload,
    ProviderCompletion,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderResponse,
    ProviderUnavailable,
    TierPricing,
    UnknownTierError,
)
from .src.pricing import DEFAULT_PRICING, calculate_cost, estimate_tokens

__all__ = [
    "Provider",
    "OpenRouterProvider",
    "RateLimiter",
    "ModelGateway",
    "DEFAULT_TIERS",
    "build_tiers",
    "ModelTier",
    "PromptPayload",
    "ProviderCompletion",
    "ProviderError",
    "ProviderQuotaExceeded",
    "ProviderResponse",
    "ProviderUnavailable",
    "TierPricing",
    "UnknownTierError",
    "DEFAULT_PRICING",
    "calculate_cost",
    "estimate_tokens",
]

__version__ = "0.1.0"
