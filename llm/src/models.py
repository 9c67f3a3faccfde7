"""
Data models and errors for the model gateway.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol


class ProviderError(Exception):
    """Base class for failures reported by a model provider."""

    retryable = True

    def __init__(self, message: str, *, provider: Optional[str] = None, model: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


class ProviderUnavailable(ProviderError):
    """Transient provider failure (connection, 5xx, provider-side timeout)."""


class ProviderQuotaExceeded(ProviderError):
    """Provider refused the call for rate or quota reasons (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UnknownTierError(ProviderError):
    """A descriptor names a model tier the gateway has no configuration for."""

    retryable = False


@dataclass
class TierPricing:
    """USD price per 1,000 tokens for one model tier."""
    input_per_1k: float = 0.0
    output_per_1k: float = 0.0


@dataclass
class ModelTier:
    """A cost/capability class: which provider and model serve it and what it costs."""
    name: str
    provider: str
    model: str
    pricing: TierPricing = field(default_factory=TierPricing)
    max_tokens: int = 4096
    temperature: float = 0.3

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "ModelTier":
        pricing = data.get("pricing", {})
        return cls(
            name=name,
            provider=data.get("provider", "openrouter"),
            model=data["model"],
            pricing=TierPricing(
                input_per_1k=float(pricing.get("input_per_1k", 0.0)),
                output_per_1k=float(pricing.get("output_per_1k", 0.0)),
            ),
            max_tokens=int(data.get("max_tokens", 4096)),
            temperature=float(data.get("temperature", 0.3)),
        )


@dataclass
class PromptPayload:
    """Provider-agnostic prompt built by an agent adapter."""
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ProviderCompletion:
    """Raw completion returned by a provider backend."""
    text: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class ProviderResponse:
    """Completion plus the gateway's cost and latency accounting."""
    text: str
    tier: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_seconds: float = 0.0
    cost_usd: float = 0.0

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_seconds": round(self.latency_seconds, 4),
            "cost_usd": round(self.cost_usd, 6),
        }


class TieredDescriptor(Protocol):
    """Anything the gateway can route: it only needs a model tier name."""
    model_tier: str
