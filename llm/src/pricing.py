"""
Cost accounting for model tiers.

Cost is a pure function of token counts and the tier's price table, so
it can be tested without a provider and recomputed from usage records.
"""

from .models import TierPricing

# Default price tables (USD per 1K tokens) per tier
DEFAULT_PRICING: dict[str, TierPricing] = {
    "premium": TierPricing(input_per_1k=0.003, output_per_1k=0.015),
    "standard": TierPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "economy": TierPricing(input_per_1k=0.0001, output_per_1k=0.0004),
}

# Rough characters-per-token ratio for providers that don't report usage
CHARS_PER_TOKEN = 4


def calculate_cost(input_tokens: int, output_tokens: int, pricing: TierPricing) -> float:
    """
    Compute the USD cost of one call.

    Raises ValueError on negative token counts.
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be non-negative")

    return (
        input_tokens / 1000.0 * pricing.input_per_1k
        + output_tokens / 1000.0 * pricing.output_per_1k
    )


def estimate_tokens(text: str) -> int:
    """Estimate a token count from text length (at least 1 for non-empty text)."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)
