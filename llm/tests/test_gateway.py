"""Tests for the model gateway."""

import pytest

from llm.src.client import Provider
from llm.src.gateway import DEFAULT_TIERS, ModelGateway, build_tiers
from llm.src.models import (
    ModelTier,
    PromptPayload,
    ProviderCompletion,
    ProviderQuotaExceeded,
    ProviderUnavailable,
    TierPricing,
    UnknownTierError,
)


class FakeProvider(Provider):
    name = "fake"

    def __init__(self, completion=None, error=None):
        self.completion = completion or ProviderCompletion(text="ok", input_tokens=1000, output_tokens=500)
        self.error = error
        self.calls = []
        self.closed = False

    async def complete(self, model, payload):
        self.calls.append((model, payload))
        if self.error:
            raise self.error
        return self.completion

    async def close(self):
        self.closed = True


class Descriptor:
    def __init__(self, model_tier):
        self.model_tier = model_tier


TIERS = {
    "premium": ModelTier("premium", "fake", "fake/big", TierPricing(0.01, 0.03), max_tokens=2048, temperature=0.2),
    "economy": ModelTier("economy", "fake", "fake/small", TierPricing(0.001, 0.002)),
}


class TestResolveTier:
    """Tests for tier lookup."""

    def test_known_tier(self):
        gateway = ModelGateway({"fake": FakeProvider()}, TIERS)
        assert gateway.resolve_tier("economy").model == "fake/small"

    def test_unknown_tier(self):
        gateway = ModelGateway({"fake": FakeProvider()}, TIERS)
        with pytest.raises(UnknownTierError):
            gateway.resolve_tier("platinum")

    def test_default_tiers(self):
        gateway = ModelGateway({})
        assert set(gateway.list_tiers()) == {"premium", "standard", "economy"}


class TestCall:
    """Tests for routed calls with usage accounting."""

    @pytest.mark.asyncio
    async def test_routes_by_descriptor_tier(self):
        provider = FakeProvider()
        gateway = ModelGateway({"fake": provider}, TIERS)

        response = await gateway.call(Descriptor("premium"), PromptPayload(prompt="hi"))

        assert provider.calls[0][0] == "fake/big"
        assert response.tier == "premium"
        assert response.provider == "fake"
        assert response.input_tokens == 1000
        assert response.output_tokens == 500
        assert response.cost_usd == pytest.approx(0.01 + 0.015)
        assert response.latency_seconds >= 0

    @pytest.mark.asyncio
    async def test_tier_override(self):
        provider = FakeProvider()
        gateway = ModelGateway({"fake": provider}, TIERS)

        response = await gateway.call(Descriptor("premium"), PromptPayload(prompt="hi"), tier="economy")

        assert provider.calls[0][0] == "fake/small"
        assert response.cost_usd == pytest.approx(0.001 + 0.001)

    @pytest.mark.asyncio
    async def test_tier_defaults_fill_payload(self):
        provider = FakeProvider()
        gateway = ModelGateway({"fake": provider}, TIERS)

        await gateway.call(Descriptor("premium"), PromptPayload(prompt="hi"))
        await gateway.call(Descriptor("premium"), PromptPayload(prompt="hi", max_tokens=10, temperature=0.9))

        first, second = provider.calls[0][1], provider.calls[1][1]
        assert (first.max_tokens, first.temperature) == (2048, 0.2)
        assert (second.max_tokens, second.temperature) == (10, 0.9)

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self):
        provider = FakeProvider(completion=ProviderCompletion(text="x" * 80))
        gateway = ModelGateway({"fake": provider}, TIERS)

        response = await gateway.call(Descriptor("economy"), PromptPayload(prompt="y" * 40))

        assert response.input_tokens == 10
        assert response.output_tokens == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ProviderUnavailable("down"), ProviderQuotaExceeded("429")])
    async def test_provider_errors_pass_through(self, error):
        gateway = ModelGateway({"fake": FakeProvider(error=error)}, TIERS)
        with pytest.raises(type(error)):
            await gateway.call(Descriptor("economy"), PromptPayload(prompt="hi"))

    @pytest.mark.asyncio
    async def test_unregistered_provider_is_unavailable(self):
        tiers = {"economy": ModelTier("economy", "elsewhere", "x/y")}
        gateway = ModelGateway({"fake": FakeProvider()}, tiers)
        with pytest.raises(ProviderUnavailable, match="elsewhere"):
            await gateway.call(Descriptor("economy"), PromptPayload(prompt="hi"))

    @pytest.mark.asyncio
    async def test_unknown_descriptor_tier(self):
        gateway = ModelGateway({"fake": FakeProvider()}, TIERS)
        with pytest.raises(UnknownTierError):
            await gateway.call(Descriptor("platinum"), PromptPayload(prompt="hi"))

    @pytest.mark.asyncio
    async def test_close_closes_providers(self):
        provider = FakeProvider()
        await ModelGateway({"fake": provider}, TIERS).close()
        assert provider.closed


class TestBuildTiers:
    """Tests for tier configuration."""

    def test_overrides_merge_with_defaults(self):
        tiers = build_tiers({"economy": {"model": "test/cheap", "pricing": {"input_per_1k": 0.5}}})

        assert tiers["economy"].model == "test/cheap"
        assert tiers["economy"].pricing.input_per_1k == 0.5
        assert tiers["premium"] == DEFAULT_TIERS["premium"]

    def test_empty_config(self):
        assert build_tiers({}) == DEFAULT_TIERS
        assert build_tiers(None) == DEFAULT_TIERS
