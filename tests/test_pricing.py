"""
Unit tests for pricing and the provider catalog.

Tests cost arithmetic, catalog validation and endpoint lookup precedence.
"""

import pytest

from api_cost_tracker.core.pricing import (
    BillingPeriod,
    BillingType,
    Endpoint,
    Provider,
    RateLimits,
    calculate_cost,
    monthly_equivalent,
)
from api_cost_tracker.core.registry import (
    DuplicateEndpoint,
    DuplicateProvider,
    NotFound,
    ProviderRegistry,
    default_providers,
)


class TestCostCalculation:
    """Test per-call cost arithmetic."""

    def test_catalog_price_multiplies_exactly(self):
        """0.00075 per keyword for 1000 keywords is exactly 0.75."""
        assert calculate_cost(0.00075, 1000) == 0.75

    def test_single_unit(self):
        assert calculate_cost(0.017, 1) == 0.017

    def test_free_endpoint(self):
        assert calculate_cost(0, 50) == 0.0

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValueError, match="unit_cost"):
            calculate_cost(-1.0, 1)
        with pytest.raises(ValueError, match="quantity"):
            calculate_cost(1.0, -1)

    def test_yearly_plan_normalized_to_month(self):
        assert monthly_equivalent(1200, BillingPeriod.YEARLY) == 100.0
        assert monthly_equivalent(295, BillingPeriod.MONTHLY) == 295.0


class TestCatalogModel:
    """Test provider and endpoint validation."""

    def test_endpoint_requires_name(self):
        with pytest.raises(ValueError):
            Endpoint("", "/x", 1.0)

    def test_endpoint_rejects_negative_cost(self):
        with pytest.raises(ValueError):
            Endpoint("x", "/x", -0.01)

    def test_provider_stores_endpoints_as_tuple(self):
        provider = Provider("p", BillingType.PAY_PER_USE, endpoints=[Endpoint("a", "/a", 1.0)])
        assert isinstance(provider.endpoints, tuple)
        assert provider.display_name == "p"

    def test_rate_limit_per_minute_derivation(self):
        assert RateLimits(requests_per_minute=30).per_minute() == 30.0
        assert RateLimits(requests_per_second=10).per_minute() == 600.0
        assert RateLimits(requests_per_hour=120).per_minute() == 2.0
        assert RateLimits(requests_per_day=25000).per_minute() is None


class TestProviderRegistry:
    """Test registration and lookup."""

    def test_default_catalog(self):
        registry = ProviderRegistry.from_config()
        assert registry.names() == ["builtwith", "dataforseo", "facebook", "google"]
        assert registry.get("builtwith").billing_type == BillingType.HYBRID
        assert registry.get("builtwith").subscription.credits == 5000

    def test_duplicate_provider_rejected(self):
        registry = ProviderRegistry(default_providers())
        with pytest.raises(DuplicateProvider) as exc_info:
            registry.register(Provider("google", BillingType.PAY_PER_USE))
        assert exc_info.value.provider == "google"

    def test_duplicate_endpoint_rejected(self):
        registry = ProviderRegistry()
        provider = Provider(
            "p",
            BillingType.PAY_PER_USE,
            endpoints=(Endpoint("a", "/a", 1.0), Endpoint("a", "/b", 2.0)),
        )
        with pytest.raises(DuplicateEndpoint) as exc_info:
            registry.register(provider)
        assert exc_info.value.endpoint == "a"
        assert "p" not in registry

    def test_lookup_by_name(self):
        registry = ProviderRegistry(default_providers())
        endpoint = registry.lookup("dataforseo", "keywords_volume")
        assert endpoint.unit_cost == 0.00075

    def test_lookup_by_path(self):
        registry = ProviderRegistry(default_providers())
        assert registry.lookup("google", "/places/search").name == "places_search"
        assert registry.lookup("google", "places", path="/places/details").name == "places_details"

    def test_name_match_beats_path_match(self):
        """An endpoint named X wins over another endpoint whose path is X."""
        registry = ProviderRegistry([
            Provider(
                "p",
                BillingType.PAY_PER_USE,
                endpoints=(Endpoint("alpha", "beta", 1.0), Endpoint("beta", "/beta", 2.0)),
            )
        ])
        assert registry.lookup("p", "beta").name == "beta"
        assert registry.lookup("p", "gamma", path="beta").name == "alpha"

    def test_unknown_provider_is_not_found(self):
        registry = ProviderRegistry(default_providers())
        result = registry.lookup("ghost_provider", "anything")
        assert isinstance(result, NotFound)
        assert not result
        assert result.reason == "Unknown provider: ghost_provider"

    def test_unknown_endpoint_is_not_found(self):
        registry = ProviderRegistry(default_providers())
        result = registry.lookup("google", "nope")
        assert isinstance(result, NotFound)
        assert result.reason == "Unknown endpoint: nope for google"

    def test_replace_swaps_whole_entry(self):
        registry = ProviderRegistry(default_providers())
        registry.replace(Provider("google", BillingType.SUBSCRIPTION, endpoints=(Endpoint("x", "/x", 5.0),)))
        assert registry.get("google").billing_type == BillingType.SUBSCRIPTION
        assert isinstance(registry.lookup("google", "places_search"), NotFound)
        assert len(registry) == 4
