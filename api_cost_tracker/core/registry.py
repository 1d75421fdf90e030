"""
Provider catalog.

Holds billing metadata for every external API and resolves endpoint
references coming from collectors.

Lookup precedence: an endpoint whose logical name matches wins over an
endpoint whose wire path matches. Collectors pass either form, and when a
name and a path point at different endpoints the name is trusted.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Union

from .pricing import (
    BillingPeriod,
    BillingType,
    Endpoint,
    Provider,
    RateLimits,
    SubscriptionPlan,
)


class DuplicateProvider(ValueError):
    """Raised when a provider name is registered twice."""
    def __init__(self, provider: str):
        super().__init__(f"Provider already registered: {provider}")
        self.provider = provider


class DuplicateEndpoint(ValueError):
    """Raised when a provider declares two endpoints with the same name."""
    def __init__(self, provider: str, endpoint: str):
        super().__init__(f"Duplicate endpoint '{endpoint}' for provider {provider}")
        self.provider = provider
        self.endpoint = endpoint


@dataclass(frozen=True)
class NotFound:
    """Non-fatal lookup outcome for an unknown provider or endpoint."""
    provider: str
    endpoint: str
    reason: str

    def __bool__(self) -> bool:
        return False


class ProviderRegistry:
    """Catalog of provider billing metadata.

    Entries are immutable; reconfiguration swaps a whole provider through
    ``replace``. The provider map itself is only ever rebound, never mutated
    in place, so readers never need the lock.
    """

    def __init__(self, providers: Optional[List[Provider]] = None):
        self._providers: Dict[str, Provider] = {}
        self._lock = threading.Lock()
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def from_config(cls, providers: Optional[Iterable[Provider]] = None) -> "ProviderRegistry":
        """Build a registry from a configured catalog, or the built-in one when None."""
        if providers is None:
            return cls(default_providers())
        return cls(list(providers))

    def register(self, provider: Provider) -> None:
        """Add a provider to the catalog.

        Raises:
            DuplicateProvider: If the provider name is already registered
            DuplicateEndpoint: If two endpoints share a name
        """
        _check_endpoints(provider)
        with self._lock:
            if provider.name in self._providers:
                raise DuplicateProvider(provider.name)
            updated = dict(self._providers)
            updated[provider.name] = provider
            self._providers = updated

    def replace(self, provider: Provider) -> None:
        """Replace (or add) the whole entry for a provider."""
        _check_endpoints(provider)
        with self._lock:
            updated = dict(self._providers)
            updated[provider.name] = provider
            self._providers = updated

    def get(self, name: str) -> Optional[Provider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return sorted(self._providers)

    def providers(self) -> List[Provider]:
        providers = self._providers
        return [providers[name] for name in sorted(providers)]

    def lookup(
        self,
        provider: str,
        endpoint_ref: str,
        path: Optional[str] = None
    ) -> Union[Endpoint, NotFound]:
        """Resolve an endpoint by logical name or by wire path.

        Args:
            provider: Provider name
            endpoint_ref: Endpoint name, or a wire path
            path: Optional wire path supplied alongside the name

        Returns:
            The matching Endpoint, or a NotFound value (never raises)
        """
        config = self._providers.get(provider)
        if config is None:
            return NotFound(provider, endpoint_ref, f"Unknown provider: {provider}")

        for endpoint in config.endpoints:
            if endpoint.name == endpoint_ref:
                return endpoint

        candidate_paths = [p for p in (endpoint_ref, path) if p]
        for candidate in candidate_paths:
            for endpoint in config.endpoints:
                if endpoint.path == candidate:
                    return endpoint

        return NotFound(
            provider,
            endpoint_ref,
            f"Unknown endpoint: {endpoint_ref} for {provider}"
        )

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(self.providers())


def _check_endpoints(provider: Provider) -> None:
    seen = set()
    for endpoint in provider.endpoints:
        if endpoint.name in seen:
            raise DuplicateEndpoint(provider.name, endpoint.name)
        seen.add(endpoint.name)


def default_providers() -> List[Provider]:
    """Built-in catalog of the data providers the collectors call."""
    return [
        Provider(
            name="dataforseo",
            display_name="DataForSEO",
            billing_type=BillingType.PAY_PER_USE,
            endpoints=(
                Endpoint("backlinks_summary", "/backlinks/summary", 0.00002, "request", "backlinks"),
                Endpoint("backlinks_list", "/backlinks/backlinks", 0.00002, "result", "backlinks"),
                Endpoint("keywords_volume", "/keywords_data/search_volume", 0.00075, "keyword", "keywords"),
                Endpoint("serp_results", "/serp/google/organic", 0.003, "serp", "serp"),
                Endpoint("traffic_analytics", "/traffic_analytics", 0.0006, "request", "traffic"),
                Endpoint("domain_overview", "/domain_analytics/overview", 0.0006, "request", "domain"),
                Endpoint("on_page_audit", "/on_page/instant_pages", 0.0015, "page", "audit"),
            ),
            limits=RateLimits(requests_per_second=10, concurrent_requests=30),
        ),
        Provider(
            name="builtwith",
            display_name="BuiltWith",
            billing_type=BillingType.HYBRID,
            subscription=SubscriptionPlan(
                name="Pro",
                cost=295,
                period=BillingPeriod.MONTHLY,
                credits=5000,
            ),
            endpoints=(
                Endpoint("domain_lookup", "/api.json", 0.059, "lookup", "technology"),
                Endpoint("lists", "/lists.json", 0.001, "result", "leads"),
                Endpoint("relationships", "/relationships.json", 0.01, "request", "relationships"),
                Endpoint("trends", "/trends.json", 0.005, "request", "analytics"),
            ),
            limits=RateLimits(requests_per_second=10, concurrent_requests=8),
        ),
        Provider(
            name="google",
            display_name="Google APIs",
            billing_type=BillingType.PAY_PER_USE,
            endpoints=(
                Endpoint("pagespeed", "/pagespeedonline", 0, "request", "performance"),
                Endpoint("places_details", "/places/details", 0.017, "request", "places"),
                Endpoint("places_search", "/places/search", 0.032, "request", "places"),
                Endpoint("places_photos", "/places/photos", 0.007, "photo", "places"),
            ),
            limits=RateLimits(requests_per_second=10, requests_per_day=25000),
        ),
        Provider(
            name="facebook",
            display_name="Facebook/Instagram Graph API",
            billing_type=BillingType.PAY_PER_USE,
            endpoints=(
                Endpoint("graph_api", "/graph", 0, "request", "social"),
                Endpoint("insights", "/insights", 0, "request", "analytics"),
            ),
            limits=RateLimits(requests_per_hour=200),
        ),
    ]
