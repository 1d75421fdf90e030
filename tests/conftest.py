"""
Shared fixtures: a controllable clock and a small provider catalog.
"""

from datetime import datetime, timedelta, timezone

import pytest

from api_cost_tracker.core.pricing import BillingType, Endpoint, Provider, RateLimits
from api_cost_tracker.core.registry import ProviderRegistry


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def acme_registry():
    """One pay-per-use provider with round-number prices."""
    return ProviderRegistry([
        Provider(
            name="acme",
            billing_type=BillingType.PAY_PER_USE,
            endpoints=(
                Endpoint("search", "/v1/search", 1.20, "request", "search"),
                Endpoint("bulk", "/v1/bulk", 120.0, "request", "bulk"),
                Endpoint("enrich", "/v1/enrich", 11.0, "request", "enrichment"),
                Endpoint("free", "/v1/free", 0.0, "request", "general"),
            ),
            limits=RateLimits(requests_per_minute=10),
        ),
    ])
