"""
Provider billing metadata and cost arithmetic.

Describes how each external API charges for its endpoints and computes
the cost of a metered call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class BillingType(Enum):
    """Pricing model of an external provider."""
    SUBSCRIPTION = "subscription"
    PAY_PER_USE = "pay_per_use"
    HYBRID = "hybrid"


class BillingPeriod(Enum):
    """Billing cadence of a subscription plan."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Endpoint:
    """A billable operation exposed by a provider."""
    name: str
    path: str
    unit_cost: float
    unit: str = "request"
    category: str = "general"

    def __post_init__(self):
        """Validate endpoint pricing."""
        if not self.name:
            raise ValueError("endpoint name is required")
        if self.unit_cost < 0:
            raise ValueError(f"unit_cost for endpoint '{self.name}' must be >= 0")


@dataclass(frozen=True)
class SubscriptionPlan:
    """Catalog terms of a provider subscription."""
    name: str
    cost: float
    period: BillingPeriod = BillingPeriod.MONTHLY
    credits: int = 0
    renewal_date: Optional[datetime] = None

    def __post_init__(self):
        if self.cost < 0:
            raise ValueError("subscription cost must be >= 0")
        if self.credits < 0:
            raise ValueError("subscription credits must be >= 0")


@dataclass(frozen=True)
class RateLimits:
    """Published rate limits of a provider."""
    requests_per_second: Optional[float] = None
    requests_per_minute: Optional[float] = None
    requests_per_hour: Optional[float] = None
    requests_per_day: Optional[float] = None
    concurrent_requests: Optional[int] = None

    def per_minute(self) -> Optional[float]:
        """Requests-per-minute limit, derived from the finest published limit."""
        if self.requests_per_minute:
            return float(self.requests_per_minute)
        if self.requests_per_second:
            return float(self.requests_per_second) * 60
        if self.requests_per_hour:
            return float(self.requests_per_hour) / 60
        return None


@dataclass(frozen=True)
class Provider:
    """Billing metadata for a single external API."""
    name: str
    billing_type: BillingType
    endpoints: Tuple[Endpoint, ...] = field(default_factory=tuple)
    display_name: str = ""
    subscription: Optional[SubscriptionPlan] = None
    limits: Optional[RateLimits] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("provider name is required")
        # Accept lists from callers, store an immutable tuple.
        object.__setattr__(self, "endpoints", tuple(self.endpoints))
        if not self.display_name:
            object.__setattr__(self, "display_name", self.name)


def calculate_cost(unit_cost: float, quantity: int) -> float:
    """Calculate the cost of a metered call.

    Uses Decimal arithmetic on the string form of the unit cost so that
    catalog prices like 0.00075 multiply exactly (1000 units -> 0.75).

    Args:
        unit_cost: Price of a single unit
        quantity: Number of units consumed

    Returns:
        Total cost as float

    Raises:
        ValueError: If unit_cost or quantity is negative
    """
    if unit_cost < 0:
        raise ValueError("unit_cost must be >= 0")
    if quantity < 0:
        raise ValueError("quantity must be >= 0")
    return float(Decimal(str(unit_cost)) * Decimal(quantity))


def monthly_equivalent(cost: float, period: BillingPeriod) -> float:
    """Normalize a subscription cost to one calendar month."""
    if period == BillingPeriod.YEARLY:
        return float(Decimal(str(cost)) / Decimal(12))
    return float(cost)
