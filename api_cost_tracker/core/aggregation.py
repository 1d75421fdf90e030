"""
Usage aggregation.

Period rollups and time-bucketed cost breakdowns over the usage ledger.

Results carry no wall-clock fields: querying a closed range twice with no
new events produces identical output.
"""

from dataclasses import dataclass
from datetime import datetime
from math import fsum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .periods import TIME_BUCKETS, Period, as_utc, is_closed
from .subscriptions import Subscription, SubscriptionBook, monthly_commitment
from ..storage.models import LedgerFilter
from ..storage.repository import LedgerStore


@dataclass(frozen=True)
class EndpointUsage:
    endpoint: str
    count: int
    quantity: int
    cost: float
    avg_response_time: Optional[float]
    success_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "count": self.count,
            "quantity": self.quantity,
            "cost": self.cost,
            "avgResponseTime": self.avg_response_time,
            "successRate": self.success_rate,
        }


@dataclass(frozen=True)
class ProviderUsage:
    provider: str
    endpoints: Tuple[EndpointUsage, ...]
    total_cost: float
    total_requests: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.provider,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "totalCost": self.total_cost,
            "totalRequests": self.total_requests,
        }


@dataclass(frozen=True)
class CostTotals:
    usage: float
    subscriptions: float
    total: float


@dataclass(frozen=True)
class BudgetStatus:
    allocated: float
    spent: float
    remaining: float
    percentage: Optional[float]


@dataclass(frozen=True)
class UsageSummary:
    """Spend of one calendar month.

    ``to_dict`` lists subscriptions by their commitment terms only, so the
    output for a closed month does not change when a plan renews or its
    counters move.
    """
    period: str
    providers: Tuple[ProviderUsage, ...]
    subscriptions: Tuple[Subscription, ...]
    costs: CostTotals
    budget: BudgetStatus
    closed: bool

    def provider(self, name: str) -> Optional[ProviderUsage]:
        for usage in self.providers:
            if usage.provider == name:
                return usage
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "providers": [p.to_dict() for p in self.providers],
            "subscriptions": [s.commitment_dict() for s in self.subscriptions],
            "costs": {
                "usage": self.costs.usage,
                "subscriptions": self.costs.subscriptions,
                "total": self.costs.total,
            },
            "budget": {
                "allocated": self.budget.allocated,
                "spent": self.budget.spent,
                "remaining": self.budget.remaining,
                "percentage": self.budget.percentage,
            },
            "closed": self.closed,
        }


@dataclass(frozen=True)
class BreakdownPoint:
    bucket: str
    provider: str
    category: str
    cost: float
    requests: int
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.bucket,
            "provider": self.provider,
            "category": self.category,
            "cost": self.cost,
            "requests": self.requests,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class TimeSeries:
    """Cost breakdown bucketed by day, ISO week or month."""
    group_by: str
    provider: Optional[str]
    start: Optional[datetime]
    end: Optional[datetime]
    points: Tuple[BreakdownPoint, ...]
    closed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_by": self.group_by,
            "provider": self.provider,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "points": [p.to_dict() for p in self.points],
            "closed": self.closed,
        }


class AggregationEngine:
    """Read-only rollups over the ledger and active subscriptions."""

    def __init__(
        self,
        store: LedgerStore,
        subscriptions: SubscriptionBook,
        budget_amount: Callable[[], Optional[float]],
        clock: Callable[[], datetime]
    ):
        self._store = store
        self._subscriptions = subscriptions
        self._budget_amount = budget_amount
        self._clock = clock

    def current_period(self) -> Period:
        return Period.containing(self._clock())

    def usage_cost(self, period: Period) -> float:
        """Exact sum of event costs in the period."""
        return self._store.total_cost(_period_filter(period))

    def period_spend(self, period: Period) -> float:
        """Usage cost plus the monthly commitment of active subscriptions."""
        return fsum([self.usage_cost(period), monthly_commitment(self._subscriptions.active())])

    def monthly_usage(self, period: Optional[Period] = None) -> UsageSummary:
        """Summarize spend of a calendar month (default: the current one).

        Raises:
            ServiceUnavailable: If the ledger store cannot be read
        """
        period = period or self.current_period()
        filters = _period_filter(period)

        per_provider = {
            totals.key[0]: totals
            for totals in self._store.sum_by(("provider",), filters)
        }
        endpoints: Dict[str, List[EndpointUsage]] = {}
        for totals in self._store.sum_by(("provider", "endpoint"), filters):
            provider, endpoint = totals.key
            endpoints.setdefault(provider, []).append(EndpointUsage(
                endpoint=endpoint,
                count=totals.count,
                quantity=totals.quantity,
                cost=totals.cost,
                avg_response_time=totals.avg_response_time,
                success_rate=totals.success_rate,
            ))

        providers = tuple(
            ProviderUsage(
                provider=name,
                endpoints=tuple(endpoints.get(name, [])),
                total_cost=per_provider[name].cost,
                total_requests=per_provider[name].count,
            )
            for name in sorted(per_provider)
        )

        subscriptions = tuple(self._subscriptions.active())
        usage_cost = self._store.total_cost(filters)
        subscription_cost = monthly_commitment(subscriptions)
        total = fsum([usage_cost, subscription_cost])

        allocated = self._budget_amount() or 0.0
        percentage = total / allocated * 100 if allocated else None

        return UsageSummary(
            period=period.key,
            providers=providers,
            subscriptions=subscriptions,
            costs=CostTotals(usage=usage_cost, subscriptions=subscription_cost, total=total),
            budget=BudgetStatus(
                allocated=allocated,
                spent=total,
                remaining=allocated - total,
                percentage=percentage,
            ),
            closed=period.is_closed(self._clock()),
        )

    def usage_history(self, months: int = 6) -> List[UsageSummary]:
        """Summaries of the current and previous months, newest first."""
        if months < 1:
            raise ValueError("months must be >= 1")
        period = self.current_period()
        history = []
        for _ in range(months):
            history.append(self.monthly_usage(period))
            period = period.previous()
        return history

    def cost_breakdown(
        self,
        provider: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "day"
    ) -> TimeSeries:
        """Cost per (time bucket, provider, category) over ``[start, end)``.

        Raises:
            ValueError: If group_by is not day, week or month
            ServiceUnavailable: If the ledger store cannot be read
        """
        if group_by not in TIME_BUCKETS:
            raise ValueError(f"group_by must be one of: {list(TIME_BUCKETS)}")
        start = as_utc(start) if start else None
        end = as_utc(end) if end else None
        filters = LedgerFilter(provider=provider, start=start, end=end)

        points = tuple(
            BreakdownPoint(
                bucket=totals.bucket,
                provider=totals.key[0],
                category=totals.key[1],
                cost=totals.cost,
                requests=totals.count,
                quantity=totals.quantity,
            )
            for totals in self._store.sum_by(("provider", "category"), filters, time_bucket=group_by)
        )
        return TimeSeries(
            group_by=group_by,
            provider=provider,
            start=start,
            end=end,
            points=points,
            closed=is_closed(end, self._clock()),
        )


def _period_filter(period: Period) -> LedgerFilter:
    return LedgerFilter(start=period.start, end=period.end)
