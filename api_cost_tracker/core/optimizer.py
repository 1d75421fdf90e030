"""
Cost optimization suggestions.

Heuristic rules mined from the usage ledger. Suggestions carry no
correctness guarantee; they are tagged by type and ranked deterministically
so callers can take the top few.

Rules:
- plan_upgrade: pay-per-use provider whose monthly cost exceeds a threshold
- error_rate: endpoint whose billed calls fail too often
- performance: endpoint with slow average response time
- duplicate_calls: same provider/endpoint/path called repeatedly in a window
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from math import fsum
from typing import Any, Callable, Dict, List, Optional

from .aggregation import AggregationEngine
from .pricing import BillingType
from .registry import ProviderRegistry
from ..storage.models import LedgerFilter
from ..storage.repository import LedgerStore

PLAN_UPGRADE_SAVINGS_RATE = 0.3
DUPLICATE_SAVINGS_RATE = 0.8


class SuggestionType(Enum):
    PLAN_UPGRADE = "plan_upgrade"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    DUPLICATE_CALLS = "duplicate_calls"


@dataclass(frozen=True)
class OptimizationSettings:
    """Tunable thresholds of the optimization rules."""
    plan_upgrade_threshold: float = 100.0
    error_rate_threshold: float = 0.9
    slow_response_ms: float = 5000.0
    duplicate_min_calls: int = 5
    duplicate_window: timedelta = timedelta(hours=24)

    def __post_init__(self):
        if self.plan_upgrade_threshold < 0:
            raise ValueError("plan_upgrade_threshold must be >= 0")
        if not 0 < self.error_rate_threshold <= 1:
            raise ValueError("error_rate_threshold must be between 0 and 1")
        if self.slow_response_ms <= 0:
            raise ValueError("slow_response_ms must be > 0")
        if self.duplicate_min_calls < 1:
            raise ValueError("duplicate_min_calls must be >= 1")


@dataclass(frozen=True)
class Suggestion:
    """A single cost-saving recommendation."""
    type: SuggestionType
    message: str
    provider: str
    endpoint: Optional[str] = None
    path: Optional[str] = None
    potential_savings: Optional[float] = None
    impact: Optional[float] = None
    recommendation: Optional[str] = None

    @property
    def value(self) -> float:
        """Ranking value: savings, else impact, else zero."""
        if self.potential_savings is not None:
            return self.potential_savings
        if self.impact is not None:
            return self.impact
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "provider": self.provider,
            "message": self.message,
        }
        if self.endpoint is not None:
            data["endpoint"] = self.endpoint
        if self.path is not None:
            data["path"] = self.path
        if self.potential_savings is not None:
            data["potentialSavings"] = self.potential_savings
        if self.impact is not None:
            data["impact"] = self.impact
        if self.recommendation is not None:
            data["recommendation"] = self.recommendation
        return data


@dataclass(frozen=True)
class OptimizationReport:
    suggestions: List[Suggestion]
    total_potential_savings: float

    def top(self, k: int) -> List[Suggestion]:
        return self.suggestions[:k]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "totalPotentialSavings": self.total_potential_savings,
        }


def rank(suggestions: List[Suggestion]) -> List[Suggestion]:
    """Order by value descending; ties by type, provider, endpoint, path."""
    return sorted(
        suggestions,
        key=lambda s: (
            -s.value,
            s.type.value,
            s.provider,
            s.endpoint or "",
            s.path or "",
        )
    )


class OptimizationAdvisor:
    """Produces ranked savings suggestions from the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        registry: ProviderRegistry,
        aggregation: AggregationEngine,
        clock: Callable[[], datetime],
        settings: Optional[OptimizationSettings] = None
    ):
        self._store = store
        self._registry = registry
        self._aggregation = aggregation
        self._clock = clock
        self.settings = settings or OptimizationSettings()

    def get_optimization_suggestions(self) -> OptimizationReport:
        """Suggestions for the current period, highest value first.

        Raises:
            ServiceUnavailable: If the ledger store cannot be read
        """
        suggestions = self._usage_suggestions() + self._duplicate_suggestions()
        ranked = rank(suggestions)
        total = fsum(s.potential_savings for s in ranked if s.potential_savings is not None)
        return OptimizationReport(suggestions=ranked, total_potential_savings=total)

    def _usage_suggestions(self) -> List[Suggestion]:
        settings = self.settings
        summary = self._aggregation.monthly_usage()
        suggestions = []
        for usage in summary.providers:
            config = self._registry.get(usage.provider)
            if (config is not None
                    and config.billing_type == BillingType.PAY_PER_USE
                    and usage.total_cost > settings.plan_upgrade_threshold):
                suggestions.append(Suggestion(
                    type=SuggestionType.PLAN_UPGRADE,
                    provider=usage.provider,
                    message=f"Consider switching to a subscription plan for {usage.provider}",
                    potential_savings=usage.total_cost * PLAN_UPGRADE_SAVINGS_RATE,
                ))

            for endpoint in usage.endpoints:
                if endpoint.success_rate < settings.error_rate_threshold:
                    error_percent = round((1 - endpoint.success_rate) * 100)
                    suggestions.append(Suggestion(
                        type=SuggestionType.ERROR_RATE,
                        provider=usage.provider,
                        endpoint=endpoint.endpoint,
                        message=f"High error rate ({error_percent}%) on {endpoint.endpoint}",
                        impact=endpoint.cost * (1 - endpoint.success_rate),
                    ))
                if (endpoint.avg_response_time is not None
                        and endpoint.avg_response_time > settings.slow_response_ms):
                    suggestions.append(Suggestion(
                        type=SuggestionType.PERFORMANCE,
                        provider=usage.provider,
                        endpoint=endpoint.endpoint,
                        message=(
                            f"Slow response time ({round(endpoint.avg_response_time)}ms) "
                            f"on {endpoint.endpoint}"
                        ),
                        recommendation="Consider caching or batching requests",
                    ))
        return suggestions

    def _duplicate_suggestions(self) -> List[Suggestion]:
        settings = self.settings
        now = self._clock()
        filters = LedgerFilter(start=now - settings.duplicate_window, end=now + timedelta(microseconds=1))
        window_hours = settings.duplicate_window.total_seconds() / 3600
        suggestions = []
        for totals in self._store.sum_by(("provider", "endpoint", "path"), filters):
            if totals.count <= settings.duplicate_min_calls:
                continue
            provider, endpoint, path = totals.key
            suggestions.append(Suggestion(
                type=SuggestionType.DUPLICATE_CALLS,
                provider=provider,
                endpoint=endpoint,
                path=path,
                message=(
                    f"{endpoint} on {provider} was called {totals.count} times "
                    f"in the last {window_hours:g}h"
                ),
                potential_savings=totals.cost * DUPLICATE_SAVINGS_RATE,
                recommendation="Implement caching to reduce duplicate API calls",
            ))
        return suggestions
