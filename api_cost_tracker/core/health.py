"""
Provider health and rate-limit headroom.

Derives rolling success rate, latency and request rate per provider from
the usage ledger. Headroom figures are advisory; nothing here throttles
callers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from math import fsum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .registry import ProviderRegistry
from ..storage.models import LedgerFilter, UsageEvent
from ..storage.repository import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
RATE_WINDOW = timedelta(seconds=60)
HEALTHY_SUCCESS_RATE = 0.99
DEGRADED_SUCCESS_RATE = 0.95
RECENT_ERROR_LIMIT = 5


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def classify(success_rate: float) -> HealthStatus:
    if success_rate >= HEALTHY_SUCCESS_RATE:
        return HealthStatus.HEALTHY
    if success_rate >= DEGRADED_SUCCESS_RATE:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


@dataclass(frozen=True)
class RateLimitStatus:
    current: int
    limit: float
    percentage: float


@dataclass(frozen=True)
class RecentError:
    timestamp: datetime
    endpoint: str
    status_code: Optional[int]
    error: Optional[str]


@dataclass(frozen=True)
class HealthRecord:
    """Rolling health of one provider."""
    provider: str
    total_requests: int
    successful_requests: int
    success_rate: float
    avg_response_time: Optional[float]
    p95_response_time: Optional[float]
    status: HealthStatus
    recent_errors: Tuple[RecentError, ...] = ()
    rate_limit: Optional[RateLimitStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "provider": self.provider,
            "totalRequests": self.total_requests,
            "successRate": self.success_rate * 100,
            "avgResponseTime": self.avg_response_time,
            "p95ResponseTime": self.p95_response_time,
            "status": self.status.value,
            "recentErrors": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "endpoint": e.endpoint,
                    "statusCode": e.status_code,
                    "error": e.error,
                }
                for e in self.recent_errors
            ],
        }
        if self.rate_limit is not None:
            data["rateLimitStatus"] = {
                "current": self.rate_limit.current,
                "limit": self.rate_limit.limit,
                "percentage": self.rate_limit.percentage,
            }
        return data


def percentile(values: List[float], percent: float) -> float:
    """Compute a percentile using linear interpolation.

    Same method as numpy.percentile with interpolation='linear'.

    Args:
        values: Numeric values
        percent: Percentile to compute (0-100)
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    if percent < 0 or percent > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)
    position = (percent / 100.0) * (n - 1)
    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index
    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + fraction * (upper_value - lower_value)


class HealthMonitor:
    """Computes per-provider health over a trailing window."""

    def __init__(
        self,
        store: LedgerStore,
        registry: ProviderRegistry,
        clock: Callable[[], datetime],
        window: timedelta = DEFAULT_WINDOW
    ):
        self._store = store
        self._registry = registry
        self._clock = clock
        self.window = window
        self._listeners: List[Callable[[HealthRecord], None]] = []

    def add_listener(self, listener: Callable[[HealthRecord], None]) -> None:
        """Register a callable notified of unhealthy providers by ``check``."""
        self._listeners.append(listener)

    def get_api_health(self, window: Optional[timedelta] = None) -> List[HealthRecord]:
        """Health of every provider with traffic in the window, by provider name.

        Raises:
            ServiceUnavailable: If the ledger store cannot be read
        """
        now = self._clock()
        start = now - (window or self.window)
        by_provider: Dict[str, List[UsageEvent]] = {}
        for event in self._store.iter_events(LedgerFilter(start=start, end=now + timedelta(microseconds=1))):
            by_provider.setdefault(event.provider, []).append(event)

        return [
            self._record(provider, by_provider[provider], now)
            for provider in sorted(by_provider)
        ]

    def check(self) -> List[HealthRecord]:
        """Periodic health check: log and report unhealthy providers."""
        unhealthy = [
            record for record in self.get_api_health()
            if record.status == HealthStatus.UNHEALTHY
        ]
        for record in unhealthy:
            logger.warning(
                "Provider %s is unhealthy: success rate %.1f%% over %d requests",
                record.provider, record.success_rate * 100, record.total_requests
            )
            for listener in list(self._listeners):
                try:
                    listener(record)
                except Exception:
                    logger.exception("Health listener failed for %s", record.provider)
        return unhealthy

    def _record(self, provider: str, events: List[UsageEvent], now: datetime) -> HealthRecord:
        total = len(events)
        successful = sum(1 for e in events if e.success)
        success_rate = successful / total
        latencies = [e.response_time for e in events if e.response_time is not None]
        failures = [e for e in events if not e.success]
        recent_errors = tuple(
            RecentError(e.timestamp, e.endpoint, e.status_code, e.error)
            for e in reversed(failures[-RECENT_ERROR_LIMIT:])
        )
        return HealthRecord(
            provider=provider,
            total_requests=total,
            successful_requests=successful,
            success_rate=success_rate,
            avg_response_time=fsum(latencies) / len(latencies) if latencies else None,
            p95_response_time=percentile(latencies, 95) if latencies else None,
            status=classify(success_rate),
            recent_errors=recent_errors,
            rate_limit=self._rate_limit(provider, events, now),
        )

    def _rate_limit(
        self,
        provider: str,
        events: List[UsageEvent],
        now: datetime
    ) -> Optional[RateLimitStatus]:
        config = self._registry.get(provider)
        if config is None or config.limits is None:
            return None
        limit = config.limits.per_minute()
        if not limit:
            return None
        since = now - RATE_WINDOW
        current = sum(1 for e in events if since <= e.timestamp <= now)
        return RateLimitStatus(current=current, limit=limit, percentage=current / limit * 100)
