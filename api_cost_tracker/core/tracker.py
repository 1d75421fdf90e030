"""
Cost tracking service.

``CostTracker`` is the entry point used by collectors and the CLI. It prices
every billable call against the provider catalog, appends it to the ledger,
keeps per-provider running totals, and re-evaluates the budget for the
month the call belongs to.

``record_usage`` never raises: metering must not break the call it meters.
Unknown providers and endpoints are still recorded, at zero cost and
flagged ``unrecognized``, so the ledger stays a complete audit trail.
"""

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fractions import Fraction
from math import fsum
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .aggregation import AggregationEngine, TimeSeries, UsageSummary
from .alerts import DEFAULT_WEBHOOK_TIMEOUT, Alert, AlertSink, CallbackAlertSink, CreditsLowAlert
from .budget import Budget, BudgetAlertRule, BudgetMonitor
from .health import DEFAULT_WINDOW, HealthMonitor, HealthRecord
from .optimizer import OptimizationAdvisor, OptimizationReport, OptimizationSettings
from .periods import Period, as_utc, utcnow
from .pricing import calculate_cost
from .registry import NotFound, ProviderRegistry
from .reporting import ReportExporter, ReportFormat
from .scheduler import MonitoringScheduler, PeriodicJob
from .subscriptions import Subscription, SubscriptionBook, SubscriptionTerms
from ..storage.models import LedgerFilter, UsageEvent
from ..storage.repository import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_INTERVAL = 300.0
DEFAULT_REPORT_INTERVAL = 86400.0
RECENT_ALERT_LIMIT = 20


@dataclass(frozen=True)
class UsageContext:
    """Optional details of a metered call.

    ``success`` defaults to ``status_code < 400`` when a status code is
    given, and to True otherwise. ``timestamp`` backfills an event into
    the past; it defaults to now.
    """
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    success: Optional[bool] = None
    response_time: Optional[float] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    business_id: Optional[str] = None
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def resolved_success(self) -> bool:
        if self.success is not None:
            return bool(self.success)
        if self.status_code is not None:
            return self.status_code < 400
        return True


def _coerce_quantity(quantity: Any) -> int:
    """Return a billable quantity (>= 1); anything else becomes 1."""
    if not isinstance(quantity, bool):
        if isinstance(quantity, float) and quantity.is_integer():
            return _coerce_quantity(int(quantity))
        if isinstance(quantity, int) and quantity >= 1:
            return quantity
    logger.warning("Invalid quantity %r, recording 1 instead", quantity)
    return 1


class CostTracker:
    """Meters third-party API usage and answers spend questions about it."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        store: Optional[LedgerStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        optimization: Optional[OptimizationSettings] = None,
        health_window: timedelta = DEFAULT_WINDOW,
        webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        report_interval: float = DEFAULT_REPORT_INTERVAL,
        budget: Optional[Budget] = None
    ):
        """Initialize the tracker.

        Args:
            registry: Provider catalog (defaults to the built-in providers)
            store: Ledger store (defaults to an in-memory store)
            clock: Returns the current UTC time (defaults to the system clock)
            optimization: Thresholds of the optimization rules
            health_window: Trailing window of health statistics
            webhook_timeout: Per-request timeout of webhook alerts, seconds
            health_interval: Seconds between background health checks
            report_interval: Seconds between background usage reports
            budget: Initial monthly budget, if any
        """
        self.registry = registry if registry is not None else ProviderRegistry.from_config()
        self.store = store if store is not None else InMemoryLedgerStore()
        self._clock = clock or utcnow
        self.subscriptions = SubscriptionBook(self.store, self._clock)
        self.aggregation = AggregationEngine(
            self.store,
            self.subscriptions,
            budget_amount=self._budget_amount,
            clock=self._clock
        )
        self.monitor = BudgetMonitor(
            self.store,
            spend=self.aggregation.period_spend,
            webhook_timeout=webhook_timeout
        )
        self.health = HealthMonitor(self.store, self.registry, self._clock, window=health_window)
        self.advisor = OptimizationAdvisor(
            self.store,
            self.registry,
            self.aggregation,
            self._clock,
            settings=optimization
        )
        self.exporter = ReportExporter(self.store)
        self.scheduler = MonitoringScheduler([
            PeriodicJob("health-check", health_interval, self.health.check),
            PeriodicJob("usage-report", report_interval, self._log_usage_report),
        ])

        self._totals: Dict[Tuple[str, str], Fraction] = {}
        self._total_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._recent_alerts: Deque[Alert] = deque(maxlen=RECENT_ALERT_LIMIT)
        self.monitor.add_sink(CallbackAlertSink(self._recent_alerts.append))

        if budget is not None:
            self.monitor.set_budget(budget.monthly, budget.alerts)

    @classmethod
    def from_config(cls, config, store: Optional[LedgerStore] = None, **kwargs) -> "CostTracker":
        """Build a tracker from a loaded ``TrackerConfig``."""
        return cls(
            registry=ProviderRegistry.from_config(config.providers),
            store=store,
            optimization=config.optimization,
            health_window=config.health.window,
            webhook_timeout=config.webhook_timeout_seconds,
            health_interval=config.health.check_interval_seconds,
            report_interval=config.health.report_interval_seconds,
            budget=config.budget,
            **kwargs
        )

    # Ingestion

    def record_usage(
        self,
        provider: str,
        endpoint: str,
        quantity: int = 1,
        context: Optional[UsageContext] = None
    ) -> UsageEvent:
        """Record one billable call.

        Args:
            provider: Provider name
            endpoint: Endpoint name or wire path
            quantity: Billable units consumed (coerced to 1 when invalid)
            context: Optional call details

        Returns:
            The recorded event. Returned even when storing or post-processing
            failed; such failures are logged, never raised.
        """
        context = context or UsageContext()
        quantity = _coerce_quantity(quantity)
        try:
            event = self._build_event(provider, endpoint, quantity, context)
        except Exception:
            logger.exception("Malformed usage context for %s %s, recording at zero cost", provider, endpoint)
            event = UsageEvent(
                event_id=uuid.uuid4().hex,
                timestamp=self._clock(),
                provider=provider,
                endpoint=endpoint,
                quantity=quantity,
                cost=0.0,
                metadata={},
                unrecognized=True,
            )
        period = Period.containing(event.timestamp)

        try:
            self._append(event, period)
        except Exception:
            logger.exception("Failed to store usage event %s for %s", event.event_id, provider)
            return event

        try:
            self._after_append(event, period)
        except Exception:
            logger.exception("Post-processing failed for usage event %s", event.event_id)

        logger.debug(
            "Tracked %s %s x%d at $%.6f",
            event.provider, event.endpoint, event.quantity, event.cost
        )
        return event

    def _build_event(
        self,
        provider: str,
        endpoint: str,
        quantity: int,
        context: UsageContext
    ) -> UsageEvent:
        resolved = self.registry.lookup(provider, endpoint, context.path)
        timestamp = as_utc(context.timestamp) if context.timestamp else self._clock()
        common = dict(
            event_id=uuid.uuid4().hex,
            timestamp=timestamp,
            provider=provider,
            quantity=quantity,
            method=context.method,
            status_code=context.status_code,
            success=context.resolved_success(),
            response_time=context.response_time,
            request_size=context.request_size,
            response_size=context.response_size,
            business_id=context.business_id,
            client_id=context.client_id,
            user_id=context.user_id,
            error=context.error,
            metadata=dict(context.metadata),
        )
        if isinstance(resolved, NotFound):
            logger.warning("Unrecognized API call recorded at zero cost: %s", resolved.reason)
            return UsageEvent(
                endpoint=endpoint,
                cost=0.0,
                path=context.path,
                unrecognized=True,
                **common
            )
        return UsageEvent(
            endpoint=resolved.name,
            cost=calculate_cost(resolved.unit_cost, quantity),
            unit=resolved.unit,
            category=resolved.category,
            path=context.path or resolved.path,
            **common
        )

    def _append(self, event: UsageEvent, period: Period) -> None:
        key = (event.provider, period.key)
        with self._total_lock(key):
            total = self._hydrated_total(key, period)
            self.store.append(event)
            self._totals[key] = total + Fraction(event.cost)

    def _after_append(self, event: UsageEvent, period: Period) -> None:
        low = self.subscriptions.record_usage(event.provider, event.quantity)
        if low is not None:
            self.monitor.notify(CreditsLowAlert(
                provider=low.provider,
                used=low.credits.used,
                total=low.credits.total
            ))
        self.monitor.evaluate(period, trigger=event)

    def running_total(self, provider: str, period: Optional[Period] = None) -> float:
        """Usage cost of a provider in a period (default: the current one)."""
        period = period or self.aggregation.current_period()
        key = (provider, period.key)
        with self._total_lock(key):
            return float(self._hydrated_total(key, period))

    def _hydrated_total(self, key: Tuple[str, str], period: Period) -> Fraction:
        # Caller holds the key's lock.
        total = self._totals.get(key)
        if total is None:
            filters = LedgerFilter(provider=key[0], start=period.start, end=period.end)
            total = sum((Fraction(e.cost) for e in self.store.iter_events(filters)), Fraction(0))
            self._totals[key] = total
        return total

    def _total_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._total_locks.get(key)
            if lock is None:
                lock = self._total_locks[key] = threading.Lock()
            return lock

    # Queries

    def monthly_usage(self, period: Optional[Union[Period, str]] = None) -> UsageSummary:
        if isinstance(period, str):
            period = Period.parse(period)
        return self.aggregation.monthly_usage(period)

    def usage_history(self, months: int = 6) -> List[UsageSummary]:
        return self.aggregation.usage_history(months)

    def cost_breakdown(
        self,
        provider: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "day"
    ) -> TimeSeries:
        return self.aggregation.cost_breakdown(provider, start, end, group_by)

    def get_api_health(self, window: Optional[timedelta] = None) -> List[HealthRecord]:
        return self.health.get_api_health(window)

    def get_optimization_suggestions(self) -> OptimizationReport:
        return self.advisor.get_optimization_suggestions()

    # Budget and subscriptions

    def set_budget(
        self,
        monthly: float,
        alerts: Optional[Iterable[Union[BudgetAlertRule, Mapping[str, Any]]]] = None
    ) -> Budget:
        """Set the monthly budget and re-check the current month against it."""
        budget = self.monitor.set_budget(monthly, alerts)
        try:
            self.monitor.evaluate(self.aggregation.current_period())
        except Exception:
            logger.exception("Budget evaluation failed after budget change")
        return budget

    def add_alert_sink(self, sink: AlertSink) -> None:
        self.monitor.add_sink(sink)

    def recent_alerts(self) -> List[Alert]:
        """Alerts fired by this tracker, oldest first."""
        return list(self._recent_alerts)

    def upsert_subscription(
        self,
        provider: str,
        plan: Union[SubscriptionTerms, Mapping[str, Any]]
    ) -> Subscription:
        """Create or replace a provider subscription.

        The monthly commitment counts toward budget spend, so the current
        month is re-evaluated afterwards.
        """
        subscription = self.subscriptions.upsert(provider, plan)
        logger.info("Subscription for %s set to plan %s", provider, subscription.plan.name)
        try:
            self.monitor.evaluate(self.aggregation.current_period())
        except Exception:
            logger.exception("Budget evaluation failed after subscription change")
        return subscription

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        """Active subscriptions with remaining credits and days until renewal."""
        now = self._clock()
        return [sub.to_dict(now) for sub in self.subscriptions.active()]

    # Reports

    def export_report(
        self,
        format: Union[str, ReportFormat] = "json",
        provider: Optional[str] = None,
        providers: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> bytes:
        return self.exporter.export_report(format, provider, providers, start, end)

    def iter_report(
        self,
        format: Union[str, ReportFormat] = "json",
        provider: Optional[str] = None,
        providers: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[bytes]:
        return self.exporter.iter_report(format, provider, providers, start, end)

    def dashboard(self) -> Dict[str, Any]:
        """Current-month overview combining usage, health and suggestions."""
        now = self._clock()
        period = Period.containing(now)
        usage = self.monthly_usage(period)
        health = self.get_api_health()
        suggestions = self.get_optimization_suggestions()
        subscriptions = self.subscriptions.active()
        status_by_provider = {record.provider: record.status.value for record in health}

        elapsed_days = (now - period.start).total_seconds() / 86400
        projected_usage = (
            usage.costs.usage / elapsed_days * period.days() if elapsed_days > 0 else usage.costs.usage
        )

        endpoints = [
            dict(endpoint.to_dict(), provider=provider.provider)
            for provider in usage.providers
            for endpoint in provider.endpoints
        ]
        endpoints.sort(key=lambda e: (-e["cost"], e["provider"], e["endpoint"]))

        return {
            "summary": {
                "currentSpend": usage.costs.total,
                "projectedSpend": fsum([projected_usage, usage.costs.subscriptions]),
                "subscriptions": usage.costs.subscriptions,
                "budget": usage.budget.allocated,
                "budgetUsed": usage.budget.percentage,
                "daysRemaining": (period.end - now).days,
            },
            "providers": [
                {
                    "name": p.provider,
                    "cost": p.total_cost,
                    "requests": p.total_requests,
                    "status": status_by_provider.get(p.provider, "unknown"),
                }
                for p in usage.providers
            ],
            "topEndpoints": endpoints[:10],
            "alerts": [alert.to_payload() for alert in self.recent_alerts()],
            "recommendations": [s.to_dict() for s in suggestions.top(5)],
            "health": [
                {
                    "provider": record.provider,
                    "status": record.status.value,
                    "uptime": record.success_rate * 100,
                    "avgLatency": record.avg_response_time,
                }
                for record in health
            ],
            "subscriptions": [
                {
                    "provider": sub.provider,
                    "plan": sub.plan.name,
                    "renewsIn": sub.days_until_renewal(now),
                    "creditsUsed": sub.credits.percent_used,
                }
                for sub in subscriptions
            ],
        }

    # Background monitoring

    def start_monitoring(self) -> None:
        """Start the periodic health check and usage report."""
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        """Stop background jobs and the alert delivery pool."""
        self.scheduler.stop()
        self.monitor.close(wait=wait)

    def __enter__(self) -> "CostTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _budget_amount(self) -> Optional[float]:
        budget = self.monitor.budget
        return budget.monthly if budget else None

    def _log_usage_report(self) -> None:
        usage = self.monthly_usage()
        logger.info(
            "Usage report %s: usage $%.2f, subscriptions $%.2f, total $%.2f",
            usage.period, usage.costs.usage, usage.costs.subscriptions, usage.costs.total
        )
        if usage.budget.percentage is not None:
            logger.info(
                "Budget %s: $%.2f of $%.2f used (%.1f%%)",
                usage.period, usage.budget.spent, usage.budget.allocated, usage.budget.percentage
            )
