"""
Budget thresholds and alerting.

Tracks cumulative spend against the monthly budget and fires each
configured threshold at most once per calendar month.

Threshold state is never trusted on its own: on every evaluation the spend
of the period is recomputed from the ledger, and the set of thresholds
already fired is loaded from the ledger store the first time a period is
seen. Late or out-of-order events are evaluated against the period their
timestamp belongs to.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .alerts import (
    DEFAULT_WEBHOOK_TIMEOUT,
    Alert,
    AlertSink,
    BudgetAlert,
    DeliveryFailure,
    LogAlertSink,
    WebhookAlertSink,
)
from .periods import Period, utcnow
from ..storage.models import UsageEvent
from ..storage.repository import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (50.0, 75.0, 90.0, 100.0)


class InvalidBudget(ValueError):
    """Raised when a budget or one of its alert rules is invalid."""


class AlertAction(Enum):
    """Delivery channel of a budget alert."""
    LOG = "log"
    WEBHOOK = "webhook"
    EMAIL = "email"


@dataclass(frozen=True)
class BudgetAlertRule:
    """Alert to send once spend reaches ``threshold`` percent of the budget."""
    threshold: float
    action: AlertAction = AlertAction.LOG
    target: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)):
            raise InvalidBudget("alert threshold must be a number")
        if self.threshold <= 0:
            raise InvalidBudget("alert threshold must be > 0")
        if self.action == AlertAction.WEBHOOK and not self.target:
            raise InvalidBudget("webhook alerts require a target url")
        object.__setattr__(self, "threshold", float(self.threshold))


@dataclass(frozen=True)
class Budget:
    """Monthly budget and its ordered alert rules."""
    monthly: float
    alerts: Tuple[BudgetAlertRule, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if isinstance(self.monthly, bool) or not isinstance(self.monthly, (int, float)):
            raise InvalidBudget("monthly budget must be a number")
        if not self.monthly > 0:
            raise InvalidBudget("monthly budget must be > 0")
        object.__setattr__(self, "monthly", float(self.monthly))
        alerts = tuple(self.alerts) or tuple(BudgetAlertRule(t) for t in DEFAULT_THRESHOLDS)
        object.__setattr__(self, "alerts", tuple(sorted(alerts, key=lambda a: a.threshold)))

    def thresholds(self) -> List[float]:
        return sorted({rule.threshold for rule in self.alerts})

    def rules_for(self, threshold: float) -> List[BudgetAlertRule]:
        return [rule for rule in self.alerts if rule.threshold == threshold]


def parse_alert_rule(rule: Union[BudgetAlertRule, Mapping[str, Any]]) -> BudgetAlertRule:
    """Build an alert rule from a mapping like ``{"threshold": 90, "action": "webhook"}``."""
    if isinstance(rule, BudgetAlertRule):
        return rule
    if not isinstance(rule, Mapping):
        raise InvalidBudget("alert rules must be mappings")
    if "threshold" not in rule:
        raise InvalidBudget("alert rule is missing 'threshold'")
    action = rule.get("action", AlertAction.LOG.value)
    try:
        action = AlertAction(action) if not isinstance(action, AlertAction) else action
    except ValueError:
        valid_actions = [a.value for a in AlertAction]
        raise InvalidBudget(f"alert action must be one of: {valid_actions}")
    return BudgetAlertRule(threshold=rule["threshold"], action=action, target=rule.get("target"))


SpendFunction = Callable[[Period], float]


class BudgetMonitor:
    """Per-period threshold state machine over the usage ledger."""

    def __init__(
        self,
        store: LedgerStore,
        spend: SpendFunction,
        webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        max_delivery_workers: int = 4
    ):
        """Initialize the monitor.

        Args:
            store: Ledger store holding the fired-threshold log
            spend: Returns total spend of a period, recomputed from the ledger
            webhook_timeout: Per-request timeout for webhook sinks
            max_delivery_workers: Threads used for webhook delivery
        """
        self._store = store
        self._spend = spend
        self._budget: Optional[Budget] = None
        self._webhook_timeout = webhook_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_delivery_workers,
            thread_name_prefix="alert-delivery"
        )
        self._sinks: List[AlertSink] = []
        self._log_sink = LogAlertSink()
        self._webhooks: Dict[str, WebhookAlertSink] = {}
        self._fired: Dict[str, Set[float]] = {}
        self._period_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.delivery_failures: List[DeliveryFailure] = []

    @property
    def budget(self) -> Optional[Budget]:
        return self._budget

    def set_budget(
        self,
        monthly: float,
        alerts: Optional[Iterable[Union[BudgetAlertRule, Mapping[str, Any]]]] = None
    ) -> Budget:
        """Replace the budget.

        Validation happens before anything changes, so an invalid call
        leaves the previous budget in place.

        Raises:
            InvalidBudget: If the amount is not positive or a rule is invalid
        """
        rules = tuple(parse_alert_rule(rule) for rule in (alerts or []))
        budget = Budget(monthly=monthly, alerts=rules)
        self._budget = budget
        logger.info(
            "Monthly budget set to $%.2f with thresholds %s",
            budget.monthly, budget.thresholds()
        )
        return budget

    def add_sink(self, sink: AlertSink) -> None:
        """Register a sink that receives every alert."""
        self._sinks.append(sink)

    def percent_used(self, period: Period) -> Optional[float]:
        budget = self._budget
        if budget is None:
            return None
        return self._spend(period) / budget.monthly * 100

    def state(self, period: Period) -> float:
        """Highest threshold fired in the period (0 when none)."""
        with self._period_lock(period.key):
            return max(self._fired_for(period), default=0.0)

    def evaluate(self, period: Period, trigger: Optional[UsageEvent] = None) -> List[BudgetAlert]:
        """Fire alerts for thresholds newly crossed in ``period``.

        Every threshold above the current state that spend has reached fires
        once, in ascending order, even when a single call jumps across
        several of them.

        Args:
            period: Calendar month to evaluate
            trigger: Event that caused the evaluation, if any

        Returns:
            Alerts fired by this evaluation
        """
        budget = self._budget
        if budget is None:
            return []

        fired_alerts: List[BudgetAlert] = []
        with self._period_lock(period.key):
            fired = self._fired_for(period)
            state = max(fired, default=0.0)
            spent = self._spend(period)
            percent_used = spent / budget.monthly * 100
            for threshold in budget.thresholds():
                if threshold <= state or spent * 100 < threshold * budget.monthly:
                    continue
                claimed = self._store.record_threshold(period.key, threshold)
                fired.add(threshold)
                if not claimed:
                    # Another process sharing the store already fired it.
                    continue
                alert = BudgetAlert(
                    period=period.key,
                    threshold=threshold,
                    percent_used=percent_used,
                    spent=spent,
                    budget=budget.monthly,
                    provider=trigger.provider if trigger else None,
                    last_cost=trigger.cost if trigger else None,
                )
                fired_alerts.append(alert)
                self._dispatch(alert, budget.rules_for(threshold))
        return fired_alerts

    def notify(self, alert: Alert) -> None:
        """Deliver a non-budget alert to the log and every registered sink."""
        self._deliver(self._log_sink, alert)
        for sink in list(self._sinks):
            self._deliver(sink, alert)

    def record_failure(self, failure: DeliveryFailure) -> None:
        self.delivery_failures.append(failure)

    def close(self, wait: bool = True) -> None:
        """Stop the delivery pool, letting queued webhooks finish when ``wait``."""
        self._executor.shutdown(wait=wait)

    def _dispatch(self, alert: BudgetAlert, rules: List[BudgetAlertRule]) -> None:
        for rule in rules:
            self._deliver(self._sink_for(rule), alert)
        for sink in list(self._sinks):
            self._deliver(sink, alert)

    def _deliver(self, sink: AlertSink, alert: Alert) -> None:
        try:
            sink.deliver(alert)
        except Exception as e:
            logger.exception("Alert sink %r failed", sink)
            self.record_failure(DeliveryFailure(
                sink=repr(sink),
                kind=alert.kind,
                error=str(e),
                occurred_at=utcnow()
            ))

    def _sink_for(self, rule: BudgetAlertRule) -> AlertSink:
        if rule.action == AlertAction.WEBHOOK:
            sink = self._webhooks.get(rule.target)
            if sink is None:
                sink = self._webhooks[rule.target] = WebhookAlertSink(
                    rule.target,
                    executor=self._executor,
                    timeout=self._webhook_timeout,
                    on_failure=self.record_failure
                )
            return sink
        # Email alerts are written to the log until a mail channel exists.
        return self._log_sink

    def _fired_for(self, period: Period) -> Set[float]:
        fired = self._fired.get(period.key)
        if fired is None:
            fired = self._fired[period.key] = set(self._store.fired_thresholds(period.key))
        return fired

    def _period_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._period_locks.get(key)
            if lock is None:
                lock = self._period_locks[key] = threading.Lock()
            return lock
