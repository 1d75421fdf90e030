"""
Provider subscriptions.

Tracks paid plans, their renewal cycle, and the credits/requests they
include. Only active subscriptions count toward the monthly commitment.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from math import fsum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .periods import add_months, as_utc
from .pricing import BillingPeriod, monthly_equivalent

if TYPE_CHECKING:
    from ..storage.repository import LedgerStore

DEFAULT_RENEWAL_DAYS = 30
CREDITS_LOW_PERCENT = 90.0


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL = "trial"


@dataclass(frozen=True)
class SubscriptionTerms:
    """Plan details of a subscription."""
    name: str
    cost: float
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None
    credits: int = 0
    requests: int = 0

    def __post_init__(self):
        if self.cost < 0:
            raise ValueError("plan cost must be >= 0")

    @classmethod
    def from_mapping(cls, plan: Mapping[str, Any]) -> "SubscriptionTerms":
        """Build terms from a loosely-typed plan mapping (API/CLI input)."""
        if "name" not in plan:
            raise ValueError("plan name is required")
        if "cost" not in plan:
            raise ValueError("plan cost is required")
        period = plan.get("billing_period", plan.get("period", "monthly"))
        status = plan.get("status", "active")
        return cls(
            name=str(plan["name"]),
            cost=float(plan["cost"]),
            billing_period=BillingPeriod(period),
            status=SubscriptionStatus(status),
            start_date=_parse_date(plan.get("start_date")),
            renewal_date=_parse_date(plan.get("renewal_date")),
            credits=int(plan.get("credits", 0) or 0),
            requests=int(plan.get("requests", 0) or 0),
        )


@dataclass(frozen=True)
class Allowance:
    used: int = 0
    total: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.used

    @property
    def percent_used(self) -> float:
        if not self.total:
            return 0.0
        return self.used / self.total * 100


@dataclass(frozen=True)
class Subscription:
    """A provider subscription and its usage in the current cycle."""
    provider: str
    plan: SubscriptionTerms
    credits: Allowance = field(default_factory=Allowance)
    requests: Allowance = field(default_factory=Allowance)
    credits_alerted: bool = False

    @property
    def is_active(self) -> bool:
        return self.plan.status == SubscriptionStatus.ACTIVE

    def monthly_cost(self) -> float:
        return monthly_equivalent(self.plan.cost, self.plan.billing_period)

    def days_until_renewal(self, now: datetime) -> Optional[int]:
        if self.plan.renewal_date is None:
            return None
        return (self.plan.renewal_date - as_utc(now)).days

    def with_usage(self, quantity: int) -> "Subscription":
        """Count one request consuming ``quantity`` credits."""
        return replace(
            self,
            credits=replace(self.credits, used=self.credits.used + quantity),
            requests=replace(self.requests, used=self.requests.used + 1),
        )

    def credits_low(self) -> bool:
        return bool(self.credits.total) and self.credits.percent_used >= CREDITS_LOW_PERCENT

    def roll_over(self, now: datetime) -> "Subscription":
        """Advance past every renewal date that has already passed.

        Active plans renew for another billing period with fresh counters;
        cancelled plans expire at their renewal date.
        """
        now = as_utc(now)
        renewal = self.plan.renewal_date
        if renewal is None or renewal > now:
            return self
        if self.plan.status == SubscriptionStatus.CANCELLED:
            return replace(self, plan=replace(self.plan, status=SubscriptionStatus.EXPIRED))
        if self.plan.status != SubscriptionStatus.ACTIVE:
            return self

        step = 12 if self.plan.billing_period == BillingPeriod.YEARLY else 1
        cycles = 0
        while renewal <= now:
            cycles += 1
            renewal = add_months(self.plan.renewal_date, step * cycles)
        return replace(
            self,
            plan=replace(self.plan, renewal_date=renewal),
            credits=replace(self.credits, used=0),
            requests=replace(self.requests, used=0),
            credits_alerted=False,
        )

    def commitment_dict(self) -> Dict[str, Any]:
        """Plan fields that set the monthly commitment; unaffected by renewals."""
        return {
            "provider": self.provider,
            "plan": self.plan.name,
            "cost": self.plan.cost,
            "billing_period": self.plan.billing_period.value,
            "monthly_cost": self.monthly_cost(),
        }

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "provider": self.provider,
            "plan": {
                "name": self.plan.name,
                "cost": self.plan.cost,
                "billing_period": self.plan.billing_period.value,
                "status": self.plan.status.value,
                "start_date": _format_date(self.plan.start_date),
                "renewal_date": _format_date(self.plan.renewal_date),
            },
            "usage": {
                "credits": {"used": self.credits.used, "total": self.credits.total},
                "requests": {"used": self.requests.used, "total": self.requests.total},
            },
            "credits_alerted": self.credits_alerted,
        }
        if now is not None:
            data["credits_remaining"] = self.credits.remaining if self.credits.total else None
            data["days_until_renewal"] = self.days_until_renewal(now)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Subscription":
        plan = data["plan"]
        usage = data.get("usage", {})
        credits = usage.get("credits", {})
        requests = usage.get("requests", {})
        return cls(
            provider=data["provider"],
            plan=SubscriptionTerms(
                name=plan["name"],
                cost=float(plan["cost"]),
                billing_period=BillingPeriod(plan["billing_period"]),
                status=SubscriptionStatus(plan["status"]),
                start_date=_parse_date(plan.get("start_date")),
                renewal_date=_parse_date(plan.get("renewal_date")),
                credits=int(credits.get("total", 0)),
                requests=int(requests.get("total", 0)),
            ),
            credits=Allowance(int(credits.get("used", 0)), int(credits.get("total", 0))),
            requests=Allowance(int(requests.get("used", 0)), int(requests.get("total", 0))),
            credits_alerted=bool(data.get("credits_alerted", False)),
        )


def new_subscription(
    provider: str,
    plan: Union[SubscriptionTerms, Mapping[str, Any]],
    now: datetime
) -> Subscription:
    """Create the record stored by an upsert.

    Defaults: start date now, renewal 30 days out, counters reset to the
    plan's allowances.
    """
    if not provider:
        raise ValueError("provider is required")
    terms = plan if isinstance(plan, SubscriptionTerms) else SubscriptionTerms.from_mapping(plan)
    now = as_utc(now)
    terms = replace(
        terms,
        start_date=as_utc(terms.start_date) if terms.start_date else now,
        renewal_date=(
            as_utc(terms.renewal_date) if terms.renewal_date
            else now + timedelta(days=DEFAULT_RENEWAL_DAYS)
        ),
    )
    return Subscription(
        provider=provider,
        plan=terms,
        credits=Allowance(0, terms.credits),
        requests=Allowance(0, terms.requests),
    )


def monthly_commitment(subscriptions: Iterable[Subscription]) -> float:
    """Monthly-equivalent cost of all active subscriptions."""
    return fsum(s.monthly_cost() for s in subscriptions if s.is_active)


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SubscriptionBook:
    """Subscriptions kept in the ledger store.

    Reads roll renewal dates forward lazily. Usage counters are updated
    under a per-provider lock so unrelated providers never wait on each
    other.
    """

    def __init__(self, store: "LedgerStore", clock: Callable[[], datetime]):
        self._store = store
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def upsert(
        self,
        provider: str,
        plan: Union[SubscriptionTerms, Mapping[str, Any]]
    ) -> Subscription:
        subscription = new_subscription(provider, plan, self._clock())
        with self._lock(provider):
            self._store.save_subscription(subscription)
        return subscription

    def get(self, provider: str) -> Optional[Subscription]:
        with self._lock(provider):
            return self._current(provider)

    def all(self) -> List[Subscription]:
        current = (self.get(sub.provider) for sub in self._store.list_subscriptions())
        return [sub for sub in current if sub is not None]

    def active(self) -> List[Subscription]:
        return [sub for sub in self.all() if sub.is_active]

    def record_usage(self, provider: str, quantity: int) -> Optional[Subscription]:
        """Count a call against the provider's active subscription.

        Returns:
            The subscription if this call made its credits run low for the
            first time in the cycle, otherwise None
        """
        with self._lock(provider):
            subscription = self._current(provider)
            if subscription is None or not subscription.is_active:
                return None
            subscription = subscription.with_usage(quantity)
            newly_low = subscription.credits_low() and not subscription.credits_alerted
            if newly_low:
                subscription = replace(subscription, credits_alerted=True)
            self._store.save_subscription(subscription)
            return subscription if newly_low else None

    def _current(self, provider: str) -> Optional[Subscription]:
        subscription = self._store.get_subscription(provider)
        if subscription is None:
            return None
        rolled = subscription.roll_over(self._clock())
        if rolled != subscription:
            self._store.save_subscription(rolled)
        return rolled

    def _lock(self, provider: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(provider)
            if lock is None:
                lock = self._locks[provider] = threading.Lock()
            return lock
