"""
Alert payloads and delivery sinks.

Sinks are invoked one by one after a budget threshold is crossed. Each
delivery is isolated: a failing sink is logged and recorded, never raised
to the caller that triggered it.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Union

import httpx

from .periods import utcnow

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT = 5.0


class AlertKind(Enum):
    BUDGET_THRESHOLD = "budget_threshold"
    CREDITS_LOW = "credits_low"


@dataclass(frozen=True)
class BudgetAlert:
    """A budget threshold crossed for the first time in a period."""
    period: str
    threshold: float
    percent_used: float
    spent: float
    budget: float
    provider: Optional[str] = None
    last_cost: Optional[float] = None
    kind: AlertKind = field(default=AlertKind.BUDGET_THRESHOLD, init=False)

    @property
    def message(self) -> str:
        return (
            f"Budget alert: {self.threshold:g}% reached for {self.period} "
            f"(${self.spent:,.2f} of ${self.budget:,.2f})"
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "period": self.period,
            "threshold": self.threshold,
            "percent_used": self.percent_used,
            "spent": self.spent,
            "budget": self.budget,
            "provider": self.provider,
            "last_cost": self.last_cost,
            "message": self.message,
        }


@dataclass(frozen=True)
class CreditsLowAlert:
    """A subscription has used most of its included credits."""
    provider: str
    used: int
    total: int
    kind: AlertKind = field(default=AlertKind.CREDITS_LOW, init=False)

    @property
    def message(self) -> str:
        return f"Credits low for {self.provider}: {self.used}/{self.total} used"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "provider": self.provider,
            "used": self.used,
            "total": self.total,
            "message": self.message,
        }


Alert = Union[BudgetAlert, CreditsLowAlert]


@dataclass(frozen=True)
class DeliveryFailure:
    """Record of an alert that a sink failed to deliver."""
    sink: str
    kind: AlertKind
    error: str
    occurred_at: datetime


class AlertSink(Protocol):
    """Destination for alerts."""

    def deliver(self, alert: Alert) -> None:
        ...


class LogAlertSink:
    """Writes alerts to the log at WARNING level."""

    def __init__(self, logger_: Optional[logging.Logger] = None):
        self._logger = logger_ or logger

    def deliver(self, alert: Alert) -> None:
        self._logger.warning("%s", alert.message, extra={"alert": alert.to_payload()})


class CallbackAlertSink:
    """Hands alerts to an in-process callable."""

    def __init__(self, callback: Callable[[Alert], None]):
        self._callback = callback

    def deliver(self, alert: Alert) -> None:
        self._callback(alert)


class WebhookAlertSink:
    """POSTs alert payloads as JSON to a URL.

    Requests run on ``executor`` so the caller never waits on the network.
    Each request is bounded by ``timeout`` and is not retried; failures are
    logged and passed to ``on_failure``.
    """

    def __init__(
        self,
        url: str,
        executor: Executor,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        on_failure: Optional[Callable[[DeliveryFailure], None]] = None
    ):
        if not url:
            raise ValueError("webhook url is required")
        self.url = url
        self.timeout = timeout
        self._executor = executor
        self._on_failure = on_failure

    def deliver(self, alert: Alert) -> None:
        self._executor.submit(self._post, alert)

    def _post(self, alert: Alert) -> None:
        try:
            response = httpx.post(self.url, json=alert.to_payload(), timeout=self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException:
            self._failed(alert, f"webhook timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            self._failed(alert, f"webhook call failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error posting alert to %s", self.url)
            self._failed(alert, f"webhook delivery error: {e}")

    def _failed(self, alert: Alert, error: str) -> None:
        logger.error("Alert delivery to %s failed: %s", self.url, error)
        if self._on_failure is not None:
            self._on_failure(DeliveryFailure(
                sink=f"webhook:{self.url}",
                kind=alert.kind,
                error=error,
                occurred_at=utcnow()
            ))

    def __repr__(self) -> str:
        return f"WebhookAlertSink({self.url!r})"
