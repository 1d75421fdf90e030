"""
Data models for storage layer.

Defines the ledger entry and the filters used to query it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..core.periods import as_utc


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billable third-party API call.

    Append-only events that create an auditable ledger of API spend.
    Once written, these records must never be modified.
    """
    event_id: str
    timestamp: datetime
    provider: str
    endpoint: str
    quantity: int
    cost: float
    unit: str = "request"
    category: str = "general"
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    success: bool = True
    response_time: Optional[float] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    business_id: Optional[str] = None
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    unrecognized: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to plain JSON-compatible values."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "provider": self.provider,
            "endpoint": self.endpoint,
            "quantity": self.quantity,
            "cost": self.cost,
            "unit": self.unit,
            "category": self.category,
            "method": self.method,
            "path": self.path,
            "status_code": self.status_code,
            "success": self.success,
            "response_time": self.response_time,
            "request_size": self.request_size,
            "response_size": self.response_size,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "error": self.error,
            "metadata": dict(self.metadata),
            "unrecognized": self.unrecognized,
        }


@dataclass(frozen=True)
class LedgerFilter:
    """Selection of ledger events.

    Time bounds are half-open: ``start <= timestamp < end``.
    """
    provider: Optional[str] = None
    providers: Optional[Tuple[str, ...]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.providers is not None:
            object.__setattr__(self, "providers", tuple(self.providers))
        if self.start is not None:
            object.__setattr__(self, "start", as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", as_utc(self.end))
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must be before end")

    def matches(self, event: UsageEvent) -> bool:
        if self.provider is not None and event.provider != self.provider:
            return False
        if self.providers is not None and event.provider not in self.providers:
            return False
        if self.start is not None and event.timestamp < self.start:
            return False
        if self.end is not None and event.timestamp >= self.end:
            return False
        return True


@dataclass
class GroupTotals:
    """Grouped sums over a set of ledger events."""
    key: Tuple[Any, ...]
    bucket: Optional[str] = None
    count: int = 0
    quantity: int = 0
    cost: float = 0.0
    successes: int = 0
    response_time_total: float = 0.0
    response_time_count: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.count if self.count else 0.0

    @property
    def avg_response_time(self) -> Optional[float]:
        if not self.response_time_count:
            return None
        return self.response_time_total / self.response_time_count
