"""
Collector-side usage metering.

Wraps third-party API calls to record usage events for cost tracking
without modifying behavior: the wrapped call's result is returned and its
exception re-raised unchanged.
"""

import functools
import time
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from ..core.tracker import CostTracker, UsageContext
from ..storage.models import UsageEvent

F = TypeVar("F", bound=Callable[..., Any])

QuantitySpec = Union[int, Callable[[Any], int]]


def _status_from_exception(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status of a failed call (httpx, requests and friends)."""
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


class TrackedCall:
    """Context manager timing one third-party call and recording it.

    Example:
        with TrackedCall(tracker, "dataforseo", "keywords_volume", quantity=len(keywords)) as call:
            response = client.post(url, json=payload)
            call.status_code = response.status_code
    """

    def __init__(
        self,
        tracker: CostTracker,
        provider: str,
        endpoint: str,
        quantity: int = 1,
        method: Optional[str] = None,
        path: Optional[str] = None,
        business_id: Optional[str] = None,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Initialize the tracked call.

        Args:
            tracker: Tracker receiving the usage event
            provider: Provider name (required)
            endpoint: Endpoint name or path (required)
            quantity: Billable units; may be updated inside the block

        Raises:
            ValueError: If provider or endpoint is missing/empty
        """
        if not provider or not provider.strip():
            raise ValueError("provider is required and cannot be empty")
        if not endpoint or not endpoint.strip():
            raise ValueError("endpoint is required and cannot be empty")

        self.tracker = tracker
        self.provider = provider
        self.endpoint = endpoint
        self.quantity = quantity
        self.method = method
        self.path = path
        self.business_id = business_id
        self.client_id = client_id
        self.user_id = user_id
        self.metadata = dict(metadata or {})
        self.status_code: Optional[int] = None
        self.request_size: Optional[int] = None
        self.response_size: Optional[int] = None
        self.event: Optional[UsageEvent] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "TrackedCall":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        elapsed_ms = (time.perf_counter() - self._started) * 1000
        status_code = self.status_code
        if exc is not None and status_code is None:
            status_code = _status_from_exception(exc)

        if exc is not None:
            success = False
        elif status_code is not None:
            success = status_code < 400
        else:
            success = True

        self.event = self.tracker.record_usage(
            self.provider,
            self.endpoint,
            self.quantity,
            UsageContext(
                method=self.method,
                path=self.path,
                status_code=status_code,
                success=success,
                response_time=elapsed_ms,
                request_size=self.request_size,
                response_size=self.response_size,
                business_id=self.business_id,
                client_id=self.client_id,
                user_id=self.user_id,
                error=f"{exc_type.__name__}: {exc}" if exc is not None else None,
                metadata=self.metadata,
            )
        )
        # Never suppress the wrapped call's exception.
        return False


def track_call(
    tracker: CostTracker,
    provider: str,
    endpoint: str,
    quantity: QuantitySpec = 1,
    **details: Any
) -> Callable[[F], F]:
    """Decorator recording every call of the wrapped function.

    Args:
        tracker: Tracker receiving the usage events
        provider: Provider name
        endpoint: Endpoint name or path
        quantity: Fixed quantity, or a callable deriving it from the result
        **details: Extra TrackedCall arguments (method, path, ids, metadata)
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fixed = quantity if not callable(quantity) else 1
            with TrackedCall(tracker, provider, endpoint, quantity=fixed, **details) as call:
                result = func(*args, **kwargs)
                if callable(quantity):
                    call.quantity = quantity(result)
                status = getattr(result, "status_code", None)
                if isinstance(status, int):
                    call.status_code = status
            return result
        return wrapper  # type: ignore[return-value]
    return decorator
